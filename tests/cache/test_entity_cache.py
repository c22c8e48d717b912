"""Tests for the normalized entity cache."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from tests.factories import BASE_TIME, FakeClock, client_row, request_row
from workshop_sync.cache import CacheChange, EntityCache, RecentlyDeleted
from workshop_sync.models import Client, EntityType, InspectionRequest, RequestStatus


@pytest.fixture
def requests(cache: EntityCache):
    return cache[EntityType.REQUEST]


class TestUpsert:
    """Tests for merge semantics of upsert_many."""

    def test_upsert_is_idempotent(self, requests) -> None:
        """Applying the same batch twice yields the same content."""
        item = InspectionRequest.model_validate(request_row(1))
        requests.upsert_many([item])
        first = [entity.model_dump() for entity in requests.get_all()]

        changed = requests.upsert_many([item])

        assert changed == []
        assert [entity.model_dump() for entity in requests.get_all()] == first

    def test_merge_preserves_unmentioned_fields(self, requests) -> None:
        """A partial upsert overwrites only the fields it carries."""
        requests.upsert_many([request_row(1, price="5", status="new")])

        requests.upsert_many([{"id": "r1", "price": "10"}])

        stored = requests.get_by_id("r1")
        assert str(stored.price) == "10"
        assert stored.status == RequestStatus.NEW
        assert stored.client_id == "c1"

    def test_model_items_merge_only_set_fields(self, requests) -> None:
        requests.upsert_many([request_row(1, payment_note="keep me")])

        requests.upsert_many([InspectionRequest(id="r1", client_id="c1", car_id="car1", price=20)])

        assert requests.get_by_id("r1").payment_note == "keep me"

    def test_no_duplicates(self, requests) -> None:
        requests.upsert_many([request_row(1), request_row(2), request_row(1)])
        requests.upsert_many([request_row(2)])

        assert len(requests.get_all()) == 2

    def test_older_version_is_ignored(self, requests) -> None:
        """Out-of-order batches converge on the newest logical timestamp."""
        newer = request_row(1, price="20", updated_at=BASE_TIME + timedelta(minutes=5))
        older = request_row(1, price="10", updated_at=BASE_TIME + timedelta(minutes=1))

        requests.upsert_many([newer])
        requests.upsert_many([older])

        assert str(requests.get_by_id("r1").price) == "20"

    def test_order_independence(self, cache: EntityCache) -> None:
        newer = request_row(1, price="20", updated_at=BASE_TIME + timedelta(minutes=5))
        older = request_row(1, price="10", updated_at=BASE_TIME + timedelta(minutes=1))
        other = EntityCache()

        cache[EntityType.REQUEST].upsert_many([older, newer])
        other[EntityType.REQUEST].upsert_many([newer, older])

        assert (
            cache.get_by_id(EntityType.REQUEST, "r1").model_dump()
            == other.get_by_id(EntityType.REQUEST, "r1").model_dump()
        )

    def test_unknown_partial_is_rejected(self, requests) -> None:
        """A partial for an id that is not cached cannot become an entity."""
        with pytest.raises(ValidationError):
            requests.upsert_many([{"id": "r9", "price": "10"}])

    def test_upsert_rows_skips_invalid_rows(self, cache: EntityCache) -> None:
        clients = cache[EntityType.CLIENT]

        clients.upsert_rows([client_row("c1"), {"id": "c2"}])

        assert [client.id for client in clients.get_all()] == ["c1"]

    def test_upsert_rows_skips_invalid_row_for_cached_id(self, requests) -> None:
        """A cached id does not let an invalid row through unvalidated."""
        requests.upsert_many([request_row(1), request_row(2)])

        changed = requests.upsert_rows(
            [request_row(1, status="archived"), request_row(2, price="450")]
        )

        assert [request.id for request in changed] == ["r2"]
        assert requests.get_by_id("r1").status == RequestStatus.NEW

    def test_older_created_at_is_ignored_without_updated_at(self, requests) -> None:
        """Rows that never carried updated_at are ordered by created_at."""
        requests.upsert_many([request_row(1, updated_at=None, price="20")])

        changed = requests.upsert_many(
            [{"id": "r1", "price": "10", "created_at": BASE_TIME - timedelta(hours=1)}]
        )

        assert changed == []
        assert str(requests.get_by_id("r1").price) == "20"

    def test_replace_discards_previous_content(self, cache: EntityCache) -> None:
        clients = cache[EntityType.CLIENT]
        clients.upsert_many([client_row("c1"), client_row("c2")])

        clients.upsert_rows([client_row("c3")], replace=True)

        assert [client.id for client in clients.get_all()] == ["c3"]


class TestRemove:
    """Tests for removal and the recently-deleted guard."""

    def test_remove_many(self, requests) -> None:
        requests.upsert_many([request_row(1), request_row(2)])

        removed = requests.remove_many(["r1", "r9"])

        assert removed == ["r1"]
        assert requests.get_by_id("r1") is None
        assert len(requests) == 1

    def test_deleted_id_is_not_resurrected(self, requests, clock: FakeClock) -> None:
        requests.upsert_many([request_row(1)])
        requests.remove_many(["r1"])

        clock.advance(2)
        requests.upsert_many([request_row(1)])
        assert requests.get_by_id("r1") is None

        clock.advance(4)
        requests.upsert_many([request_row(1)])
        assert requests.get_by_id("r1") is not None

    def test_recently_deleted_window_restarts(self) -> None:
        clock = FakeClock()
        deleted = RecentlyDeleted(ttl_seconds=5, clock=clock)

        deleted.add(["x"])
        clock.advance(4)
        deleted.add(["x"])
        clock.advance(4)

        assert "x" in deleted
        clock.advance(2)
        assert "x" not in deleted
        assert len(deleted) == 0


class TestPartitionsAndListeners:
    """Tests for partition markers and change notifications."""

    def test_partition_markers(self, cache: EntityCache) -> None:
        models = cache[EntityType.CAR_MODEL]
        assert not models.is_partition_loaded("mk1")

        models.mark_partition_loaded("mk1")
        assert models.is_partition_loaded("mk1")

        models.clear_partition("mk1")
        assert not models.is_partition_loaded("mk1")

    def test_missing_ids(self, cache: EntityCache) -> None:
        clients = cache[EntityType.CLIENT]
        clients.upsert_many([client_row("c1")])

        assert clients.missing(["c1", "c2", None, "", "c2", "c3"]) == ["c2", "c3"]

    def test_listeners_receive_changes(self, cache: EntityCache) -> None:
        clients = cache[EntityType.CLIENT]
        changes: list[CacheChange] = []
        unsubscribe = clients.subscribe(changes.append)

        clients.upsert_many([client_row("c1")])
        clients.upsert_many([client_row("c1")])
        clients.merge("c1", {"is_vip": True})
        clients.remove_many(["c1"])
        unsubscribe()
        clients.upsert_many([client_row("c2")])

        assert [change.upserted for change in changes] == [("c1",), ("c1",), ()]
        assert changes[-1].removed == ("c1",)

    def test_failing_listener_does_not_block_writes(self, cache: EntityCache) -> None:
        clients = cache[EntityType.CLIENT]

        def broken(change: CacheChange) -> None:
            raise RuntimeError("boom")

        clients.subscribe(broken)
        clients.upsert_many([client_row("c1")])

        assert isinstance(clients.get_by_id("c1"), Client)

    def test_merge_unknown_id(self, cache: EntityCache) -> None:
        assert cache[EntityType.CLIENT].merge("nope", {"name": "x"}) is None
