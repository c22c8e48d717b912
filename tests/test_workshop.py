"""Tests for the workshop session façade."""

from datetime import timedelta

import pytest

from tests.factories import BASE_TIME, car_row, client_row, request_row, seed_requests
from workshop_sync import Workshop, open_workshop
from workshop_sync.core.config import settings
from workshop_sync.core.logging import _add_context_vars
from workshop_sync.errors import FetchFailure
from workshop_sync.models import UNKNOWN_NAME, Employee, EntityType
from workshop_sync.store import BackingStoreError, ChangeOp, MemoryBackingStore
from workshop_sync.sync import RealtimeStatus


@pytest.fixture
def workshop(store, cache) -> Workshop:
    return Workshop(store, actor=Employee(id="e1", name="Huda"), cache=cache, debounce_seconds=0)


def _fail_table(monkeypatch, store: MemoryBackingStore, table: str) -> None:
    original = store.select

    async def select(name, options=None):
        if name == table:
            raise BackingStoreError("permission denied", status_code=401)
        return await original(name, options)

    monkeypatch.setattr(store, "select", select)


class TestLoad:
    """Tests for the initial load."""

    @pytest.mark.asyncio
    async def test_first_page_and_references(self, workshop, store, cache, monkeypatch) -> None:
        monkeypatch.setattr(settings, "initial_clients_limit", 5)
        seed_requests(store, 60)
        store.seed("car_makes", [{"id": "mk1", "name_ar": "تويوتا", "name_en": "Toyota"}])
        store.seed(
            "reservations",
            [{"id": f"res{i}", "client_name": f"Guest {i}"} for i in range(60)],
        )

        await workshop.load()

        feed = workshop.primary_feed()
        assert len(feed.items) == 50
        assert feed.has_more is True
        assert len(cache[EntityType.CLIENT]) == 50
        assert store.calls_to("select", "clients") == 2
        assert workshop.consistency_gaps() == []
        assert len(cache[EntityType.CAR_MAKE]) == 1
        assert len(cache[EntityType.RESERVATION]) == 50

    @pytest.mark.asyncio
    async def test_lookup_failure_is_tolerated(self, workshop, store, cache, monkeypatch) -> None:
        seed_requests(store, 3)
        store.seed("brokers", [{"id": "b1", "name": "Fahad"}])
        _fail_table(monkeypatch, store, "brokers")

        await workshop.load()

        assert len(workshop.primary_feed().items) == 3
        assert len(cache[EntityType.BROKER]) == 0

    @pytest.mark.asyncio
    async def test_request_page_failure_is_raised(self, workshop, store, monkeypatch) -> None:
        seed_requests(store, 3)
        _fail_table(monkeypatch, store, "inspection_requests")

        with pytest.raises(FetchFailure):
            await workshop.load()

    @pytest.mark.asyncio
    async def test_missing_client_renders_placeholder(self, workshop, store) -> None:
        store.seed("inspection_requests", [request_row(0)])
        store.seed("cars", [car_row("car0")])

        await workshop.load()

        request = workshop.primary_feed().items[0]
        assert workshop.client_of(request).name == UNKNOWN_NAME
        assert workshop.car_of(request).plate_number == "P car0"
        assert [gap.field for gap in workshop.consistency_gaps()] == ["client_id"]


class TestViews:
    """Tests for entity handles and request lookups."""

    @pytest.mark.asyncio
    async def test_watch_sees_update_and_removal(self, workshop, store) -> None:
        store.seed("clients", [client_row("c1")])
        await workshop.load()
        handle = workshop.use_entity(EntityType.CLIENT, "c1")
        seen = []
        handle.watch(seen.append)

        await workshop.mutate.update(EntityType.CLIENT, "c1", {"name": "Sara"})
        await workshop.mutate.delete(EntityType.CLIENT, "c1")

        assert seen[0].name == "Sara"
        assert seen[-1] is None
        assert handle.value is None

    @pytest.mark.asyncio
    async def test_vanished_request_is_dropped_from_feed(self, workshop, store) -> None:
        seed_requests(store, 5)
        await workshop.load()
        await store.delete("inspection_requests", "r3")

        assert await workshop.fetch_request_by_number(997) is None

        assert "r3" not in [item.id for item in workshop.primary_feed().items]

    @pytest.mark.asyncio
    async def test_fetched_request_joins_feed(self, workshop, store) -> None:
        seed_requests(store, 5)
        await workshop.load()
        store.seed(
            "inspection_requests",
            [request_row(0, id="late", request_number=5000, created_at=BASE_TIME + timedelta(minutes=3))],
        )

        request = await workshop.fetch_request_by_number(5000)

        assert request.id == "late"
        assert workshop.primary_feed().items[0].id == "late"

    @pytest.mark.asyncio
    async def test_refresh_request_drops_vanished_request(self, workshop, store, cache) -> None:
        seed_requests(store, 5)
        await workshop.load()
        await workshop.overlay().search(997)
        await store.delete("inspection_requests", "r3")

        assert await workshop.refresh_request("r3") is None

        assert "r3" not in [item.id for item in workshop.primary_feed().items]
        assert workshop.overlay().items == []
        assert cache.get_by_id(EntityType.REQUEST, "r3") is None

    @pytest.mark.asyncio
    async def test_refresh_request_merges_and_places(self, workshop, store, cache) -> None:
        seed_requests(store, 5)
        await workshop.load()
        await store.update("inspection_requests", "r1", {"price": "450"})
        store.seed(
            "inspection_requests",
            [request_row(0, id="late", created_at=BASE_TIME + timedelta(minutes=3))],
        )

        updated = await workshop.refresh_request("r1")
        late = await workshop.refresh_request("late")

        assert str(updated.price) == "450"
        assert str(cache.get_by_id(EntityType.REQUEST, "r1").price) == "450"
        assert late.id == "late"
        assert workshop.primary_feed().items[0].id == "late"

    @pytest.mark.asyncio
    async def test_refresh_request_read_failure_keeps_request(
        self, workshop, store, cache, monkeypatch
    ) -> None:
        seed_requests(store, 2)
        await workshop.load()
        _fail_table(monkeypatch, store, "inspection_requests")

        with pytest.raises(FetchFailure):
            await workshop.refresh_request("r1")

        assert cache.get_by_id(EntityType.REQUEST, "r1") is not None

    @pytest.mark.asyncio
    async def test_load_request_details_merges_columns(self, workshop, store) -> None:
        seed_requests(store, 2)
        await workshop.load()
        await store.update(
            "inspection_requests",
            "r0",
            {"category_notes": {"engine": "leak"}, "structured_findings": [], "voice_memos": []},
        )
        handle = workshop.use_entity(EntityType.REQUEST, "r0")
        seen = []
        handle.watch(seen.append)

        await workshop.load_request_details("r0", "categories")

        assert handle.value.category_notes == {"engine": "leak"}
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_overlay_handle_search(self, workshop, store) -> None:
        seed_requests(store, 5)
        await workshop.load()
        overlay = workshop.overlay()

        await overlay.search(998)
        assert [item.id for item in overlay.items] == ["r2"]
        assert overlay.query == "998"

        overlay.clear_search()
        assert overlay.items is None

    def test_overlay_requires_queries(self, workshop) -> None:
        with pytest.raises(ValueError):
            workshop.overlay(EntityType.EXPENSE)

    @pytest.mark.asyncio
    async def test_models_for_make(self, workshop, store) -> None:
        store.seed(
            "car_models",
            [{"id": "md1", "make_id": "mk1", "name_ar": "كامري", "name_en": "Camry"}],
        )

        models = await workshop.models_for_make("mk1")

        assert [model.name_en for model in models] == ["Camry"]


class TestSession:
    """Tests for open_workshop."""

    @pytest.mark.asyncio
    async def test_session_applies_live_changes(self, store) -> None:
        seed_requests(store, 2)
        incoming = []

        async with open_workshop(store=store, actor=Employee(id="e1", name="Huda")) as workshop:
            workshop.on_incoming_request(incoming.append)
            assert workshop.channel.started

            store.emit(
                "inspection_requests",
                ChangeOp.INSERT,
                request_row(
                    0,
                    id="remote",
                    request_number=3000,
                    employee_id="e2",
                    created_at=BASE_TIME + timedelta(minutes=1),
                ),
            )
            await workshop.drain()

            assert workshop.primary_feed().items[0].id == "remote"

        assert [request.id for request in incoming] == ["remote"]
        assert workshop.channel.started is False

    @pytest.mark.asyncio
    async def test_session_without_live_channel(self, store) -> None:
        async with open_workshop(store=store, live=False) as workshop:
            assert workshop.channel.started is False

    @pytest.mark.asyncio
    async def test_retry_connection_reports_status(self, store) -> None:
        async with open_workshop(store=store) as workshop:
            assert workshop.realtime_status == RealtimeStatus.CONNECTED
            workshop.channel.mark_disconnected()
            assert workshop.realtime_status == RealtimeStatus.DISCONNECTED

            workshop.retry_connection()

            assert workshop.realtime_status == RealtimeStatus.CONNECTED

        assert workshop.realtime_status == RealtimeStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_session_events_carry_session_and_employee(self, store) -> None:
        async with open_workshop(store=store, actor=Employee(id="e1", name="Huda"), live=False):
            inside = _add_context_vars(None, "info", {"event": "feed_reloaded"})
        outside = _add_context_vars(None, "info", {"event": "feed_reloaded"})

        assert inside["employee_id"] == "e1"
        assert inside["session_id"]
        assert "session_id" not in outside
