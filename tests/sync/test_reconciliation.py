"""Tests for live reconciliation of remote changes."""

from datetime import timedelta

import pytest

from tests.factories import BASE_TIME, request_row, seed_requests
from workshop_sync.models import EntityType
from workshop_sync.store import BackingStoreError, ChangeOp
from workshop_sync.sync import (
    MutationCoordinator,
    RealtimeStatus,
    ReconciliationChannel,
    SearchOverlay,
)
from workshop_sync.sync.queries import RequestQueries

TABLE = "inspection_requests"


@pytest.fixture
def overlay(cache, store, resolver, feed) -> SearchOverlay:
    queries = RequestQueries(cache, store, resolver)
    return SearchOverlay(EntityType.REQUEST, cache, queries, feed, debounce_seconds=0)


@pytest.fixture
def channel(cache, store, resolver, feed, overlay):
    channel = ReconciliationChannel(
        cache,
        store,
        resolver,
        feeds={EntityType.REQUEST: feed},
        overlays={EntityType.REQUEST: overlay},
        tables=[TABLE, "clients", "cars"],
        current_employee_id="e1",
    )
    channel.start()
    yield channel
    channel.stop()


def _new_row(**overrides) -> dict:
    fields = {
        "id": "new",
        "request_number": 2000,
        "client_id": "c0",
        "car_id": "car0",
        "created_at": BASE_TIME + timedelta(minutes=1),
        "updated_at": BASE_TIME + timedelta(minutes=1),
    }
    fields.update(overrides)
    return request_row(0, **fields)


class TestInsertsAndOverlays:
    """Tests for remote inserts while overlays are shown."""

    @pytest.mark.asyncio
    async def test_feed_unchanged_while_search_shown(
        self, channel, store, feed, overlay, cache
    ) -> None:
        seed_requests(store, 3)
        await feed.reload()
        await overlay.search("1000")

        store.emit(TABLE, ChangeOp.INSERT, _new_row())
        await channel.drain()

        assert cache.get_by_id(EntityType.REQUEST, "new") is not None
        assert len(feed) == 3
        assert [request.id for request in overlay.items] == ["r0"]

        overlay.clear()
        assert len(feed) == 4
        assert feed.ids[0] == "new"

    @pytest.mark.asyncio
    async def test_today_view_grows_live(self, channel, store, feed, overlay) -> None:
        seed_requests(store, 3)
        await feed.reload()
        await overlay.show_today(now=BASE_TIME)

        store.emit(TABLE, ChangeOp.INSERT, _new_row())
        await channel.drain()

        assert [request.id for request in overlay.items] == ["new", "r0", "r1", "r2"]
        assert "new" not in feed

    @pytest.mark.asyncio
    async def test_insert_resolves_references(self, channel, store, cache) -> None:
        seed_requests(store, 1)

        store.emit(TABLE, ChangeOp.INSERT, _new_row())
        await channel.drain()

        assert cache.get_by_id(EntityType.CLIENT, "c0") is not None
        assert cache.get_by_id(EntityType.CAR, "car0") is not None

    @pytest.mark.asyncio
    async def test_invalid_row_is_skipped(self, channel, store, cache) -> None:
        store.emit(TABLE, ChangeOp.INSERT, {"id": "broken", "price": "oops"})
        await channel.drain()

        assert cache.get_by_id(EntityType.REQUEST, "broken") is None


class TestUpdatesAndDeletes:
    """Tests for remote updates and deletes."""

    @pytest.mark.asyncio
    async def test_remote_update_is_merged(self, channel, store, feed, cache) -> None:
        seed_requests(store, 3)
        await feed.reload()

        store.emit(
            TABLE,
            ChangeOp.UPDATE,
            {"id": "r1", "price": "999", "updated_at": BASE_TIME + timedelta(hours=1)},
        )
        await channel.drain()

        assert str(cache.get_by_id(EntityType.REQUEST, "r1").price) == "999"
        assert feed.ids == ("r0", "r1", "r2")

    @pytest.mark.asyncio
    async def test_older_update_is_ignored(self, channel, store, feed, cache) -> None:
        seed_requests(store, 3)
        await feed.reload()

        store.emit(
            TABLE,
            ChangeOp.UPDATE,
            {"id": "r1", "price": "1", "updated_at": BASE_TIME - timedelta(days=1)},
        )
        await channel.drain()

        assert str(cache.get_by_id(EntityType.REQUEST, "r1").price) == "300"

    @pytest.mark.asyncio
    async def test_remote_delete_removes_everywhere(
        self, channel, store, feed, overlay, cache
    ) -> None:
        seed_requests(store, 3)
        await feed.reload()
        await overlay.search("999")

        store.emit(TABLE, ChangeOp.DELETE, {"id": "r1"})
        await channel.drain()

        assert cache.get_by_id(EntityType.REQUEST, "r1") is None
        assert "r1" not in feed
        assert overlay.items == []

    @pytest.mark.asyncio
    async def test_create_then_delete_is_not_resurrected(
        self, channel, store, cache, feed, resolver
    ) -> None:
        coordinator = MutationCoordinator(
            cache, store, feeds={EntityType.REQUEST: feed}, resolver=resolver
        )

        created = await coordinator.create(
            EntityType.REQUEST,
            {"client_id": "c1", "car_id": "car1", "price": "300", "employee_id": "e1"},
        )
        row = store.rows(TABLE)[0]
        await coordinator.delete(EntityType.REQUEST, created.id)
        store.emit(TABLE, ChangeOp.INSERT, row)
        await channel.drain()

        assert cache.get_by_id(EntityType.REQUEST, created.id) is None
        assert created.id not in feed


class TestLifecycle:
    """Tests for subscriptions and incoming-request listeners."""

    @pytest.mark.asyncio
    async def test_incoming_listener_skips_own_requests(self, channel, store) -> None:
        seen = []
        channel.add_incoming_listener(seen.append)

        store.emit(TABLE, ChangeOp.INSERT, _new_row(employee_id="e2"))
        store.emit(TABLE, ChangeOp.INSERT, _new_row(id="mine", employee_id="e1"))
        store.emit(TABLE, ChangeOp.UPDATE, {"id": "new", "price": "5"})
        await channel.drain()

        assert [request.id for request in seen] == ["new"]

    @pytest.mark.asyncio
    async def test_removed_listener_is_not_called(self, channel, store) -> None:
        seen = []
        remove = channel.add_incoming_listener(seen.append)
        remove()

        store.emit(TABLE, ChangeOp.INSERT, _new_row(employee_id="e2"))
        await channel.drain()

        assert seen == []

    @pytest.mark.asyncio
    async def test_stopped_channel_ignores_events(self, channel, store, cache) -> None:
        channel.stop()

        store.emit(TABLE, ChangeOp.INSERT, _new_row())
        await channel.drain()

        assert cache.get_by_id(EntityType.REQUEST, "new") is None
        assert channel.started is False

    def test_unknown_tables_are_not_subscribed(self, cache, store) -> None:
        channel = ReconciliationChannel(cache, store, tables=["no_such_table"])

        channel.start()

        assert channel.started is False


class TestConnectionStatus:
    """Tests for the live channel status and resubscription."""

    def test_status_follows_start_and_stop(self, cache, store) -> None:
        channel = ReconciliationChannel(cache, store, tables=[TABLE])
        assert channel.status == RealtimeStatus.DISCONNECTED

        channel.start()
        assert channel.status == RealtimeStatus.CONNECTED

        channel.stop()
        assert channel.status == RealtimeStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_restart_after_drop_subscribes_once(self, channel, store, cache) -> None:
        """A restarted channel applies each event once, not once per restart."""
        seen = []
        channel.add_incoming_listener(seen.append)
        channel.mark_disconnected()
        assert channel.status == RealtimeStatus.DISCONNECTED

        channel.restart()
        channel.restart()
        store.emit(TABLE, ChangeOp.INSERT, _new_row(employee_id="e2"))
        await channel.drain()

        assert channel.status == RealtimeStatus.CONNECTED
        assert [request.id for request in seen] == ["new"]
        assert cache.get_by_id(EntityType.REQUEST, "new") is not None

    def test_failed_subscribe_leaves_channel_disconnected(self, cache, store, monkeypatch) -> None:
        def subscribe(table, handler):
            raise BackingStoreError("socket closed")

        monkeypatch.setattr(store, "subscribe", subscribe)
        channel = ReconciliationChannel(cache, store, tables=[TABLE])

        with pytest.raises(BackingStoreError):
            channel.start()

        assert channel.status == RealtimeStatus.DISCONNECTED
        assert channel.started is False
