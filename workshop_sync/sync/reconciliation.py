"""Live reconciliation of remote changes into the cache and views.

Change events arrive synchronously from the backing store's subscription
feed. Each one is applied in its own task so that resolving a new
request's client and car never blocks the feed.
"""

import asyncio
from collections.abc import Callable, Iterable, MutableMapping
from enum import Enum

from pydantic import ValidationError

from workshop_sync.cache.entity_cache import EntityCache
from workshop_sync.core.config import settings
from workshop_sync.core.logging import get_logger, table_context
from workshop_sync.core.sentry import report_background_failure
from workshop_sync.models.entities import InspectionRequest
from workshop_sync.models.registry import EntityType, entity_type_for_table
from workshop_sync.store.base import BackingStore, ChangeEvent, ChangeOp, Unsubscribe
from workshop_sync.sync.overlay import SearchOverlay
from workshop_sync.sync.pagination import PrimaryFeed
from workshop_sync.sync.resolver import OnDemandResolver

logger = get_logger(__name__)

IncomingRequestListener = Callable[[InspectionRequest], None]


class RealtimeStatus(str, Enum):
    """Connection state of the live change channel."""

    CONNECTED = "connected"
    CONNECTING = "connecting"
    DISCONNECTED = "disconnected"


class ReconciliationChannel:
    """Apply remote inserts, updates and deletes.

    Inserts and updates are merged into the cache (stale versions are
    ignored there), placed in the primary feed when they fall inside its
    window, and offered to the overlay. Deletes leave the cache, the feed
    and the overlay. Events for recently deleted ids are ignored, so a late
    echo cannot resurrect a deleted entity.

    Usage:
        channel = ReconciliationChannel(cache, store, resolver, feeds, overlays)
        channel.start()
        ...
        await channel.drain()
        channel.stop()
    """

    def __init__(
        self,
        cache: EntityCache,
        store: BackingStore,
        resolver: OnDemandResolver | None = None,
        feeds: MutableMapping[EntityType, PrimaryFeed] | None = None,
        overlays: MutableMapping[EntityType, SearchOverlay] | None = None,
        tables: Iterable[str] | None = None,
        current_employee_id: str | None = None,
    ) -> None:
        self._cache = cache
        self._store = store
        self._resolver = resolver
        self._feeds = feeds if feeds is not None else {}
        self._overlays = overlays if overlays is not None else {}
        self.tables = list(tables if tables is not None else settings.realtime_tables)
        self.current_employee_id = current_employee_id
        self._unsubscribers: list[Unsubscribe] = []
        self._pending: set[asyncio.Task[None]] = set()
        self._incoming_listeners: list[IncomingRequestListener] = []
        self.status = RealtimeStatus.DISCONNECTED

    @property
    def started(self) -> bool:
        return bool(self._unsubscribers)

    def start(self) -> None:
        """Subscribe to every configured table the cache holds."""
        if self.started:
            return
        self.status = RealtimeStatus.CONNECTING
        try:
            for table in self.tables:
                if entity_type_for_table(table) is None:
                    logger.warning("realtime_table_ignored", table=table)
                    continue
                self._unsubscribers.append(self._store.subscribe(table, self._on_event))
        except Exception:
            logger.exception("reconciliation_subscribe_failed")
            self.stop()
            raise
        self.status = RealtimeStatus.CONNECTED
        logger.info("reconciliation_started", tables=len(self._unsubscribers))

    def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self.status = RealtimeStatus.DISCONNECTED
        logger.info("reconciliation_stopped", pending=len(self._pending))

    def mark_disconnected(self) -> None:
        """Record that the transport dropped; call `restart` to resubscribe."""
        if self.status != RealtimeStatus.DISCONNECTED:
            logger.warning("realtime_disconnected", tables=len(self._unsubscribers))
        self.status = RealtimeStatus.DISCONNECTED

    def restart(self) -> None:
        """Drop every subscription and subscribe again."""
        logger.info("reconciliation_restarting", status=self.status.value)
        self.stop()
        self.start()

    async def drain(self) -> None:
        """Wait until every scheduled event has been applied."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def add_incoming_listener(self, listener: IncomingRequestListener) -> Callable[[], None]:
        """Call ``listener`` for new requests created by other employees."""
        self._incoming_listeners.append(listener)

        def remove() -> None:
            if listener in self._incoming_listeners:
                self._incoming_listeners.remove(listener)

        return remove

    def _on_event(self, event: ChangeEvent) -> None:
        task = asyncio.get_running_loop().create_task(self.apply(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def apply(self, event: ChangeEvent) -> None:
        """Apply one change event. Failures are logged and reported, not raised."""
        with table_context(event.table):
            try:
                await self._apply(event)
            except Exception as exc:
                logger.exception(
                    "reconciliation_failed", op=event.op.value, entity_id=event.row_id
                )
                report_background_failure(exc)

    async def _apply(self, event: ChangeEvent) -> None:
        entity_type = entity_type_for_table(event.table)
        entity_id = event.row_id
        if entity_type is None:
            return
        if not entity_id:
            logger.warning("change_event_without_id", op=event.op.value)
            return

        if event.op == ChangeOp.DELETE:
            self._remove(entity_type, [entity_id])
            logger.debug("remote_delete_applied", entity_id=entity_id)
            return

        collection = self._cache[entity_type]
        if entity_id in collection.recently_deleted:
            logger.info("stale_event_ignored", op=event.op.value, entity_id=entity_id)
            return

        existing = collection.get_by_id(entity_id)
        try:
            candidate = collection.model.model_validate(
                {**existing.model_dump(), **event.row} if existing is not None else event.row
            )
        except ValidationError as exc:
            logger.warning(
                "invalid_change_event", entity_id=entity_id, errors=exc.error_count()
            )
            return

        if isinstance(candidate, InspectionRequest) and self._resolver is not None:
            await self._resolver.ensure_loaded([candidate])
            # The entity may have been deleted while references were loading
            if entity_id in collection.recently_deleted:
                logger.info("stale_event_ignored", op=event.op.value, entity_id=entity_id)
                return

        collection.upsert_many([event.row if existing is not None else candidate])
        current = collection.get_by_id(entity_id)
        if current is None:
            return

        feed = self._feeds.get(entity_type)
        if feed is not None and entity_id not in feed and feed.accepts(current):
            feed.insert(current, live=True)
        overlay = self._overlays.get(entity_type)
        if overlay is not None:
            overlay.on_upsert(current)

        if existing is None and event.op == ChangeOp.INSERT and isinstance(current, InspectionRequest):
            self._announce(current)

    def _remove(self, entity_type: EntityType, ids: list[str]) -> None:
        self._cache[entity_type].remove_many(ids)
        feed = self._feeds.get(entity_type)
        if feed is not None:
            feed.remove(ids)
        overlay = self._overlays.get(entity_type)
        if overlay is not None:
            overlay.on_remove(ids)

    def _announce(self, request: InspectionRequest) -> None:
        if request.employee_id is not None and request.employee_id == self.current_employee_id:
            return
        for listener in list(self._incoming_listeners):
            try:
                listener(request)
            except Exception:
                logger.exception("incoming_listener_failed", request_id=request.id)
