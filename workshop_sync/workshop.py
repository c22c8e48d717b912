"""Workshop session: the façade the presentation layer talks to.

A `Workshop` owns one entity cache and wires the primary feeds, overlays,
resolver, mutation coordinator and reconciliation channel around it.
`open_workshop` runs a whole session: logging, error tracking, backing
store, initial load and the live channel.
"""

import asyncio
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from workshop_sync.cache.entity_cache import CacheChange, EntityCache
from workshop_sync.core.config import settings
from workshop_sync.core.logging import configure_logging, get_logger, session_context
from workshop_sync.core.sentry import init_sentry
from workshop_sync.errors import ConsistencyGap, FetchFailure
from workshop_sync.models.entities import Car, CarModel, Client, Employee, InspectionRequest
from workshop_sync.models.registry import EntityType, spec_for
from workshop_sync.store.base import BackingStore, BackingStoreError, SelectOptions
from workshop_sync.store.rest import RestBackingStore
from workshop_sync.sync.mutations import MutationCoordinator
from workshop_sync.sync.overlay import SearchOverlay
from workshop_sync.sync.pagination import PrimaryFeed
from workshop_sync.sync.queries import QUERY_CLASSES, EntityQueries, RequestQueries
from workshop_sync.sync.reconciliation import (
    IncomingRequestListener,
    RealtimeStatus,
    ReconciliationChannel,
)
from workshop_sync.sync.resolver import OnDemandResolver

logger = get_logger(__name__)

# Lookup tables loaded in full on startup (reservations: newest page only)
LOOKUP_LIMITS: dict[EntityType, int | None] = {
    EntityType.CAR_MAKE: None,
    EntityType.INSPECTION_TYPE: None,
    EntityType.BROKER: None,
    EntityType.EMPLOYEE: None,
    EntityType.TECHNICIAN: None,
    EntityType.EXPENSE: None,
    EntityType.RESERVATION: 50,
}


class FeedHandle:
    """Primary feed as seen by a view."""

    def __init__(self, feed: PrimaryFeed) -> None:
        self._feed = feed

    @property
    def items(self) -> list[Any]:
        return self._feed.items

    @property
    def has_more(self) -> bool:
        return self._feed.has_more

    @property
    def is_loading(self) -> bool:
        return self._feed.is_loading

    async def load_more(self) -> list[Any]:
        return await self._feed.load_next()


class OverlayHandle:
    """Overlay as seen by a view; ``items`` is None when the feed should show."""

    def __init__(self, overlay: SearchOverlay) -> None:
        self._overlay = overlay

    @property
    def items(self) -> list[Any] | None:
        return self._overlay.items

    @property
    def query(self) -> str | None:
        return self._overlay.query

    async def search(self, query: str | int) -> list[Any] | None:
        return await self._overlay.search(query)

    def clear_search(self) -> None:
        self._overlay.clear()

    async def by_date_range(self, start: datetime, end: datetime) -> list[Any] | None:
        return await self._overlay.fetch_by_date_range(start, end)

    async def show_today(self) -> list[Any] | None:
        return await self._overlay.show_today()

    def clear_date_range(self) -> None:
        self._overlay.clear_date_range()


class EntityHandle:
    """Live view of one cached entity.

    ``value`` always reads the cache. Watchers registered with `watch` are
    called with the new value (None once removed) after each write that
    touches the entity.
    """

    def __init__(self, cache: EntityCache, entity_type: EntityType, entity_id: str) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        self._collection = cache[entity_type]

    @property
    def value(self) -> Any | None:
        return self._collection.get_by_id(self.entity_id)

    def watch(self, callback: Callable[[Any | None], None]) -> Callable[[], None]:
        """Register ``callback``; returns a callable that stops watching."""

        def on_change(change: CacheChange) -> None:
            if (
                change.replaced
                or self.entity_id in change.upserted
                or self.entity_id in change.removed
            ):
                callback(self.value)

        return self._collection.subscribe(on_change)


class Workshop:
    """One dashboard session over a backing store.

    Args:
        store: Backing store adapter.
        actor: Signed-in employee; recorded in activity logs and used to
            tell other employees' new requests apart.
        cache: Entity cache to use; a fresh one by default.
        page_size: Primary feed page size.
        debounce_seconds: Search debounce for overlays.
    """

    def __init__(
        self,
        store: BackingStore,
        actor: Employee | None = None,
        cache: EntityCache | None = None,
        page_size: int | None = None,
        debounce_seconds: float | None = None,
    ) -> None:
        self.store = store
        self.actor = actor
        self.cache = cache if cache is not None else EntityCache()
        self.page_size = page_size or settings.requests_page_size
        self.debounce_seconds = debounce_seconds
        self.resolver = OnDemandResolver(self.cache, store)
        self.requests = RequestQueries(self.cache, store, self.resolver)

        self._feeds: dict[EntityType, PrimaryFeed] = {}
        self._overlays: dict[EntityType, SearchOverlay] = {}
        self._feed(EntityType.REQUEST)

        self.mutate = MutationCoordinator(
            self.cache,
            store,
            feeds=self._feeds,
            overlays=self._overlays,
            resolver=self.resolver,
            actor=actor,
        )
        self.channel = ReconciliationChannel(
            self.cache,
            store,
            resolver=self.resolver,
            feeds=self._feeds,
            overlays=self._overlays,
            current_employee_id=actor.id if actor else None,
        )

    # --- Loading ---------------------------------------------------------

    async def load(self) -> None:
        """Initial full load.

        Fetches the first request page, the lookup tables and the warm-up
        windows of clients and cars concurrently, replacing each collection,
        then resolves the first page's missing clients and cars.

        Raises:
            FetchFailure: If the first request page cannot be read. Lookup
                failures are logged and leave their collection empty.
        """
        feed = self._feed(EntityType.REQUEST)
        lookups = {
            **LOOKUP_LIMITS,
            EntityType.CLIENT: settings.initial_clients_limit,
            EntityType.CAR: settings.initial_cars_limit,
        }
        results = await asyncio.gather(
            feed.reload(replace_cache=True, resolve=False),
            *(self._load_table(entity_type, limit) for entity_type, limit in lookups.items()),
            return_exceptions=True,
        )
        page, *lookup_results = results
        for entity_type, result in zip(lookups, lookup_results):
            if isinstance(result, FetchFailure):
                logger.warning("lookup_load_failed", table=spec_for(entity_type).table)
            elif isinstance(result, BaseException):
                raise result
        if isinstance(page, BaseException):
            raise page

        await self.resolver.ensure_loaded(feed.items)
        logger.info(
            "workshop_loaded",
            requests=len(feed),
            clients=len(self.cache[EntityType.CLIENT]),
            cars=len(self.cache[EntityType.CAR]),
        )

    async def _load_table(self, entity_type: EntityType, limit: int | None) -> None:
        spec = spec_for(entity_type)
        options = SelectOptions(order_by=spec.order_by, descending=spec.descending, limit=limit)
        try:
            rows = await self.store.select(spec.table, options)
        except BackingStoreError as exc:
            raise FetchFailure(spec.table) from exc
        self.cache[entity_type].upsert_rows(rows, replace=True)

    # --- Views -----------------------------------------------------------

    def primary_feed(self, entity_type: EntityType = EntityType.REQUEST) -> FeedHandle:
        return FeedHandle(self._feed(entity_type))

    def overlay(self, entity_type: EntityType = EntityType.REQUEST) -> OverlayHandle:
        """Search/date-range overlay of a searchable entity type.

        Raises:
            ValueError: If the entity type has no search queries.
        """
        return OverlayHandle(self._overlay(entity_type))

    def use_entity(self, entity_type: EntityType, entity_id: str) -> EntityHandle:
        return EntityHandle(self.cache, entity_type, entity_id)

    def client_of(self, request: InspectionRequest) -> Client:
        return self.resolver.client_of(request)

    def car_of(self, request: InspectionRequest) -> Car:
        return self.resolver.car_of(request)

    def consistency_gaps(self) -> list[ConsistencyGap]:
        return self.resolver.find_gaps(self._feed(EntityType.REQUEST).items)

    async def models_for_make(self, make_id: str) -> list[CarModel]:
        return await self.resolver.ensure_models_for_make(make_id)

    # --- Request lookups -------------------------------------------------

    async def fetch_request_by_number(self, request_number: int) -> InspectionRequest | None:
        """Refresh one request and its place in the primary feed.

        A request that no longer exists remotely is dropped from the feed.
        """
        feed = self._feed(EntityType.REQUEST)
        request = await self.requests.by_number(request_number)
        if request is None:
            gone = [item.id for item in feed.items if item.request_number == request_number]
            feed.remove(gone)
            logger.info("request_not_found", request_number=request_number, dropped=len(gone))
            return None
        if request.id not in feed and feed.accepts(request):
            feed.insert(request)
        return request

    async def refresh_request(self, request_id: str) -> InspectionRequest | None:
        """Re-read one request by id and update its place in the primary feed.

        A request that no longer exists remotely leaves the cache, the feed
        and the search overlay.

        Raises:
            FetchFailure: If the read fails (nothing is removed).
        """
        feed = self._feed(EntityType.REQUEST)
        request = await self.requests.by_id(request_id)
        if request is None:
            self.cache.remove_many(EntityType.REQUEST, [request_id])
            feed.remove([request_id])
            overlay = self._overlays.get(EntityType.REQUEST)
            if overlay is not None:
                overlay.on_remove([request_id])
            logger.info("request_not_found", request_id=request_id)
            return None
        if request.id not in feed and feed.accepts(request):
            feed.insert(request)
        return request

    async def load_request_details(
        self, request_id: str, group: str
    ) -> InspectionRequest | None:
        """Merge one heavy column group (notes, findings, files) into a cached request."""
        return await self.requests.load_columns(request_id, group)

    async def client_requests(
        self,
        client_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        only_unpaid: bool = False,
    ) -> list[InspectionRequest]:
        return await self.requests.for_client(client_id, start, end, only_unpaid)

    async def car_requests(self, car_id: str) -> list[InspectionRequest]:
        return await self.requests.for_car(car_id)

    async def requests_between(self, start: datetime, end: datetime) -> list[InspectionRequest]:
        return await self.requests.in_date_range(start, end)

    # --- Live channel ----------------------------------------------------

    @property
    def realtime_status(self) -> RealtimeStatus:
        return self.channel.status

    def start_live(self) -> None:
        self.channel.start()

    def stop_live(self) -> None:
        self.channel.stop()

    def retry_connection(self) -> None:
        """Resubscribe the live channel after the transport dropped."""
        self.channel.restart()

    async def drain(self) -> None:
        await self.channel.drain()

    def on_incoming_request(self, listener: IncomingRequestListener) -> Callable[[], None]:
        return self.channel.add_incoming_listener(listener)

    # --- Internals -------------------------------------------------------

    def _feed(self, entity_type: EntityType) -> PrimaryFeed:
        feed = self._feeds.get(entity_type)
        if feed is None:
            feed = PrimaryFeed(
                entity_type,
                self.cache,
                self.store,
                resolver=self.resolver,
                page_size=self.page_size,
            )
            self._feeds[entity_type] = feed
        return feed

    def _overlay(self, entity_type: EntityType) -> SearchOverlay:
        overlay = self._overlays.get(entity_type)
        if overlay is None:
            queries_class = QUERY_CLASSES.get(entity_type)
            if queries_class is None:
                raise ValueError(f"{entity_type.value} has no search overlay")
            queries: EntityQueries = (
                self.requests
                if entity_type == EntityType.REQUEST
                else queries_class(self.cache, self.store, self.resolver)
            )
            overlay = SearchOverlay(
                entity_type,
                self.cache,
                queries,
                feed=self._feed(entity_type),
                debounce_seconds=self.debounce_seconds,
            )
            self._overlays[entity_type] = overlay
        return overlay


@asynccontextmanager
async def open_workshop(
    store: BackingStore | None = None,
    actor: Employee | None = None,
    live: bool = True,
) -> AsyncIterator[Workshop]:
    """Run a workshop session.

    Startup:
        - Configure structured logging
        - Initialize Sentry error tracking
        - Connect the REST backing store (unless a store is given)
        - Initial load, then subscribe to live changes

    Shutdown:
        - Unsubscribe and apply pending live changes
        - Close the REST backing store if it was opened here
    """
    configure_logging()
    init_sentry()

    owned: RestBackingStore | None = None
    if store is None:
        owned = RestBackingStore.from_settings()
        store = owned

    with session_context(str(uuid.uuid4()), actor.id if actor else None):
        logger.info("workshop_starting", environment=settings.environment)
        workshop = Workshop(store, actor=actor)
        try:
            await workshop.load()
            if live:
                workshop.start_live()
            yield workshop
        finally:
            logger.info("workshop_stopping")
            workshop.stop_live()
            await workshop.drain()
            if owned is not None:
                await owned.aclose()
