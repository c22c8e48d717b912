"""Primary feed: the ordered, paginated default listing of an entity type.

The feed stores ids only; entities are always read through the cache, so a
cache merge is visible in the feed without touching the list.
"""

from collections.abc import Iterable, Sequence
from typing import Any

from workshop_sync.cache.entity_cache import EntityCache
from workshop_sync.core.config import settings
from workshop_sync.core.logging import get_logger
from workshop_sync.errors import FetchFailure
from workshop_sync.models.entities import Entity
from workshop_sync.models.registry import EntityType, spec_for
from workshop_sync.store.base import BackingStore, BackingStoreError, Condition, SelectOptions
from workshop_sync.sync.resolver import OnDemandResolver
from workshop_sync.sync.scope import DateScope

logger = get_logger(__name__)


class PrimaryFeed:
    """Ordered window over an entity table, extended page by page.

    Usage:
        feed = PrimaryFeed(EntityType.REQUEST, cache, store, resolver)
        await feed.reload()
        while feed.has_more and not feed.is_loading:
            await feed.load_next()

    At most one load is in flight: `load_next` is a no-op while
    ``is_loading`` is set. While the feed is held (an overlay is shown on
    top of it) live inserts are deferred until `release`.
    """

    def __init__(
        self,
        entity_type: EntityType,
        cache: EntityCache,
        store: BackingStore,
        resolver: OnDemandResolver | None = None,
        page_size: int | None = None,
        scope: DateScope | None = None,
    ) -> None:
        self.entity_type = entity_type
        self.spec = spec_for(entity_type)
        self.page_size = page_size or settings.requests_page_size
        self.scope = scope
        self.has_more = True
        self.is_loading = False
        self._cache = cache
        self._collection = cache[entity_type]
        self._store = store
        self._resolver = resolver
        self._ids: list[str] = []
        self._held = False
        self._deferred: list[str] = []

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._ids

    @property
    def ids(self) -> tuple[str, ...]:
        return tuple(self._ids)

    @property
    def items(self) -> list[Any]:
        """Entities of the feed in order, skipping ids no longer cached."""
        items = (self._collection.get_by_id(entity_id) for entity_id in self._ids)
        return [item for item in items if item is not None]

    @property
    def is_held(self) -> bool:
        return self._held

    # --- Loading ---------------------------------------------------------

    async def reload(self, replace_cache: bool = False, resolve: bool = True) -> list[Any]:
        """Load the first page again, discarding the current window.

        Args:
            replace_cache: Replace the whole collection with the page (initial load).
            resolve: Resolve the page's references before it becomes visible.
        """
        if self.is_loading:
            logger.debug("feed_load_skipped", table=self.spec.table, reason="in_flight")
            return []

        self.is_loading = True
        try:
            rows = await self._fetch_page(0, self.page_size)
            if replace_cache:
                self._collection.upsert_rows(rows, replace=True)
            else:
                self._collection.upsert_rows(rows)
            page = self._cached(rows)
            if resolve:
                await self._resolve(page)
            self._ids = []
            self._deferred = []
            self._append(page)
            self.has_more = len(rows) == self.page_size
            logger.info(
                "feed_reloaded",
                table=self.spec.table,
                count=len(self._ids),
                has_more=self.has_more,
            )
            return page
        finally:
            self.is_loading = False

    async def load_next(self, page_size: int | None = None) -> list[Any]:
        """Fetch and append the next page.

        The page starts at the current length of the window. Sets
        ``has_more`` to whether a full page came back.

        Raises:
            FetchFailure: If the backing store read fails (window unchanged).
        """
        if self.is_loading:
            logger.debug("feed_load_skipped", table=self.spec.table, reason="in_flight")
            return []
        if not self.has_more:
            return []

        size = page_size or self.page_size
        self.is_loading = True
        try:
            rows = await self._fetch_page(len(self._ids), size)
            self._collection.upsert_rows(rows)
            page = self._cached(rows)
            await self._resolve(page)
            appended = self._append(page)
            self.has_more = len(rows) == size
            logger.info(
                "feed_page_loaded",
                table=self.spec.table,
                fetched=len(rows),
                appended=appended,
                total=len(self._ids),
                has_more=self.has_more,
            )
            return page
        finally:
            self.is_loading = False

    # --- Live maintenance ------------------------------------------------

    def accepts(self, entity: Entity) -> bool:
        """Whether a live entity belongs inside the current window.

        A scoped feed takes anything created inside its scope. An unscoped
        feed takes entities not older than its oldest loaded item, or
        anything once the whole table is loaded.
        """
        created_at = entity.created_at
        if self.scope is not None:
            return self.scope.contains(created_at)
        if not self.has_more or not self._ids:
            return True
        oldest = self._collection.get_by_id(self._ids[-1])
        if oldest is None or oldest.created_at is None or created_at is None:
            return False
        return created_at >= oldest.created_at

    def insert(self, entity: Entity, live: bool = False) -> bool:
        """Place an entity at its ordered position.

        Args:
            entity: Cached entity to show in the feed.
            live: Insert comes from the change feed; deferred while held.

        Returns:
            True if the id was inserted (or deferred).
        """
        if entity.id in self._ids:
            return False
        if live and self._held:
            if entity.id not in self._deferred:
                self._deferred.append(entity.id)
            logger.debug("feed_insert_deferred", table=self.spec.table, entity_id=entity.id)
            return True

        key = self._sort_key(entity)
        position = len(self._ids)
        for index, entity_id in enumerate(self._ids):
            current = self._collection.get_by_id(entity_id)
            if current is not None and self._before(key, self._sort_key(current)):
                position = index
                break
        self._ids.insert(position, entity.id)
        return True

    def remove(self, ids: Iterable[str]) -> list[str]:
        """Drop ids from the window (and from deferred inserts)."""
        doomed = set(ids)
        removed = [entity_id for entity_id in self._ids if entity_id in doomed]
        if removed:
            self._ids = [entity_id for entity_id in self._ids if entity_id not in doomed]
        self._deferred = [entity_id for entity_id in self._deferred if entity_id not in doomed]
        return removed

    def hold(self) -> None:
        """Defer live inserts while another list is displayed instead."""
        self._held = True

    def release(self) -> list[str]:
        """Stop deferring and apply the deferred live inserts.

        Returns:
            Ids that were inserted.
        """
        self._held = False
        deferred, self._deferred = self._deferred, []
        inserted: list[str] = []
        for entity_id in deferred:
            entity = self._collection.get_by_id(entity_id)
            if entity is not None and self.accepts(entity) and self.insert(entity):
                inserted.append(entity_id)
        if inserted:
            logger.debug("feed_deferred_applied", table=self.spec.table, count=len(inserted))
        return inserted

    # --- Internals -------------------------------------------------------

    async def _fetch_page(self, offset: int, size: int) -> list[dict[str, Any]]:
        where: tuple[Condition, ...] = ()
        if self.scope is not None:
            where = (
                Condition("created_at", "gte", self.scope.start),
                Condition("created_at", "lte", self.scope.end),
            )
        options = SelectOptions(
            where=where,
            order_by=self.spec.order_by,
            descending=self.spec.descending,
            limit=size,
            offset=offset,
        )
        try:
            return await self._store.select(self.spec.table, options)
        except BackingStoreError as exc:
            logger.warning(
                "feed_fetch_failed", table=self.spec.table, offset=offset, error=str(exc)
            )
            raise FetchFailure(self.spec.table) from exc

    def _cached(self, rows: Sequence[dict[str, Any]]) -> list[Any]:
        entities = (self._collection.get_by_id(str(row.get("id"))) for row in rows)
        return [entity for entity in entities if entity is not None]

    async def _resolve(self, page: list[Any]) -> None:
        if self._resolver is not None and self.entity_type == EntityType.REQUEST and page:
            await self._resolver.ensure_loaded(page)

    def _append(self, page: Iterable[Entity]) -> int:
        count = 0
        for entity in page:
            # Skip ids already shown and ids deleted while the page was loading
            if entity.id in self._ids or entity.id not in self._collection:
                continue
            self._ids.append(entity.id)
            count += 1
        return count

    def _sort_key(self, entity: Entity) -> Any:
        if self.spec.order_by is None:
            return None
        return getattr(entity, self.spec.order_by, None)

    def _before(self, key: Any, other: Any) -> bool:
        """Whether an item with ``key`` sorts before one with ``other``."""
        if key is None:
            return False
        if other is None:
            return True
        return key > other if self.spec.descending else key < other
