"""Search and date-range overlays shown in place of the primary feed."""

import asyncio
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from workshop_sync.cache.entity_cache import EntityCache
from workshop_sync.core.config import settings
from workshop_sync.core.logging import get_logger
from workshop_sync.models.entities import Entity
from workshop_sync.models.registry import EntityType
from workshop_sync.sync.pagination import PrimaryFeed
from workshop_sync.sync.queries import EntityQueries
from workshop_sync.sync.scope import DateScope

logger = get_logger(__name__)


class SearchOverlay:
    """Two overlay slots over one entity type's primary feed.

    The text-search slot takes precedence over the date-range slot; with
    both empty, consumers show the primary feed. Slots hold ids, so live
    updates to cached entities show up without touching the slot. Only a
    live date-range slot (the "today" view) grows from live inserts.

    Each search bumps a generation counter. A response whose generation is
    no longer current is dropped, so a late answer to an older query never
    replaces the answer to a newer one.
    """

    def __init__(
        self,
        entity_type: EntityType,
        cache: EntityCache,
        queries: EntityQueries,
        feed: PrimaryFeed | None = None,
        debounce_seconds: float | None = None,
    ) -> None:
        self.entity_type = entity_type
        self.debounce_seconds = (
            settings.search_debounce_seconds if debounce_seconds is None else debounce_seconds
        )
        self._collection = cache[entity_type]
        self._queries = queries
        self._feed = feed
        self._searched: list[str] | None = None
        self._query: str | None = None
        self._date_ranged: list[str] | None = None
        self._date_scope: DateScope | None = None
        self._date_live = False
        self._search_generation = 0
        self._date_generation = 0

    @property
    def query(self) -> str | None:
        return self._query

    @property
    def date_scope(self) -> DateScope | None:
        return self._date_scope

    @property
    def active(self) -> bool:
        return self._searched is not None or self._date_ranged is not None

    @property
    def items(self) -> list[Any] | None:
        """Entities to display instead of the primary feed, or None."""
        ids = self._searched if self._searched is not None else self._date_ranged
        if ids is None:
            return None
        entities = (self._collection.get_by_id(entity_id) for entity_id in ids)
        return [entity for entity in entities if entity is not None]

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in (self._searched or ()) or entity_id in (self._date_ranged or ())

    # --- Text search -----------------------------------------------------

    async def search(self, query: str | int) -> list[Any] | None:
        """Run a debounced server-side search.

        An empty query clears the search slot at once, without a round trip.

        Returns:
            The results, or None when the query was empty or superseded.

        Raises:
            FetchFailure: If the read fails and the query is still current.
        """
        text = str(query).strip()
        self._search_generation += 1
        generation = self._search_generation
        if not text:
            self.clear()
            return None

        if self.debounce_seconds > 0:
            await asyncio.sleep(self.debounce_seconds)
            if generation != self._search_generation:
                logger.debug("search_superseded", query=text)
                return None

        try:
            results = await self._queries.search(text)
        except Exception:
            if generation != self._search_generation:
                logger.debug("stale_search_failure_dropped", query=text)
                return None
            raise
        if generation != self._search_generation:
            logger.debug("stale_search_discarded", query=text, count=len(results))
            return None

        self._searched = [entity.id for entity in results]
        self._query = text
        self._sync_feed_hold()
        logger.info(
            "search_applied",
            entity_type=self.entity_type.value,
            query=text,
            count=len(results),
        )
        return results

    def clear(self) -> None:
        """Drop the text search; in-flight searches become stale."""
        self._search_generation += 1
        self._searched = None
        self._query = None
        self._sync_feed_hold()

    # --- Date range ------------------------------------------------------

    async def fetch_by_date_range(
        self, start: datetime, end: datetime, live: bool = False
    ) -> list[Any] | None:
        """Show entities created between ``start`` and ``end``.

        Clears the text search. With ``live`` set, new entities created
        inside the range are added as they arrive.

        Returns:
            The results, or None if a newer date-range fetch superseded this one.
        """
        scope = DateScope(start, end)
        self.clear()
        self._date_generation += 1
        generation = self._date_generation

        results = await self._queries.in_date_range(scope.start, scope.end)
        if generation != self._date_generation:
            logger.debug("stale_date_range_discarded", start=start.isoformat())
            return None

        self._date_ranged = [entity.id for entity in results]
        self._date_scope = scope
        self._date_live = live
        self._sync_feed_hold()
        logger.info(
            "date_range_applied",
            entity_type=self.entity_type.value,
            start=scope.start.isoformat(),
            end=scope.end.isoformat(),
            count=len(results),
        )
        return results

    async def show_today(self, now: datetime | None = None) -> list[Any] | None:
        """Date-range view of today that keeps accepting today's new entities."""
        scope = DateScope.today(now)
        return await self.fetch_by_date_range(scope.start, scope.end, live=True)

    def clear_date_range(self) -> None:
        self._date_generation += 1
        self._date_ranged = None
        self._date_scope = None
        self._date_live = False
        self._sync_feed_hold()

    def clear_all(self) -> None:
        self.clear()
        self.clear_date_range()

    # --- Live maintenance ------------------------------------------------

    def on_upsert(self, entity: Entity) -> bool:
        """Add a newly seen entity to a live date-range slot if it falls inside.

        Returns:
            True if the entity was added.
        """
        if (
            self._date_ranged is None
            or not self._date_live
            or self._date_scope is None
            or entity.id in self._date_ranged
            or not self._date_scope.contains(entity.created_at)
        ):
            return False

        position = len(self._date_ranged)
        for index, entity_id in enumerate(self._date_ranged):
            current = self._collection.get_by_id(entity_id)
            if current is not None and _newer(entity, current):
                position = index
                break
        self._date_ranged.insert(position, entity.id)
        return True

    def on_remove(self, ids: Iterable[str]) -> None:
        doomed = set(ids)
        if self._searched is not None:
            self._searched = [entity_id for entity_id in self._searched if entity_id not in doomed]
        if self._date_ranged is not None:
            self._date_ranged = [
                entity_id for entity_id in self._date_ranged if entity_id not in doomed
            ]

    def _sync_feed_hold(self) -> None:
        if self._feed is None:
            return
        if self.active:
            self._feed.hold()
        elif self._feed.is_held:
            self._feed.release()


def _newer(entity: Entity, other: Entity) -> bool:
    if entity.created_at is None:
        return False
    return other.created_at is None or entity.created_at > other.created_at
