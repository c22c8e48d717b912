"""Normalized in-memory entity cache.

One `EntityCollection` per entity type, keyed by id. Writes are merges:
fields not mentioned by an incoming item are preserved, and an item older
than the cached copy (by logical timestamp) is ignored, so applying the same
batch twice, or batches out of arrival order, converges to the same state.
"""

import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pydantic import ValidationError

from workshop_sync.core.config import settings
from workshop_sync.core.logging import get_logger
from workshop_sync.models.entities import Entity
from workshop_sync.models.registry import ENTITY_SPECS, EntityType

logger = get_logger(__name__)

E = TypeVar("E", bound=Entity)

Item = Entity | Mapping[str, Any]
_TIMESTAMP_FIELDS = frozenset({"updated_at", "created_at"})


@dataclass(frozen=True)
class CacheChange:
    """Notification sent to collection subscribers after a write.

    Attributes:
        entity_type: Type of the collection that changed.
        upserted: Ids inserted or modified by the write.
        removed: Ids removed by the write.
        replaced: True when the whole collection was replaced.
    """

    entity_type: EntityType
    upserted: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    replaced: bool = False


CacheListener = Callable[[CacheChange], None]


class RecentlyDeleted:
    """Short-lived set of deleted ids.

    An id stays in the set for ``ttl_seconds`` after its latest deletion;
    adding it again restarts the window.
    """

    def __init__(
        self,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = (
            settings.recently_deleted_ttl_seconds if ttl_seconds is None else ttl_seconds
        )
        self._clock = clock
        self._expires: dict[str, float] = {}

    def add(self, ids: Iterable[str]) -> None:
        deadline = self._clock() + self.ttl_seconds
        for entity_id in ids:
            self._expires[entity_id] = deadline

    def __contains__(self, entity_id: object) -> bool:
        deadline = self._expires.get(entity_id)  # type: ignore[arg-type]
        if deadline is None:
            return False
        if self._clock() >= deadline:
            del self._expires[entity_id]  # type: ignore[arg-type]
            return False
        return True

    def __len__(self) -> int:
        now = self._clock()
        expired = [key for key, deadline in self._expires.items() if now >= deadline]
        for key in expired:
            del self._expires[key]
        return len(self._expires)


class EntityCollection(Generic[E]):
    """Keyed-by-id store for one entity type.

    Attributes:
        entity_type: The entity type held by this collection.
        model: Pydantic model rows are validated into.
        recently_deleted: Ids whose stale writes must not resurrect them.
    """

    def __init__(
        self,
        entity_type: EntityType,
        model: type[E],
        recently_deleted: RecentlyDeleted | None = None,
    ) -> None:
        self.entity_type = entity_type
        self.model = model
        self.recently_deleted = (
            recently_deleted if recently_deleted is not None else RecentlyDeleted()
        )
        self._items: dict[str, E] = {}
        self._loaded_partitions: set[str] = set()
        self._listeners: list[CacheListener] = []

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._items

    def get_all(self) -> list[E]:
        return list(self._items.values())

    def get_by_id(self, entity_id: str) -> E | None:
        return self._items.get(entity_id)

    def missing(self, ids: Iterable[str | None]) -> list[str]:
        """Return the distinct, non-empty ids that are not cached, in input order."""
        result: list[str] = []
        seen: set[str] = set()
        for entity_id in ids:
            if not entity_id or entity_id in seen or entity_id in self._items:
                continue
            seen.add(entity_id)
            result.append(entity_id)
        return result

    def upsert_many(self, items: Iterable[Item], replace: bool = False) -> list[E]:
        """Merge ``items`` into the collection.

        Args:
            items: Entities or field mappings; each must carry an ``id``.
            replace: Discard every cached entity first. Only for full loads.

        Returns:
            The cached entities that were inserted or changed.

        Raises:
            ValidationError: If an item for an unknown id is not a complete entity.
        """
        if replace:
            return self._replace(items)

        changed: list[E] = []
        for item in items:
            stored = self._upsert_one(item)
            if stored is not None:
                changed.append(stored)

        if changed:
            self._notify(CacheChange(self.entity_type, upserted=_ids(changed)))
        return changed

    def upsert_rows(self, rows: Iterable[Mapping[str, Any]], replace: bool = False) -> list[E]:
        """Merge raw backing store rows, skipping rows that fail validation."""
        valid: list[Item] = []
        for row in rows:
            existing = None if replace else self._items.get(row.get("id"))
            try:
                if existing is None:
                    valid.append(self.model.model_validate(row))
                else:
                    # Partial rows for cached ids must still merge into a valid entity
                    self.model.model_validate({**existing.model_dump(), **row})
                    valid.append(row)
            except ValidationError as exc:
                logger.warning(
                    "invalid_row_skipped",
                    entity_type=self.entity_type.value,
                    entity_id=row.get("id"),
                    errors=exc.error_count(),
                )
        return self.upsert_many(valid, replace=replace)

    def merge(self, entity_id: str, fields: Mapping[str, Any]) -> E | None:
        """Apply a partial update to a cached entity.

        Returns:
            The updated entity, or None if the id is not cached.
        """
        if entity_id not in self._items:
            return None
        changed = self.upsert_many([{**fields, "id": entity_id}])
        return changed[0] if changed else self._items.get(entity_id)

    def remove_many(self, ids: Iterable[str]) -> list[str]:
        """Remove ids from the collection and mark them recently deleted.

        Returns:
            The ids that were actually cached.
        """
        ids = list(ids)
        self.recently_deleted.add(ids)
        removed = [entity_id for entity_id in ids if self._items.pop(entity_id, None) is not None]
        if removed:
            self._notify(CacheChange(self.entity_type, removed=tuple(removed)))
        return removed

    # --- Partitions ------------------------------------------------------

    def mark_partition_loaded(self, key: str) -> None:
        """Record that every entity of partition ``key`` has been fetched."""
        self._loaded_partitions.add(key)

    def is_partition_loaded(self, key: str) -> bool:
        return key in self._loaded_partitions

    def clear_partition(self, key: str) -> None:
        self._loaded_partitions.discard(key)

    # --- Subscriptions ---------------------------------------------------

    def subscribe(self, listener: CacheListener) -> Callable[[], None]:
        """Call ``listener`` after every write; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # --- Internals -------------------------------------------------------

    def _fields_of(self, item: Item) -> dict[str, Any]:
        if isinstance(item, Entity):
            return item.model_dump(exclude_unset=True)
        return dict(item)

    def _upsert_one(self, item: Item) -> E | None:
        fields = self._fields_of(item)
        entity_id = fields.get("id")
        if not entity_id:
            raise ValueError(f"{self.entity_type.value} item without id")

        if entity_id in self.recently_deleted:
            logger.debug(
                "upsert_skipped_recently_deleted",
                entity_type=self.entity_type.value,
                entity_id=entity_id,
            )
            return None

        existing = self._items.get(entity_id)
        if existing is None:
            entity = (
                item if isinstance(item, self.model) else self.model.model_validate(fields)
            )
            self._items[entity_id] = entity
            return entity

        merged = self.model.model_validate({**existing.model_dump(), **fields})
        if (
            not _TIMESTAMP_FIELDS.isdisjoint(fields)
            and merged.logical_timestamp is not None
            and existing.logical_timestamp is not None
            and merged.logical_timestamp < existing.logical_timestamp
        ):
            logger.debug(
                "stale_upsert_ignored",
                entity_type=self.entity_type.value,
                entity_id=entity_id,
            )
            return None
        if merged.model_dump() == existing.model_dump():
            return None

        self._items[entity_id] = merged
        return merged

    def _replace(self, items: Iterable[Item]) -> list[E]:
        fresh: dict[str, E] = {}
        for item in items:
            fields = self._fields_of(item)
            entity_id = fields.get("id")
            if not entity_id or entity_id in self.recently_deleted:
                continue
            fresh[entity_id] = (
                item if isinstance(item, self.model) else self.model.model_validate(fields)
            )

        removed = tuple(entity_id for entity_id in self._items if entity_id not in fresh)
        self._items = fresh
        self._notify(
            CacheChange(
                self.entity_type,
                upserted=tuple(fresh),
                removed=removed,
                replaced=True,
            )
        )
        return list(fresh.values())

    def _notify(self, change: CacheChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception(
                    "cache_listener_failed", entity_type=self.entity_type.value
                )


def _ids(entities: Iterable[Entity]) -> tuple[str, ...]:
    return tuple(entity.id for entity in entities)


class EntityCache:
    """The single shared cache: one collection per entity type.

    Usage:
        cache = EntityCache()
        cache[EntityType.CLIENT].upsert_many([client])
        cache.get_by_id(EntityType.CLIENT, client.id)
    """

    def __init__(
        self,
        recently_deleted_ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._collections: dict[EntityType, EntityCollection[Any]] = {
            entity_type: EntityCollection(
                entity_type,
                spec.model,
                RecentlyDeleted(recently_deleted_ttl, clock=clock),
            )
            for entity_type, spec in ENTITY_SPECS.items()
        }

    def __getitem__(self, entity_type: EntityType) -> EntityCollection[Any]:
        return self._collections[entity_type]

    def get_all(self, entity_type: EntityType) -> list[Any]:
        return self[entity_type].get_all()

    def get_by_id(self, entity_type: EntityType, entity_id: str) -> Any | None:
        return self[entity_type].get_by_id(entity_id)

    def upsert_many(
        self, entity_type: EntityType, items: Iterable[Item], replace: bool = False
    ) -> list[Any]:
        return self[entity_type].upsert_many(items, replace=replace)

    def remove_many(self, entity_type: EntityType, ids: Iterable[str]) -> list[str]:
        return self[entity_type].remove_many(ids)
