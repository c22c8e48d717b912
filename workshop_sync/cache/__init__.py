"""Entity cache: normalized per-type collections shared by every view."""

from workshop_sync.cache.entity_cache import (
    CacheChange,
    CacheListener,
    EntityCache,
    EntityCollection,
    RecentlyDeleted,
)

__all__ = [
    "CacheChange",
    "CacheListener",
    "EntityCache",
    "EntityCollection",
    "RecentlyDeleted",
]
