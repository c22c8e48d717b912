"""Pytest configuration and shared fixtures for tests."""

import pytest

from tests.factories import FakeClock
from workshop_sync.cache import EntityCache
from workshop_sync.models import EntityType
from workshop_sync.store import MemoryBackingStore
from workshop_sync.sync import OnDemandResolver, PrimaryFeed


@pytest.fixture
def clock() -> FakeClock:
    """Provide a hand-driven monotonic clock."""
    return FakeClock()


@pytest.fixture
def store() -> MemoryBackingStore:
    """Provide an empty in-memory backing store."""
    return MemoryBackingStore()


@pytest.fixture
def cache(clock: FakeClock) -> EntityCache:
    """Provide an entity cache whose recently-deleted guard uses the fake clock.

    Returns:
        EntityCache with a five second recently-deleted window.
    """
    return EntityCache(recently_deleted_ttl=5.0, clock=clock)


@pytest.fixture
def resolver(cache: EntityCache, store: MemoryBackingStore) -> OnDemandResolver:
    return OnDemandResolver(cache, store)


@pytest.fixture
def feed(
    cache: EntityCache, store: MemoryBackingStore, resolver: OnDemandResolver
) -> PrimaryFeed:
    """Provide the primary request feed with a page size of 50."""
    return PrimaryFeed(EntityType.REQUEST, cache, store, resolver, page_size=50)
