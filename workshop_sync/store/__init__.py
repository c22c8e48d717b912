"""Backing store adapters.

- BackingStore: protocol consumed by the sync layer
- MemoryBackingStore: in-process tables with an echoing change feed
- RestBackingStore: PostgREST adapter over httpx, guarded by a circuit breaker
"""

from workshop_sync.store.base import (
    BackingStore,
    BackingStoreError,
    ChangeEvent,
    ChangeHandler,
    ChangeOp,
    Condition,
    Row,
    SelectOptions,
    Unsubscribe,
    by_ids,
    eq,
    ilike,
    in_,
)
from workshop_sync.store.breaker import (
    CircuitOpenError,
    CircuitState,
    StoreCircuitBreaker,
)
from workshop_sync.store.memory import MemoryBackingStore
from workshop_sync.store.rest import RestBackingStore

__all__ = [
    # Protocol
    "BackingStore",
    "BackingStoreError",
    "ChangeEvent",
    "ChangeHandler",
    "ChangeOp",
    "Condition",
    "Row",
    "SelectOptions",
    "Unsubscribe",
    "by_ids",
    "eq",
    "ilike",
    "in_",
    # Adapters
    "MemoryBackingStore",
    "RestBackingStore",
    # Circuit breaker
    "CircuitOpenError",
    "CircuitState",
    "StoreCircuitBreaker",
]
