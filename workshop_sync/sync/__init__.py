"""Synchronization between the entity cache and the backing store.

- PrimaryFeed: paginated default listing
- OnDemandResolver: batched loading of referenced clients and cars
- SearchOverlay: text-search and date-range views over a feed
- MutationCoordinator: confirm-then-merge writes
- ReconciliationChannel: live remote changes
"""

from workshop_sync.sync.mutations import MutationCoordinator
from workshop_sync.sync.overlay import SearchOverlay
from workshop_sync.sync.pagination import PrimaryFeed
from workshop_sync.sync.queries import (
    QUERY_CLASSES,
    REQUEST_COLUMN_GROUPS,
    CarQueries,
    ClientQueries,
    EntityQueries,
    RequestQueries,
)
from workshop_sync.sync.reconciliation import RealtimeStatus, ReconciliationChannel
from workshop_sync.sync.resolver import OnDemandResolver
from workshop_sync.sync.scope import DateScope

__all__ = [
    "CarQueries",
    "ClientQueries",
    "DateScope",
    "EntityQueries",
    "MutationCoordinator",
    "OnDemandResolver",
    "PrimaryFeed",
    "QUERY_CLASSES",
    "REQUEST_COLUMN_GROUPS",
    "RealtimeStatus",
    "ReconciliationChannel",
    "RequestQueries",
    "SearchOverlay",
]
