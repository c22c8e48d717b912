"""Error taxonomy for the synchronization layer.

Adapter errors (`BackingStoreError`) are converted at the sync boundary:
reads become `FetchFailure`, writes become `WriteFailure`. Both keep the
adapter error as `__cause__`.
"""

from dataclasses import dataclass


class SyncError(Exception):
    """Base class for errors raised by the synchronization layer."""


class FetchFailure(SyncError):
    """A read from the backing store failed. The cache was left unchanged."""

    def __init__(self, table: str, message: str | None = None):
        self.table = table
        super().__init__(message or f"Failed to fetch from '{table}'")


class WriteFailure(SyncError):
    """A create/update/delete failed. The cache was not mutated."""

    def __init__(
        self,
        table: str,
        operation: str,
        entity_id: str | None = None,
        message: str | None = None,
    ):
        self.table = table
        self.operation = operation
        self.entity_id = entity_id
        target = f"'{table}'" if entity_id is None else f"'{table}' ({entity_id})"
        super().__init__(message or f"Failed to {operation} {target}")


class ReferentialIntegrityError(WriteFailure):
    """A delete was refused because other records still reference the entity."""


class InvalidTransition(SyncError):
    """A request status change is not allowed from the current status."""


@dataclass(frozen=True)
class ConsistencyGap:
    """A reference that could not be resolved even after on-demand loading.

    Never raised: views render a placeholder for the missing entity.

    Attributes:
        request_id: Request holding the dangling reference.
        field: Name of the reference field (client_id or car_id).
        missing_id: The id that is absent from the cache.
    """

    request_id: str
    field: str
    missing_id: str


__all__ = [
    "ConsistencyGap",
    "FetchFailure",
    "InvalidTransition",
    "ReferentialIntegrityError",
    "SyncError",
    "WriteFailure",
]
