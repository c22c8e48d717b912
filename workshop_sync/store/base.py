"""Backing store adapter contract.

The backing store is the remote source of truth: a table-oriented API with
read/insert/update/delete operations and a change feed. The sync layer only
talks to it through the `BackingStore` protocol below.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

Row = dict[str, Any]


class BackingStoreError(Exception):
    """Error reported by a backing store adapter."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ChangeOp(str, Enum):
    """Kind of change carried by a change event."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    """A change published on the backing store's subscription feed.

    For deletes, ``row`` carries at least the ``id`` of the removed row.
    """

    table: str
    op: ChangeOp
    row: Row

    @property
    def row_id(self) -> str | None:
        value = self.row.get("id")
        return str(value) if value is not None else None


ChangeHandler = Callable[[ChangeEvent], None]
Unsubscribe = Callable[[], None]


@dataclass(frozen=True)
class Condition:
    """A single column predicate.

    Supported ops: eq, neq, gt, gte, lt, lte, in, ilike. For ``ilike`` the
    value is a pattern using ``%`` as wildcard.
    """

    field: str
    op: str
    value: Any

    OPS = frozenset({"eq", "neq", "gt", "gte", "lt", "lte", "in", "ilike"})

    def __post_init__(self) -> None:
        if self.op not in self.OPS:
            raise ValueError(f"Unsupported condition op: {self.op}")


@dataclass(frozen=True)
class SelectOptions:
    """Filter, ordering and windowing for a select.

    Attributes:
        where: Conditions that must all hold.
        any_of: Conditions of which at least one must hold (ignored if empty).
        order_by: Column to order by.
        descending: Order direction.
        limit: Maximum number of rows.
        offset: Rows to skip before the window starts.
        columns: Columns to return (None means all).
    """

    where: tuple[Condition, ...] = ()
    any_of: tuple[Condition, ...] = ()
    order_by: str | None = None
    descending: bool = False
    limit: int | None = None
    offset: int = 0
    columns: tuple[str, ...] | None = None


def eq(field_name: str, value: Any) -> Condition:
    return Condition(field_name, "eq", value)


def in_(field_name: str, values: Sequence[Any]) -> Condition:
    return Condition(field_name, "in", tuple(values))


def ilike(field_name: str, text: str) -> Condition:
    """Case-insensitive substring match on ``field_name``."""
    return Condition(field_name, "ilike", f"%{text}%")


def by_ids(ids: Sequence[str]) -> SelectOptions:
    """Options selecting the rows whose id is in ``ids``."""
    return SelectOptions(where=(in_("id", ids),))


class BackingStore(Protocol):
    """Remote table store consumed by the sync layer."""

    async def select(
        self, table: str, options: SelectOptions | None = None
    ) -> list[Row]:
        ...

    async def insert(self, table: str, payload: Row) -> Row:
        """Insert a row and return the server-confirmed row."""
        ...

    async def update(self, table: str, row_id: str, partial: Row) -> None:
        ...

    async def delete(self, table: str, row_id: str) -> None:
        ...

    async def delete_many(self, table: str, row_ids: Sequence[str]) -> None:
        ...

    def subscribe(self, table: str, handler: ChangeHandler) -> Unsubscribe:
        """Register a change feed handler; returns a callable that unsubscribes."""
        ...


@dataclass
class HandlerRegistry:
    """Per-table change handler bookkeeping shared by the adapters."""

    handlers: dict[str, list[ChangeHandler]] = field(default_factory=dict)

    def add(self, table: str, handler: ChangeHandler) -> Unsubscribe:
        self.handlers.setdefault(table, []).append(handler)

        def unsubscribe() -> None:
            table_handlers = self.handlers.get(table, [])
            if handler in table_handlers:
                table_handlers.remove(handler)

        return unsubscribe

    def for_table(self, table: str) -> list[ChangeHandler]:
        return list(self.handlers.get(table, ()))
