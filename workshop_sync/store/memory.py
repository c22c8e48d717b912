"""In-process backing store.

Holds tables as dictionaries of rows and behaves like the remote store:
the server assigns ids, timestamps and request numbers, every write is
echoed on the change feed, and selects honour `SelectOptions`. Used for
local/offline sessions and as the store behind the test suite.
"""

import copy
import re
import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from workshop_sync.store.base import (
    BackingStoreError,
    ChangeEvent,
    ChangeHandler,
    ChangeOp,
    Condition,
    HandlerRegistry,
    Row,
    SelectOptions,
    Unsubscribe,
)

logger = structlog.get_logger()

DEFAULT_SEQUENCES = {"inspection_requests": "request_number"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_pair(left: Any, right: Any) -> tuple[Any, Any]:
    """Make datetimes comparable with their ISO string form."""
    if isinstance(left, datetime) and isinstance(right, str):
        right = datetime.fromisoformat(right)
    elif isinstance(left, str) and isinstance(right, datetime):
        left = datetime.fromisoformat(left)
    if isinstance(left, datetime) and isinstance(right, datetime):
        if left.tzinfo is None:
            left = left.replace(tzinfo=timezone.utc)
        if right.tzinfo is None:
            right = right.replace(tzinfo=timezone.utc)
    return left, right


def _normalize(row: Row) -> Row:
    """Parse ISO timestamp strings in ``*_at`` columns into aware datetimes."""
    for key, value in row.items():
        if key.endswith("_at") and isinstance(value, str):
            parsed = datetime.fromisoformat(value)
            row[key] = parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return row


def _ilike_regex(pattern: str) -> re.Pattern[str]:
    parts = [re.escape(part) for part in pattern.split("%")]
    return re.compile("^" + ".*".join(parts) + "$", re.IGNORECASE | re.DOTALL)


def _matches(row: Row, condition: Condition) -> bool:
    value = row.get(condition.field)
    op = condition.op

    if op == "in":
        return value in condition.value or str(value) in {
            str(item) for item in condition.value
        }
    if op == "ilike":
        return value is not None and bool(
            _ilike_regex(str(condition.value)).match(str(value))
        )
    if op == "eq":
        left, right = _coerce_pair(value, condition.value)
        return left == right
    if op == "neq":
        left, right = _coerce_pair(value, condition.value)
        return left != right

    if value is None:
        return False
    left, right = _coerce_pair(value, condition.value)
    if op == "gt":
        return left > right
    if op == "gte":
        return left >= right
    if op == "lt":
        return left < right
    return left <= right


class MemoryBackingStore:
    """Backing store keeping every table in memory.

    Usage:
        store = MemoryBackingStore()
        store.seed("clients", [{"id": "c1", "name": "Sara", "phone": "0500"}])
        rows = await store.select("clients", by_ids(["c1"]))

    Attributes:
        calls: (operation, table) pairs in call order, for inspection.
    """

    def __init__(self, sequences: dict[str, str] | None = None) -> None:
        self._tables: dict[str, dict[str, Row]] = {}
        self._sequences = dict(DEFAULT_SEQUENCES if sequences is None else sequences)
        self._registry = HandlerRegistry()
        self.calls: list[tuple[str, str]] = []

    # --- Test and bootstrap helpers --------------------------------------

    def seed(self, table: str, rows: Iterable[Row]) -> None:
        """Load rows without publishing change events."""
        rows_by_id = self._tables.setdefault(table, {})
        for row in rows:
            rows_by_id[str(row["id"])] = _normalize(copy.deepcopy(row))

    def rows(self, table: str) -> list[Row]:
        """Return a copy of every row currently in ``table``."""
        return [copy.deepcopy(row) for row in self._tables.get(table, {}).values()]

    def emit(self, table: str, op: ChangeOp, row: Row) -> None:
        """Publish a change event as if another session had made it."""
        self._publish(ChangeEvent(table=table, op=op, row=copy.deepcopy(row)))

    def calls_to(self, operation: str, table: str) -> int:
        """Count calls of ``operation`` against ``table``."""
        return self.calls.count((operation, table))

    # --- BackingStore protocol -------------------------------------------

    async def select(
        self, table: str, options: SelectOptions | None = None
    ) -> list[Row]:
        self.calls.append(("select", table))
        options = options or SelectOptions()
        rows = [
            row
            for row in self._tables.get(table, {}).values()
            if all(_matches(row, cond) for cond in options.where)
            and (
                not options.any_of
                or any(_matches(row, cond) for cond in options.any_of)
            )
        ]

        if options.order_by:
            key = options.order_by
            present = [row for row in rows if row.get(key) is not None]
            missing = [row for row in rows if row.get(key) is None]
            present.sort(key=lambda row: row[key], reverse=options.descending)
            rows = present + missing

        rows = rows[options.offset :]
        if options.limit is not None:
            rows = rows[: options.limit]

        if options.columns:
            return [
                {column: copy.deepcopy(row.get(column)) for column in options.columns}
                for row in rows
            ]
        return [copy.deepcopy(row) for row in rows]

    async def insert(self, table: str, payload: Row) -> Row:
        self.calls.append(("insert", table))
        rows_by_id = self._tables.setdefault(table, {})
        row = _normalize(copy.deepcopy(payload))
        row_id = str(row.get("id") or uuid.uuid4())
        if row_id in rows_by_id:
            raise BackingStoreError(
                f"duplicate key value violates unique constraint on {table}.id",
                status_code=409,
                details={"id": row_id},
            )

        now = _utcnow()
        row["id"] = row_id
        row.setdefault("created_at", now)
        row["updated_at"] = now

        sequence_field = self._sequences.get(table)
        if sequence_field:
            numbers = [
                existing.get(sequence_field) or 0 for existing in rows_by_id.values()
            ]
            row[sequence_field] = max(numbers, default=0) + 1

        rows_by_id[row_id] = row
        self._publish(ChangeEvent(table, ChangeOp.INSERT, copy.deepcopy(row)))
        return copy.deepcopy(row)

    async def update(self, table: str, row_id: str, partial: Row) -> None:
        self.calls.append(("update", table))
        row = self._tables.get(table, {}).get(row_id)
        if row is None:
            raise BackingStoreError(
                f"No row {row_id} in {table}", status_code=404, details={"id": row_id}
            )

        changes = _normalize({k: copy.deepcopy(v) for k, v in partial.items() if k != "id"})
        row.update(changes)
        row["updated_at"] = self._next_version(row.get("updated_at"))
        self._publish(ChangeEvent(table, ChangeOp.UPDATE, copy.deepcopy(row)))

    async def delete(self, table: str, row_id: str) -> None:
        self.calls.append(("delete", table))
        self._remove(table, [row_id])

    async def delete_many(self, table: str, row_ids: Sequence[str]) -> None:
        self.calls.append(("delete_many", table))
        self._remove(table, row_ids)

    def subscribe(self, table: str, handler: ChangeHandler) -> Unsubscribe:
        return self._registry.add(table, handler)

    # --- Internals -------------------------------------------------------

    def _remove(self, table: str, row_ids: Sequence[str]) -> None:
        rows_by_id = self._tables.get(table, {})
        for row_id in row_ids:
            removed = rows_by_id.pop(row_id, None)
            if removed is not None:
                self._publish(ChangeEvent(table, ChangeOp.DELETE, {"id": row_id}))

    @staticmethod
    def _next_version(previous: Any) -> datetime:
        """Server clock for updated_at, strictly increasing per row."""
        now = _utcnow()
        if isinstance(previous, datetime):
            if previous.tzinfo is None:
                previous = previous.replace(tzinfo=timezone.utc)
            if now <= previous:
                return previous + timedelta(microseconds=1)
        return now

    def _publish(self, event: ChangeEvent) -> None:
        for handler in self._registry.for_table(event.table):
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "change_handler_failed", table=event.table, op=event.op.value
                )
