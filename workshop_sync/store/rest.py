"""HTTP backing store speaking the PostgREST dialect.

Rows are read and written through httpx; filters are encoded as
``column=op.value`` query parameters. The realtime transport (websocket)
is owned by the host application, which forwards each raw change payload
to `RestBackingStore.dispatch`.
"""

from collections.abc import Sequence
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

import httpx
import orjson
import structlog

from workshop_sync.core.config import settings
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
from workshop_sync.store.breaker import StoreCircuitBreaker

logger = structlog.get_logger()

_RESERVED = set(',.:()"')
_EVENT_TYPES = {
    "INSERT": ChangeOp.INSERT,
    "UPDATE": ChangeOp.UPDATE,
    "DELETE": ChangeOp.DELETE,
}


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return float(obj)
    raise TypeError(f"Type is not JSON serializable: {type(obj).__name__}")


def _format_value(value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _quote(value: Any) -> str:
    text = _format_value(value)
    if any(char in _RESERVED for char in text) or " " in text:
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return text


def encode_condition(condition: Condition, grouped: bool = False) -> str:
    """Encode a condition as the ``op.value`` part of a PostgREST filter.

    Args:
        condition: Condition to encode.
        grouped: The condition sits inside an ``or=(...)`` group, where
            commas, dots and parentheses in values must be quoted.
    """
    render = _quote if grouped else _format_value
    if condition.op == "in":
        return f"in.({','.join(_quote(item) for item in condition.value)})"
    if condition.op == "ilike":
        return f"ilike.{render(str(condition.value).replace('%', '*'))}"
    if condition.value is None and condition.op in ("eq", "neq"):
        return "is.null" if condition.op == "eq" else "not.is.null"
    return f"{condition.op}.{render(condition.value)}"


def build_params(options: SelectOptions | None) -> list[tuple[str, str]]:
    """Translate `SelectOptions` into PostgREST query parameters."""
    options = options or SelectOptions()
    params: list[tuple[str, str]] = [
        ("select", ",".join(options.columns) if options.columns else "*")
    ]
    for condition in options.where:
        params.append((condition.field, encode_condition(condition)))
    if options.any_of:
        group = ",".join(
            f"{condition.field}.{encode_condition(condition, grouped=True)}"
            for condition in options.any_of
        )
        params.append(("or", f"({group})"))
    if options.order_by:
        direction = "desc" if options.descending else "asc"
        params.append(("order", f"{options.order_by}.{direction}.nullslast"))
    if options.limit is not None:
        params.append(("limit", str(options.limit)))
    if options.offset:
        params.append(("offset", str(options.offset)))
    return params


class RestBackingStore:
    """Backing store adapter over a PostgREST endpoint.

    Usage:
        async with RestBackingStore.from_settings() as store:
            rows = await store.select("clients", by_ids(["c1", "c2"]))
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
        breaker: StoreCircuitBreaker | None = None,
    ) -> None:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"

        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout
        )
        if client is not None:
            self._client.headers.update(headers)
        self._breaker = breaker or StoreCircuitBreaker("backing_store")
        self._registry = HandlerRegistry()

    @classmethod
    def from_settings(cls) -> "RestBackingStore":
        """Build an adapter from application settings."""
        if not settings.backing_store_url:
            raise RuntimeError("BACKING_STORE_URL is not configured")
        return cls(
            base_url=settings.backing_store_url,
            api_key=settings.backing_store_api_key,
            timeout=settings.backing_store_timeout_seconds,
        )

    async def __aenter__(self) -> "RestBackingStore":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # --- BackingStore protocol -------------------------------------------

    async def select(
        self, table: str, options: SelectOptions | None = None
    ) -> list[Row]:
        response = await self._request("GET", table, params=build_params(options))
        return response.json()

    async def insert(self, table: str, payload: Row) -> Row:
        response = await self._request(
            "POST",
            table,
            body=payload,
            headers={"Prefer": "return=representation"},
        )
        rows = response.json()
        if not rows:
            raise BackingStoreError(f"Insert into {table} returned no row")
        return rows[0]

    async def update(self, table: str, row_id: str, partial: Row) -> None:
        body = {key: value for key, value in partial.items() if key != "id"}
        await self._request(
            "PATCH",
            table,
            params=[("id", f"eq.{row_id}")],
            body=body,
            headers={"Prefer": "return=minimal"},
        )

    async def delete(self, table: str, row_id: str) -> None:
        await self._request("DELETE", table, params=[("id", f"eq.{row_id}")])

    async def delete_many(self, table: str, row_ids: Sequence[str]) -> None:
        if not row_ids:
            return
        ids = ",".join(_quote(row_id) for row_id in row_ids)
        await self._request("DELETE", table, params=[("id", f"in.({ids})")])

    def subscribe(self, table: str, handler: ChangeHandler) -> Unsubscribe:
        return self._registry.add(table, handler)

    # --- Realtime --------------------------------------------------------

    def dispatch(self, payload: dict[str, Any]) -> ChangeEvent | None:
        """Fan a realtime ``postgres_changes`` payload out to subscribers.

        Args:
            payload: Raw payload with ``table``, ``eventType``, ``new`` and ``old``.

        Returns:
            The decoded event, or None if the payload was not understood.
        """
        op = _EVENT_TYPES.get(str(payload.get("eventType", "")).upper())
        table = payload.get("table")
        if op is None or not table:
            logger.warning("realtime_payload_ignored", payload_keys=sorted(payload))
            return None

        row = payload.get("old") if op == ChangeOp.DELETE else payload.get("new")
        event = ChangeEvent(table=table, op=op, row=dict(row or {}))
        for handler in self._registry.for_table(table):
            try:
                handler(event)
            except Exception:
                logger.exception("change_handler_failed", table=table, op=op.value)
        return event

    # --- Internals -------------------------------------------------------

    async def _request(
        self,
        method: str,
        table: str,
        params: list[tuple[str, str]] | None = None,
        body: Row | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        return await self._breaker.call(
            self._send, method, table, params=params, body=body, headers=headers
        )

    async def _send(
        self,
        method: str,
        table: str,
        params: list[tuple[str, str]] | None = None,
        body: Row | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        content = (
            orjson.dumps(body, default=_json_default) if body is not None else None
        )
        try:
            response = await self._client.request(
                method, f"/{table}", params=params, content=content, headers=headers
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            details: dict[str, Any]
            try:
                details = exc.response.json()
            except ValueError:
                details = {"body": exc.response.text}
            logger.warning(
                "backing_store_http_error",
                method=method,
                table=table,
                status_code=exc.response.status_code,
            )
            raise BackingStoreError(
                f"{method} {table} failed with HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
                details=details if isinstance(details, dict) else {"body": details},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "backing_store_unreachable", method=method, table=table, error=str(exc)
            )
            raise BackingStoreError(f"{method} {table} failed: {exc}") from exc
        return response
