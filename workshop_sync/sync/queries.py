"""Server-side reads backing overlays and ad-hoc views.

Each query class reads from the backing store, merges what it finds into
the cache and returns the cached entities in server order. Request queries
also resolve the clients and cars of the requests they return.
"""

import re
from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from workshop_sync.cache.entity_cache import EntityCache
from workshop_sync.core.config import settings
from workshop_sync.core.logging import get_logger
from workshop_sync.errors import FetchFailure
from workshop_sync.models.entities import InspectionRequest, PaymentType, RequestStatus
from workshop_sync.models.registry import EntityType, spec_for
from workshop_sync.store.base import (
    BackingStore,
    BackingStoreError,
    Condition,
    Row,
    SelectOptions,
    eq,
    ilike,
    in_,
)
from workshop_sync.sync.resolver import OnDemandResolver

logger = get_logger(__name__)

_NUMERIC = re.compile(r"^\d+$")
_WHITESPACE = re.compile(r"\s")

# Heavy request columns loaded on demand, by view
REQUEST_COLUMN_GROUPS: dict[str, tuple[str, ...]] = {
    "general": ("general_notes",),
    "categories": ("category_notes", "structured_findings", "voice_memos"),
    "gallery": ("general_notes", "category_notes", "attached_files"),
}


class EntityQueries(ABC):
    """Reads for one entity type.

    Subclasses implement `search`; `in_date_range` works for any type with
    a ``created_at`` column.
    """

    entity_type: EntityType

    def __init__(
        self,
        cache: EntityCache,
        store: BackingStore,
        resolver: OnDemandResolver | None = None,
        result_limit: int | None = None,
    ) -> None:
        self._cache = cache
        self._store = store
        self._resolver = resolver
        self.result_limit = result_limit or settings.search_result_limit
        self.spec = spec_for(self.entity_type)

    @abstractmethod
    async def search(self, text: str) -> list[Any]:
        """Entities matching free ``text``, in server order."""

    async def in_date_range(self, start: datetime, end: datetime) -> list[Any]:
        """Entities created between ``start`` and ``end`` (inclusive), newest first."""
        options = SelectOptions(
            where=(Condition("created_at", "gte", start), Condition("created_at", "lte", end)),
            order_by="created_at",
            descending=True,
        )
        rows = await self._select(self.spec.table, options)
        return await self._keep(self.entity_type, rows)

    async def _select(self, table: str, options: SelectOptions) -> list[Row]:
        try:
            return await self._store.select(table, options)
        except BackingStoreError as exc:
            logger.warning("query_failed", table=table, error=str(exc))
            raise FetchFailure(table) from exc

    async def _ids(self, table: str, options: SelectOptions) -> list[str]:
        rows = await self._select(table, options)
        return [str(row["id"]) for row in rows if row.get("id")]

    async def _keep(self, entity_type: EntityType, rows: Sequence[Row]) -> list[Any]:
        """Merge rows into the cache and return the cached entities in row order."""
        collection = self._cache[entity_type]
        collection.upsert_rows(rows)
        entities = [collection.get_by_id(str(row.get("id"))) for row in rows]
        kept = [entity for entity in entities if entity is not None]
        if entity_type == EntityType.REQUEST and self._resolver is not None and kept:
            await self._resolver.ensure_loaded(kept)
        return kept


class RequestQueries(EntityQueries):
    """Request lookups: by number, free text, client/car history and date range."""

    entity_type = EntityType.REQUEST

    async def search(self, text: str) -> list[InspectionRequest]:
        """Find requests by display number, plate, VIN, make/model or client.

        A purely numeric query matches the request number exactly. Anything
        else is matched against cars (plate, localized plate, VIN, make and
        model names) and clients (name, phone), and the requests of every
        match are returned newest first.
        """
        query = text.strip()
        if not query:
            return []
        if _NUMERIC.match(query):
            options = SelectOptions(
                where=(eq("request_number", int(query)),),
                order_by="created_at",
                descending=True,
            )
            return await self._keep(EntityType.REQUEST, await self._select(self.spec.table, options))

        car_ids = await self._matching_car_ids(query)
        client_ids = await self._ids(
            spec_for(EntityType.CLIENT).table,
            SelectOptions(
                any_of=(ilike("name", query), ilike("phone", query)),
                columns=("id",),
                limit=self.result_limit,
            ),
        )
        if not car_ids and not client_ids:
            logger.debug("request_search_no_matches", query=query)
            return []

        any_of: list[Condition] = []
        if car_ids:
            any_of.append(in_("car_id", car_ids))
        if client_ids:
            any_of.append(in_("client_id", client_ids))
        options = SelectOptions(
            any_of=tuple(any_of),
            order_by="created_at",
            descending=True,
            limit=self.result_limit,
        )
        rows = await self._select(self.spec.table, options)
        logger.debug("request_search_done", query=query, count=len(rows))
        return await self._keep(EntityType.REQUEST, rows)

    async def _matching_car_ids(self, query: str) -> list[str]:
        clean = _WHITESPACE.sub("", query)
        # Arabic plates are stored with a space between characters
        spaced = " ".join(query)
        cars_table = spec_for(EntityType.CAR).table
        car_ids = await self._ids(
            cars_table,
            SelectOptions(
                any_of=(
                    ilike("plate_number", clean),
                    ilike("plate_number", spaced),
                    ilike("plate_number_en", clean),
                    ilike("plate_number_en", spaced),
                    ilike("vin", clean),
                ),
                columns=("id",),
                limit=self.result_limit,
            ),
        )

        by_name = SelectOptions(
            any_of=(ilike("name_ar", query), ilike("name_en", query)),
            columns=("id",),
        )
        make_ids = await self._ids(spec_for(EntityType.CAR_MAKE).table, by_name)
        model_ids = await self._ids(spec_for(EntityType.CAR_MODEL).table, by_name)
        if make_ids or model_ids:
            any_of: list[Condition] = []
            if make_ids:
                any_of.append(in_("make_id", make_ids))
            if model_ids:
                any_of.append(in_("model_id", model_ids))
            more = await self._ids(
                cars_table, SelectOptions(any_of=tuple(any_of), columns=("id",), limit=100)
            )
            car_ids = list(dict.fromkeys([*car_ids, *more]))
        return car_ids

    async def by_id(self, request_id: str) -> InspectionRequest | None:
        """Read one request by id and merge it into the cache.

        Returns:
            The cached request, or None if the backing store has no such row.
        """
        options = SelectOptions(where=(eq("id", request_id),), limit=1)
        found = await self._keep(EntityType.REQUEST, await self._select(self.spec.table, options))
        return found[0] if found else None

    async def load_columns(self, request_id: str, group: str) -> InspectionRequest | None:
        """Fetch one column group of a cached request and merge it in.

        Only the group's columns are read; every other cached field is kept.

        Args:
            request_id: Request to complete.
            group: Key of `REQUEST_COLUMN_GROUPS`.

        Returns:
            The merged request, or None if it is not cached or has no row.

        Raises:
            ValueError: If ``group`` is unknown.
            FetchFailure: If the read fails.
        """
        columns = REQUEST_COLUMN_GROUPS.get(group)
        if columns is None:
            raise ValueError(f"Unknown request column group: {group}")
        options = SelectOptions(where=(eq("id", request_id),), columns=("id", *columns), limit=1)
        rows = await self._select(self.spec.table, options)
        if not rows:
            return None
        fields = {column: rows[0].get(column) for column in columns}
        logger.debug("request_columns_loaded", request_id=request_id, group=group)
        return self._cache[EntityType.REQUEST].merge(request_id, fields)

    async def by_number(self, request_number: int) -> InspectionRequest | None:
        """The request with display number ``request_number``, or None."""
        options = SelectOptions(where=(eq("request_number", request_number),), limit=1)
        found = await self._keep(EntityType.REQUEST, await self._select(self.spec.table, options))
        return found[0] if found else None

    async def for_client(
        self,
        client_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        only_unpaid: bool = False,
    ) -> list[InspectionRequest]:
        """A client's request history, newest first.

        Args:
            client_id: Client whose requests to list.
            start: Earliest creation time.
            end: Latest creation time.
            only_unpaid: Keep requests still unpaid or waiting for payment.
        """
        where = [eq("client_id", client_id)]
        if start is not None:
            where.append(Condition("created_at", "gte", start))
        if end is not None:
            where.append(Condition("created_at", "lte", end))
        any_of: tuple[Condition, ...] = ()
        if only_unpaid:
            any_of = (
                eq("payment_type", PaymentType.UNPAID.value),
                eq("status", RequestStatus.WAITING_PAYMENT.value),
            )
        unbounded = start is None and end is None and not only_unpaid
        options = SelectOptions(
            where=tuple(where),
            any_of=any_of,
            order_by="created_at",
            descending=True,
            limit=100 if unbounded else None,
        )
        return await self._keep(EntityType.REQUEST, await self._select(self.spec.table, options))

    async def for_car(self, car_id: str) -> list[InspectionRequest]:
        """Every request for a car, newest first."""
        options = SelectOptions(
            where=(eq("car_id", car_id),), order_by="created_at", descending=True
        )
        return await self._keep(EntityType.REQUEST, await self._select(self.spec.table, options))


class ClientQueries(EntityQueries):
    entity_type = EntityType.CLIENT

    async def search(self, text: str) -> list[Any]:
        query = text.strip()
        if len(query) < 2:
            return []
        options = SelectOptions(
            any_of=(ilike("name", query), ilike("phone", query)), limit=20
        )
        return await self._keep(self.entity_type, await self._select(self.spec.table, options))


class CarQueries(EntityQueries):
    entity_type = EntityType.CAR

    async def search(self, text: str) -> list[Any]:
        clean = _WHITESPACE.sub("", text)
        if not clean:
            return []
        options = SelectOptions(
            any_of=(
                ilike("plate_number", clean),
                ilike("plate_number_en", clean),
                ilike("vin", clean),
            ),
            limit=20,
        )
        return await self._keep(self.entity_type, await self._select(self.spec.table, options))


QUERY_CLASSES: dict[EntityType, type[EntityQueries]] = {
    EntityType.REQUEST: RequestQueries,
    EntityType.CLIENT: ClientQueries,
    EntityType.CAR: CarQueries,
}
