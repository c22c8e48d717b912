"""Create, update and delete through the backing store.

Every write is confirmed by the backing store before the cache changes. On
failure the caller gets a `WriteFailure` and the cache is exactly as it
was. After a confirmed write the authoritative row is merged into the
cache and the primary feed and overlay pick it up in the same step.
"""

import uuid
from collections.abc import Callable, Iterable, Mapping, MutableMapping, Sequence
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel

from workshop_sync.cache.entity_cache import EntityCache
from workshop_sync.core.logging import get_logger
from workshop_sync.errors import FetchFailure, ReferentialIntegrityError, WriteFailure
from workshop_sync.models.entities import (
    ActivityLogEntry,
    CarMake,
    CarModel,
    Employee,
    Entity,
    InspectionRequest,
    PaymentType,
    RequestStatus,
    SplitPaymentDetails,
)
from workshop_sync.models.registry import EntityType, spec_for
from workshop_sync.models.status import RequestStatusMachine
from workshop_sync.store.base import (
    BackingStore,
    BackingStoreError,
    Row,
    SelectOptions,
    by_ids,
    eq,
    ilike,
)
from workshop_sync.sync.overlay import SearchOverlay
from workshop_sync.sync.pagination import PrimaryFeed
from workshop_sync.sync.resolver import OnDemandResolver

logger = get_logger(__name__)

# Columns the server assigns on insert
SERVER_FIELDS = frozenset({"created_at", "updated_at", "request_number"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_payload(data: Mapping[str, Any] | Entity) -> Row:
    """Plain JSON-ready dict for the backing store."""
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json", exclude_unset=True)
    return {key: _plain(value) for key, value in data.items()}


def _plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


class MutationCoordinator:
    """Confirm-then-merge writes for every entity type.

    Args:
        cache: The shared entity cache.
        store: Backing store receiving the writes.
        feeds: Primary feeds by entity type; read at write time.
        overlays: Overlays by entity type; read at write time.
        resolver: Resolves references of created requests.
        actor: Employee recorded in activity-log entries.
        clock: Source of activity-log timestamps.
    """

    def __init__(
        self,
        cache: EntityCache,
        store: BackingStore,
        feeds: MutableMapping[EntityType, PrimaryFeed] | None = None,
        overlays: MutableMapping[EntityType, SearchOverlay] | None = None,
        resolver: OnDemandResolver | None = None,
        actor: Employee | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._cache = cache
        self._store = store
        self._feeds = feeds if feeds is not None else {}
        self._overlays = overlays if overlays is not None else {}
        self._resolver = resolver
        self.actor = actor
        self._clock = clock

    # --- Generic operations ----------------------------------------------

    async def create(
        self, entity_type: EntityType, payload: Mapping[str, Any] | Entity
    ) -> Any:
        """Insert an entity and cache the server-confirmed row.

        Raises:
            WriteFailure: If the insert fails. Nothing is cached.
        """
        table = spec_for(entity_type).table
        data = {k: v for k, v in to_payload(payload).items() if k not in SERVER_FIELDS}
        if entity_type == EntityType.BROKER and self.actor is not None:
            data.setdefault("created_by", self.actor.id)
            data.setdefault("created_by_name", self.actor.name)

        try:
            row = await self._store.insert(table, data)
        except BackingStoreError as exc:
            logger.warning("create_failed", table=table, error=str(exc))
            raise WriteFailure(table, "create") from exc

        collection = self._cache[entity_type]
        entity = collection.model.model_validate(row)
        if isinstance(entity, InspectionRequest) and self._resolver is not None:
            await self._resolver.ensure_loaded([entity])

        collection.upsert_many([entity])
        stored = collection.get_by_id(entity.id) or entity
        self._show_new(entity_type, stored)
        logger.info("entity_created", table=table, entity_id=stored.id)
        return stored

    async def update(
        self, entity_type: EntityType, entity_id: str, partial: Mapping[str, Any]
    ) -> Any | None:
        """Apply a partial update, then merge the re-read authoritative row.

        Returns:
            The cached entity after the merge, or None if it is not cached.

        Raises:
            WriteFailure: If the update fails. The cache is untouched.
        """
        table = spec_for(entity_type).table
        data = {k: v for k, v in to_payload(partial).items() if k != "id"}
        try:
            await self._store.update(table, entity_id, data)
        except BackingStoreError as exc:
            logger.warning("update_failed", table=table, entity_id=entity_id, error=str(exc))
            raise WriteFailure(table, "update", entity_id) from exc

        merged = await self._merge_confirmed(entity_type, entity_id, data)
        if isinstance(merged, InspectionRequest) and self._resolver is not None:
            await self._resolver.ensure_loaded([merged])
        return merged

    async def delete(self, entity_type: EntityType, entity_id: str) -> None:
        """Delete an entity and drop it from the cache and every list.

        Raises:
            ReferentialIntegrityError: Deleting a client that still has requests.
            WriteFailure: If the delete fails.
        """
        table = spec_for(entity_type).table
        if entity_type == EntityType.CLIENT:
            await self._ensure_client_unreferenced(entity_id)

        try:
            await self._store.delete(table, entity_id)
        except BackingStoreError as exc:
            logger.warning("delete_failed", table=table, entity_id=entity_id, error=str(exc))
            raise WriteFailure(table, "delete", entity_id) from exc

        self._forget(entity_type, [entity_id])
        if entity_type == EntityType.CAR_MAKE:
            self._forget_models_of(entity_id)
        logger.info("entity_deleted", table=table, entity_id=entity_id)

    async def delete_many(self, entity_type: EntityType, ids: Sequence[str]) -> None:
        """Delete several entities of one type in a single backing store call."""
        ids = list(dict.fromkeys(ids))
        if not ids:
            return
        table = spec_for(entity_type).table
        try:
            await self._store.delete_many(table, ids)
        except BackingStoreError as exc:
            logger.warning("delete_many_failed", table=table, count=len(ids), error=str(exc))
            raise WriteFailure(table, "delete") from exc

        self._forget(entity_type, ids)
        logger.info("entities_deleted", table=table, count=len(ids))

    # --- Requests --------------------------------------------------------

    async def update_request_with_car(
        self,
        request_id: str,
        request_fields: Mapping[str, Any],
        car_fields: Mapping[str, Any] | None = None,
        client_id: str | None = None,
    ) -> InspectionRequest:
        """Update a request together with its car.

        The car is written first. If that write fails the request write is
        not attempted. The request is merged only after its own write is
        confirmed.

        Raises:
            WriteFailure: If either write fails.
        """
        request = await self._require_request(request_id)
        if car_fields:
            cars_table = spec_for(EntityType.CAR).table
            car_data = to_payload(car_fields)
            try:
                await self._store.update(cars_table, request.car_id, car_data)
            except BackingStoreError as exc:
                logger.warning(
                    "car_update_failed", request_id=request_id, car_id=request.car_id
                )
                raise WriteFailure(cars_table, "update", request.car_id) from exc
            await self._merge_confirmed(EntityType.CAR, request.car_id, car_data)

        entry = self._log_entry("request_edited", f"Request #{request.request_number} edited")
        data = {**request_fields, "activity_log": [entry, *request.activity_log]}
        if client_id is not None:
            data["client_id"] = client_id
        merged = await self.update(EntityType.REQUEST, request_id, data)
        return merged or request

    async def activate_request(
        self,
        request_id: str,
        payment_type: PaymentType,
        split: SplitPaymentDetails | None = None,
    ) -> InspectionRequest:
        """Move a waiting-payment request to new with its payment type.

        Raises:
            InvalidTransition: If the request is not waiting for payment, or
                the split amounts do not add up to the price.
            WriteFailure: If the write fails.
        """
        request = await self._require_request(request_id)
        changes = RequestStatusMachine(request).transition_to(
            RequestStatus.NEW, payment_type=payment_type, split=split
        )
        details = f"Payment received ({payment_type.value}) for request #{request.request_number}"
        return await self._write_status(request, changes, "payment_activated", details)

    async def change_status(
        self, request_id: str, target: RequestStatus
    ) -> InspectionRequest:
        """Move a request along its lifecycle, logging the change.

        Raises:
            InvalidTransition: If ``target`` is not reachable from the current status.
            WriteFailure: If the write fails.
        """
        request = await self._require_request(request_id)
        previous = request.status
        changes = RequestStatusMachine(request).transition_to(target)
        details = (
            f"Status of request #{request.request_number} changed "
            f"from {previous.value} to {target.value}"
        )
        return await self._write_status(request, changes, "status_changed", details)

    # --- Car makes and models --------------------------------------------

    async def find_or_create_make(self, name: str) -> CarMake:
        """Return the make named ``name`` (either language), creating it if absent."""
        name = name.strip()
        table = spec_for(EntityType.CAR_MAKE).table
        rows = await self._lookup(
            table,
            SelectOptions(any_of=(ilike("name_en", name), ilike("name_ar", name)), limit=1),
        )
        if rows:
            self._cache[EntityType.CAR_MAKE].upsert_rows(rows)
            found = self._cache.get_by_id(EntityType.CAR_MAKE, str(rows[0]["id"]))
            if found is not None:
                return found
        return await self.create(EntityType.CAR_MAKE, {"name_ar": name, "name_en": name})

    async def find_or_create_model(self, name: str, make_id: str) -> CarModel:
        """Return the model ``name`` of make ``make_id``, creating it if absent."""
        name = name.strip()
        table = spec_for(EntityType.CAR_MODEL).table
        rows = await self._lookup(
            table,
            SelectOptions(
                where=(eq("make_id", make_id),),
                any_of=(ilike("name_en", name), ilike("name_ar", name)),
                limit=1,
            ),
        )
        if rows:
            self._cache[EntityType.CAR_MODEL].upsert_rows(rows)
            found = self._cache.get_by_id(EntityType.CAR_MODEL, str(rows[0]["id"]))
            if found is not None:
                return found
        return await self.create(
            EntityType.CAR_MODEL, {"make_id": make_id, "name_ar": name, "name_en": name}
        )

    # --- Internals -------------------------------------------------------

    async def _merge_confirmed(
        self, entity_type: EntityType, entity_id: str, data: Row
    ) -> Any | None:
        collection = self._cache[entity_type]
        row = await self._reread(entity_type, entity_id)
        if row is not None:
            collection.upsert_rows([row])
        else:
            collection.merge(entity_id, data)
        return collection.get_by_id(entity_id)

    async def _reread(self, entity_type: EntityType, entity_id: str) -> Row | None:
        table = spec_for(entity_type).table
        try:
            rows = await self._store.select(table, by_ids([entity_id]))
        except BackingStoreError as exc:
            logger.warning(
                "confirmed_row_reread_failed",
                table=table,
                entity_id=entity_id,
                error=str(exc),
            )
            return None
        return rows[0] if rows else None

    async def _lookup(self, table: str, options: SelectOptions) -> list[Row]:
        try:
            return await self._store.select(table, options)
        except BackingStoreError as exc:
            raise FetchFailure(table) from exc

    async def _require_request(self, request_id: str) -> InspectionRequest:
        collection = self._cache[EntityType.REQUEST]
        request = collection.get_by_id(request_id)
        if request is not None:
            return request
        table = spec_for(EntityType.REQUEST).table
        rows = await self._lookup(table, by_ids([request_id]))
        collection.upsert_rows(rows)
        request = collection.get_by_id(request_id)
        if request is None:
            raise WriteFailure(table, "update", request_id, message=f"Request {request_id} not found")
        return request

    async def _write_status(
        self,
        request: InspectionRequest,
        changes: Mapping[str, Any],
        action: str,
        details: str,
    ) -> InspectionRequest:
        entry = self._log_entry(action, details)
        data = {**changes, "activity_log": [entry, *request.activity_log]}
        merged = await self.update(EntityType.REQUEST, request.id, data)
        return merged or request

    async def _ensure_client_unreferenced(self, client_id: str) -> None:
        requests_table = spec_for(EntityType.REQUEST).table
        options = SelectOptions(where=(eq("client_id", client_id),), columns=("id",), limit=1)
        try:
            rows = await self._store.select(requests_table, options)
        except BackingStoreError as exc:
            raise WriteFailure("clients", "delete", client_id) from exc
        if rows:
            logger.info("client_delete_refused", client_id=client_id)
            raise ReferentialIntegrityError(
                "clients",
                "delete",
                client_id,
                message=f"Client {client_id} still has inspection requests",
            )

    def _log_entry(self, action: str, details: str) -> ActivityLogEntry:
        return ActivityLogEntry(
            id=str(uuid.uuid4()),
            timestamp=self._clock(),
            employee_id=self.actor.id if self.actor else None,
            employee_name=self.actor.name if self.actor else None,
            action=action,
            details=details,
        )

    def _show_new(self, entity_type: EntityType, entity: Entity) -> None:
        feed = self._feeds.get(entity_type)
        if feed is not None and entity.id not in feed and feed.accepts(entity):
            feed.insert(entity, live=True)
        overlay = self._overlays.get(entity_type)
        if overlay is not None:
            overlay.on_upsert(entity)

    def _forget(self, entity_type: EntityType, ids: Iterable[str]) -> None:
        ids = list(ids)
        self._cache[entity_type].remove_many(ids)
        feed = self._feeds.get(entity_type)
        if feed is not None:
            feed.remove(ids)
        overlay = self._overlays.get(entity_type)
        if overlay is not None:
            overlay.on_remove(ids)

    def _forget_models_of(self, make_id: str) -> None:
        models = self._cache[EntityType.CAR_MODEL]
        model_ids = [model.id for model in models.get_all() if model.make_id == make_id]
        if model_ids:
            models.remove_many(model_ids)
        models.clear_partition(make_id)
