"""On-demand loading of the clients and cars referenced by requests.

Only a bounded subset of clients and cars is loaded up front; requests
reference the rest. Before requests are shown the resolver fetches the
missing references in one batched read per type, so views never render a
request whose client or car is an unexplained blank.
"""

import asyncio
from collections.abc import Iterable

from workshop_sync.cache.entity_cache import EntityCache
from workshop_sync.core.logging import get_logger
from workshop_sync.core.sentry import report_background_failure
from workshop_sync.errors import ConsistencyGap, FetchFailure
from workshop_sync.models.entities import Car, CarModel, Client, InspectionRequest
from workshop_sync.models.registry import EntityType, spec_for
from workshop_sync.store.base import BackingStore, BackingStoreError, SelectOptions, by_ids, eq

logger = get_logger(__name__)

# Reference field on a request -> entity type it points at
REFERENCE_FIELDS: dict[str, EntityType] = {
    "client_id": EntityType.CLIENT,
    "car_id": EntityType.CAR,
}


class OnDemandResolver:
    """Fetch referenced entities that are missing from the cache.

    Concurrent callers asking for the same id share one in-flight read
    instead of issuing duplicate fetches.
    """

    def __init__(self, cache: EntityCache, store: BackingStore) -> None:
        self._cache = cache
        self._store = store
        self._inflight: dict[EntityType, dict[str, asyncio.Future[None]]] = {
            entity_type: {} for entity_type in REFERENCE_FIELDS.values()
        }

    async def ensure_loaded(
        self,
        requests: Iterable[InspectionRequest],
        raise_errors: bool = False,
    ) -> list[ConsistencyGap]:
        """Load every client and car referenced by ``requests``.

        Args:
            requests: Requests about to be displayed.
            raise_errors: Re-raise a failed read instead of logging it.

        Returns:
            References still unresolved afterwards.

        Raises:
            FetchFailure: Only when ``raise_errors`` is set and a read failed.
        """
        requests = list(requests)
        waits: list[asyncio.Future[None]] = []
        for field, entity_type in REFERENCE_FIELDS.items():
            ids = [getattr(request, field, None) for request in requests]
            waits.extend(self._schedule(entity_type, ids))

        if waits:
            # Shared reads outlive a cancelled caller; other waiters still need them
            results = await asyncio.gather(
                *(asyncio.shield(wait) for wait in waits), return_exceptions=True
            )
            failures = [result for result in results if isinstance(result, BaseException)]
            for failure in failures:
                if not isinstance(failure, FetchFailure):
                    raise failure
            if failures and raise_errors:
                raise failures[0]
            for failure in failures:
                report_background_failure(failure)

        gaps = self.find_gaps(requests)
        if gaps:
            logger.info("references_unresolved", count=len(gaps))
        return gaps

    async def ensure_models_for_make(self, make_id: str) -> list[CarModel]:
        """Load all models of a make once; later calls hit the partition marker.

        Raises:
            FetchFailure: If the read fails (the marker stays unset).
        """
        collection = self._cache[EntityType.CAR_MODEL]
        if not collection.is_partition_loaded(make_id):
            spec = spec_for(EntityType.CAR_MODEL)
            options = SelectOptions(where=(eq(spec.partition_field or "make_id", make_id),))
            try:
                rows = await self._store.select(spec.table, options)
            except BackingStoreError as exc:
                logger.warning("models_fetch_failed", make_id=make_id, error=str(exc))
                raise FetchFailure(spec.table) from exc
            collection.upsert_rows(rows)
            collection.mark_partition_loaded(make_id)
            logger.debug("models_loaded", make_id=make_id, count=len(rows))

        return [model for model in collection.get_all() if model.make_id == make_id]

    def find_gaps(self, requests: Iterable[InspectionRequest]) -> list[ConsistencyGap]:
        gaps: list[ConsistencyGap] = []
        for request in requests:
            for field, entity_type in REFERENCE_FIELDS.items():
                ref = getattr(request, field, None)
                if ref and ref not in self._cache[entity_type]:
                    gaps.append(ConsistencyGap(request.id, field, ref))
        return gaps

    def client_of(self, request: InspectionRequest) -> Client:
        """The request's client, or a placeholder while it is unresolved."""
        client = self._cache.get_by_id(EntityType.CLIENT, request.client_id)
        return client if client is not None else Client.placeholder(request.client_id)

    def car_of(self, request: InspectionRequest) -> Car:
        """The request's car, or a placeholder while it is unresolved."""
        car = self._cache.get_by_id(EntityType.CAR, request.car_id)
        return car if car is not None else Car.placeholder(request.car_id)

    def _schedule(
        self, entity_type: EntityType, ids: Iterable[str | None]
    ) -> list[asyncio.Future[None]]:
        inflight = self._inflight[entity_type]
        missing = self._cache[entity_type].missing(ids)

        waits = {inflight[entity_id] for entity_id in missing if entity_id in inflight}
        to_fetch = [entity_id for entity_id in missing if entity_id not in inflight]
        if to_fetch:
            task = asyncio.ensure_future(self._fetch(entity_type, to_fetch))
            for entity_id in to_fetch:
                inflight[entity_id] = task

            def _forget(done: asyncio.Future[None], fetched: list[str] = to_fetch) -> None:
                if not done.cancelled():
                    done.exception()
                for entity_id in fetched:
                    if inflight.get(entity_id) is done:
                        del inflight[entity_id]

            task.add_done_callback(_forget)
            waits.add(task)
        return list(waits)

    async def _fetch(self, entity_type: EntityType, ids: list[str]) -> None:
        spec = spec_for(entity_type)
        try:
            rows = await self._store.select(spec.table, by_ids(ids))
        except BackingStoreError as exc:
            logger.warning(
                "reference_fetch_failed",
                table=spec.table,
                count=len(ids),
                error=str(exc),
            )
            raise FetchFailure(spec.table) from exc
        self._cache[entity_type].upsert_rows(rows)
        logger.debug("references_loaded", table=spec.table, requested=len(ids), found=len(rows))
