from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable, Optional

from shopledger.domain.errors import StoreRequestError
from shopledger.repositories.collections import CollectionGate
from shopledger.repositories.contracts import Filter, Point, VectorStore
from shopledger.repositories.identity import compose_query_vector

log = logging.getLogger("shopledger.store")

SCROLL_LIMIT = 1000
SCROLL_ATTEMPTS = 3
MAX_POINTS = 100_000


def shop_condition(shop_id: str) -> dict:
    return {"key": "shopId", "match": {"value": shop_id}}


def build_search_filter(filters: dict[str, Any]) -> Optional[Filter]:
    must: list[dict] = []
    for key, value in filters.items():
        if value is None:
            continue
        if key == "shop_id":
            must.append(shop_condition(value))
        elif key == "quantity_min":
            must.append({"key": "quantity", "range": {"gt": value}})
        else:
            must.append({"key": key, "match": {"value": value}})
    return {"must": must} if must else None


class PointQueries:
    """Paginated reads over the store, gated by collection readiness."""

    def __init__(
        self,
        store: Optional[VectorStore],
        gate: CollectionGate,
        retry_delay: float = 1.0,
        page_size: int = SCROLL_LIMIT,
        max_points: int = MAX_POINTS,
    ):
        self.store = store
        self.gate = gate
        self.retry_delay = retry_delay
        self.page_size = page_size
        self.max_points = max_points

    async def _gated(self, collection: str) -> bool:
        if self.store is None:
            return False
        if self.gate.is_collection_ready(collection):
            return True
        return await self.gate.ensure_ready_or_warn(collection)

    async def _scroll_all(
        self,
        collection: str,
        flt: Optional[Filter] = None,
        local_match: Optional[Callable[[dict], bool]] = None,
    ) -> list[Point]:
        points: list[Point] = []
        offset: Any = None
        attempt = 1

        while True:
            try:
                batch, offset = await self.store.scroll(collection, limit=self.page_size, offset=offset, filter=flt)
            except StoreRequestError as e:
                retryable = e.is_client_error or e.transient
                if not retryable:
                    raise
                if attempt < SCROLL_ATTEMPTS:
                    log.warning(
                        "scroll_retry collection=%s attempt=%s filtered=%s error=%s",
                        collection, attempt, flt is not None, e,
                    )
                    attempt += 1
                    await asyncio.sleep(self.retry_delay)
                    continue
                if flt is not None and local_match is not None:
                    log.warning("scroll_filter_fallback collection=%s mode=full_scan error=%s", collection, e)
                    everything = await self._scroll_all(collection)
                    return [p for p in everything if local_match(p.get("payload") or {})]
                raise

            attempt = 1
            points.extend(batch)
            if offset is None:
                break
            if len(points) > self.max_points:
                log.warning("scroll_aborted collection=%s points=%s limit=%s", collection, len(points), self.max_points)
                break

        return points

    async def fetch_all_points(self, collection: str, tenant_id: Optional[str] = None) -> list[Point]:
        if not await self._gated(collection):
            return []
        if not tenant_id:
            return await self._scroll_all(collection)

        return await self._scroll_all(
            collection,
            {"must": [shop_condition(tenant_id)]},
            lambda payload: payload.get("shopId") == tenant_id,
        )

    async def fetch_points_matching(self, collection: str, field_name: str, values: Iterable[Any]) -> list[Point]:
        wanted = list(dict.fromkeys(values))
        if not wanted or not await self._gated(collection):
            return []

        wanted_set = set(wanted)
        return await self._scroll_all(
            collection,
            {"must": [{"key": field_name, "match": {"any": wanted}}]},
            lambda payload: payload.get(field_name) in wanted_set,
        )

    async def search_with_filters(
        self,
        collection: str,
        vector: list[float],
        filters: Optional[dict[str, Any]] = None,
        limit: int = 10,
    ) -> list[Point]:
        if not await self._gated(collection):
            return []

        query = compose_query_vector(self.gate.vector_config(collection), vector)
        try:
            return await self.store.search(collection, query, limit=limit, filter=build_search_filter(filters or {}))
        except StoreRequestError as e:
            log.error("search_failed collection=%s error=%s", collection, e)
            return []
