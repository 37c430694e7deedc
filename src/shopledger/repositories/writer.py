from __future__ import annotations

import logging
from typing import Optional, Sequence

from shopledger.repositories.collections import CollectionGate
from shopledger.repositories.contracts import Filter, Point, VectorStore
from shopledger.repositories.identity import compose_point_vector

log = logging.getLogger("shopledger.store")


class PointWriter:
    """Gated write verbs. Each returns False when the write was skipped
    because the store is unavailable or the collection is not ready."""

    def __init__(self, store: Optional[VectorStore], gate: CollectionGate):
        self.store = store
        self.gate = gate

    @property
    def available(self) -> bool:
        return self.store is not None

    async def ready(self, collection: str) -> bool:
        if self.store is None:
            return False
        if self.gate.is_collection_ready(collection):
            return True
        return await self.gate.ensure_ready_or_warn(collection)

    def point(self, collection: str, point_id: str, vector: list[float], payload: dict) -> Point:
        return {"id": point_id, **compose_point_vector(self.gate.vector_config(collection), vector), "payload": payload}

    async def upsert(self, collection: str, points: Sequence[Point]) -> bool:
        if not await self.ready(collection):
            return False
        await self.store.upsert(collection, points)
        return True

    async def delete(self, collection: str, ids: Sequence[str]) -> bool:
        if not await self.ready(collection):
            return False
        await self.store.delete_points(collection, ids)
        return True

    async def delete_where(self, collection: str, flt: Filter) -> bool:
        if not await self.ready(collection):
            return False
        await self.store.delete_by_filter(collection, flt)
        return True

    async def retrieve(self, collection: str, ids: Sequence[str]) -> list[Point]:
        if not await self.ready(collection):
            return []
        return await self.store.retrieve(collection, ids, with_vector=True)
