from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Optional

from shopledger.domain.clock import utc_now
from shopledger.domain.errors import StoreRequestError
from shopledger.repositories.contracts import VectorStore
from shopledger.repositories.identity import VectorConfig

log = logging.getLogger("shopledger.store")

BASE_COLLECTIONS = (
    "users",
    "shops",
    "customers",
    "suppliers",
    "products",
    "items",
    "batches",
    "sales",
    "drivers",
    "visual",
    "marketplace",
    "dan_inventory",
)

_KW = "keyword"

COLLECTION_PAYLOAD_INDEXES: dict[str, dict[str, str]] = {
    "users": {
        "userId": _KW,
        "displayName": _KW,
        "contactEmail": _KW,
        "email": _KW,
        "shopId": _KW,
        "isVerified": "bool",
        "isDriverVerified": "bool",
    },
    "shops": {"shopId": _KW, "userId": _KW, "name": _KW},
    "suppliers": {"supplierId": _KW, "shopId": _KW, "linkedUserId": _KW, "name": _KW},
    "products": {"productId": _KW, "category": _KW, "manufacturer": _KW, "defaultSupplierId": _KW},
    "items": {
        "inventoryUuid": _KW,
        "shopId": _KW,
        "productId": _KW,
        "batchId": _KW,
        "supplierId": _KW,
        "status": _KW,
        "quantity": "integer",
        "expiration": _KW,
    },
    "batches": {"batchId": _KW, "shopId": _KW, "supplierId": _KW, "deliveryDate": _KW, "inventoryDate": _KW},
    "sales": {"saleId": _KW, "shopId": _KW, "timestamp": _KW},
    "customers": {"customerId": _KW, "userId": _KW, "name": _KW},
    "drivers": {"driverId": _KW, "userId": _KW, "status": _KW},
    "visual": {"shopId": _KW, "productId": _KW, "fieldName": _KW},
    "marketplace": {"listingId": _KW, "shopId": _KW, "productId": _KW},
    "dan_inventory": {
        "inventoryUuid": _KW,
        "shopId": _KW,
        "productId": _KW,
        "productName": _KW,
        "locationBucket": _KW,
        "shareScope": _KW,
        "expirationDate": _KW,
    },
}

DIAGNOSTICS_LIMIT = 200


@dataclass(frozen=True)
class GateLogEntry:
    level: str
    message: str
    timestamp: str


def analyze_vector_params(raw) -> tuple[Optional[dict], VectorConfig]:
    """Vector params plus whether the collection uses named vectors."""
    if not isinstance(raw, dict) or not raw:
        return None, VectorConfig()
    if isinstance(raw.get("size"), int):
        return raw, VectorConfig()

    default = raw.get("default")
    if isinstance(default, dict) and isinstance(default.get("size"), int):
        has_extra = any(k != "default" for k in raw)
        return default, VectorConfig(named=has_extra, vector_name="default" if has_extra else None)

    for key, params in raw.items():
        if isinstance(params, dict) and isinstance(params.get("size"), int):
            return params, VectorConfig(named=True, vector_name=key)

    return None, VectorConfig(named=True)


class CollectionGate:
    """Checks that remote collections exist with the expected vector params
    and payload indexes. Never creates or deletes collections."""

    def __init__(self, store: Optional[VectorStore], vector_size: int = 768, distance: str = "Cosine"):
        self.store = store
        self.vector_size = vector_size
        self.distance = distance
        self._ready: dict[str, bool] = {}
        self._vector_configs: dict[str, VectorConfig] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._log: deque[GateLogEntry] = deque(maxlen=DIAGNOSTICS_LIMIT)

    def _record(self, level: str, message: str) -> None:
        self._log.append(GateLogEntry(level, message, utc_now()))
        getattr(log, level)("collection_gate %s", message)

    def diagnostics(self) -> list[GateLogEntry]:
        return list(self._log)

    def is_collection_ready(self, name: str) -> bool:
        return self._ready.get(name, False)

    def vector_config(self, name: str) -> Optional[VectorConfig]:
        return self._vector_configs.get(name)

    def reset(self) -> None:
        self._ready.clear()
        self._vector_configs.clear()

    async def _ensure_indexes(self, name: str, schema: dict) -> None:
        for field_name, wanted in COLLECTION_PAYLOAD_INDEXES.get(name, {}).items():
            existing = (schema.get(field_name) or {}).get("data_type")
            if existing == wanted:
                continue

            if existing is not None:
                try:
                    await self.store.delete_payload_index(name, field_name)
                    self._record("info", f"index_deleted collection={name} field={field_name} was={existing}")
                except StoreRequestError as e:
                    self._record("warning", f"index_delete_failed collection={name} field={field_name} error={e}")

            try:
                await self.store.create_payload_index(name, field_name, wanted)
                self._record("info", f"index_created collection={name} field={field_name} type={wanted}")
            except StoreRequestError as e:
                self._record("error", f"index_create_failed collection={name} field={field_name} error={e}")

    async def _verify(self, name: str) -> bool:
        try:
            info = await self.store.get_collection(name)
        except StoreRequestError as e:
            self._record("error", f"verify_failed collection={name} error={e}")
            return False

        if info is None:
            self._record("error", f"collection_missing collection={name}")
            return False

        raw_vectors = ((info.get("config") or {}).get("params") or {}).get("vectors")
        params, config = analyze_vector_params(raw_vectors)
        if not params or params.get("size") != self.vector_size or params.get("distance") != self.distance:
            self._record(
                "error",
                f"collection_misconfigured collection={name} expected_size={self.vector_size} "
                f"expected_distance={self.distance} got={params}",
            )
            return False

        self._vector_configs[name] = config
        try:
            await self._ensure_indexes(name, info.get("payload_schema") or {})
        except StoreRequestError as e:
            self._record("error", f"indexes_failed collection={name} error={e}")
            return False
        return True

    async def ensure_collection(self, name: str) -> bool:
        if self.store is None:
            return False
        if self._ready.get(name):
            return True

        lock = self._locks.setdefault(name, asyncio.Lock())
        async with lock:
            # another waiter may have finished the check
            if self._ready.get(name):
                return True
            ready = await self._verify(name)
            self._ready[name] = ready
            if ready:
                self._record("info", f"collection_ready collection={name}")
            return ready

    async def ensure_ready_or_warn(self, name: str) -> bool:
        ready = await self.ensure_collection(name)
        if not ready:
            self._record("warning", f"collection_not_ready collection={name} operation=skipped")
        return ready

    async def ensure_base_collections(self) -> dict[str, bool]:
        if self.store is None:
            self._record("warning", "store_unavailable")
            return {name: False for name in BASE_COLLECTIONS}

        results = await asyncio.gather(*(self.ensure_collection(n) for n in BASE_COLLECTIONS))
        status = dict(zip(BASE_COLLECTIONS, results))
        ready = [n for n, ok in status.items() if ok]
        failed = [n for n, ok in status.items() if not ok]
        self._record(
            "info" if not failed else "warning",
            f"collections_checked ready={len(ready)}/{len(BASE_COLLECTIONS)} failed={','.join(failed) or '-'}",
        )
        return status
