from __future__ import annotations

import copy
import math
from collections import defaultdict
from typing import Any, Optional, Sequence

from shopledger.domain.errors import StoreRequestError
from shopledger.repositories.identity import unwrap_vector


def _lookup(payload: dict, key: str) -> Any:
    node: Any = payload
    for part in key.split("."):
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node


def _match_condition(payload: dict, cond: dict) -> bool:
    if "must" in cond or "should" in cond or "must_not" in cond:
        return matches_filter(payload, cond)

    value = _lookup(payload, cond.get("key", ""))
    values = value if isinstance(value, list) else [value]

    if "match" in cond:
        match = cond["match"]
        if "value" in match:
            return match["value"] in values
        if "any" in match:
            return any(v in match["any"] for v in values)
        return False

    if "range" in cond:
        bounds = cond["range"]
        for v in values:
            if not isinstance(v, (int, float)) or isinstance(v, bool):
                continue
            if "gt" in bounds and not v > bounds["gt"]:
                continue
            if "gte" in bounds and not v >= bounds["gte"]:
                continue
            if "lt" in bounds and not v < bounds["lt"]:
                continue
            if "lte" in bounds and not v <= bounds["lte"]:
                continue
            return True
        return False

    if "is_null" in cond:
        return value is None

    return False


def matches_filter(payload: dict, flt: Optional[dict]) -> bool:
    if not flt:
        return True
    must = flt.get("must") or []
    should = flt.get("should") or []
    must_not = flt.get("must_not") or []
    if not all(_match_condition(payload, c) for c in must):
        return False
    if should and not any(_match_condition(payload, c) for c in should):
        return False
    return not any(_match_condition(payload, c) for c in must_not)


def _cosine(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if not na or not nb:
        return 0.0
    return dot / (na * nb)


class InMemoryVectorStore:
    """Process-local stand-in for the remote store.

    Used for offline mode and tests. Collections must be created up front,
    matching the remote store where the application never creates them.
    """

    def __init__(self):
        self._collections: dict[str, dict] = {}
        self._failures: dict[str, list[Exception]] = defaultdict(list)
        self.reject_filters: set[str] = set()
        self.calls: list[tuple[str, str]] = []

    # --- administration ---------------------------------------------------

    def create_collection(
        self,
        name: str,
        size: int = 768,
        distance: str = "Cosine",
        vector_name: Optional[str] = None,
        indexes: Optional[dict[str, str]] = None,
    ) -> None:
        params = {"size": size, "distance": distance}
        vectors = {vector_name: params} if vector_name else params
        self._collections[name] = {
            "vectors": vectors,
            "payload_schema": {f: {"data_type": t} for f, t in (indexes or {}).items()},
            "points": {},
        }

    def drop_collection(self, name: str) -> None:
        self._collections.pop(name, None)

    def fail_next(self, operation: str, error: Exception) -> None:
        self._failures[operation].append(error)

    def points(self, name: str) -> list[dict]:
        return copy.deepcopy(list(self._collection(name)["points"].values()))

    def _collection(self, name: str) -> dict:
        coll = self._collections.get(name)
        if coll is None:
            raise StoreRequestError(f"Collection {name} not found", status_code=404)
        return coll

    def _enter(self, operation: str, name: str) -> None:
        self.calls.append((operation, name))
        queue = self._failures.get(operation)
        if queue:
            raise queue.pop(0)

    # --- VectorStore ------------------------------------------------------

    async def get_collection(self, name: str) -> Optional[dict]:
        self._enter("get_collection", name)
        coll = self._collections.get(name)
        if coll is None:
            return None
        return {
            "status": "green",
            "points_count": len(coll["points"]),
            "config": {"params": {"vectors": copy.deepcopy(coll["vectors"])}},
            "payload_schema": copy.deepcopy(coll["payload_schema"]),
        }

    async def create_payload_index(self, name: str, field: str, schema_type: str) -> None:
        self._enter("create_payload_index", name)
        self._collection(name)["payload_schema"][field] = {"data_type": schema_type}

    async def delete_payload_index(self, name: str, field: str) -> None:
        self._enter("delete_payload_index", name)
        self._collection(name)["payload_schema"].pop(field, None)

    async def scroll(
        self,
        name: str,
        *,
        limit: int,
        offset: Any = None,
        filter: Optional[dict] = None,
        with_vector: bool = False,
    ) -> tuple[list[dict], Any]:
        self._enter("scroll", name)
        if filter and name in self.reject_filters:
            raise StoreRequestError(f"Bad request: index required for filter on {name}", status_code=400)

        coll = self._collection(name)
        matching = [p for p in coll["points"].values() if matches_filter(p.get("payload") or {}, filter)]
        start = int(offset or 0)
        page = matching[start:start + limit]
        next_offset = start + limit if start + limit < len(matching) else None

        out = []
        for p in page:
            item = {"id": p["id"], "payload": copy.deepcopy(p.get("payload") or {})}
            if with_vector:
                item["vector"] = copy.deepcopy(p.get("vector"))
            out.append(item)
        return out, next_offset

    async def upsert(self, name: str, points: Sequence[dict]) -> None:
        self._enter("upsert", name)
        coll = self._collection(name)
        for p in points:
            coll["points"][str(p["id"])] = {
                "id": str(p["id"]),
                "vector": copy.deepcopy(p.get("vector")),
                "payload": copy.deepcopy(p.get("payload") or {}),
            }

    async def delete_points(self, name: str, ids: Sequence[str]) -> None:
        self._enter("delete_points", name)
        coll = self._collection(name)
        for pid in ids:
            coll["points"].pop(str(pid), None)

    async def delete_by_filter(self, name: str, filter: dict) -> None:
        self._enter("delete_by_filter", name)
        coll = self._collection(name)
        doomed = [pid for pid, p in coll["points"].items() if matches_filter(p.get("payload") or {}, filter)]
        for pid in doomed:
            del coll["points"][pid]

    async def search(self, name: str, vector: Any, *, limit: int, filter: Optional[dict] = None) -> list[dict]:
        self._enter("search", name)
        coll = self._collection(name)
        query = vector["vector"] if isinstance(vector, dict) else vector

        scored = []
        for p in coll["points"].values():
            if not matches_filter(p.get("payload") or {}, filter):
                continue
            stored = unwrap_vector(p.get("vector"))
            if not stored:
                continue
            scored.append({"id": p["id"], "score": _cosine(query, stored), "payload": copy.deepcopy(p["payload"])})

        scored.sort(key=lambda x: x["score"], reverse=True)
        return scored[:limit]

    async def retrieve(self, name: str, ids: Sequence[str], with_vector: bool = True) -> list[dict]:
        self._enter("retrieve", name)
        coll = self._collection(name)
        out = []
        for pid in ids:
            p = coll["points"].get(str(pid))
            if p is None:
                continue
            item = {"id": p["id"], "payload": copy.deepcopy(p["payload"])}
            if with_vector:
                item["vector"] = copy.deepcopy(p.get("vector"))
            out.append(item)
        return out
