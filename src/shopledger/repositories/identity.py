from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from typing import Any, Optional

log = logging.getLogger("shopledger.store")

UUID_NAMESPACE = uuid.UUID("58fc3ff2-2f13-11ef-b75e-0242ac110002")
DEFAULT_VECTOR_SIZE = 768


@dataclass(frozen=True)
class VectorConfig:
    named: bool = False
    vector_name: Optional[str] = None


def compose_point_id(collection: str, entity_id: str | int) -> str:
    return str(uuid.uuid5(UUID_NAMESPACE, f"{collection}:{entity_id}"))


def build_placeholder_vector(seed: Any, size: int = DEFAULT_VECTOR_SIZE) -> list[float]:
    """Deterministic, non-semantic vector derived only from ``seed``."""
    safe_seed = str(seed) if seed not in (None, "") else "default"
    n = len(safe_seed)
    return [(ord(safe_seed[i % n]) % 100) / 1000 for i in range(size)]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def resolve_vector(
    candidate: Optional[list[float]],
    seed: Any,
    fallback_seed: Any = None,
    size: int = DEFAULT_VECTOR_SIZE,
) -> list[float]:
    placeholder_seed = seed if seed not in (None, "") else fallback_seed

    if not isinstance(candidate, (list, tuple)) or not candidate:
        return build_placeholder_vector(placeholder_seed, size)

    if len(candidate) != size:
        log.warning("vector_length_mismatch seed=%s got=%s expected=%s", placeholder_seed, len(candidate), size)
        return build_placeholder_vector(placeholder_seed, size)

    for idx, value in enumerate(candidate):
        if not _is_number(value):
            log.warning("vector_invalid_value seed=%s index=%s value=%r", placeholder_seed, idx, value)
            return build_placeholder_vector(placeholder_seed, size)

    return [float(v) for v in candidate]


def compose_point_vector(config: Optional[VectorConfig], vector: list[float]) -> dict:
    if config and config.named:
        return {"vector": {config.vector_name or "default": vector}}
    return {"vector": vector}


def compose_query_vector(config: Optional[VectorConfig], vector: list[float]) -> Any:
    if config and config.named:
        return {"name": config.vector_name or "default", "vector": vector}
    return vector


def unwrap_vector(raw: Any) -> Optional[list[float]]:
    """Plain vector from a point, whichever vector layout the collection uses."""
    if isinstance(raw, list):
        return raw
    if isinstance(raw, dict) and raw:
        if "default" in raw:
            return raw["default"]
        return next(iter(raw.values()))
    return None
