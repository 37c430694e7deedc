import asyncio
from datetime import datetime, timezone

from shopledger.domain.clock import utc_now
from shopledger.repositories.collections import BASE_COLLECTIONS, COLLECTION_PAYLOAD_INDEXES, CollectionGate
from shopledger.repositories.identity import (
    VectorConfig,
    build_placeholder_vector,
    compose_point_id,
    compose_point_vector,
    resolve_vector,
)
from shopledger.repositories.memory_store import InMemoryVectorStore


def test_compose_point_id_is_stable_per_collection():
    a = compose_point_id("products", "p-1")
    assert a == compose_point_id("products", "p-1")
    assert a != compose_point_id("batches", "p-1")


def test_placeholder_vector_is_deterministic():
    first = resolve_vector(None, "item-42", size=16)
    second = resolve_vector(None, "item-42", size=16)

    assert first == second
    assert len(first) == 16
    assert first != resolve_vector(None, "item-43", size=16)


def test_resolve_vector_rejects_bad_candidates():
    placeholder = build_placeholder_vector("seed", 4)

    assert resolve_vector([0.1, 0.2], "seed", size=4) == placeholder
    assert resolve_vector([0.1, float("nan"), 0.2, 0.3], "seed", size=4) == placeholder
    assert resolve_vector([1, 2, 3, 4], "seed", size=4) == [1.0, 2.0, 3.0, 4.0]
    # empty primary seed falls back
    assert resolve_vector(None, "", "items:x", size=4) == build_placeholder_vector("items:x", 4)


def test_named_vector_layout():
    assert compose_point_vector(VectorConfig(named=True, vector_name="text"), [1.0]) == {"vector": {"text": [1.0]}}
    assert compose_point_vector(None, [1.0]) == {"vector": [1.0]}


def test_gate_reports_missing_and_misconfigured_collections():
    store = InMemoryVectorStore()
    store.create_collection("items", size=8)
    gate = CollectionGate(store, vector_size=768)

    assert asyncio.run(gate.ensure_collection("items")) is False
    assert asyncio.run(gate.ensure_collection("products")) is False
    messages = [e.message for e in gate.diagnostics()]
    assert any("collection_misconfigured collection=items" in m for m in messages)
    assert any("collection_missing collection=products" in m for m in messages)


def test_gate_creates_missing_indexes_and_replaces_wrong_types():
    store = InMemoryVectorStore()
    store.create_collection("items", indexes={"quantity": "keyword"})
    gate = CollectionGate(store)

    assert asyncio.run(gate.ensure_collection("items")) is True
    schema = asyncio.run(store.get_collection("items"))["payload_schema"]
    for field, wanted in COLLECTION_PAYLOAD_INDEXES["items"].items():
        assert schema[field]["data_type"] == wanted
    assert ("delete_payload_index", "items") in store.calls


def test_gate_caches_ready_collections():
    store = InMemoryVectorStore()
    store.create_collection("sales")
    gate = CollectionGate(store)

    asyncio.run(gate.ensure_collection("sales"))
    before = len(store.calls)
    assert asyncio.run(gate.ensure_collection("sales")) is True
    assert len(store.calls) == before


def test_gate_without_store_is_never_ready():
    gate = CollectionGate(None)
    status = asyncio.run(gate.ensure_base_collections())

    assert set(status) == set(BASE_COLLECTIONS)
    assert not any(status.values())


def test_utc_now_stamps_gate_log_in_utc_seconds():
    stamp = utc_now()
    parsed = datetime.fromisoformat(stamp)

    assert parsed.tzinfo == timezone.utc
    assert parsed.microsecond == 0

    gate = CollectionGate(None)
    asyncio.run(gate.ensure_ready_or_warn("items"))
    [entry] = gate.diagnostics()[-1:]
    assert datetime.fromisoformat(entry.timestamp).tzinfo == timezone.utc
