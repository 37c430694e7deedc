import asyncio
from pathlib import Path

import pytest
import requests

from conftest import intake, make_container
from shopledger.domain.errors import ValidationError
from shopledger.domain.models import PolicyAction, PolicyCondition, PolicyDescriptor, TenantContext
from shopledger.repositories.policy_store import PolicyStore
from shopledger.services.dan_service import hash_payload, normalize_share_scope, to_location_bucket
from shopledger.services.policy_service import (
    OUTCOME_ERROR,
    OUTCOME_SKIPPED,
    OUTCOME_TRIGGERED,
    PolicyEngine,
    evaluate_condition,
)

SHOP = TenantContext("shop-1", name="Corner Shop")
OFFER_EVENT = "inventory.offer.created"


def test_condition_operators_on_dotted_paths():
    payload = {"quantity": 4, "shareScope": ["local", "dan"], "meta": {"category": "Dairy Products"}}

    assert evaluate_condition(PolicyCondition("quantity", "lt", 10), payload)
    assert not evaluate_condition(PolicyCondition("quantity", "gte", "10"), payload)
    assert evaluate_condition(PolicyCondition("shareScope", "includes", "dan"), payload)
    assert evaluate_condition(PolicyCondition("meta.category", "contains", "dairy"), payload)
    assert not evaluate_condition(PolicyCondition("meta.missing", "eq", 1), payload)
    assert evaluate_condition(PolicyCondition("meta.missing", "neq", 1), payload)


def test_default_policy_triggers_only_when_both_conditions_hold(tmp_path: Path):
    engine = PolicyEngine(PolicyStore(tmp_path / "policies.json"))

    async def scenario():
        hit = await engine.evaluate(SHOP, OFFER_EVENT, {"quantity": 5, "shareScope": ["local", "dan"]})
        high = await engine.evaluate(SHOP, OFFER_EVENT, {"quantity": 15, "shareScope": ["local", "dan"]})
        local = await engine.evaluate(SHOP, OFFER_EVENT, {"quantity": 5, "shareScope": ["local"]})
        other = await engine.evaluate(SHOP, "inventory.offer.fulfilled", {"quantity": 5})
        return hit, high, local, other

    hit, high, local, other = asyncio.run(scenario())

    assert [r.outcome for r in hit] == [OUTCOME_TRIGGERED]
    assert [r.outcome for r in high] == [OUTCOME_SKIPPED]
    assert [r.outcome for r in local] == [OUTCOME_SKIPPED]
    assert other == []
    assert len(engine.notifications) == 1
    assert len(engine.get_policies(SHOP)) == 1


def test_run_log_keeps_newest_fifty(tmp_path: Path):
    path = tmp_path / "policies.json"
    engine = PolicyEngine(PolicyStore(path))

    async def scenario():
        for i in range(60):
            await engine.evaluate(SHOP, OFFER_EVENT, {"quantity": i, "shareScope": ["local"]})

    asyncio.run(scenario())
    runs = PolicyEngine(PolicyStore(path)).recent_runs(SHOP, limit=100)

    assert len(runs) == 50
    assert runs[0].event_payload["quantity"] == 59
    assert runs[-1].event_payload["quantity"] == 10


def test_failing_webhook_marks_only_its_policy_as_error(tmp_path: Path):
    engine = PolicyEngine(PolicyStore())
    engine.seed_default_policy(SHOP)
    engine.upsert_policy(
        PolicyDescriptor(
            id="hook",
            shop_id=SHOP.shop_id,
            name="Forward offers",
            event_type=OFFER_EVENT,
            actions=(PolicyAction("call_webhook", {"url": "http://hooks.invalid/offer"}),),
        )
    )

    def fail(_url: str, _body: dict):
        raise requests.RequestException("connection refused")

    engine._post_webhook = fail  # type: ignore[assignment]

    runs = asyncio.run(engine.evaluate(SHOP, OFFER_EVENT, {"quantity": 3, "shareScope": ["local", "dan"]}))
    outcomes = {r.policy_id: r.outcome for r in runs}

    assert outcomes["hook"] == OUTCOME_ERROR
    assert sorted(outcomes.values()) == [OUTCOME_ERROR, OUTCOME_TRIGGERED]


def test_upsert_policy_rejects_unknown_operator():
    engine = PolicyEngine(PolicyStore())
    bad = PolicyDescriptor(
        id="x", shop_id=SHOP.shop_id, name="Bad", event_type=OFFER_EVENT,
        conditions=(PolicyCondition("quantity", "between", 3),),
    )

    with pytest.raises(ValidationError):
        engine.upsert_policy(bad)


def test_share_helpers():
    assert normalize_share_scope(["dan", "", "dan"]) == ("local", "dan")
    assert normalize_share_scope(None) == ("local",)
    assert to_location_bucket("aisle-3 shelf 2") == "AISLE"
    assert to_location_bucket("  ") is None
    assert hash_payload({"b": 1, "a": 2}) == hash_payload({"a": 2, "b": 1})


def test_dan_disabled_publishes_nothing(tmp_path: Path):
    c = make_container(tmp_path)

    async def scenario():
        await c.inventory.switch_tenant(SHOP)
        await c.inventory.add_inventory_batch(SHOP, [intake("Milk", 5, 1.0, "2024-05-01", share_scope=("dan",))])
        return await c.dan.list_offers()

    assert asyncio.run(scenario()) == []
    assert c.dan.buffered_events == []
    assert c.dan.context(SHOP)["enabled"] is False


def test_dan_offer_follows_stock_until_sold_out(tmp_path: Path):
    c = make_container(tmp_path, enable_dan=True)

    async def scenario():
        await c.inventory.switch_tenant(SHOP)
        await c.inventory.add_inventory_batch(
            SHOP, [intake("Milk", 5, 1.0, "2024-05-01", share_scope=("dan",), location="Aisle-2")]
        )
        created = await c.dan.list_offers()
        await c.sales.record_sale(SHOP, [{"product_name": "Milk", "quantity": 2}])
        partial = await c.dan.list_offers()
        await c.sales.record_sale(SHOP, [{"product_name": "Milk", "quantity": 3}])
        gone = await c.dan.list_offers()
        return created, partial, gone

    created, partial, gone = asyncio.run(scenario())

    assert [(o.product_name, o.quantity, o.location_bucket) for o in created] == [("Milk", 5, "AISLE")]
    assert [o.quantity for o in partial] == [3]
    assert gone == []

    event_types = [e["event_type"] for e in c.dan.buffered_events]
    assert event_types.count("inventory.offer.created") == 1
    assert event_types.count("inventory.offer.fulfilled") == 2
    # low-stock default policy fires on the new offer
    assert "policy.trigger.executed" in event_types
    assert (tmp_path / "dan_buffer.json").exists()

    stock = c.store.points("items")
    assert stock == []


def test_dan_buffer_is_flushed_on_next_successful_publish(tmp_path: Path):
    c = make_container(tmp_path, enable_dan=True, dan_feed_url="http://feed.invalid")
    sent: list[list[dict]] = []
    failures = [requests.RequestException("feed down")]

    def insert(rows):
        if failures:
            raise failures.pop()
        sent.append(rows)

    c.dan._insert_rows = insert  # type: ignore[assignment]

    async def scenario():
        await c.dan.publish_event(SHOP, "delivery.capacity.updated", {"slots": 1})
        assert len(c.dan.buffered_events) == 1
        await c.dan.publish_event(SHOP, "delivery.capacity.updated", {"slots": 2})

    asyncio.run(scenario())

    assert c.dan.buffered_events == []
    assert [len(rows) for rows in sent] == [1, 1]
    assert sent[0][0]["payload"] == {"slots": 1}
    assert sent[1][0]["actor_fingerprint"] == c.dan.derive_keys(SHOP).fingerprint


def test_dan_rejects_unknown_event_type(tmp_path: Path):
    c = make_container(tmp_path, enable_dan=True)

    with pytest.raises(ValidationError):
        asyncio.run(c.dan.publish_event(SHOP, "inventory.teleported", {}))
