import asyncio
from pathlib import Path

import pytest

from conftest import intake, make_container
from shopledger.domain.errors import NotFoundError, StoreRequestError, ValidationError
from shopledger.domain.models import STATUS_EMPTY, BatchLineItem, BatchRecord, StockItem, TenantContext
from shopledger.services.inventory_service import default_expiration

SHOP_A = TenantContext("shop-a", name="Shop A")
SHOP_B = TenantContext("shop-b", name="Shop B")


def _stock(shop: str = "shop-a", **kw) -> StockItem:
    base = dict(shop_id=shop, product_id="p1", batch_id="b1", quantity=4, expiration_date="2025-01-01", buy_price=1.0)
    base.update(kw)
    return StockItem(**base)


def test_default_expiration_handles_leap_day():
    assert default_expiration("2024-02-29") == "2025-02-28"
    assert default_expiration("2024-03-10T08:00:00") == "2025-03-10"
    with pytest.raises(ValidationError):
        default_expiration("not a date")


def test_persist_entry_is_idempotent_on_inventory_uuid(tmp_path: Path):
    c = make_container(tmp_path)

    async def scenario():
        first = await c.inventory.persist_entry(SHOP_A, _stock(inventory_uuid="inv-1"))
        payload_after_first = c.store.points("items")[0]["payload"]
        await c.inventory.persist_entry(SHOP_A, first)
        return first, payload_after_first

    first, payload_after_first = asyncio.run(scenario())
    points = c.store.points("items")

    assert len(points) == 1
    assert points[0]["id"] == "inv-1"
    assert first.sell_price == 1.4
    payload = dict(points[0]["payload"])
    payload.pop("updatedAt")
    payload_after_first.pop("updatedAt")
    assert payload == payload_after_first


def test_persist_entry_assigns_uuid_and_rejects_foreign_shop(tmp_path: Path):
    c = make_container(tmp_path)

    created = asyncio.run(c.inventory.persist_entry(SHOP_A, _stock(sell_price=3.0)))
    assert created.inventory_uuid
    assert created.sell_price == 3.0

    with pytest.raises(ValidationError):
        asyncio.run(c.inventory.persist_entry(SHOP_A, _stock(shop="shop-b")))
    with pytest.raises(ValidationError):
        asyncio.run(c.inventory.persist_entry(SHOP_A, _stock(quantity=-1)))


def test_persist_entry_is_a_noop_without_store(tmp_path: Path):
    from conftest import make_paths
    from shopledger.application.container import build_container
    from shopledger.config import Settings

    c = build_container(settings=Settings(), paths=make_paths(tmp_path))
    persisted = asyncio.run(c.inventory.persist_entry(SHOP_A, _stock()))

    assert c.store is None
    assert persisted is None


def test_update_with_external_data_keeps_vector(tmp_path: Path):
    c = make_container(tmp_path)

    async def scenario():
        await c.inventory.persist_entry(SHOP_A, _stock(inventory_uuid="inv-9", location="Shelf A"))
        before = c.store.points("items")[0]
        updated = await c.inventory.update_with_external_data(
            SHOP_A,
            "inv-9",
            {"scan_metadata": {"ocrText": "MILK 1L"}, "images": [{"url": "img-1"}], "location": "Shelf B"},
        )
        await c.inventory.update_with_external_data(SHOP_A, "inv-9", {"scan_metadata": {"confidence": 0.9}})
        return before, updated

    before, updated = asyncio.run(scenario())
    after = c.store.points("items")[0]

    assert updated.location == "Shelf B"
    assert after["vector"] == before["vector"]
    assert after["payload"]["scanMetadata"] == {"ocrText": "MILK 1L", "confidence": 0.9}
    assert after["payload"]["images"] == [{"url": "img-1"}]


def test_update_with_external_data_raises_for_missing_or_foreign_item(tmp_path: Path):
    c = make_container(tmp_path)
    asyncio.run(c.inventory.persist_entry(SHOP_A, _stock(inventory_uuid="inv-1")))

    with pytest.raises(NotFoundError):
        asyncio.run(c.inventory.update_with_external_data(SHOP_A, "missing", {"location": "X"}))
    with pytest.raises(NotFoundError):
        asyncio.run(c.inventory.update_with_external_data(SHOP_B, "inv-1", {"location": "X"}))


def test_delete_entry_without_uuid_matches_shop_and_product(tmp_path: Path):
    c = make_container(tmp_path)

    async def scenario():
        await c.inventory.persist_entry(SHOP_A, _stock(inventory_uuid="a-1"))
        await c.inventory.persist_entry(SHOP_A, _stock(inventory_uuid="a-2", product_id="p2"))
        await c.inventory.persist_entry(SHOP_B, _stock(shop="shop-b", inventory_uuid="b-1"))
        await c.inventory.delete_entry(SHOP_A, _stock(inventory_uuid=None))

    asyncio.run(scenario())

    assert sorted(p["id"] for p in c.store.points("items")) == ["a-2", "b-1"]


def test_create_from_batch_defaults_expiration_and_uses_ocr(tmp_path: Path):
    c = make_container(tmp_path)
    batch = BatchRecord(id="batch-1", shop_id="shop-a", delivery_date="2024-02-29", supplier_id="sup-1")
    lines = [BatchLineItem("p1", 5, 1.0), BatchLineItem("p2", 3, 2.0), BatchLineItem("p3", 0, 2.0)]

    async def scenario():
        await c.inventory.switch_tenant(SHOP_A)
        return await c.inventory.create_from_batch(SHOP_A, batch, lines, {"p2": {"expirationDate": "2024-09-01"}})

    created = asyncio.run(scenario())
    by_product = {s.product_id: s for s in created}

    assert set(by_product) == {"p1", "p2"}
    assert by_product["p1"].expiration_date == "2025-02-28"
    assert by_product["p2"].expiration_date == "2024-09-01"
    assert len(c.store.points("items")) == 2
    assert [call for call in c.store.calls if call == ("upsert", "items")] == [("upsert", "items")]
    assert len(c.inventory.get_all_stock_items(SHOP_A)) == 2


def test_snapshot_load_keeps_only_the_resident_shop(tmp_path: Path):
    c = make_container(tmp_path)

    async def scenario():
        await c.inventory.switch_tenant(SHOP_A)
        await c.inventory.add_inventory_batch(SHOP_A, [intake("Bread", 4, 1.0, "2024-05-01")])
        await c.inventory.switch_tenant(SHOP_B)
        await c.inventory.add_inventory_batch(SHOP_B, [intake("Cheese", 2, 3.0, "2024-06-01")])
        # malformed product ids never reach the cache
        await c.store.upsert("items", [
            {"id": "bad-1", "vector": [0.1] * 768, "payload": {"shopId": "shop-a", "productId": 42, "quantity": 1}},
        ])
        await c.inventory.switch_tenant(SHOP_A)

    asyncio.run(scenario())
    items = c.inventory.get_all_stock_items(SHOP_A)

    assert len(items) == 1
    assert all(s.shop_id == "shop-a" for s in c.snapshot.stock_items())
    assert [p.name for p in c.catalog.get_products(SHOP_A)] == ["Bread"]
    assert c.snapshot.last_skipped.get("missing_shop_or_product") == 1
    with pytest.raises(ValidationError):
        c.inventory.get_all_stock_items(SHOP_B)


def test_update_item_to_zero_drops_it_from_the_cache(tmp_path: Path):
    c = make_container(tmp_path)

    async def scenario():
        await c.inventory.switch_tenant(SHOP_A)
        await c.inventory.add_inventory_batch(SHOP_A, [intake("Eggs", 6, 0.5, "2024-05-01")])
        item = c.inventory.get_all_stock_items(SHOP_A)[0]
        updated = await c.inventory.update_item(SHOP_A, item.inventory_uuid, {"quantity": 0})
        return updated

    updated = asyncio.run(scenario())

    assert updated.status == STATUS_EMPTY
    assert c.inventory.get_all_stock_items(SHOP_A) == []
    assert c.store.points("items")[0]["payload"]["status"] == STATUS_EMPTY


def test_remove_item_deletes_point(tmp_path: Path):
    c = make_container(tmp_path)

    async def scenario():
        await c.inventory.switch_tenant(SHOP_A)
        await c.inventory.add_inventory_batch(SHOP_A, [intake("Eggs", 6, 0.5, "2024-05-01")])
        item = c.inventory.get_all_stock_items(SHOP_A)[0]
        await c.inventory.remove_item(SHOP_A, item.inventory_uuid)
        with pytest.raises(NotFoundError):
            await c.inventory.remove_item(SHOP_A, item.inventory_uuid)

    asyncio.run(scenario())

    assert c.store.points("items") == []


def test_add_inventory_batch_reuses_products_and_suppliers(tmp_path: Path):
    c = make_container(tmp_path)

    async def scenario():
        await c.inventory.switch_tenant(SHOP_A)
        await c.inventory.add_inventory_batch(SHOP_A, [intake("Milk", 3, 1.0, "2024-05-01")], supplier_name="Dairy Co")
        await c.inventory.add_inventory_batch(SHOP_A, [intake("milk", 2, 1.0, "2024-06-01")], supplier_name="dairy co")

    asyncio.run(scenario())

    assert len(c.store.points("products")) == 1
    assert len(c.store.points("suppliers")) == 1
    assert len(c.store.points("batches")) == 2
    assert len(c.catalog.list_batches(SHOP_A)) == 2
    with pytest.raises(ValidationError):
        asyncio.run(c.inventory.add_inventory_batch(SHOP_A, [intake("Milk", 0, 1.0, "2024-05-01")]))


def test_seed_tenant_only_seeds_empty_shop(tmp_path: Path):
    c = make_container(tmp_path)

    async def scenario():
        first = await c.inventory.seed_tenant(SHOP_A)
        second = await c.inventory.seed_tenant(SHOP_A)
        return first, second

    first, second = asyncio.run(scenario())
    summaries = c.reporting.get_product_summaries(SHOP_A)

    assert (first, second) == (True, False)
    assert [(s.product_name, s.total_quantity) for s in summaries] == [("Organic Oat Milk", 50)]
    assert [s.name for s in c.catalog.list_suppliers(SHOP_A)] == ["Organic Foods Dist."]


def test_search_relevant_items_stays_inside_tenant(tmp_path: Path):
    c = make_container(tmp_path)

    async def scenario():
        await c.inventory.switch_tenant(SHOP_A)
        await c.inventory.add_inventory_batch(SHOP_A, [intake("Apples", 5, 1.0, "2024-05-01")])
        await c.inventory.persist_entry(SHOP_B, _stock(shop="shop-b"))
        return await c.inventory.search_relevant_items(SHOP_A, "fruit")

    hits = asyncio.run(scenario())

    assert len(hits) == 1
    assert hits[0].shop_id == "shop-a"


def test_skipped_writes_leave_the_cache_alone(tmp_path: Path):
    c = make_container(tmp_path)

    async def skip(*_args):
        return False

    async def scenario():
        await c.inventory.switch_tenant(SHOP_A)
        await c.inventory.add_inventory_batch(
            SHOP_A, [intake("Eggs", 6, 0.5, "2024-05-01"), intake("Eggs", 2, 0.5, "2024-04-01")]
        )
        product_id = c.snapshot.product_by_name("Eggs").id
        c.writer.upsert = skip  # type: ignore[assignment]
        c.writer.delete = skip  # type: ignore[assignment]

        result = await c.sales.deduct_stock_for_order(SHOP_A, product_id, 3)
        item = c.inventory.get_all_stock_items(SHOP_A)[0]
        with pytest.raises(StoreRequestError):
            await c.inventory.update_item(SHOP_A, item.inventory_uuid, {"quantity": 1})
        with pytest.raises(StoreRequestError):
            await c.inventory.remove_item(SHOP_A, item.inventory_uuid)
        return result

    result = asyncio.run(scenario())

    assert result.fulfilled == 3
    assert sorted(s.quantity for s in c.inventory.get_all_stock_items(SHOP_A)) == [2, 6]
    assert sorted(p["payload"]["quantity"] for p in c.store.points("items")) == [2, 6]
