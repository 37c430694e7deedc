import asyncio
import time
from pathlib import Path

import pytest

from conftest import intake, make_container
from shopledger.domain.errors import InsufficientStockError, NotFoundError, ValidationError
from shopledger.domain.models import StockItem, TenantContext
from shopledger.services.sales_service import fefo_order

SHOP = TenantContext("shop-1", name="Corner Shop")


async def _stocked(c, *lines):
    await c.inventory.switch_tenant(SHOP)
    for line in lines:
        await c.inventory.add_inventory_batch(SHOP, [line], supplier_name="Dairy Co")
    return c.snapshot.product_by_name(lines[0].product_name).id


def _quantities(c) -> dict[str, int]:
    return {p["payload"]["expiration"]: p["payload"]["quantity"] for p in c.store.points("items")}


def test_fefo_order_is_stable_and_puts_bad_dates_last():
    items = [
        StockItem("s", "p", "b1", 1, "2024-06-01", inventory_uuid="late"),
        StockItem("s", "p", "b2", 1, "garbage", inventory_uuid="bad"),
        StockItem("s", "p", "b3", 1, "2024-05-01", inventory_uuid="early-1"),
        StockItem("s", "p", "b4", 1, "2024-05-01T10:00:00", inventory_uuid="early-2"),
    ]

    assert [i.inventory_uuid for i in fefo_order(items)] == ["early-1", "early-2", "late", "bad"]


def test_deduction_consumes_soonest_expiring_first(tmp_path: Path):
    c = make_container(tmp_path)

    async def scenario():
        # later batch arrives first to prove ordering is by date
        product_id = await _stocked(c, intake("Yogurt", 5, 1.0, "2024-06-01"), intake("Yogurt", 3, 1.0, "2024-05-01"))
        return await c.sales.deduct_stock_for_order(SHOP, product_id, 4)

    result = asyncio.run(scenario())

    assert result.fulfilled == 4
    assert result.is_complete
    assert len(result.depleted) == 1
    assert len(result.touched) == 1
    assert _quantities(c) == {"2024-06-01": 4}
    assert c.snapshot.sales() == []


def test_partial_fill_reports_shortfall_and_conserves_units(tmp_path: Path):
    c = make_container(tmp_path)

    async def scenario():
        await _stocked(c, intake("Yogurt", 5, 1.0, "2024-06-01"), intake("Yogurt", 3, 1.0, "2024-05-01"))
        return await c.sales.record_sale(SHOP, [{"product_name": "Yogurt", "quantity": 20}])

    receipt = asyncio.run(scenario())

    assert receipt.transaction.units == 8
    assert receipt.fulfillments[0].fulfilled == 8
    assert receipt.shortfall == 12
    assert c.store.points("items") == []
    assert all(s.quantity >= 0 for s in c.snapshot.stock_items())
    assert c.inventory.get_all_stock_items(SHOP) == []


def test_strict_sale_raises_without_touching_stock(tmp_path: Path):
    c = make_container(tmp_path)

    async def scenario():
        await _stocked(c, intake("Yogurt", 5, 1.0, "2024-06-01"))
        before = c.store.points("items")
        with pytest.raises(InsufficientStockError):
            await c.sales.record_sale(SHOP, [{"product_name": "Yogurt", "quantity": 3}] * 2, strict=True)
        return before

    before = asyncio.run(scenario())

    assert c.store.points("items") == before
    assert c.store.points("sales") == []
    assert c.inventory.get_all_stock_items(SHOP)[0].quantity == 5


def test_record_sale_validates_cart(tmp_path: Path):
    c = make_container(tmp_path)

    async def scenario():
        await _stocked(c, intake("Yogurt", 5, 1.0, "2024-06-01"))
        with pytest.raises(ValidationError):
            await c.sales.record_sale(SHOP, [])
        with pytest.raises(ValidationError):
            await c.sales.record_sale(SHOP, [{"product_name": "Yogurt", "quantity": 0}])
        with pytest.raises(NotFoundError):
            await c.sales.record_sale(SHOP, [{"product_name": "Caviar", "quantity": 1}])

    asyncio.run(scenario())


def test_milk_sale_spans_two_batches_at_their_own_prices(tmp_path: Path):
    c = make_container(tmp_path)

    async def scenario():
        await _stocked(
            c,
            intake("Milk", 10, 1.0, "2024-07-01", sell_price=2.5),
            intake("Milk", 10, 0.8, "2024-05-01", sell_price=2.0),
        )
        return await c.sales.record_sale(SHOP, [{"product_name": "Milk", "quantity": 15}])

    receipt = asyncio.run(scenario())
    sale = receipt.transaction

    assert [(li.quantity, li.price_at_sale) for li in sale.items] == [(10, 2.0), (5, 2.5)]
    assert sale.units == 15
    assert sale.total_amount == 32.5
    assert _quantities(c) == {"2024-07-01": 5}
    assert len(c.store.points("sales")) == 1
    assert c.sales.list_sales(SHOP) == [sale]


def test_price_falls_back_to_markup_over_cost(tmp_path: Path):
    c = make_container(tmp_path)

    async def scenario():
        product_id = await _stocked(c, intake("Bread", 2, 2.0, "2024-05-01"))
        item = c.inventory.get_all_stock_items(SHOP)[0]
        assert item.sell_price == 2.8
        return await c.sales.record_sale(SHOP, [{"product_id": product_id, "quantity": 1}])

    receipt = asyncio.run(scenario())

    assert receipt.transaction.items[0].price_at_sale == 2.8


def test_concurrent_sales_never_oversell(tmp_path: Path):
    c = make_container(tmp_path)

    async def scenario():
        product_id = await _stocked(c, intake("Yogurt", 5, 1.0, "2024-06-01"))
        return await asyncio.gather(
            c.sales.deduct_stock_for_order(SHOP, product_id, 3),
            c.sales.deduct_stock_for_order(SHOP, product_id, 3),
        )

    first, second = asyncio.run(scenario())

    assert first.fulfilled + second.fulfilled == 5
    assert c.store.points("items") == []


def test_fefo_order_compares_time_of_day():
    items = [
        StockItem("s", "p", "b1", 1, "2024-05-01T18:00:00", inventory_uuid="evening"),
        StockItem("s", "p", "b2", 1, "2024-05-01T12:00:00Z", inventory_uuid="noon"),
        StockItem("s", "p", "b3", 1, "2024-05-01T06:00:00", inventory_uuid="morning"),
        StockItem("s", "p", "b4", 1, "2024-05-01", inventory_uuid="midnight"),
    ]

    assert [i.inventory_uuid for i in fefo_order(items)] == ["midnight", "morning", "noon", "evening"]


def test_same_day_stock_is_sold_by_expiry_time(tmp_path: Path):
    c = make_container(tmp_path)

    async def scenario():
        product_id = await _stocked(
            c, intake("Sushi", 2, 3.0, "2024-05-01T20:00:00"), intake("Sushi", 2, 3.0, "2024-05-01T09:00:00")
        )
        return await c.sales.deduct_stock_for_order(SHOP, product_id, 2)

    result = asyncio.run(scenario())

    assert result.fulfilled == 2
    assert _quantities(c) == {"2024-05-01T20:00:00": 2}


def test_sale_with_nothing_fulfilled_is_not_recorded(tmp_path: Path):
    c = make_container(tmp_path)

    async def scenario():
        await _stocked(c, intake("Yogurt", 2, 1.0, "2024-06-01"))
        first = await c.sales.record_sale(SHOP, [{"product_name": "Yogurt", "quantity": 2}])
        empty = await c.sales.record_sale(SHOP, [{"product_name": "Yogurt", "quantity": 1}])
        return first, empty

    first, empty = asyncio.run(scenario())

    assert first.recorded
    assert not empty.recorded
    assert empty.transaction.items == ()
    assert empty.shortfall == 1
    assert len(c.store.points("sales")) == 1
    assert c.sales.list_sales(SHOP) == [first.transaction]


def test_overlapping_orders_leave_offers_matching_stock(tmp_path: Path):
    c = make_container(tmp_path, enable_dan=True, dan_feed_url="http://feed.invalid")
    slowed: list[str] = []

    def insert(rows):
        # hold up the first fulfillment event on the wire
        if rows[0]["event_type"] == "inventory.offer.fulfilled" and not slowed:
            slowed.append(rows[0]["event_id"])
            time.sleep(0.3)

    c.dan._insert_rows = insert  # type: ignore[assignment]

    async def scenario():
        product_id = await _stocked(c, intake("Milk", 5, 1.0, "2024-05-01", share_scope=("dan",)))
        await asyncio.gather(
            c.sales.deduct_stock_for_order(SHOP, product_id, 2),
            c.sales.deduct_stock_for_order(SHOP, product_id, 3),
        )
        return await c.dan.list_offers()

    offers = asyncio.run(scenario())

    assert slowed
    assert c.store.points("items") == []
    assert offers == []
    assert c.store.points("dan_inventory") == []
