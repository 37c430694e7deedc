import asyncio
from pathlib import Path

import pytest

from conftest import intake, make_container
from shopledger.domain.errors import NotFoundError, ValidationError
from shopledger.domain.models import TenantContext
from shopledger.repositories.identity import compose_point_id

SHOP = TenantContext("shop-1", name="Corner Shop")
OTHER = TenantContext("shop-2", name="Kiosk")


def _product_payload(c, product_id: str) -> dict:
    wanted = compose_point_id("products", product_id)
    return next(p["payload"] for p in c.store.points("products") if p["id"] == wanted)


def test_update_product_renames_and_appends_audit(tmp_path: Path):
    c = make_container(tmp_path)

    async def scenario():
        await c.inventory.switch_tenant(SHOP)
        await c.inventory.add_inventory_batch(SHOP, [intake("Milk", 2, 1.0, "2024-05-01"), intake("Bread", 1, 1.0, "2024-05-01")])
        milk = c.snapshot.product_by_name("Milk")
        updated = await c.catalog.update_product(SHOP, milk.id, {"name": "Whole Milk", "category": "Dairy"})
        with pytest.raises(ValidationError):
            await c.catalog.update_product(SHOP, milk.id, {"name": "bread"})
        with pytest.raises(ValidationError):
            await c.catalog.update_product(SHOP, milk.id, {"price": 3})
        with pytest.raises(NotFoundError):
            await c.catalog.update_product(SHOP, "nope", {"name": "Ghost"})
        return updated

    updated = asyncio.run(scenario())

    assert updated.name == "Whole Milk"
    assert updated.category == "Dairy"
    assert [a.action for a in updated.audit] == ["created", "updated"]
    assert _product_payload(c, updated.id)["name"] == "Whole Milk"
    assert c.snapshot.product_by_name("Milk") is None
    assert c.catalog.product_name(updated.id) == "Whole Milk"


def test_delete_product_waits_for_stock_to_clear(tmp_path: Path):
    c = make_container(tmp_path)

    async def scenario():
        await c.inventory.switch_tenant(SHOP)
        await c.inventory.add_inventory_batch(SHOP, [intake("Jam", 3, 2.0, "2025-01-01")])
        jam = c.snapshot.product_by_name("Jam")
        with pytest.raises(ValidationError):
            await c.catalog.delete_product(SHOP, jam.id)
        item = c.inventory.get_all_stock_items(SHOP)[0]
        await c.inventory.remove_item(SHOP, item.inventory_uuid)
        deleted = await c.catalog.delete_product(SHOP, jam.id)
        with pytest.raises(NotFoundError):
            await c.catalog.delete_product(SHOP, jam.id)
        return deleted

    assert asyncio.run(scenario()) is True
    assert c.store.points("products") == []
    assert c.catalog.get_products(SHOP) == []


def test_search_products_lists_catalog_for_blank_query(tmp_path: Path):
    c = make_container(tmp_path)

    async def scenario():
        await c.inventory.switch_tenant(SHOP)
        await c.inventory.add_inventory_batch(
            SHOP, [intake("Pears", 1, 1.0, "2024-05-01"), intake("Apples", 1, 1.0, "2024-05-01")]
        )
        blank = await c.catalog.search_products(SHOP, "   ")
        hits = await c.catalog.search_products(SHOP, "fruit", limit=5)
        return blank, hits

    blank, hits = asyncio.run(scenario())

    assert [p.name for p in blank] == ["Apples", "Pears"]
    assert sorted(p.name for p in hits) == ["Apples", "Pears"]


def test_listing_is_stored_and_reloaded_per_shop(tmp_path: Path):
    c = make_container(tmp_path)

    async def scenario():
        await c.inventory.switch_tenant(SHOP)
        await c.inventory.add_inventory_batch(SHOP, [intake("Honey", 10, 4.0, "2025-06-01")])
        honey = c.snapshot.product_by_name("Honey")
        listing = await c.marketplace.list_product(SHOP, honey.id, 4, 6.499)
        with pytest.raises(ValidationError):
            await c.marketplace.list_product(SHOP, honey.id, 0, 6.0)
        with pytest.raises(NotFoundError):
            await c.marketplace.list_product(SHOP, "nope", 1, 6.0)

        await c.inventory.switch_tenant(OTHER)
        theirs = await c.marketplace.get_my_listings(OTHER)
        from_store = await c.marketplace.get_my_listings(SHOP)
        await c.inventory.switch_tenant(SHOP)
        reloaded = await c.marketplace.get_my_listings(SHOP)
        return listing, theirs, from_store, reloaded

    listing, theirs, from_store, reloaded = asyncio.run(scenario())

    assert (listing.product_name, listing.quantity, listing.price) == ("Honey", 4, 6.5)
    assert theirs == []
    assert from_store == [listing]
    assert reloaded == [listing]
    [point] = c.store.points("marketplace")
    assert point["payload"]["shopId"] == "shop-1"
    assert point["id"] == compose_point_id("marketplace", listing.id)
