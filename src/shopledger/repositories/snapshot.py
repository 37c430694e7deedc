from __future__ import annotations

import asyncio
import logging
from collections import Counter
from typing import Optional

from shopledger.domain.errors import ValidationError
from shopledger.domain.models import (
    STATUS_ACTIVE,
    BatchRecord,
    MarketplaceListing,
    Product,
    SaleTransaction,
    StockItem,
    Supplier,
    TenantContext,
)
from shopledger.repositories import payloads
from shopledger.repositories.queries import PointQueries

log = logging.getLogger("shopledger.store")


class LedgerSnapshot:
    """In-process copy of one tenant's ledger.

    The remote store is ground truth. Services update entries here only
    after the store acknowledged the matching write.
    """

    def __init__(self):
        self.tenant: Optional[TenantContext] = None
        self.version = 0
        self._products: dict[str, Product] = {}
        self._suppliers: dict[str, Supplier] = {}
        self._batches: dict[str, BatchRecord] = {}
        self._stock: dict[str, StockItem] = {}
        self._sales: dict[str, SaleTransaction] = {}
        self._listings: dict[str, MarketplaceListing] = {}
        self.last_skipped: dict[str, int] = {}

    def clear(self) -> None:
        self._products.clear()
        self._suppliers.clear()
        self._batches.clear()
        self._stock.clear()
        self._sales.clear()
        self._listings.clear()
        self.last_skipped = {}
        self.version += 1

    def is_resident(self, tenant: TenantContext) -> bool:
        return self.tenant is not None and self.tenant.shop_id == tenant.shop_id

    def ensure_tenant(self, tenant: TenantContext) -> None:
        if not self.is_resident(tenant):
            resident = self.tenant.shop_id if self.tenant else None
            raise ValidationError(f"Shop {tenant.shop_id} is not loaded (resident: {resident}).")

    async def load(self, tenant: TenantContext, queries: PointQueries) -> None:
        shop_id = tenant.shop_id
        item_points, batch_points, supplier_points, sale_points, listing_points = await asyncio.gather(
            queries.fetch_all_points("items", shop_id),
            queries.fetch_all_points("batches", shop_id),
            queries.fetch_all_points("suppliers"),
            queries.fetch_all_points("sales", shop_id),
            queries.fetch_all_points("marketplace", shop_id),
        )

        # products touched by any of the shop's items, empty ones included
        product_ids = [
            p["payload"]["productId"]
            for p in item_points
            if isinstance((p.get("payload") or {}).get("productId"), str)
            and (p.get("payload") or {}).get("shopId") == shop_id
        ]
        product_points = await queries.fetch_points_matching("products", "productId", product_ids)

        self.clear()
        self.tenant = tenant

        skipped: Counter[str] = Counter()
        for point in item_points:
            stock = payloads.stock_from_point(point)
            if stock is None:
                skipped["missing_shop_or_product"] += 1
                continue
            if stock.shop_id != shop_id:
                skipped["foreign_shop"] += 1
                continue
            if stock.quantity <= 0:
                skipped["quantity_zero"] += 1
                continue
            if stock.status != STATUS_ACTIVE:
                skipped[stock.status.lower()] += 1
                continue
            self._stock[stock.inventory_uuid] = stock

        for point in product_points:
            product = payloads.product_from_point(point)
            self._products[product.id] = product

        for point in batch_points:
            batch = payloads.batch_from_point(point)
            if batch is not None and batch.shop_id == shop_id:
                self._batches[batch.id] = batch

        for point in supplier_points:
            supplier = payloads.supplier_from_point(point)
            if supplier.is_registered_for(shop_id):
                self._suppliers[supplier.id] = supplier

        for point in sale_points:
            if (point.get("payload") or {}).get("shopId") != shop_id:
                continue
            sale = payloads.sale_from_point(point)
            self._sales[sale.id] = sale

        for point in listing_points:
            if (point.get("payload") or {}).get("shopId") != shop_id:
                continue
            listing = payloads.listing_from_point(point)
            self._listings[listing.id] = listing

        self.last_skipped = dict(skipped)
        if not item_points:
            log.warning("snapshot_empty shop=%s", shop_id)
        log.info(
            "snapshot_loaded shop=%s items=%s skipped=%s products=%s batches=%s suppliers=%s sales=%s",
            shop_id, len(self._stock), dict(skipped), len(self._products),
            len(self._batches), len(self._suppliers), len(self._sales),
        )

    # --- reads (copies) ----------------------------------------------------

    def stock_items(self) -> list[StockItem]:
        return list(self._stock.values())

    def stock_item(self, inventory_uuid: str) -> Optional[StockItem]:
        return self._stock.get(inventory_uuid)

    def products(self) -> list[Product]:
        return list(self._products.values())

    def product(self, product_id: str) -> Optional[Product]:
        return self._products.get(product_id)

    def product_by_name(self, name: str) -> Optional[Product]:
        wanted = name.strip().lower()
        for product in self._products.values():
            if product.name.strip().lower() == wanted:
                return product
        return None

    def suppliers(self) -> list[Supplier]:
        return list(self._suppliers.values())

    def batches(self) -> list[BatchRecord]:
        return list(self._batches.values())

    def batch(self, batch_id: str) -> Optional[BatchRecord]:
        return self._batches.get(batch_id)

    def sales(self) -> list[SaleTransaction]:
        return list(self._sales.values())

    def listings(self) -> list[MarketplaceListing]:
        return list(self._listings.values())

    # --- write-through mutators --------------------------------------------

    def record_stock(self, stock: StockItem) -> None:
        if stock.quantity > 0 and stock.status == STATUS_ACTIVE:
            self._stock[stock.inventory_uuid] = stock
        else:
            self._stock.pop(stock.inventory_uuid, None)
        self.version += 1

    def discard_stock(self, inventory_uuid: str) -> None:
        self._stock.pop(inventory_uuid, None)
        self.version += 1

    def record_product(self, product: Product) -> None:
        self._products[product.id] = product
        self.version += 1

    def discard_product(self, product_id: str) -> None:
        self._products.pop(product_id, None)
        self.version += 1

    def record_supplier(self, supplier: Supplier) -> None:
        self._suppliers[supplier.id] = supplier
        self.version += 1

    def record_batch(self, batch: BatchRecord) -> None:
        self._batches[batch.id] = batch
        self.version += 1

    def record_sale(self, sale: SaleTransaction) -> None:
        self._sales[sale.id] = sale
        self.version += 1

    def record_listing(self, listing: MarketplaceListing) -> None:
        self._listings[listing.id] = listing
        self.version += 1
