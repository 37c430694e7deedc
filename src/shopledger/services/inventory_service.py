from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import date
from typing import Iterable, Optional

from shopledger.config import Settings
from shopledger.domain.clock import utc_now
from shopledger.domain.errors import AppError, NotFoundError, StoreRequestError, ValidationError
from shopledger.domain.models import (
    STATUS_ACTIVE,
    STATUS_EMPTY,
    STATUS_EXPIRED,
    BatchLineItem,
    BatchRecord,
    StockIntakeLine,
    StockItem,
    TenantContext,
)
from shopledger.repositories import payloads
from shopledger.repositories.contracts import EmbeddingService
from shopledger.repositories.identity import resolve_vector
from shopledger.repositories.queries import PointQueries
from shopledger.repositories.snapshot import LedgerSnapshot
from shopledger.repositories.writer import PointWriter
from shopledger.services.catalog_service import CatalogService
from shopledger.services.dan_service import DanRegistry, hash_payload, normalize_share_scope

log = logging.getLogger("shopledger.inventory")

ITEMS = "items"

SEED_SUPPLIER = "Organic Foods Dist."
SEED_LINES = (
    StockIntakeLine(
        product_name="Organic Oat Milk",
        manufacturer="Oatly",
        category="Beverages",
        quantity=50,
        buy_price=2.5,
        expiration_date="2024-12-15",
        location="Shelf A",
    ),
)


def default_expiration(delivery_date: str) -> str:
    """Delivery date plus one year (Feb 29 rolls back to Feb 28)."""
    try:
        delivered = date.fromisoformat(delivery_date[:10])
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid delivery date: {delivery_date!r}") from e
    try:
        return delivered.replace(year=delivered.year + 1).isoformat()
    except ValueError:
        return delivered.replace(year=delivered.year + 1, day=28).isoformat()


def derive_status(quantity: int, current: str = STATUS_ACTIVE) -> str:
    if quantity <= 0:
        return STATUS_EMPTY
    return STATUS_EXPIRED if current == STATUS_EXPIRED else STATUS_ACTIVE


class InventoryService:
    """Stock ledger over the ``items`` collection."""

    def __init__(
        self,
        writer: PointWriter,
        queries: PointQueries,
        snapshot: LedgerSnapshot,
        catalog: CatalogService,
        embedder: EmbeddingService,
        dan: DanRegistry,
        settings: Settings,
    ):
        self.writer = writer
        self.queries = queries
        self.snapshot = snapshot
        self.catalog = catalog
        self.embedder = embedder
        self.dan = dan
        self.settings = settings

    # --- tenant / snapshot -------------------------------------------------

    async def load_snapshot(self, tenant: TenantContext) -> None:
        await self.snapshot.load(tenant, self.queries)

    async def switch_tenant(self, tenant: TenantContext) -> bool:
        if self.snapshot.is_resident(tenant):
            return False
        log.info("tenant_switch from=%s to=%s", self.snapshot.tenant.shop_id if self.snapshot.tenant else None, tenant.shop_id)
        await self.load_snapshot(tenant)
        return True

    def get_all_stock_items(self, tenant: TenantContext) -> list[StockItem]:
        self.snapshot.ensure_tenant(tenant)
        return [s for s in self.snapshot.stock_items() if s.is_active]

    # --- single-entry writes -----------------------------------------------

    def _prepare(self, tenant: TenantContext, stock: StockItem, scan_metadata: Optional[dict]) -> StockItem:
        if stock.shop_id != tenant.shop_id:
            raise ValidationError(f"Stock item belongs to shop {stock.shop_id}, not {tenant.shop_id}.")
        if stock.quantity < 0:
            raise ValidationError("Quantity must be >= 0.")
        if not stock.product_id:
            raise ValidationError("Stock item needs a product.")

        now = utc_now()
        sell_price = stock.sell_price
        if sell_price is None and stock.buy_price:
            sell_price = round(stock.buy_price * self.settings.retail_markup, 4)

        return replace(
            stock,
            inventory_uuid=stock.inventory_uuid or str(uuid.uuid4()),
            sell_price=sell_price,
            status=derive_status(stock.quantity, stock.status),
            scan_metadata=scan_metadata if scan_metadata is not None else stock.scan_metadata,
            expiration_date=stock.expiration_date or now[:10],
            share_scope=normalize_share_scope(stock.share_scope),
            created_at=stock.created_at or now,
            updated_at=now,
        )

    async def _point_for(self, stock: StockItem) -> dict:
        product_name = self.catalog.product_name(stock.product_id)
        candidate = await self.embedder.embed_text(product_name)
        vector = resolve_vector(candidate, stock.inventory_uuid, f"items:{stock.inventory_uuid}", self.settings.vector_size)
        real = vector if candidate is not None and vector == candidate else None
        return self.writer.point(ITEMS, stock.inventory_uuid, vector, payloads.stock_to_payload(stock, real))

    async def persist_entry(
        self, tenant: TenantContext, stock: StockItem, scan_metadata: Optional[dict] = None
    ) -> Optional[StockItem]:
        """Upsert one stock item. The caller updates the snapshot.

        Returns None when the store skipped the write.
        """
        prepared = self._prepare(tenant, stock, scan_metadata)
        point = await self._point_for(prepared)
        if not await self.writer.upsert(ITEMS, [point]):
            log.warning("persist_skipped shop=%s inventory_uuid=%s", tenant.shop_id, prepared.inventory_uuid)
            return None
        return prepared

    async def update_with_external_data(self, tenant: TenantContext, inventory_uuid: str, patch: dict) -> StockItem:
        """Merge scan metadata, images and location into a stored item, keeping its vector."""
        points = await self.writer.retrieve(ITEMS, [inventory_uuid])
        point = points[0] if points else None
        if point is None or payloads.payload_shop_id(point.get("payload") or {}) != tenant.shop_id:
            raise NotFoundError(f"Inventory item {inventory_uuid} not found.")

        payload = dict(point["payload"])
        if patch.get("scan_metadata"):
            payload["scanMetadata"] = {**(payload.get("scanMetadata") or {}), **patch["scan_metadata"]}
        if patch.get("images"):
            payload["images"] = list(payload.get("images") or []) + list(patch["images"])
        if patch.get("location"):
            payload["location"] = patch["location"]
        payload["updatedAt"] = utc_now()

        stored = await self.writer.upsert(ITEMS, [{"id": point["id"], "vector": point.get("vector"), "payload": payload}])
        updated = payloads.stock_from_point({"id": point["id"], "payload": payload})
        if stored and self.snapshot.is_resident(tenant):
            self.snapshot.record_stock(updated)
        log.info("stock_external_update shop=%s inventory_uuid=%s fields=%s", tenant.shop_id, inventory_uuid, sorted(patch))
        return updated

    async def delete_entry(self, tenant: TenantContext, stock: StockItem) -> bool:
        if stock.inventory_uuid:
            return await self.writer.delete(ITEMS, [stock.inventory_uuid])
        # legacy records without a stable id
        return await self.writer.delete_where(
            ITEMS,
            {
                "must": [
                    {"key": "shopId", "match": {"value": tenant.shop_id}},
                    {"key": "productId", "match": {"value": stock.product_id}},
                ]
            },
        )

    async def create_from_batch(
        self,
        tenant: TenantContext,
        batch: BatchRecord,
        line_items: Iterable[BatchLineItem],
        ocr_data: Optional[dict[str, dict]] = None,
    ) -> list[StockItem]:
        fallback_expiration = default_expiration(batch.delivery_date)
        created: list[StockItem] = []
        points: list[dict] = []

        for line in line_items:
            if not line.product_id or line.quantity <= 0:
                continue
            extra = (ocr_data or {}).get(line.product_id) or {}
            stock = self._prepare(
                tenant,
                StockItem(
                    shop_id=tenant.shop_id,
                    product_id=line.product_id,
                    batch_id=batch.id,
                    supplier_id=batch.supplier_id,
                    quantity=int(line.quantity),
                    buy_price=float(line.cost or 0.0),
                    expiration_date=extra.get("expirationDate") or fallback_expiration,
                    images=tuple(extra.get("images") or ()),
                ),
                extra.get("scanMetadata"),
            )
            created.append(stock)
            points.append(await self._point_for(stock))

        if points and await self.writer.upsert(ITEMS, points):
            for stock in created:
                self.snapshot.record_stock(stock)
            log.info("stock_from_batch shop=%s batch_id=%s items=%s", tenant.shop_id, batch.id, len(points))
        return created

    # --- manual edits ------------------------------------------------------

    def _resident_item(self, tenant: TenantContext, inventory_uuid: str) -> StockItem:
        self.snapshot.ensure_tenant(tenant)
        item = self.snapshot.stock_item(inventory_uuid)
        if item is None:
            raise NotFoundError(f"Inventory item {inventory_uuid} not found.")
        return item

    async def update_item(self, tenant: TenantContext, inventory_uuid: str, changes: dict) -> StockItem:
        existing = self._resident_item(tenant, inventory_uuid)
        allowed = {"quantity", "expiration_date", "buy_price", "sell_price", "location"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Unsupported fields: {', '.join(sorted(unknown))}")

        quantity = int(changes.get("quantity", existing.quantity))
        updated = replace(
            existing,
            quantity=quantity,
            expiration_date=changes.get("expiration_date") or existing.expiration_date,
            buy_price=float(changes.get("buy_price", existing.buy_price)),
            sell_price=changes.get("sell_price", existing.sell_price),
            location=changes.get("location", existing.location),
            status=derive_status(quantity, existing.status),
        )
        persisted = await self.persist_entry(tenant, updated)
        if persisted is None:
            raise StoreRequestError(f"Inventory item {inventory_uuid} was not saved: store not ready.", transient=True)
        self.snapshot.record_stock(persisted)
        log.info("stock_updated shop=%s inventory_uuid=%s quantity=%s", tenant.shop_id, inventory_uuid, quantity)
        return persisted

    async def remove_item(self, tenant: TenantContext, inventory_uuid: str) -> None:
        existing = self._resident_item(tenant, inventory_uuid)
        if not await self.delete_entry(tenant, existing):
            raise StoreRequestError(f"Inventory item {inventory_uuid} was not removed: store not ready.", transient=True)
        self.snapshot.discard_stock(inventory_uuid)
        log.info("stock_removed shop=%s inventory_uuid=%s", tenant.shop_id, inventory_uuid)

    # --- intake ------------------------------------------------------------

    async def add_inventory_batch(
        self,
        tenant: TenantContext,
        lines: Iterable[StockIntakeLine],
        supplier_name: Optional[str] = None,
        delivery_date: Optional[str] = None,
        inventory_date: Optional[str] = None,
        invoice_number: Optional[str] = None,
    ) -> BatchRecord:
        self.snapshot.ensure_tenant(tenant)
        lines = list(lines)
        if not lines:
            raise ValidationError("Batch has no lines.")
        for line in lines:
            if not line.product_name or not line.product_name.strip():
                raise ValidationError("Every line needs a product name.")
            if line.quantity <= 0:
                raise ValidationError(f"Quantity for {line.product_name} must be >= 1.")
            if line.buy_price < 0:
                raise ValidationError(f"Cost for {line.product_name} must be >= 0.")

        supplier = await self.catalog.resolve_supplier(tenant, supplier_name) if supplier_name else None
        supplier_id = supplier.id if supplier else None

        product_ids: dict[str, str] = {}
        for line in lines:
            product = await self.catalog.resolve_product(tenant, line.product_name, line.manufacturer, line.category)
            product_ids[line.product_name] = product.id

        delivered = delivery_date or utc_now()[:10]
        batch = await self.catalog.create_batch(
            tenant,
            delivery_date=delivered,
            supplier_id=supplier_id,
            inventory_date=inventory_date,
            invoice_number=invoice_number,
            line_items=[
                BatchLineItem(product_ids[ln.product_name], ln.quantity, ln.buy_price, ln.product_name) for ln in lines
            ],
        )

        for line in lines:
            product_id = product_ids[line.product_name]
            inventory_uuid = str(uuid.uuid4())
            scope = normalize_share_scope(line.share_scope)
            share = self.dan.shares_with_dan(scope)
            stock = StockItem(
                inventory_uuid=inventory_uuid,
                shop_id=tenant.shop_id,
                product_id=product_id,
                batch_id=batch.id,
                supplier_id=supplier_id,
                quantity=line.quantity,
                expiration_date=line.expiration_date or default_expiration(delivered),
                buy_price=line.buy_price,
                sell_price=line.sell_price,
                location=line.location,
                scan_metadata=line.scan_metadata,
                images=line.images,
                share_scope=scope,
                share_proof_hash=hash_payload(
                    {"inventoryUuid": inventory_uuid, "productId": product_id, "batchId": batch.id, "quantity": line.quantity}
                ) if share else None,
            )
            persisted = await self.persist_entry(tenant, stock)
            if persisted is None:
                continue
            self.snapshot.record_stock(persisted)

            if share:
                try:
                    await self.dan.publish_inventory_offer(tenant, persisted, line.product_name, supplier_name)
                except AppError as e:
                    log.warning("dan_offer_failed shop=%s inventory_uuid=%s error=%s", tenant.shop_id, inventory_uuid, e)

        log.info("batch_added shop=%s batch_id=%s lines=%s supplier=%s", tenant.shop_id, batch.id, len(lines), supplier_name)
        return batch

    # --- search / seeding --------------------------------------------------

    async def search_relevant_items(self, tenant: TenantContext, query: str, limit: int = 10) -> list[StockItem]:
        candidate = await self.embedder.embed_text(query)
        vector = resolve_vector(candidate, f"{tenant.shop_id}-query", f"search:{tenant.shop_id}", self.settings.vector_size)
        points = await self.queries.search_with_filters(
            ITEMS, vector, {"shop_id": tenant.shop_id, "status": STATUS_ACTIVE, "quantity_min": 0}, limit
        )
        items = [payloads.stock_from_point(p) for p in points]
        return [s for s in items if s is not None and s.shop_id == tenant.shop_id]

    async def seed_tenant(self, tenant: TenantContext) -> bool:
        """Starter data for a shop with no stock. Returns True when seeded."""
        await self.switch_tenant(tenant)
        if self.snapshot.stock_items():
            return False
        await self.add_inventory_batch(tenant, SEED_LINES, supplier_name=SEED_SUPPLIER)
        await self.load_snapshot(tenant)
        log.info("tenant_seeded shop=%s", tenant.shop_id)
        return True
