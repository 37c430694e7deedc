from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from typing import Iterable, Optional

from shopledger.domain.clock import utc_now
from shopledger.domain.errors import NotFoundError, ValidationError
from shopledger.domain.models import AuditEntry, BatchLineItem, BatchRecord, Product, Supplier, TenantContext
from shopledger.repositories import payloads
from shopledger.repositories.contracts import EmbeddingService
from shopledger.repositories.identity import build_placeholder_vector, compose_point_id, resolve_vector
from shopledger.repositories.queries import PointQueries
from shopledger.repositories.snapshot import LedgerSnapshot
from shopledger.repositories.writer import PointWriter

log = logging.getLogger("shopledger.catalog")


class CatalogService:
    """Products, suppliers and delivery batch records."""

    def __init__(
        self,
        writer: PointWriter,
        snapshot: LedgerSnapshot,
        embedder: EmbeddingService,
        queries: PointQueries,
        vector_size: int = 768,
    ):
        self.writer = writer
        self.snapshot = snapshot
        self.embedder = embedder
        self.queries = queries
        self.vector_size = vector_size

    # --- products ----------------------------------------------------------

    async def upsert_product(
        self, tenant: TenantContext, product: Product, audit_entry: Optional[AuditEntry] = None
    ) -> Product:
        self.snapshot.ensure_tenant(tenant)
        if audit_entry is not None:
            product = replace(product, audit=product.audit + (audit_entry,))

        candidate = product.embeddings or await self.embedder.embed_text(product.name)
        vector = resolve_vector(candidate, product.id, f"products:{product.id}", self.vector_size)
        # only keep real embeddings in the payload
        real = vector if candidate is not None and vector == candidate else None
        product = replace(product, embeddings=real)

        point = self.writer.point(
            "products", compose_point_id("products", product.id), vector, payloads.product_to_payload(product, real)
        )
        if await self.writer.upsert("products", [point]):
            self.snapshot.record_product(product)
        return product

    async def create_product(
        self,
        tenant: TenantContext,
        name: str,
        manufacturer: str = "",
        category: str = "",
        description: str = "",
        default_supplier_id: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Product:
        if not name or not name.strip():
            raise ValidationError("Product name is required.")
        product = Product(
            id=str(uuid.uuid4()),
            name=name.strip(),
            manufacturer=manufacturer.strip(),
            category=category.strip(),
            description=description.strip(),
            default_supplier_id=default_supplier_id,
        )
        entry = AuditEntry(user_id=actor or tenant.shop_id, action="created", timestamp=utc_now(), shop_id=tenant.shop_id)
        created = await self.upsert_product(tenant, product, entry)
        log.info("product_created shop=%s product_id=%s name=%s", tenant.shop_id, created.id, created.name)
        return created

    async def resolve_product(
        self, tenant: TenantContext, name: str, manufacturer: str = "", category: str = ""
    ) -> Product:
        existing = self.snapshot.product_by_name(name)
        if existing is not None:
            return existing
        return await self.create_product(tenant, name, manufacturer, category)

    async def update_product(
        self, tenant: TenantContext, product_id: str, changes: dict, actor: Optional[str] = None
    ) -> Product:
        self.snapshot.ensure_tenant(tenant)
        existing = self.snapshot.product(product_id)
        if existing is None:
            raise NotFoundError(f"Product {product_id} not found.")
        allowed = {"name", "manufacturer", "category", "description", "default_supplier_id", "images"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Unsupported fields: {', '.join(sorted(unknown))}")

        name = (changes.get("name") or "").strip() or existing.name
        clash = self.snapshot.product_by_name(name)
        if clash is not None and clash.id != product_id:
            raise ValidationError(f"Another product is already named {name!r}.")

        updated = replace(
            existing,
            name=name,
            manufacturer=(changes.get("manufacturer") or "").strip() or existing.manufacturer,
            category=(changes.get("category") or "").strip() or existing.category,
            description=(changes["description"] or "").strip() if "description" in changes else existing.description,
            default_supplier_id=changes.get("default_supplier_id", existing.default_supplier_id),
            images=tuple(changes["images"] or ()) if "images" in changes else existing.images,
            # renamed products get a fresh embedding
            embeddings=existing.embeddings if name == existing.name else None,
        )
        entry = AuditEntry(user_id=actor or tenant.shop_id, action="updated", timestamp=utc_now(), shop_id=tenant.shop_id)
        saved = await self.upsert_product(tenant, updated, entry)
        log.info("product_updated shop=%s product_id=%s fields=%s", tenant.shop_id, product_id, sorted(changes))
        return saved

    async def delete_product(self, tenant: TenantContext, product_id: str) -> bool:
        """Admin delete. Refused while the shop still holds stock of the product."""
        self.snapshot.ensure_tenant(tenant)
        if self.snapshot.product(product_id) is None:
            raise NotFoundError(f"Product {product_id} not found.")
        on_hand = sum(s.quantity for s in self.snapshot.stock_items() if s.product_id == product_id)
        if on_hand > 0:
            raise ValidationError(f"Product {product_id} still has {on_hand} units in stock.")

        if not await self.writer.delete("products", [compose_point_id("products", product_id)]):
            log.warning("product_delete_skipped shop=%s product_id=%s", tenant.shop_id, product_id)
            return False
        self.snapshot.discard_product(product_id)
        log.info("product_deleted shop=%s product_id=%s", tenant.shop_id, product_id)
        return True

    async def search_products(self, tenant: TenantContext, query: str, limit: int = 24) -> list[Product]:
        """Nearest products by name embedding; a blank query lists the catalog."""
        text = (query or "").strip()
        if not text:
            return self.get_products(tenant)[:limit]

        candidate = await self.embedder.embed_text(text)
        vector = resolve_vector(candidate, f"products:search:{text}", "products-search", self.vector_size)
        points = await self.queries.search_with_filters("products", vector, None, limit)
        return [p for p in (payloads.product_from_point(pt) for pt in points) if p.name]

    def get_products(self, tenant: TenantContext) -> list[Product]:
        self.snapshot.ensure_tenant(tenant)
        return sorted(self.snapshot.products(), key=lambda p: p.name.lower())

    def product_name(self, product_id: str) -> str:
        product = self.snapshot.product(product_id)
        return product.name if product else "unknown product"

    # --- suppliers ---------------------------------------------------------

    async def upsert_supplier(self, tenant: TenantContext, supplier: Supplier) -> Supplier:
        self.snapshot.ensure_tenant(tenant)
        candidate = await self.embedder.embed_text(supplier.name) if supplier.name else None
        vector = resolve_vector(candidate, supplier.id, f"suppliers:{supplier.id}", self.vector_size)
        point = self.writer.point(
            "suppliers", compose_point_id("suppliers", supplier.id), vector, payloads.supplier_to_payload(supplier)
        )
        if await self.writer.upsert("suppliers", [point]) and supplier.is_registered_for(tenant.shop_id):
            self.snapshot.record_supplier(supplier)
        return supplier

    async def register_local_supplier(self, tenant: TenantContext, name: str, contact_email: str = "") -> Supplier:
        if not name or not name.strip():
            raise ValidationError("Supplier name is required.")
        supplier = Supplier(id=str(uuid.uuid4()), name=name.strip(), shop_id=tenant.shop_id, contact_email=contact_email)
        await self.upsert_supplier(tenant, supplier)
        log.info("supplier_registered shop=%s supplier_id=%s", tenant.shop_id, supplier.id)
        return supplier

    async def resolve_supplier(self, tenant: TenantContext, name: str) -> Supplier:
        wanted = name.strip().lower()
        for supplier in self.snapshot.suppliers():
            if supplier.name.strip().lower() == wanted:
                return supplier
        return await self.register_local_supplier(tenant, name)

    def list_suppliers(self, tenant: TenantContext) -> list[Supplier]:
        self.snapshot.ensure_tenant(tenant)
        return sorted(self.snapshot.suppliers(), key=lambda s: s.name.lower())

    # --- batches -----------------------------------------------------------

    async def upsert_batch(self, tenant: TenantContext, batch: BatchRecord) -> BatchRecord:
        self.snapshot.ensure_tenant(tenant)
        if batch.shop_id != tenant.shop_id:
            raise ValidationError("Batch belongs to another shop.")
        vector = resolve_vector(
            build_placeholder_vector(batch.id, self.vector_size), batch.id, f"batches:{batch.id}", self.vector_size
        )
        point = self.writer.point(
            "batches", compose_point_id("batches", batch.id), vector, payloads.batch_to_payload(batch)
        )
        if await self.writer.upsert("batches", [point]):
            self.snapshot.record_batch(batch)
        return batch

    async def create_batch(
        self,
        tenant: TenantContext,
        delivery_date: str,
        line_items: Iterable[BatchLineItem],
        supplier_id: Optional[str] = None,
        invoice_number: Optional[str] = None,
        inventory_date: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> BatchRecord:
        if not delivery_date:
            raise ValidationError("Delivery date is required.")
        batch = BatchRecord(
            id=str(uuid.uuid4()),
            shop_id=tenant.shop_id,
            delivery_date=delivery_date,
            supplier_id=supplier_id,
            inventory_date=inventory_date or delivery_date,
            invoice_number=invoice_number,
            line_items=tuple(line_items),
            created_at=utc_now(),
            created_by=actor or tenant.shop_id,
        )
        return await self.upsert_batch(tenant, batch)

    async def attach_document(self, tenant: TenantContext, batch_id: str, document: dict) -> BatchRecord:
        self.snapshot.ensure_tenant(tenant)
        batch = self.snapshot.batch(batch_id)
        if batch is None:
            raise NotFoundError(f"Batch {batch_id} not found.")
        return await self.upsert_batch(tenant, replace(batch, documents=batch.documents + (dict(document),)))

    def list_batches(self, tenant: TenantContext) -> list[BatchRecord]:
        self.snapshot.ensure_tenant(tenant)
        return sorted(self.snapshot.batches(), key=lambda b: b.delivery_date, reverse=True)
