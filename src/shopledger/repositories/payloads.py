from __future__ import annotations

from typing import Any, Optional

from shopledger.domain.models import (
    STATUS_ACTIVE,
    STATUS_EMPTY,
    SHARE_LOCAL,
    AuditEntry,
    BatchLineItem,
    BatchRecord,
    DanInventoryOffer,
    MarketplaceListing,
    Product,
    SaleLineItem,
    SaleTransaction,
    StockItem,
    Supplier,
)


def _str_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _float_or_none(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def payload_shop_id(payload: dict) -> Optional[str]:
    """Tenant id of a stored payload. Anything but a non-empty string is rejected."""
    return _str_or_none(payload.get("shopId"))


# --- stock items -----------------------------------------------------------

def stock_to_payload(stock: StockItem, embeddings: Optional[list[float]] = None) -> dict:
    return {
        "inventoryUuid": stock.inventory_uuid,
        "shopId": stock.shop_id,
        "productId": stock.product_id,
        "batchId": stock.batch_id or "",
        "supplierId": stock.supplier_id,
        "buyPrice": stock.buy_price,
        "sellPrice": stock.sell_price,
        "quantity": int(stock.quantity),
        "expiration": stock.expiration_date,
        "location": stock.location,
        "status": stock.status,
        "images": list(stock.images),
        "scanMetadata": stock.scan_metadata,
        "createdByUserId": stock.shop_id,
        "createdAt": stock.created_at,
        "updatedAt": stock.updated_at,
        "embeddings": embeddings,
        "shareScope": list(stock.share_scope),
        "shareProofHash": stock.share_proof_hash,
    }


def stock_from_point(point: dict) -> Optional[StockItem]:
    payload = point.get("payload") or {}
    shop_id = payload_shop_id(payload)
    product_id = _str_or_none(payload.get("productId"))
    if shop_id is None or product_id is None:
        return None

    try:
        quantity = int(payload.get("quantity") or 0)
    except (TypeError, ValueError):
        quantity = 0

    return StockItem(
        inventory_uuid=payload.get("inventoryUuid") or str(point.get("id")),
        shop_id=shop_id,
        product_id=product_id,
        batch_id=str(payload.get("batchId") or ""),
        supplier_id=_str_or_none(payload.get("supplierId")),
        quantity=quantity,
        expiration_date=str(payload.get("expiration") or ""),
        buy_price=_float_or_none(payload.get("buyPrice")) or 0.0,
        sell_price=_float_or_none(payload.get("sellPrice")),
        location=_str_or_none(payload.get("location")),
        status=payload.get("status") or (STATUS_ACTIVE if quantity > 0 else STATUS_EMPTY),
        scan_metadata=payload.get("scanMetadata"),
        images=tuple(payload.get("images") or ()),
        share_scope=tuple(payload.get("shareScope") or (SHARE_LOCAL,)),
        share_proof_hash=payload.get("shareProofHash"),
        created_at=payload.get("createdAt"),
        updated_at=payload.get("updatedAt"),
    )


# --- products --------------------------------------------------------------

def product_to_payload(product: Product, embeddings: Optional[list[float]] = None) -> dict:
    return {
        "productId": product.id,
        "name": product.name,
        "manufacturer": product.manufacturer,
        "category": product.category,
        "description": product.description,
        "defaultSupplierId": product.default_supplier_id,
        "images": list(product.images),
        "audit": [
            {"userId": a.user_id, "action": a.action, "timestamp": a.timestamp, "shopId": a.shop_id}
            for a in product.audit
        ],
        "embeddings": embeddings,
    }


def product_from_point(point: dict) -> Product:
    payload = point.get("payload") or {}
    audit = tuple(
        AuditEntry(
            user_id=str(a.get("userId") or ""),
            action=str(a.get("action") or ""),
            timestamp=str(a.get("timestamp") or ""),
            shop_id=a.get("shopId"),
        )
        for a in payload.get("audit") or ()
        if isinstance(a, dict)
    )
    return Product(
        id=payload.get("productId") or str(point.get("id")),
        name=payload.get("name") or "Unnamed Product",
        manufacturer=payload.get("manufacturer") or "",
        category=payload.get("category") or "",
        description=payload.get("description") or "",
        default_supplier_id=_str_or_none(payload.get("defaultSupplierId")),
        images=tuple(payload.get("images") or ()),
        audit=audit,
        embeddings=payload.get("embeddings") or None,
    )


# --- suppliers -------------------------------------------------------------

def supplier_to_payload(supplier: Supplier) -> dict:
    return {
        "supplierId": supplier.id,
        "name": supplier.name,
        "contact": supplier.contact_email,
        "contactEmail": supplier.contact_email,
        "shopId": supplier.shop_id,
        "linkedUserId": supplier.linked_user_id,
        "metadata": dict(supplier.metadata),
    }


def supplier_from_point(point: dict) -> Supplier:
    payload = point.get("payload") or {}
    return Supplier(
        id=payload.get("supplierId") or str(point.get("id")),
        name=payload.get("name") or "Supplier",
        shop_id=_str_or_none(payload.get("shopId")),
        linked_user_id=_str_or_none(payload.get("linkedUserId")),
        contact_email=payload.get("contactEmail") or payload.get("contact") or "",
        metadata=dict(payload.get("metadata") or {}),
    )


# --- batches ---------------------------------------------------------------

def batch_to_payload(batch: BatchRecord) -> dict:
    return {
        "batchId": batch.id,
        "shopId": batch.shop_id,
        "supplierId": batch.supplier_id,
        "deliveryDate": batch.delivery_date,
        "inventoryDate": batch.inventory_date,
        "invoiceNumber": batch.invoice_number,
        "documents": list(batch.documents),
        "lineItems": [
            {"productId": li.product_id, "productName": li.product_name, "quantity": li.quantity, "cost": li.cost}
            for li in batch.line_items
        ],
        "createdAt": batch.created_at,
        "createdByUserId": batch.created_by,
    }


def batch_from_point(point: dict) -> Optional[BatchRecord]:
    payload = point.get("payload") or {}
    shop_id = payload_shop_id(payload)
    if shop_id is None:
        return None
    lines = tuple(
        BatchLineItem(
            product_id=str(li.get("productId") or ""),
            quantity=int(li.get("quantity") or 0),
            cost=float(li.get("cost") or 0.0),
            product_name=li.get("productName") or "",
        )
        for li in payload.get("lineItems") or ()
        if isinstance(li, dict)
    )
    return BatchRecord(
        id=payload.get("batchId") or str(point.get("id")),
        shop_id=shop_id,
        delivery_date=str(payload.get("deliveryDate") or ""),
        supplier_id=_str_or_none(payload.get("supplierId")),
        inventory_date=payload.get("inventoryDate"),
        invoice_number=payload.get("invoiceNumber"),
        documents=tuple(payload.get("documents") or ()),
        line_items=lines,
        created_at=payload.get("createdAt"),
        created_by=payload.get("createdByUserId"),
    )


# --- sales -----------------------------------------------------------------

def sale_to_payload(sale: SaleTransaction, shop_id: str) -> dict:
    return {
        "saleId": sale.id,
        "shopId": shop_id,
        "timestamp": sale.timestamp,
        "lineItems": [
            {
                "productId": li.product_id,
                "quantity": li.quantity,
                "priceAtSale": li.price_at_sale,
                "inventoryUuid": li.inventory_uuid,
            }
            for li in sale.items
        ],
        "totalAmount": sale.total_amount,
        "source": sale.source,
    }


def sale_from_point(point: dict) -> SaleTransaction:
    payload = point.get("payload") or {}
    items = tuple(
        SaleLineItem(
            product_id=str(li.get("productId") or ""),
            quantity=int(li.get("quantity") or 0),
            price_at_sale=float(li.get("priceAtSale") or 0.0),
            inventory_uuid=li.get("inventoryUuid"),
        )
        for li in payload.get("lineItems") or ()
        if isinstance(li, dict)
    )
    return SaleTransaction(
        id=str(payload.get("saleId") or point.get("id")),
        timestamp=str(payload.get("timestamp") or ""),
        items=items,
        total_amount=float(payload.get("totalAmount") or 0.0),
        source=payload.get("source") or "pos",
    )


# --- marketplace -----------------------------------------------------------

def listing_to_payload(listing: MarketplaceListing, shop_id: str) -> dict:
    return {
        "shopId": shop_id,
        "listingId": listing.id,
        "productId": listing.product_id,
        "productName": listing.product_name,
        "quantity": listing.quantity,
        "price": listing.price,
    }


def listing_from_point(point: dict) -> MarketplaceListing:
    payload = point.get("payload") or {}
    return MarketplaceListing(
        id=str(payload.get("listingId") or point.get("id")),
        product_id=str(payload.get("productId") or ""),
        product_name=payload.get("productName") or "",
        quantity=int(payload.get("quantity") or 0),
        price=float(payload.get("price") or 0.0),
    )


# --- DAN offers ------------------------------------------------------------

def offer_to_payload(offer: DanInventoryOffer) -> dict:
    return {
        "inventoryUuid": offer.inventory_uuid,
        "productId": offer.product_id,
        "productName": offer.product_name,
        "quantity": offer.quantity,
        "expirationDate": offer.expiration_date,
        "locationBucket": offer.location_bucket,
        "sellPrice": offer.sell_price,
        "shopId": offer.shop_id,
        "shopName": offer.shop_name,
        "shareScope": list(offer.share_scope),
        "proofHash": offer.proof_hash,
        "updatedAt": offer.updated_at,
    }


def offer_from_point(point: dict) -> DanInventoryOffer:
    payload = point.get("payload") or {}
    return DanInventoryOffer(
        inventory_uuid=payload.get("inventoryUuid") or str(point.get("id")),
        shop_id=payload.get("shopId") or "",
        product_id=payload.get("productId") or "",
        product_name=payload.get("productName") or "",
        quantity=int(payload.get("quantity") or 0),
        expiration_date=payload.get("expirationDate") or "",
        share_scope=tuple(payload.get("shareScope") or (SHARE_LOCAL,)),
        location_bucket=payload.get("locationBucket"),
        sell_price=_float_or_none(payload.get("sellPrice")),
        shop_name=payload.get("shopName"),
        proof_hash=payload.get("proofHash"),
        updated_at=payload.get("updatedAt") or "",
    )
