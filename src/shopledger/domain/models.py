from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from shopledger.domain.errors import ValidationError

STATUS_ACTIVE = "ACTIVE"
STATUS_EMPTY = "EMPTY"
STATUS_EXPIRED = "EXPIRED"
STOCK_STATUSES = (STATUS_ACTIVE, STATUS_EMPTY, STATUS_EXPIRED)

SHARE_LOCAL = "local"
SHARE_MARKETPLACE = "marketplace"
SHARE_DAN = "dan"


@dataclass(frozen=True)
class TenantContext:
    shop_id: str
    name: Optional[str] = None
    namespace: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.shop_id, str) or not self.shop_id.strip():
            raise ValidationError("Tenant shop_id must be a non-empty string.")
        object.__setattr__(self, "shop_id", self.shop_id.strip())


@dataclass(frozen=True)
class AuditEntry:
    user_id: str
    action: str
    timestamp: str
    shop_id: Optional[str] = None


@dataclass(frozen=True)
class Product:
    id: str
    name: str
    manufacturer: str = ""
    category: str = ""
    description: str = ""
    default_supplier_id: Optional[str] = None
    images: tuple[dict, ...] = ()
    audit: tuple[AuditEntry, ...] = ()
    embeddings: Optional[list[float]] = None


@dataclass(frozen=True)
class Supplier:
    id: str
    name: str
    shop_id: Optional[str] = None
    linked_user_id: Optional[str] = None
    contact_email: str = ""
    metadata: dict = field(default_factory=dict)

    def is_registered_for(self, shop_id: str) -> bool:
        return self.shop_id == shop_id or self.linked_user_id is not None


@dataclass(frozen=True)
class BatchLineItem:
    product_id: str
    quantity: int
    cost: float
    product_name: str = ""


@dataclass(frozen=True)
class BatchRecord:
    id: str
    shop_id: str
    delivery_date: str
    supplier_id: Optional[str] = None
    inventory_date: Optional[str] = None
    invoice_number: Optional[str] = None
    documents: tuple[dict, ...] = ()
    line_items: tuple[BatchLineItem, ...] = ()
    created_at: Optional[str] = None
    created_by: Optional[str] = None


@dataclass(frozen=True)
class StockItem:
    shop_id: str
    product_id: str
    batch_id: str
    quantity: int
    expiration_date: str
    buy_price: float = 0.0
    inventory_uuid: Optional[str] = None
    supplier_id: Optional[str] = None
    sell_price: Optional[float] = None
    location: Optional[str] = None
    status: str = STATUS_ACTIVE
    scan_metadata: Optional[dict] = None
    images: tuple[dict, ...] = ()
    share_scope: tuple[str, ...] = (SHARE_LOCAL,)
    share_proof_hash: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.quantity > 0 and self.status == STATUS_ACTIVE


@dataclass(frozen=True)
class SaleLineItem:
    product_id: str
    quantity: int
    price_at_sale: float
    inventory_uuid: Optional[str] = None


@dataclass(frozen=True)
class SaleTransaction:
    id: str
    timestamp: str
    items: tuple[SaleLineItem, ...]
    total_amount: float
    source: str = "pos"

    @property
    def units(self) -> int:
        return sum(line.quantity for line in self.items)


@dataclass(frozen=True)
class MarketplaceListing:
    id: str
    product_id: str
    product_name: str
    quantity: int
    price: float


@dataclass(frozen=True)
class BatchShare:
    batch_id: str
    quantity: int
    expiration_date: str


@dataclass(frozen=True)
class ProductSummary:
    product_id: str
    product_name: str
    manufacturer: str
    category: str
    total_quantity: int
    average_cost_per_unit: float
    earliest_expiration: str
    average_sell_price: Optional[float] = None
    supplier_ids: tuple[str, ...] = ()
    batches: tuple[BatchShare, ...] = ()


@dataclass(frozen=True)
class FulfillmentResult:
    product_id: str
    requested: int
    fulfilled: int
    depleted: tuple[str, ...] = ()
    touched: tuple[str, ...] = ()

    @property
    def shortfall(self) -> int:
        return self.requested - self.fulfilled

    @property
    def is_complete(self) -> bool:
        return self.shortfall == 0


@dataclass(frozen=True)
class SaleReceipt:
    transaction: SaleTransaction
    fulfillments: tuple[FulfillmentResult, ...]
    # False when nothing was fulfilled or the store skipped the write
    recorded: bool = True

    @property
    def shortfall(self) -> int:
        return sum(f.shortfall for f in self.fulfillments)


@dataclass(frozen=True)
class PolicyCondition:
    field: str
    operator: str
    value: Any


@dataclass(frozen=True)
class PolicyAction:
    type: str
    params: dict = field(default_factory=dict)


@dataclass(frozen=True)
class PolicyDescriptor:
    id: str
    shop_id: str
    name: str
    event_type: str
    conditions: tuple[PolicyCondition, ...] = ()
    actions: tuple[PolicyAction, ...] = ()
    enabled: bool = True
    scope: str = "inventory"
    version: str = "1.0"
    description: str = ""
    author: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass(frozen=True)
class PolicyRunLog:
    id: str
    policy_id: str
    shop_id: str
    event_type: str
    outcome: str
    created_at: str
    notes: str = ""
    event_payload: Optional[dict] = None


@dataclass(frozen=True)
class DanInventoryOffer:
    inventory_uuid: str
    shop_id: str
    product_id: str
    product_name: str
    quantity: int
    expiration_date: str
    share_scope: tuple[str, ...]
    location_bucket: Optional[str] = None
    sell_price: Optional[float] = None
    shop_name: Optional[str] = None
    proof_hash: Optional[str] = None
    updated_at: str = ""


@dataclass(frozen=True)
class DanActor:
    public_key: str
    fingerprint: str
    signature: str


@dataclass(frozen=True)
class DanEventRecord:
    event_id: str
    event_type: str
    shop_id: str
    payload: dict
    share_scope: tuple[str, ...]
    proofs: dict
    actor: DanActor
    created_at: str
    namespace: Optional[str] = None
    vector_context: Optional[list[float]] = None


@dataclass(frozen=True)
class StockIntakeLine:
    """One received product line of a delivery, before it becomes a StockItem."""

    product_name: str
    quantity: int
    buy_price: float
    expiration_date: Optional[str] = None
    manufacturer: str = ""
    category: str = ""
    sell_price: Optional[float] = None
    location: Optional[str] = None
    share_scope: tuple[str, ...] = (SHARE_LOCAL,)
    scan_metadata: Optional[dict] = None
    images: tuple[dict, ...] = ()
