from .models import (
    BatchLineItem,
    BatchRecord,
    FulfillmentResult,
    Product,
    ProductSummary,
    SaleLineItem,
    SaleReceipt,
    SaleTransaction,
    StockIntakeLine,
    StockItem,
    Supplier,
    TenantContext,
)
from .errors import (
    AppError,
    InsufficientStockError,
    NotFoundError,
    PolicyActionError,
    StoreRequestError,
    ValidationError,
)

__all__ = [
    "BatchLineItem",
    "BatchRecord",
    "FulfillmentResult",
    "Product",
    "ProductSummary",
    "SaleLineItem",
    "SaleReceipt",
    "SaleTransaction",
    "StockIntakeLine",
    "StockItem",
    "Supplier",
    "TenantContext",
    "AppError",
    "InsufficientStockError",
    "NotFoundError",
    "PolicyActionError",
    "StoreRequestError",
    "ValidationError",
]
