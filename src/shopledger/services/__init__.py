from .catalog_service import CatalogService
from .dan_service import DanRegistry
from .embedding_service import HttpEmbeddingService, NullEmbeddingService
from .excel_service import ExcelService
from .inventory_service import InventoryService
from .marketplace_service import MarketplaceService
from .operations_service import OperationsService
from .policy_service import PolicyEngine
from .reporting_service import ReportingService
from .sales_service import SalesService

__all__ = [
    "CatalogService",
    "DanRegistry",
    "HttpEmbeddingService",
    "NullEmbeddingService",
    "ExcelService",
    "InventoryService",
    "MarketplaceService",
    "OperationsService",
    "PolicyEngine",
    "ReportingService",
    "SalesService",
]
