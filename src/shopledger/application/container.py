from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from shopledger.config import STORE_MODE_HTTP, STORE_MODE_MEMORY, STORE_MODE_UNAVAILABLE, AppPaths, Settings, get_app_paths
from shopledger.repositories.collections import BASE_COLLECTIONS, COLLECTION_PAYLOAD_INDEXES, CollectionGate
from shopledger.repositories.contracts import EmbeddingService, VectorStore
from shopledger.repositories.memory_store import InMemoryVectorStore
from shopledger.repositories.policy_store import PolicyStore
from shopledger.repositories.queries import PointQueries
from shopledger.repositories.snapshot import LedgerSnapshot
from shopledger.repositories.vector_store import HttpVectorStore
from shopledger.repositories.writer import PointWriter
from shopledger.services.catalog_service import CatalogService
from shopledger.services.dan_service import DanRegistry
from shopledger.services.embedding_service import HttpEmbeddingService, NullEmbeddingService
from shopledger.services.excel_service import ExcelService
from shopledger.services.inventory_service import InventoryService
from shopledger.services.marketplace_service import MarketplaceService
from shopledger.services.operations_service import OperationsService
from shopledger.services.policy_service import PolicyEngine
from shopledger.services.reporting_service import ReportingService
from shopledger.services.sales_service import SalesService


@dataclass(frozen=True)
class AppContainer:
    settings: Settings
    store: Optional[VectorStore]
    gate: CollectionGate
    queries: PointQueries
    writer: PointWriter
    snapshot: LedgerSnapshot
    embedder: EmbeddingService
    catalog: CatalogService
    policies: PolicyEngine
    dan: DanRegistry
    inventory: InventoryService
    sales: SalesService
    reporting: ReportingService
    excel: ExcelService
    marketplace: MarketplaceService
    operations: OperationsService


def provision_memory_store(settings: Settings) -> InMemoryVectorStore:
    store = InMemoryVectorStore()
    for name in BASE_COLLECTIONS:
        store.create_collection(
            name,
            size=settings.vector_size,
            distance=settings.vector_distance,
            indexes=COLLECTION_PAYLOAD_INDEXES.get(name),
        )
    return store


def _build_store(settings: Settings) -> Optional[VectorStore]:
    mode = settings.store_mode
    if mode == STORE_MODE_HTTP:
        return HttpVectorStore(settings.store_url, api_key=settings.store_api_key, timeout=settings.store_timeout)
    if mode == STORE_MODE_MEMORY:
        return provision_memory_store(settings)
    return None


def _build_embedder(settings: Settings) -> EmbeddingService:
    if settings.embedding_api_key:
        return HttpEmbeddingService(
            settings.embedding_api_key, model=settings.embedding_model, base_url=settings.embedding_url
        )
    return NullEmbeddingService()


def build_container(
    settings: Optional[Settings] = None,
    paths: Optional[AppPaths] = None,
    store: Optional[VectorStore] = None,
    embedder: Optional[EmbeddingService] = None,
) -> AppContainer:
    settings = settings or Settings.from_env()
    paths = paths or get_app_paths()
    store = store if store is not None else _build_store(settings)
    embedder = embedder or _build_embedder(settings)

    gate = CollectionGate(store, vector_size=settings.vector_size, distance=settings.vector_distance)
    queries = PointQueries(store, gate, retry_delay=settings.scroll_retry_delay)
    writer = PointWriter(store, gate)
    snapshot = LedgerSnapshot()

    catalog = CatalogService(writer, snapshot, embedder, queries, vector_size=settings.vector_size)
    policies = PolicyEngine(PolicyStore(paths.policies_path))
    dan = DanRegistry(settings, writer, queries, embedder, policies, buffer_path=paths.dan_buffer_path)
    policies.bind_publisher(dan)

    inventory = InventoryService(writer, queries, snapshot, catalog, embedder, dan, settings)
    sales = SalesService(inventory, writer, snapshot, dan, settings)
    reporting = ReportingService(snapshot, markup=settings.retail_markup)
    excel = ExcelService(inventory)
    marketplace = MarketplaceService(writer, queries, snapshot, settings)
    store_mode = settings.store_mode
    if store is not None and store_mode == STORE_MODE_UNAVAILABLE:
        store_mode = "injected"
    operations = OperationsService(gate, snapshot, store_mode, paths.logs_dir)

    return AppContainer(
        settings=settings,
        store=store,
        gate=gate,
        queries=queries,
        writer=writer,
        snapshot=snapshot,
        embedder=embedder,
        catalog=catalog,
        policies=policies,
        dan=dan,
        inventory=inventory,
        sales=sales,
        reporting=reporting,
        excel=excel,
        marketplace=marketplace,
        operations=operations,
    )
