from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

from shopledger.domain.models import StockItem, TenantContext
from shopledger.repositories.snapshot import LedgerSnapshot

log = logging.getLogger("shopledger.sales")


class StockWriter(Protocol):
    async def persist_entry(
        self, tenant: TenantContext, stock: StockItem, scan_metadata: Optional[dict] = None
    ) -> Optional[StockItem]: ...
    async def delete_entry(self, tenant: TenantContext, stock: StockItem) -> bool: ...


@dataclass
class StockUnitOfWork:
    """Stages stock changes for one fulfillment and writes them through.

    Nothing reaches the store or the snapshot before ``commit``. Leaving the
    block with an exception discards the staged changes.
    """

    writer: StockWriter
    snapshot: LedgerSnapshot
    tenant: TenantContext
    touched: dict[str, StockItem] = field(default_factory=dict)
    removed: dict[str, StockItem] = field(default_factory=dict)

    async def __aenter__(self) -> "StockUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.rollback()

    def current(self, inventory_uuid: str) -> Optional[StockItem]:
        if inventory_uuid in self.removed:
            return None
        return self.touched.get(inventory_uuid) or self.snapshot.stock_item(inventory_uuid)

    def candidates(self, product_id: str) -> list[StockItem]:
        out = []
        for item in self.snapshot.stock_items():
            if item.shop_id != self.tenant.shop_id or item.product_id != product_id:
                continue
            staged = self.current(item.inventory_uuid)
            if staged is not None and staged.quantity > 0:
                out.append(staged)
        return out

    def stage(self, item: StockItem) -> None:
        if item.quantity <= 0:
            self.touched.pop(item.inventory_uuid, None)
            self.removed[item.inventory_uuid] = item
        else:
            self.touched[item.inventory_uuid] = item

    def rollback(self) -> None:
        self.touched.clear()
        self.removed.clear()

    async def commit(self) -> None:
        skipped = 0
        for item in list(self.touched.values()):
            persisted = await self.writer.persist_entry(self.tenant, item)
            if persisted is None:
                skipped += 1
                continue
            self.snapshot.record_stock(persisted)

        for item in list(self.removed.values()):
            if not await self.writer.delete_entry(self.tenant, item):
                skipped += 1
                continue
            self.snapshot.discard_stock(item.inventory_uuid)

        if skipped:
            log.warning("stock_commit_skipped shop=%s writes=%s", self.tenant.shop_id, skipped)
        log.info(
            "stock_committed shop=%s touched=%s removed=%s",
            self.tenant.shop_id, len(self.touched), len(self.removed),
        )
