from __future__ import annotations

import asyncio
import logging
import uuid
from collections import Counter
from dataclasses import replace
from datetime import datetime, timezone
from typing import Iterable, Optional

from shopledger.config import Settings
from shopledger.domain.clock import utc_now
from shopledger.domain.errors import AppError, InsufficientStockError, NotFoundError, ValidationError
from shopledger.domain.models import (
    FulfillmentResult,
    SaleLineItem,
    SaleReceipt,
    SaleTransaction,
    StockItem,
    TenantContext,
)
from shopledger.repositories import payloads
from shopledger.repositories.identity import build_placeholder_vector, compose_point_id
from shopledger.repositories.snapshot import LedgerSnapshot
from shopledger.repositories.unit_of_work import StockUnitOfWork, StockWriter
from shopledger.repositories.writer import PointWriter
from shopledger.services.dan_service import DanRegistry

log = logging.getLogger("shopledger.sales")

SALES = "sales"


def _expiry_key(item: StockItem) -> tuple[int, datetime]:
    raw = (item.expiration_date or "").strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        moment = datetime.fromisoformat(raw)
    except ValueError:
        return (1, datetime.max)
    # compare everything as naive UTC; date-only values read as midnight
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    return (0, moment)


def fefo_order(items: Iterable[StockItem]) -> list[StockItem]:
    """Soonest expiration first. Ties keep their incoming order."""
    return sorted(items, key=_expiry_key)


class SalesService:
    def __init__(
        self,
        inventory: StockWriter,
        writer: PointWriter,
        snapshot: LedgerSnapshot,
        dan: DanRegistry,
        settings: Settings,
    ):
        self.inventory = inventory
        self.writer = writer
        self.snapshot = snapshot
        self.dan = dan
        self.settings = settings
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, tenant: TenantContext) -> asyncio.Lock:
        lock = self._locks.get(tenant.shop_id)
        if lock is None:
            lock = self._locks[tenant.shop_id] = asyncio.Lock()
        return lock

    def _price(self, item: StockItem) -> float:
        if item.sell_price is not None:
            return float(item.sell_price)
        return round(item.buy_price * self.settings.retail_markup, 4)

    def _product_id(self, line: dict) -> str:
        product_id = line.get("product_id")
        if product_id:
            return str(product_id)
        name = (line.get("product_name") or "").strip()
        if not name:
            raise ValidationError("Cart line needs product_id or product_name.")
        product = self.snapshot.product_by_name(name)
        if product is None:
            raise NotFoundError(f"Product {name!r} not found.")
        return product.id

    def available(self, tenant: TenantContext, product_id: str) -> int:
        self.snapshot.ensure_tenant(tenant)
        return sum(
            s.quantity
            for s in self.snapshot.stock_items()
            if s.shop_id == tenant.shop_id and s.product_id == product_id and s.quantity > 0
        )

    def _deplete(
        self, uow: StockUnitOfWork, product_id: str, requested: int
    ) -> tuple[FulfillmentResult, list[tuple[StockItem, int]]]:
        remaining = requested
        steps: list[tuple[StockItem, int]] = []
        for item in fefo_order(uow.candidates(product_id)):
            if remaining <= 0:
                break
            take = min(item.quantity, remaining)
            uow.stage(replace(item, quantity=item.quantity - take))
            steps.append((item, take))
            remaining -= take

        fulfilled = requested - remaining
        result = FulfillmentResult(
            product_id=product_id,
            requested=requested,
            fulfilled=fulfilled,
            depleted=tuple(item.inventory_uuid for item, take in steps if take == item.quantity),
            touched=tuple(item.inventory_uuid for item, take in steps if take < item.quantity),
        )
        if fulfilled < requested:
            log.warning(
                "partial_fulfillment product_id=%s requested=%s fulfilled=%s", product_id, requested, fulfilled
            )
        return result, steps

    async def _offer_updates(self, tenant: TenantContext, steps: list[tuple[StockItem, int]]) -> None:
        """Runs under the tenant lock, after commit."""
        for before, take in steps:
            if not self.dan.shares_with_dan(before.share_scope):
                continue
            product = self.snapshot.product(before.product_id)
            committed = self.snapshot.stock_item(before.inventory_uuid)
            remaining = committed.quantity if committed is not None else 0
            try:
                await self.dan.publish_fulfillment(
                    tenant, before, product.name if product else "unknown product", take, remaining
                )
            except AppError as e:
                log.warning("dan_fulfillment_failed shop=%s inventory_uuid=%s error=%s", tenant.shop_id, before.inventory_uuid, e)

    async def deduct_stock_for_order(
        self, tenant: TenantContext, product_id: str, quantity: int, strict: bool = False
    ) -> FulfillmentResult:
        """FEFO deduction without a sale record (inter-shop orders)."""
        self.snapshot.ensure_tenant(tenant)
        if int(quantity) <= 0:
            raise ValidationError("Quantity must be >= 1.")

        async with self._lock(tenant):
            if strict and self.available(tenant, product_id) < quantity:
                raise InsufficientStockError(
                    f"Not enough stock for {product_id}. Available: {self.available(tenant, product_id)}"
                )
            async with StockUnitOfWork(self.inventory, self.snapshot, tenant) as uow:
                result, steps = self._deplete(uow, product_id, int(quantity))
                await uow.commit()
            await self._offer_updates(tenant, steps)

        log.info(
            "order_deducted shop=%s product_id=%s requested=%s fulfilled=%s",
            tenant.shop_id, product_id, result.requested, result.fulfilled,
        )
        return result

    async def record_sale(self, tenant: TenantContext, cart: Iterable[dict], strict: bool = False) -> SaleReceipt:
        """
        cart: [{product_id | product_name, quantity}]
        """
        self.snapshot.ensure_tenant(tenant)
        lines = list(cart)
        if not lines:
            raise ValidationError("Cart is empty.")

        demand: list[tuple[str, int]] = []
        for line in lines:
            qty = int(line.get("quantity") or 0)
            if qty <= 0:
                raise ValidationError("Qty must be >= 1.")
            demand.append((self._product_id(line), qty))

        async with self._lock(tenant):
            if strict:
                # aggregate by product to avoid overselling across lines
                wanted: Counter[str] = Counter()
                for product_id, qty in demand:
                    wanted[product_id] += qty
                for product_id, qty in wanted.items():
                    have = self.available(tenant, product_id)
                    if qty > have:
                        raise InsufficientStockError(f"Not enough stock for {product_id}. Available: {have}")

            fulfillments: list[FulfillmentResult] = []
            all_steps: list[tuple[StockItem, int]] = []
            async with StockUnitOfWork(self.inventory, self.snapshot, tenant) as uow:
                for product_id, qty in demand:
                    result, steps = self._deplete(uow, product_id, qty)
                    fulfillments.append(result)
                    all_steps.extend(steps)
                await uow.commit()

            sale_items = tuple(
                SaleLineItem(
                    product_id=item.product_id,
                    quantity=take,
                    price_at_sale=self._price(item),
                    inventory_uuid=item.inventory_uuid,
                )
                for item, take in all_steps
            )
            sale = SaleTransaction(
                id=str(uuid.uuid4()),
                timestamp=utc_now(),
                items=sale_items,
                total_amount=round(sum(li.quantity * li.price_at_sale for li in sale_items), 2),
            )
            if sale_items:
                recorded = await self._write_sale(tenant, sale)
            else:
                recorded = False
                log.warning("sale_not_recorded shop=%s reason=nothing_fulfilled lines=%s", tenant.shop_id, len(demand))
            await self._offer_updates(tenant, all_steps)

        log.info(
            "sale_recorded shop=%s sale_id=%s lines=%s units=%s total=%.2f recorded=%s",
            tenant.shop_id, sale.id, len(sale.items), sale.units, sale.total_amount, recorded,
        )
        return SaleReceipt(transaction=sale, fulfillments=tuple(fulfillments), recorded=recorded)

    async def _write_sale(self, tenant: TenantContext, sale: SaleTransaction) -> bool:
        point_id = compose_point_id(SALES, sale.id)
        point = self.writer.point(
            SALES,
            point_id,
            build_placeholder_vector(sale.id, self.settings.vector_size),
            payloads.sale_to_payload(sale, tenant.shop_id),
        )
        if not await self.writer.upsert(SALES, [point]):
            log.warning("sale_persist_skipped shop=%s sale_id=%s", tenant.shop_id, sale.id)
            return False
        self.snapshot.record_sale(sale)
        return True

    async def persist_sale(self, tenant: TenantContext, sale: SaleTransaction) -> SaleTransaction:
        await self._write_sale(tenant, sale)
        return sale

    def list_sales(self, tenant: TenantContext, limit: Optional[int] = None) -> list[SaleTransaction]:
        self.snapshot.ensure_tenant(tenant)
        sales = sorted(self.snapshot.sales(), key=lambda s: s.timestamp, reverse=True)
        return sales[:limit] if limit else sales
