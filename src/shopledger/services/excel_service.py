from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Optional

from openpyxl import load_workbook

from shopledger.domain.errors import ValidationError
from shopledger.domain.models import SHARE_DAN, SHARE_MARKETPLACE, StockIntakeLine, TenantContext

log = logging.getLogger("shopledger.excel")

REQUIRED = ["product_name", "quantity", "cost"]
OPTIONAL = ["manufacturer", "category", "expiration", "location", "share"]


def _date_cell(value) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    # raises ValueError for junk
    return date.fromisoformat(text[:10]).isoformat()


def _share_cell(value) -> tuple[str, ...]:
    if not value:
        return ()
    scopes = [s.strip().lower() for s in str(value).replace(";", ",").split(",")]
    return tuple(s for s in scopes if s in (SHARE_DAN, SHARE_MARKETPLACE))


class ExcelService:
    def __init__(self, inventory_service):
        self.inventory = inventory_service

    async def import_batch_excel(
        self,
        tenant: TenantContext,
        path: str,
        supplier_name: Optional[str] = None,
        delivery_date: Optional[str] = None,
    ) -> tuple[int, int]:
        """
        Each valid row is one received line of a single delivery.
        Headers:
          product_name | manufacturer | category | quantity | cost | expiration | location | share
        """
        wb = load_workbook(path)
        ws = wb.active

        headers = {}
        for col in range(1, ws.max_column + 1):
            v = ws.cell(row=1, column=col).value
            if isinstance(v, str):
                headers[v.strip().lower()] = col

        for r in REQUIRED:
            if r not in headers:
                raise ValidationError(f"Missing column header: {r}")

        def cell(row: int, name: str):
            col = headers.get(name)
            return ws.cell(row=row, column=col).value if col else None

        lines: list[StockIntakeLine] = []
        skipped = 0

        for row in range(2, ws.max_row + 1):
            name = cell(row, "product_name")
            qty = cell(row, "quantity")
            cost = cell(row, "cost")

            if not name or not str(name).strip():
                skipped += 1
                continue
            if qty is None or cost is None:
                skipped += 1
                continue

            try:
                qty = int(float(qty))
                cost = float(cost)
                expiration = _date_cell(cell(row, "expiration"))
            except (TypeError, ValueError) as e:
                log.warning("excel_row_skipped row=%s error=%s", row, e)
                skipped += 1
                continue

            if qty <= 0 or cost < 0:
                skipped += 1
                continue

            location = cell(row, "location")
            lines.append(
                StockIntakeLine(
                    product_name=str(name).strip(),
                    quantity=qty,
                    buy_price=cost,
                    expiration_date=expiration,
                    manufacturer=str(cell(row, "manufacturer") or "").strip(),
                    category=str(cell(row, "category") or "").strip(),
                    location=str(location).strip() if location else None,
                    share_scope=_share_cell(cell(row, "share")),
                )
            )

        if lines:
            await self.inventory.add_inventory_batch(
                tenant, lines, supplier_name=supplier_name, delivery_date=delivery_date
            )
        log.info("excel_import shop=%s path=%s ok=%s skipped=%s", tenant.shop_id, path, len(lines), skipped)
        return len(lines), skipped
