from __future__ import annotations

import logging
from typing import Iterable, Optional

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.table import Table, TableStyleInfo

from shopledger.domain.models import STATUS_ACTIVE, BatchShare, Product, ProductSummary, StockItem, TenantContext
from shopledger.repositories.snapshot import LedgerSnapshot

log = logging.getLogger("shopledger.reporting")


def summarize_products(
    stock_items: Iterable[StockItem],
    products: Iterable[Product],
    registered_supplier_ids: Iterable[str],
    markup: float = 1.4,
) -> list[ProductSummary]:
    """Per-product totals over active stock, weighted by units.

    Products whose suppliers all fall outside ``registered_supplier_ids``
    are dropped; products without any supplier are kept.
    """
    by_id = {p.id: p for p in products}
    registered = set(registered_supplier_ids)
    acc: dict[str, dict] = {}

    for item in stock_items:
        if item.quantity <= 0 or item.status != STATUS_ACTIVE:
            continue
        product = by_id.get(item.product_id)
        if product is None:
            continue

        entry = acc.setdefault(
            product.id,
            {
                "product": product,
                "quantity": 0,
                "cost": 0.0,
                "sell": 0.0,
                "earliest": item.expiration_date,
                "suppliers": [],
                "batches": [],
            },
        )
        sell_price = item.sell_price if item.sell_price is not None else item.buy_price * markup
        entry["quantity"] += item.quantity
        entry["cost"] += item.buy_price * item.quantity
        entry["sell"] += sell_price * item.quantity
        if item.expiration_date < entry["earliest"]:
            entry["earliest"] = item.expiration_date
        if item.supplier_id and item.supplier_id not in entry["suppliers"]:
            entry["suppliers"].append(item.supplier_id)
        entry["batches"].append(BatchShare(str(item.batch_id), item.quantity, item.expiration_date))

    out: list[ProductSummary] = []
    for entry in acc.values():
        suppliers = entry["suppliers"]
        if suppliers and not any(s in registered for s in suppliers):
            continue
        product = entry["product"]
        count = entry["quantity"]
        out.append(
            ProductSummary(
                product_id=product.id,
                product_name=product.name,
                manufacturer=product.manufacturer,
                category=product.category,
                total_quantity=count,
                average_cost_per_unit=entry["cost"] / count,
                earliest_expiration=entry["earliest"],
                average_sell_price=entry["sell"] / count,
                supplier_ids=tuple(s for s in suppliers if s in registered),
                batches=tuple(entry["batches"]),
            )
        )

    return sorted(out, key=lambda s: s.product_name.lower())


class ReportingService:
    def __init__(self, snapshot: LedgerSnapshot, markup: float = 1.4):
        self.snapshot = snapshot
        self.markup = markup

    def get_product_summaries(self, tenant: TenantContext) -> list[ProductSummary]:
        self.snapshot.ensure_tenant(tenant)
        return summarize_products(
            [s for s in self.snapshot.stock_items() if s.shop_id == tenant.shop_id],
            self.snapshot.products(),
            [s.id for s in self.snapshot.suppliers()],
            self.markup,
        )

    def export_inventory_report_excel(self, tenant: TenantContext, path: str, title: Optional[str] = None) -> None:
        wb = Workbook()

        def money(cell):
            cell.number_format = "#,##0.00"

        def bold_row(ws, r):
            for c in ws[r]:
                c.font = Font(bold=True)

        def set_widths(ws, widths: dict[str, int]):
            for col, w in widths.items():
                ws.column_dimensions[col].width = w

        def add_table(ws, name: str, start_row: int, start_col: int, end_row: int, end_col: int):
            ref = f"{get_column_letter(start_col)}{start_row}:{get_column_letter(end_col)}{end_row}"
            tab = Table(displayName=name, ref=ref)
            tab.tableStyleInfo = TableStyleInfo(
                name="TableStyleMedium9",
                showRowStripes=True,
                showColumnStripes=False,
            )
            ws.add_table(tab)

        summaries = self.get_product_summaries(tenant)
        products = {p.id: p for p in self.snapshot.products()}

        # -------- 1) Summary --------
        ws = wb.active
        ws.title = "Summary"
        ws["A1"] = title or f"Inventory - {tenant.name or tenant.shop_id}"
        ws["A1"].font = Font(bold=True, size=14)

        ws.append([])
        ws.append([
            "Product", "Manufacturer", "Category",
            "Units", "Avg Cost", "Avg Sell Price",
            "Stock Value", "Earliest Expiration", "Batches",
        ])
        bold_row(ws, 3)

        out_row = 4
        for s in summaries:
            ws.append([
                s.product_name, s.manufacturer, s.category,
                int(s.total_quantity), float(s.average_cost_per_unit), float(s.average_sell_price or 0.0),
                float(s.average_cost_per_unit * s.total_quantity), s.earliest_expiration, len(s.batches),
            ])
            money(ws[f"E{out_row}"])
            money(ws[f"F{out_row}"])
            money(ws[f"G{out_row}"])
            out_row += 1

        ws.freeze_panes = "A4"
        set_widths(ws, {"A": 30, "B": 20, "C": 18, "D": 8, "E": 12, "F": 14, "G": 14, "H": 20, "I": 9})
        if ws.max_row >= 4:
            add_table(ws, "ProductSummary", 3, 1, ws.max_row, 9)

        # -------- 2) Stock Detail --------
        ws2 = wb.create_sheet("Stock Detail")
        ws2.append([
            "Inventory UUID", "Product", "Batch", "Supplier",
            "Qty", "Buy Price", "Sell Price", "Expiration", "Location", "Shared",
        ])
        bold_row(ws2, 1)

        items = sorted(self.snapshot.stock_items(), key=lambda i: (i.product_id, i.expiration_date))
        for out_row, item in enumerate(items, start=2):
            product = products.get(item.product_id)
            ws2.append([
                item.inventory_uuid, product.name if product else item.product_id, item.batch_id,
                item.supplier_id or "", int(item.quantity), float(item.buy_price),
                float(item.sell_price) if item.sell_price is not None else None,
                item.expiration_date, item.location or "", ", ".join(item.share_scope),
            ])
            money(ws2[f"F{out_row}"])
            money(ws2[f"G{out_row}"])

        ws2.freeze_panes = "A2"
        set_widths(ws2, {"A": 38, "B": 30, "C": 38, "D": 38, "E": 6, "F": 12, "G": 12, "H": 14, "I": 16, "J": 16})
        if ws2.max_row >= 2:
            add_table(ws2, "StockDetail", 1, 1, ws2.max_row, 10)

        wb.save(path)
        log.info("inventory_report_exported shop=%s path=%s products=%s", tenant.shop_id, path, len(summaries))
