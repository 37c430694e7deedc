from __future__ import annotations

import json
import logging
import zipfile
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from shopledger.repositories.collections import BASE_COLLECTIONS, CollectionGate
from shopledger.repositories.snapshot import LedgerSnapshot

log = logging.getLogger("shopledger.operations")


@dataclass(frozen=True)
class HealthReport:
    store_mode: str
    collections: dict[str, bool]
    tenant: Optional[str]
    cache_counts: dict[str, int]
    skipped_on_load: dict[str, int]
    logs_count: int
    generated_at: str


class OperationsService:
    def __init__(self, gate: CollectionGate, snapshot: LedgerSnapshot, store_mode: str, logs_dir: Path | str):
        self.gate = gate
        self.snapshot = snapshot
        self.store_mode = store_mode
        self.logs_dir = Path(logs_dir)

    def run_health_check(self) -> HealthReport:
        logs_count = len(list(self.logs_dir.glob("*.log"))) if self.logs_dir.exists() else 0
        snap = self.snapshot
        return HealthReport(
            store_mode=self.store_mode,
            collections={name: self.gate.is_collection_ready(name) for name in BASE_COLLECTIONS},
            tenant=snap.tenant.shop_id if snap.tenant else None,
            cache_counts={
                "products": len(snap.products()),
                "suppliers": len(snap.suppliers()),
                "batches": len(snap.batches()),
                "items": len(snap.stock_items()),
                "sales": len(snap.sales()),
                "listings": len(snap.listings()),
            },
            skipped_on_load=dict(snap.last_skipped),
            logs_count=logs_count,
            generated_at=datetime.now().isoformat(timespec="seconds"),
        )

    def export_diagnostics(self, target_dir: Path | str | None = None) -> Path:
        out_dir = Path(target_dir) if target_dir else self.logs_dir.parent
        out_dir.mkdir(parents=True, exist_ok=True)

        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        zip_path = out_dir / f"diagnostics_{ts}.zip"
        report = self.run_health_check()
        gate_log = [asdict(entry) for entry in self.gate.diagnostics()]

        with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            if self.logs_dir.exists():
                for f in sorted(self.logs_dir.glob("*.log")):
                    zf.write(f, arcname=f"logs/{f.name}")

            zf.writestr("health_report.json", json.dumps(asdict(report), ensure_ascii=False, indent=2))
            zf.writestr("gate_diagnostics.json", json.dumps(gate_log, ensure_ascii=False, indent=2))

        log.info("diagnostics_exported path=%s", zip_path)
        return zip_path
