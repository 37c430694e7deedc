from __future__ import annotations

import asyncio
import logging
import os

from shopledger.application.container import AppContainer, build_container
from shopledger.config import get_app_paths
from shopledger.domain.models import TenantContext
from shopledger.logging_config import setup_logging

log = logging.getLogger("shopledger.main")


async def run(container: AppContainer, tenant: TenantContext) -> None:
    status = await container.gate.ensure_base_collections()
    missing = [name for name, ok in status.items() if not ok]
    if missing:
        log.warning("collections_not_ready names=%s", ",".join(missing))

    await container.inventory.switch_tenant(tenant)
    if os.environ.get("SHOPLEDGER_SEED", "").strip().lower() in {"1", "true", "yes"}:
        await container.inventory.seed_tenant(tenant)

    summaries = container.reporting.get_product_summaries(tenant)
    print(f"Shop {tenant.shop_id}: {len(summaries)} products in stock")
    for s in summaries:
        print(
            f"  {s.product_name:<30} {s.total_quantity:>6} units  "
            f"avg cost {s.average_cost_per_unit:.2f}  earliest {s.earliest_expiration}"
        )


def main() -> None:
    paths = get_app_paths()
    setup_logging(paths.logs_dir, level=logging.INFO)

    container = build_container(paths=paths)
    tenant = TenantContext(
        shop_id=os.environ.get("SHOPLEDGER_SHOP_ID", "local-shop"),
        name=os.environ.get("SHOPLEDGER_SHOP_NAME") or None,
    )
    asyncio.run(run(container, tenant))


if __name__ == "__main__":
    main()
