from __future__ import annotations

import logging
import uuid

from shopledger.config import Settings
from shopledger.domain.errors import NotFoundError, ValidationError
from shopledger.domain.models import MarketplaceListing, TenantContext
from shopledger.repositories import payloads
from shopledger.repositories.identity import build_placeholder_vector, compose_point_id
from shopledger.repositories.queries import PointQueries
from shopledger.repositories.snapshot import LedgerSnapshot
from shopledger.repositories.writer import PointWriter

log = logging.getLogger("shopledger.marketplace")

MARKETPLACE = "marketplace"


class MarketplaceService:
    """Listings a shop puts up on the peer marketplace."""

    def __init__(self, writer: PointWriter, queries: PointQueries, snapshot: LedgerSnapshot, settings: Settings):
        self.writer = writer
        self.queries = queries
        self.snapshot = snapshot
        self.settings = settings

    async def list_product(
        self, tenant: TenantContext, product_id: str, quantity: int, price: float
    ) -> MarketplaceListing:
        self.snapshot.ensure_tenant(tenant)
        product = self.snapshot.product(product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found.")
        if int(quantity) <= 0:
            raise ValidationError("Quantity must be >= 1.")
        if float(price) < 0:
            raise ValidationError("Price must be >= 0.")

        listing = MarketplaceListing(
            id=str(uuid.uuid4()),
            product_id=product.id,
            product_name=product.name,
            quantity=int(quantity),
            price=round(float(price), 2),
        )
        point = self.writer.point(
            MARKETPLACE,
            compose_point_id(MARKETPLACE, listing.id),
            build_placeholder_vector(listing.id, self.settings.vector_size),
            payloads.listing_to_payload(listing, tenant.shop_id),
        )
        if not await self.writer.upsert(MARKETPLACE, [point]):
            log.warning("listing_skipped shop=%s product_id=%s", tenant.shop_id, product.id)
            return listing

        self.snapshot.record_listing(listing)
        log.info(
            "listing_created shop=%s listing_id=%s product=%s quantity=%s price=%.2f",
            tenant.shop_id, listing.id, product.name, listing.quantity, listing.price,
        )
        return listing

    async def get_my_listings(self, tenant: TenantContext) -> list[MarketplaceListing]:
        if self.snapshot.is_resident(tenant):
            listings = self.snapshot.listings()
        else:
            points = await self.queries.fetch_all_points(MARKETPLACE, tenant.shop_id)
            listings = [
                payloads.listing_from_point(p)
                for p in points
                if (p.get("payload") or {}).get("shopId") == tenant.shop_id
            ]
        return sorted(listings, key=lambda li: li.product_name.lower())
