from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
import uuid
from dataclasses import dataclass, replace
from datetime import date
from pathlib import Path
from typing import Iterable, Optional

import requests

from shopledger.config import Settings
from shopledger.domain.clock import utc_now
from shopledger.domain.errors import ValidationError
from shopledger.domain.models import (
    SHARE_DAN,
    SHARE_LOCAL,
    DanActor,
    DanEventRecord,
    DanInventoryOffer,
    StockItem,
    TenantContext,
)
from shopledger.repositories import payloads
from shopledger.repositories.contracts import EmbeddingService
from shopledger.repositories.identity import resolve_vector
from shopledger.repositories.queries import PointQueries
from shopledger.repositories.writer import PointWriter
from shopledger.services.policy_service import PolicyEngine

log = logging.getLogger("shopledger.dan")

OFFER_COLLECTION = "dan_inventory"

EVENT_OFFER_CREATED = "inventory.offer.created"
EVENT_OFFER_RESERVED = "inventory.offer.reserved"
EVENT_OFFER_FULFILLED = "inventory.offer.fulfilled"
EVENT_BATCH_ATTESTED = "batch.receipt.attested"
EVENT_DELIVERY_CAPACITY = "delivery.capacity.updated"
EVENT_POLICY_EXECUTED = "policy.trigger.executed"
EVENT_TYPES = (
    EVENT_OFFER_CREATED,
    EVENT_OFFER_RESERVED,
    EVENT_OFFER_FULFILLED,
    EVENT_BATCH_ATTESTED,
    EVENT_DELIVERY_CAPACITY,
    EVENT_POLICY_EXECUTED,
)


def normalize_share_scope(scopes: Optional[Iterable[str]]) -> tuple[str, ...]:
    """``local`` always first, duplicates and blanks dropped."""
    out = [SHARE_LOCAL]
    for scope in scopes or ():
        if scope and scope not in out:
            out.append(scope)
    return tuple(out)


def hash_payload(value) -> str:
    serialized = value if isinstance(value, str) else json.dumps(value or {}, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def to_location_bucket(location: Optional[str]) -> Optional[str]:
    if not location or not location.strip():
        return None
    bucket = re.split(r"[\s-]", location.strip())[0]
    return bucket.upper() or None


def to_date_only(value: Optional[str]) -> str:
    if not value:
        return date.today().isoformat()
    return value.split("T")[0]


@dataclass(frozen=True)
class DanKeyMaterial:
    private_key: str
    public_key: str
    fingerprint: str
    derived_at: str


class DanRegistry:
    """Shared cross-tenant feed: signed events plus the offer collection."""

    def __init__(
        self,
        settings: Settings,
        writer: PointWriter,
        queries: PointQueries,
        embedder: EmbeddingService,
        policies: PolicyEngine,
        buffer_path: Optional[Path | str] = None,
        session: Optional[requests.Session] = None,
    ):
        self.settings = settings
        self.writer = writer
        self.queries = queries
        self.embedder = embedder
        self.policies = policies
        self.buffer_path = Path(buffer_path) if buffer_path else None
        self.session = session or requests.Session()
        self._keys: dict[str, DanKeyMaterial] = {}
        self._buffer: list[dict] = self._read_buffer()

    @property
    def enabled(self) -> bool:
        return self.settings.enable_dan

    def shares_with_dan(self, scopes: Optional[Iterable[str]]) -> bool:
        return self.enabled and SHARE_DAN in normalize_share_scope(scopes)

    # --- keys --------------------------------------------------------------

    def derive_keys(self, tenant: TenantContext) -> DanKeyMaterial:
        cached = self._keys.get(tenant.shop_id)
        if cached is not None:
            return cached
        material = f"{tenant.shop_id}:{tenant.namespace or 'global'}:{self.settings.dan_salt}"
        private_key = _sha256(f"{material}:private")
        public_key = _sha256(f"{private_key}:public")
        keys = DanKeyMaterial(private_key, public_key, public_key[:16], utc_now())
        self._keys[tenant.shop_id] = keys
        return keys

    def context(self, tenant: TenantContext) -> dict:
        if not self.enabled:
            return {"enabled": False, "shop_id": tenant.shop_id, "capability_scope": [SHARE_LOCAL], "reason": "flag-disabled"}
        keys = self.derive_keys(tenant)
        return {
            "enabled": True,
            "shop_id": tenant.shop_id,
            "namespace": tenant.namespace,
            "public_key": keys.public_key,
            "fingerprint": keys.fingerprint,
            "capability_scope": [SHARE_LOCAL, SHARE_DAN],
            "reason": "ok",
        }

    # --- event feed --------------------------------------------------------

    def _read_buffer(self) -> list[dict]:
        if self.buffer_path is None or not self.buffer_path.exists():
            return []
        try:
            data = json.loads(self.buffer_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning("dan_buffer_unreadable path=%s error=%s", self.buffer_path, e)
            return []
        return data if isinstance(data, list) else []

    def _write_buffer(self) -> None:
        if self.buffer_path is None:
            return
        self.buffer_path.parent.mkdir(parents=True, exist_ok=True)
        self.buffer_path.write_text(json.dumps(self._buffer, ensure_ascii=False), encoding="utf-8")

    @property
    def buffered_events(self) -> list[dict]:
        return list(self._buffer)

    def _row(self, record: DanEventRecord) -> dict:
        return {
            "event_id": record.event_id,
            "shop_id": record.shop_id,
            "namespace": record.namespace,
            "event_type": record.event_type,
            "payload": record.payload,
            "share_scope": list(record.share_scope),
            "vector_context": record.vector_context,
            "proofs": record.proofs,
            "actor_public_key": record.actor.public_key,
            "actor_fingerprint": record.actor.fingerprint,
            "actor_signature": record.actor.signature,
            "created_at": record.created_at,
        }

    def _insert_rows(self, rows: list[dict]) -> None:
        url = f"{self.settings.dan_feed_url.rstrip('/')}/rest/v1/dan_events"
        headers = {"apikey": self.settings.dan_feed_key, "Authorization": f"Bearer {self.settings.dan_feed_key}"}
        r = self.session.post(url, json=rows, headers=headers, timeout=10)
        r.raise_for_status()

    async def _flush_buffer(self) -> None:
        if not self._buffer or not self.settings.dan_feed_url:
            return
        try:
            await asyncio.to_thread(self._insert_rows, list(self._buffer))
        except requests.RequestException as e:
            log.warning("dan_buffer_flush_failed count=%s error=%s", len(self._buffer), e)
            return
        log.info("dan_buffer_flushed count=%s", len(self._buffer))
        self._buffer = []
        self._write_buffer()

    def _buffer_row(self, row: dict) -> None:
        self._buffer.append(row)
        self._write_buffer()

    async def publish_event(
        self,
        tenant: TenantContext,
        event_type: str,
        payload: dict,
        share_scope: Optional[Iterable[str]] = None,
        vector_context: Optional[list[float]] = None,
        proofs: Optional[dict] = None,
    ) -> Optional[DanEventRecord]:
        if not self.enabled:
            return None
        if event_type not in EVENT_TYPES:
            raise ValidationError(f"Unknown DAN event type: {event_type}")

        keys = self.derive_keys(tenant)
        body = json.loads(json.dumps(payload or {}, default=str))
        base_hash = hash_payload(body)
        record = DanEventRecord(
            event_id=str(uuid.uuid4()),
            event_type=event_type,
            shop_id=tenant.shop_id,
            payload=body,
            share_scope=normalize_share_scope(share_scope),
            proofs={**(proofs or {}), "hash": base_hash},
            actor=DanActor(keys.public_key, keys.fingerprint, _sha256(f"{keys.private_key}:{base_hash}")),
            created_at=utc_now(),
            namespace=tenant.namespace,
            vector_context=vector_context,
        )

        await self._flush_buffer()
        row = self._row(record)
        if not self.settings.dan_feed_url:
            self._buffer_row(row)
            return record

        try:
            await asyncio.to_thread(self._insert_rows, [row])
        except requests.RequestException as e:
            log.warning("dan_publish_failed event=%s error=%s action=buffered", event_type, e)
            self._buffer_row(row)
        else:
            log.info("dan_event_published shop=%s event=%s id=%s", tenant.shop_id, event_type, record.event_id)
        return record

    # --- offers ------------------------------------------------------------

    async def upsert_offer(self, offer: DanInventoryOffer, vector: Optional[list[float]] = None) -> None:
        candidate = vector or await self.embedder.embed_text(
            f"{offer.product_name} {offer.location_bucket or ''} {offer.quantity}"
        )
        resolved = resolve_vector(
            candidate, offer.inventory_uuid, f"{OFFER_COLLECTION}:{offer.inventory_uuid}", self.settings.vector_size
        )
        if not offer.updated_at:
            offer = replace(offer, updated_at=utc_now())
        point = self.writer.point(OFFER_COLLECTION, offer.inventory_uuid, resolved, payloads.offer_to_payload(offer))
        await self.writer.upsert(OFFER_COLLECTION, [point])

    async def remove_offer(self, inventory_uuid: str) -> None:
        await self.writer.delete(OFFER_COLLECTION, [inventory_uuid])

    async def list_offers(self) -> list[DanInventoryOffer]:
        points = await self.queries.fetch_all_points(OFFER_COLLECTION)
        offers = [payloads.offer_from_point(p) for p in points]
        live = [o for o in offers if o.quantity > 0]
        return sorted(live, key=lambda o: (o.expiration_date == "", o.expiration_date))

    # --- ledger hooks ------------------------------------------------------

    async def publish_inventory_offer(
        self,
        tenant: TenantContext,
        stock: StockItem,
        product_name: str,
        supplier_name: Optional[str] = None,
    ) -> None:
        if not self.shares_with_dan(stock.share_scope):
            return

        scope = normalize_share_scope(stock.share_scope)
        payload = {
            "inventoryUuid": stock.inventory_uuid,
            "productId": stock.product_id,
            "productName": product_name,
            "quantity": stock.quantity,
            "expirationDate": to_date_only(stock.expiration_date),
            "locationBucket": to_location_bucket(stock.location),
            "sellPrice": stock.sell_price,
            "batchId": stock.batch_id,
            "supplierId": stock.supplier_id,
            "supplierName": supplier_name,
            "shopId": stock.shop_id,
            "shareScope": list(scope),
        }
        proof_hash = hash_payload(payload)
        vector_context = await self.embedder.embed_text(
            f"{product_name} {stock.quantity} {payload['locationBucket'] or ''}"
        )

        await self.publish_event(
            tenant,
            EVENT_OFFER_CREATED,
            {**payload, "proofHash": proof_hash},
            scope,
            vector_context,
            {"hash": proof_hash, "link": f"store://items/{stock.inventory_uuid}"},
        )
        await self.policies.evaluate(tenant, EVENT_OFFER_CREATED, payload, {"hash": proof_hash})
        await self.upsert_offer(
            DanInventoryOffer(
                inventory_uuid=stock.inventory_uuid,
                shop_id=stock.shop_id,
                product_id=stock.product_id,
                product_name=product_name,
                quantity=stock.quantity,
                expiration_date=payload["expirationDate"],
                share_scope=scope,
                location_bucket=payload["locationBucket"],
                sell_price=stock.sell_price,
                shop_name=tenant.name,
                proof_hash=proof_hash,
            ),
            vector_context,
        )

    async def publish_fulfillment(
        self,
        tenant: TenantContext,
        stock: StockItem,
        product_name: str,
        fulfilled_quantity: int,
        remaining_quantity: Optional[int] = None,
    ) -> None:
        """``stock`` is the item as it was before the deduction.

        ``remaining_quantity`` is the committed ledger quantity; without it
        the remainder is worked out from ``stock``.
        """
        if not self.shares_with_dan(stock.share_scope):
            return

        scope = normalize_share_scope(stock.share_scope)
        if remaining_quantity is None:
            remaining_quantity = stock.quantity - fulfilled_quantity
        remaining = max(remaining_quantity, 0)
        payload = {
            "inventoryUuid": stock.inventory_uuid,
            "productId": stock.product_id,
            "productName": product_name,
            "fulfilledQuantity": fulfilled_quantity,
            "remainingQuantity": remaining,
            "saleTimestamp": utc_now(),
            "batchId": stock.batch_id,
            "shopId": stock.shop_id,
            "shareScope": list(scope),
        }
        proof_hash = hash_payload(payload)
        vector_context = await self.embedder.embed_text(f"{product_name} fulfilled {fulfilled_quantity}")

        await self.publish_event(
            tenant,
            EVENT_OFFER_FULFILLED,
            {**payload, "proofHash": proof_hash},
            scope,
            vector_context,
            {"hash": proof_hash, "link": f"store://items/{stock.inventory_uuid}"},
        )
        await self.policies.evaluate(tenant, EVENT_OFFER_FULFILLED, payload, {"hash": proof_hash})

        if remaining <= 0:
            await self.remove_offer(stock.inventory_uuid)
            return
        await self.upsert_offer(
            DanInventoryOffer(
                inventory_uuid=stock.inventory_uuid,
                shop_id=stock.shop_id,
                product_id=stock.product_id,
                product_name=product_name,
                quantity=remaining,
                expiration_date=to_date_only(stock.expiration_date),
                share_scope=scope,
                location_bucket=to_location_bucket(stock.location),
                sell_price=stock.sell_price,
                shop_name=tenant.name,
                proof_hash=proof_hash,
            )
        )
