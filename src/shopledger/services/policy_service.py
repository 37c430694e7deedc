from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import replace
from typing import Any, Optional

import requests

from shopledger.domain.clock import utc_now
from shopledger.domain.errors import AppError, PolicyActionError, ValidationError
from shopledger.domain.models import (
    PolicyAction,
    PolicyCondition,
    PolicyDescriptor,
    PolicyRunLog,
    TenantContext,
)
from shopledger.repositories.policy_store import PolicyStore

log = logging.getLogger("shopledger.policy")

OPERATORS = ("eq", "neq", "gt", "gte", "lt", "lte", "includes", "contains")
ACTION_TYPES = ("notify", "create_dan_event", "tag_inventory", "call_webhook")

OUTCOME_TRIGGERED = "triggered"
OUTCOME_SKIPPED = "skipped"
OUTCOME_ERROR = "error"

LOW_STOCK_THRESHOLD = 10


def value_at_path(payload: dict, path: str) -> Any:
    node: Any = payload
    for key in path.split("."):
        if isinstance(node, dict) and key in node:
            node = node[key]
        else:
            return None
    return node


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def evaluate_condition(condition: PolicyCondition, payload: dict) -> bool:
    actual = value_at_path(payload, condition.field)
    expected = condition.value
    op = condition.operator

    if op == "eq":
        return actual == expected
    if op == "neq":
        return actual != expected
    if op in ("gt", "gte", "lt", "lte"):
        if isinstance(actual, bool) or not isinstance(actual, (int, float)):
            return False
        bound = _number(expected)
        if bound is None:
            return False
        return {
            "gt": actual > bound,
            "gte": actual >= bound,
            "lt": actual < bound,
            "lte": actual <= bound,
        }[op]
    if op in ("includes", "contains"):
        if isinstance(actual, (list, tuple)):
            return expected in actual
        if isinstance(actual, str):
            return str(expected).lower() in actual.lower()
        return False
    return False


def default_policy(tenant: TenantContext) -> PolicyDescriptor:
    now = utc_now()
    return PolicyDescriptor(
        id=str(uuid.uuid4()),
        shop_id=tenant.shop_id,
        name="Auto-flag low inventory offers",
        description=(
            f"Warns when a DAN offer is created with quantity below {LOW_STOCK_THRESHOLD} units "
            "so the shop can replenish locally before sharing."
        ),
        event_type="inventory.offer.created",
        conditions=(
            PolicyCondition("quantity", "lt", LOW_STOCK_THRESHOLD),
            PolicyCondition("shareScope", "includes", "dan"),
        ),
        actions=(
            PolicyAction(
                "notify",
                {
                    "message": (
                        f"DAN offer shared while stock is below {LOW_STOCK_THRESHOLD} units. "
                        "Confirm replenishment or adjust sharing scope."
                    )
                },
            ),
            PolicyAction("create_dan_event", {"trigger": "policy.auto-alert", "shopName": tenant.name or "unknown shop"}),
        ),
        author="system",
        created_at=now,
        updated_at=now,
    )


class PolicyEngine:
    def __init__(self, store: PolicyStore, webhook_timeout: float = 10.0):
        self.store = store
        self.webhook_timeout = webhook_timeout
        self.publisher = None
        self.notifications: list[dict] = []

    def bind_publisher(self, publisher) -> None:
        """``publisher`` exposes ``publish_event``; used by ``create_dan_event`` actions."""
        self.publisher = publisher

    def seed_default_policy(self, tenant: TenantContext) -> None:
        if self.store.get_policies(tenant.shop_id):
            return
        self.store.save_policies(tenant.shop_id, [default_policy(tenant)])
        log.info("policy_seeded shop=%s", tenant.shop_id)

    def upsert_policy(self, policy: PolicyDescriptor) -> PolicyDescriptor:
        for c in policy.conditions:
            if c.operator not in OPERATORS:
                raise ValidationError(f"Unknown condition operator: {c.operator}")
        for a in policy.actions:
            if a.type not in ACTION_TYPES:
                raise ValidationError(f"Unknown action type: {a.type}")

        policies = self.store.get_policies(policy.shop_id)
        now = utc_now()
        for i, existing in enumerate(policies):
            if existing.id == policy.id:
                policies[i] = replace(policy, created_at=existing.created_at, updated_at=now)
                saved = policies[i]
                break
        else:
            saved = replace(policy, created_at=now, updated_at=now)
            policies.append(saved)

        self.store.save_policies(policy.shop_id, policies)
        log.info("policy_saved shop=%s policy_id=%s event=%s", policy.shop_id, policy.id, policy.event_type)
        return saved

    def get_policies(self, tenant: TenantContext) -> list[PolicyDescriptor]:
        return self.store.get_policies(tenant.shop_id)

    def recent_runs(self, tenant: TenantContext, limit: int = 20) -> list[PolicyRunLog]:
        return self.store.get_runs(tenant.shop_id, limit)

    def _post_webhook(self, url: str, body: dict) -> None:
        r = requests.post(url, json=body, timeout=self.webhook_timeout)
        r.raise_for_status()

    async def _execute(self, action: PolicyAction, policy: PolicyDescriptor, tenant: TenantContext, event_type: str, payload: dict) -> None:
        if action.type == "notify":
            message = action.params.get("message") or f'Policy "{policy.name}" triggered for event {event_type}'
            self.notifications.append({"shop_id": tenant.shop_id, "policy_id": policy.id, "message": message})
            log.info("policy_notify shop=%s policy_id=%s message=%s", tenant.shop_id, policy.id, message)
        elif action.type == "create_dan_event":
            if self.publisher is None:
                return
            await self.publisher.publish_event(
                tenant,
                "policy.trigger.executed",
                {
                    "policyId": policy.id,
                    "policyName": policy.name,
                    "scope": policy.scope,
                    "trigger": action.params.get("trigger") or "policy.action",
                    "eventPayload": payload,
                },
            )
        elif action.type == "tag_inventory":
            log.debug("policy_tag_inventory_queued policy_id=%s params=%s", policy.id, action.params)
        elif action.type == "call_webhook":
            url = action.params.get("url")
            if not url:
                return
            body = {"policyId": policy.id, "policyName": policy.name, "payload": payload}
            try:
                await asyncio.to_thread(self._post_webhook, url, body)
            except requests.RequestException as e:
                raise PolicyActionError(f"Webhook {url} failed: {e}") from e
        else:
            log.warning("policy_unknown_action policy_id=%s type=%s", policy.id, action.type)

    async def evaluate(
        self,
        tenant: TenantContext,
        event_type: str,
        payload: dict,
        proofs: Optional[dict] = None,
    ) -> list[PolicyRunLog]:
        self.seed_default_policy(tenant)
        matching = [p for p in self.store.get_policies(tenant.shop_id) if p.enabled and p.event_type == event_type]

        runs: list[PolicyRunLog] = []
        for policy in matching:
            passed = all(evaluate_condition(c, payload) for c in policy.conditions)
            outcome = OUTCOME_TRIGGERED if passed else OUTCOME_SKIPPED
            notes = f"Policy {policy.name} triggered" if passed else "Condition check failed"

            if passed:
                try:
                    for action in policy.actions:
                        await self._execute(action, policy, tenant, event_type, payload)
                except AppError as e:
                    outcome = OUTCOME_ERROR
                    notes = f"Action error: {e}"
                    log.warning("policy_action_failed shop=%s policy_id=%s error=%s", tenant.shop_id, policy.id, e)

            run = PolicyRunLog(
                id=str(uuid.uuid4()),
                policy_id=policy.id,
                shop_id=tenant.shop_id,
                event_type=event_type,
                outcome=outcome,
                created_at=utc_now(),
                notes=notes,
                event_payload=dict(payload),
            )
            self.store.append_run(run)
            runs.append(run)
            log.info(
                "policy_run shop=%s policy_id=%s event=%s outcome=%s proof=%s",
                tenant.shop_id, policy.id, event_type, outcome, (proofs or {}).get("hash"),
            )

        return runs
