from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from shopledger.domain.models import PolicyAction, PolicyCondition, PolicyDescriptor, PolicyRunLog

log = logging.getLogger("shopledger.policy")

RUN_LOG_LIMIT = 50


def policy_to_dict(policy: PolicyDescriptor) -> dict:
    data = asdict(policy)
    data["conditions"] = [asdict(c) for c in policy.conditions]
    data["actions"] = [asdict(a) for a in policy.actions]
    return data


def policy_from_dict(data: dict) -> PolicyDescriptor:
    return PolicyDescriptor(
        id=data["id"],
        shop_id=data["shop_id"],
        name=data.get("name", ""),
        event_type=data["event_type"],
        conditions=tuple(PolicyCondition(**c) for c in data.get("conditions") or ()),
        actions=tuple(PolicyAction(type=a["type"], params=dict(a.get("params") or {})) for a in data.get("actions") or ()),
        enabled=bool(data.get("enabled", True)),
        scope=data.get("scope", "inventory"),
        version=data.get("version", "1.0"),
        description=data.get("description", ""),
        author=data.get("author"),
        created_at=data.get("created_at"),
        updated_at=data.get("updated_at"),
    )


def run_from_dict(data: dict) -> PolicyRunLog:
    return PolicyRunLog(**data)


class PolicyStore:
    """Per-shop policies and run logs, kept in one JSON document."""

    def __init__(self, path: Optional[Path | str] = None):
        self.path = Path(path) if path else None
        self._policies: dict[str, list[dict]] = {}
        self._runs: dict[str, list[dict]] = {}
        self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning("policy_store_unreadable path=%s error=%s", self.path, e)
            return
        self._policies = data.get("policies") or {}
        self._runs = data.get("runs") or {}

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(
            json.dumps({"policies": self._policies, "runs": self._runs}, ensure_ascii=False, indent=2),
            encoding="utf-8",
        )
        tmp.replace(self.path)

    def get_policies(self, shop_id: str) -> list[PolicyDescriptor]:
        return [policy_from_dict(p) for p in self._policies.get(shop_id, [])]

    def save_policies(self, shop_id: str, policies: list[PolicyDescriptor]) -> None:
        self._policies[shop_id] = [policy_to_dict(p) for p in policies]
        self._save()

    def get_runs(self, shop_id: str, limit: Optional[int] = None) -> list[PolicyRunLog]:
        runs = self._runs.get(shop_id, [])
        if limit is not None:
            runs = runs[:limit]
        return [run_from_dict(r) for r in runs]

    def append_run(self, run: PolicyRunLog) -> None:
        runs = self._runs.setdefault(run.shop_id, [])
        runs.insert(0, asdict(run))
        del runs[RUN_LOG_LIMIT:]
        self._save()
