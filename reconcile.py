# reconcile.py
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

import yaml

from errors import ReconcileFailure

log = logging.getLogger(__name__)

MUTATING_VERBS = ("create", "update", "delete", "add-member", "remove-member", "attach-backend")


@dataclass(frozen=True)
class Action:
    """One remote mutation. Plans are ordered lists of these."""

    verb: str
    kind: str
    name: str
    scope: Dict[str, str] = field(default_factory=dict)
    attrs: Dict[str, Any] = field(default_factory=dict)
    reason: str = ""
    wait_status: str = ""

    def __str__(self) -> str:
        suffix = f" ({self.reason})" if self.reason else ""
        return f"{self.verb} {self.kind} {self.name}{suffix}"


class ReconcilePlan(dict):
    """A small, json-serializable planning object."""

    # kept as dict subclass for easy printing/YAML dumping

    def __init__(self, domain: str, **kwargs):
        super().__init__(
            domain=domain,
            actions=[],
            drift=[],
            deferred=[],
            preserved=[],
            denied=[],
            warnings=[],
            states={},
        )
        self.update(kwargs)

    @property
    def actions(self) -> List[Action]:
        return self["actions"]

    def add(self, verb: str, kind: str, name: str, **kwargs) -> Action:
        action = Action(verb=verb, kind=kind, name=name, **kwargs)
        self["actions"].append(action)
        return action

    def warn(self, message: str) -> None:
        log.warning("[%s] %s", self["domain"], message)
        self["warnings"].append(message)

    def counts(self) -> Dict[str, int]:
        out = {"create": 0, "update": 0, "delete": 0, "other": 0}
        for a in self.actions:
            out[a.verb if a.verb in out else "other"] += 1
        return out

    @property
    def converged(self) -> bool:
        return not self.actions


@dataclass
class ReconcileResult:
    domain: str
    plan: ReconcilePlan
    applied: List[Action] = field(default_factory=list)
    skipped: List[Action] = field(default_factory=list)
    failure: Optional[ReconcileFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "ok": self.ok,
            "applied": [str(a) for a in self.applied],
            "skipped": [str(a) for a in self.skipped],
            "drift": list(self.plan["drift"]),
            "deferred": list(self.plan["deferred"]),
            "preserved": list(self.plan["preserved"]),
            "denied": list(self.plan["denied"]),
            "failure": self.failure.to_dict() if self.failure else None,
        }


def plan_as_dict(plan: ReconcilePlan) -> dict:
    out = dict(plan)
    out["actions"] = [asdict(a) for a in plan.actions]
    out["counts"] = plan.counts()
    return out


def plan_to_yaml(plans: List[ReconcilePlan]) -> str:
    return yaml.safe_dump_all([plan_as_dict(p) for p in plans], sort_keys=False)


def print_plan(plan: ReconcilePlan, out: Callable[[str], None] = print) -> None:
    counts = plan.counts()
    out(
        f"[plan] domain={plan['domain']} create={counts['create']} update={counts['update']} "
        f"delete={counts['delete']} other={counts['other']}"
    )
    if plan.actions:
        out("[plan] actions:")
        for a in plan.actions:
            out(f"  - {a}")
    for k in ("drift", "deferred", "preserved", "denied", "warnings"):
        items = plan.get(k, []) or []
        if not items:
            continue
        out(f"[plan] {k}:")
        for item in items:
            out(f"  - {item}")


def run_domain(
    domain: str,
    plan_fn: Callable[[], ReconcilePlan],
    execute_fn: Callable[[ReconcilePlan], "tuple[List[Action], List[Action]]"],
    apply: bool = True,
) -> ReconcileResult:
    """Probe+diff via ``plan_fn``, then execute unless planning only.

    A ReconcileFailure from either step becomes the result's ``failure``;
    anything else propagates.
    """
    plan = ReconcilePlan(domain)
    try:
        plan = plan_fn()
        if not apply:
            return ReconcileResult(domain=domain, plan=plan)
        applied, skipped = execute_fn(plan)
        return ReconcileResult(domain=domain, plan=plan, applied=applied, skipped=skipped)
    except ReconcileFailure as e:
        log.error("[%s] %s", domain, e)
        applied = list(getattr(e, "applied", []))
        return ReconcileResult(domain=domain, plan=plan, applied=applied, failure=e)
