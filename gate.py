# gate.py
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

import naming
from config import ClusterContext
from desired import PoolSpec
from gcloud import basename
from reconcile import Action, ReconcilePlan

log = logging.getLogger(__name__)

DESTRUCTIVE_VERBS = ("delete", "remove-member")


@dataclass
class GateResult:
    ok: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _reverse_peering_owned(ctx: ClusterContext, action: Action) -> bool:
    m = re.fullmatch(rf"peer-([a-z][-a-z0-9]*)-to-{re.escape(ctx.cluster)}", action.name)
    return bool(m) and action.scope.get("network") == naming.network(m.group(1))


def owned_by_cluster(ctx: ClusterContext, action: Action, force_identity: bool = False) -> bool:
    """True only if ``action.name`` is exactly what our naming functions produce for this cluster."""
    kind, name = action.kind, action.name
    if kind == "address":
        return naming.address_index(ctx.cluster, name) is not None
    if kind == "forwarding-rule":
        return naming.forwarding_rule_key(ctx.cluster, name) is not None
    if kind == "firewall-rule":
        return (
            naming.firewall_index(ctx.cluster, name) is not None
            or naming.peer_firewall_remote(ctx.cluster, name) is not None
        )
    if kind == "peering":
        if action.scope.get("network") == ctx.network:
            return naming.peering_remote(ctx.cluster, name) is not None
        return _reverse_peering_owned(ctx, action)
    if kind == "instance":
        pool = action.attrs.get("pool", "")
        return bool(pool) and naming.instance_index(ctx.cluster, pool, name) is not None
    if kind == "instance-group":
        pool = action.attrs.get("pool", "")
        return bool(pool) and name == naming.instance_group(ctx.cluster, pool)
    if kind == "service-account":
        return service_account_deletable(ctx, name, force=force_identity)
    return False


def service_account_deletable(ctx: ClusterContext, name: str, force: bool = False) -> bool:
    """Custom service-account names may be shared across clusters; only auto-generated ones are ours."""
    return force or naming.is_generated_service_account(ctx.cluster, name)


def validate_deletions(ctx: ClusterContext, plan: ReconcilePlan, force_identity: bool = False) -> GateResult:
    """Move every destructive action that fails the ownership check into ``plan['denied']``.

    Denied candidates are never deleted, even when they look orphaned.
    """
    res = GateResult(ok=True)
    kept: List[Action] = []
    for action in plan.actions:
        if action.verb in DESTRUCTIVE_VERBS and not owned_by_cluster(ctx, action, force_identity):
            msg = f"refusing to {action.verb} {action.kind} {action.name}: name does not match cluster {ctx.cluster!r} naming"
            plan["denied"].append(f"{action.kind} {action.name}")
            plan.warn(msg)
            res.warnings.append(msg)
            continue
        kept.append(action)
    plan["actions"] = kept
    return res


def instance_drift(spec: PoolSpec, observed: dict) -> List[str]:
    """Attributes of a running instance that differ from its pool spec.

    Drift is only reported; replacing a running node needs an operator.
    """
    reasons: List[str] = []
    current_type = basename(observed.get("machineType"))
    if current_type and current_type != spec.machine_type:
        reasons.append(f"machine type {current_type} != {spec.machine_type}")
    nics = observed.get("networkInterfaces")
    if nics is not None and len(nics) != spec.nic_count:
        reasons.append(f"network interfaces {len(nics)} != {spec.nic_count} (network mode {spec.network_mode})")
    return reasons


def check_contiguous(indices, label: str) -> Optional[str]:
    """Observed indices should be 0..M with no gaps. Returns a warning when they are not."""
    ordered = sorted(set(indices))
    if ordered and ordered != list(range(ordered[-1] + 1)):
        missing = sorted(set(range(ordered[-1] + 1)) - set(ordered))
        return f"{label} indices are not contiguous (missing {missing}); pruning by set difference"
    return None
