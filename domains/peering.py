# domains/peering.py
"""VPC peering between clusters, plus the firewall allowance for the peer.

A link is only converged when both directions exist and the remote's node
and pod ranges are allowed in. The remote side is only ever touched while
its network exists; once it is gone the reverse peering went with it.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import naming
from config import ClusterContext, Settings
from desired import canonical_firewall_rules
from executor import Confirm, execute
from gate import validate_deletions
from probe import ABSENT, PRESENT, ObservedPeering, RemoteView, firewall_rules, probe_peering, source_ranges
from reconcile import ReconcilePlan, ReconcileResult, run_domain

log = logging.getLogger(__name__)

# ceph mon (v1, v2) and osd range
CEPH_RULES = canonical_firewall_rules([("tcp", "6789"), ("tcp", "3300"), ("tcp", "6800-7300")])
ICMP_RULES = canonical_firewall_rules([("icmp", "")])


def _peering_attrs(peer_network: str) -> dict:
    return {"peer_network": peer_network, "auto_create_routes": True}


def _ensure_firewall(
    plan: ReconcilePlan,
    ctx: ClusterContext,
    name: str,
    current: Optional[dict],
    rules: str,
    ranges: Sequence[str],
    remote: str,
    target_tags: Sequence[str] = (),
) -> None:
    if current is None:
        attrs = {
            "network": ctx.network,
            "direction": "INGRESS",
            "action": "ALLOW",
            "rules": rules,
            "source_ranges": list(ranges),
            "description": f"Allow traffic from peered cluster {remote}",
        }
        if target_tags:
            attrs["target_tags"] = list(target_tags)
        plan.add("create", "firewall-rule", name, attrs=attrs)
        return

    have_rules, have_ranges = firewall_rules(current), source_ranges(current)
    if have_rules != rules or have_ranges != tuple(ranges):
        plan.add("update", "firewall-rule", name, attrs={"rules": rules, "source_ranges": list(ranges)},
                 reason=f"rules {have_rules} ranges {','.join(have_ranges)}")


def _report_state(plan: ReconcilePlan, name: str, peering: dict) -> None:
    state = peering.get("state", "UNKNOWN")
    plan["states"][name] = state
    if state != "ACTIVE":
        plan.warn(f"peering {name} exists but is {state}; check the remote side")


def _plan_link(plan: ReconcilePlan, ctx: ClusterContext, remote: str, view: RemoteView, obs: ObservedPeering) -> None:
    c = ctx.cluster
    remote_net = naming.network(remote)

    if view.network != PRESENT:
        plan["deferred"].append(f"{remote}: remote network {remote_net} is {view.network}")
        return

    local_name = naming.peering(c, remote)
    local = obs.local.get(local_name)
    reverse_name = naming.peering(remote, c)

    if local is None:
        plan.add("create", "peering", local_name, scope={"network": ctx.network}, attrs=_peering_attrs(remote_net))
    if view.reverse is None:
        plan.add("create", "peering", reverse_name, scope={"network": remote_net}, attrs=_peering_attrs(ctx.network))
    # a side only turns ACTIVE once its counterpart exists
    if local is not None and view.reverse is not None:
        _report_state(plan, local_name, local)
        _report_state(plan, reverse_name, view.reverse)

    if not view.ranges:
        plan["deferred"].append(f"{remote}: no address ranges found on {naming.subnet(remote)}")
        return
    _ensure_firewall(plan, ctx, naming.peer_firewall(c, remote), view.firewall, CEPH_RULES, view.ranges, remote,
                     target_tags=[naming.node_tag(c)])
    _ensure_firewall(plan, ctx, naming.peer_icmp_firewall(c, remote), view.icmp_firewall, ICMP_RULES, view.ranges,
                     remote)


def _plan_stale(plan: ReconcilePlan, ctx: ClusterContext, remote: str, view: RemoteView, obs: ObservedPeering) -> None:
    c = ctx.cluster
    local_name = naming.peering(c, remote)
    local = obs.local.get(local_name)
    owned = [n for n, r in (
        (local_name, local),
        (naming.peer_firewall(c, remote), view.firewall),
        (naming.peer_icmp_firewall(c, remote), view.icmp_firewall),
    ) if r is not None]
    if not owned:
        return

    if view.network != ABSENT:
        for name in owned:
            plan["preserved"].append(f"{name}: remote network {naming.network(remote)} is {view.network}")
        return

    reason = f"{remote} no longer desired and its network is gone"
    if view.firewall is not None:
        plan.add("delete", "firewall-rule", naming.peer_firewall(c, remote), reason=reason)
    if view.icmp_firewall is not None:
        plan.add("delete", "firewall-rule", naming.peer_icmp_firewall(c, remote), reason=reason)
    if local is not None:
        plan.add("delete", "peering", local_name, scope={"network": ctx.network}, reason=reason)


def plan_peering(
    api,
    ctx: ClusterContext,
    peers: Sequence[str],
    observed: Optional[ObservedPeering] = None,
) -> ReconcilePlan:
    obs = observed if observed is not None else probe_peering(api, ctx, peers)
    plan = ReconcilePlan("peering", peers=list(peers))

    for remote in peers:
        _plan_link(plan, ctx, remote, obs.remotes.get(remote, RemoteView()), obs)
    for remote, view in obs.remotes.items():
        if remote not in peers:
            _plan_stale(plan, ctx, remote, view, obs)

    validate_deletions(ctx, plan)
    return plan


def reconcile_peering(
    api,
    ctx: ClusterContext,
    settings: Settings,
    peers: Sequence[str],
    apply: bool = True,
    confirm: Optional[Confirm] = None,
) -> ReconcileResult:
    return run_domain(
        "peering",
        lambda: plan_peering(api, ctx, peers),
        lambda plan: execute(api, ctx, plan, settings.retry, confirm=confirm),
        apply=apply,
    )
