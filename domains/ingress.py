# domains/ingress.py
"""Ingress: static addresses, per-protocol forwarding rules and firewall allowances.

Group ``i`` of INGRESS_IPV4_CONFIG owns address ``{c}-ingress-v4-{i}``, the
rules ``{c}-ingress-v4-rule-{i}-{tcp,udp}`` and firewall ``{c}-ingress-v4-{i}``.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import naming
from config import ClusterContext, Settings
from desired import IngressGroup
from executor import Confirm, execute
from gate import check_contiguous, validate_deletions
from probe import ObservedIngress, firewall_rules, probe_ingress, rule_ports
from reconcile import ReconcilePlan, ReconcileResult, run_domain

log = logging.getLogger(__name__)

WORLD = "0.0.0.0/0"


def _ensure_backends(plan: ReconcilePlan, ctx: ClusterContext, settings: Settings, obs: ObservedIngress) -> None:
    for proto in naming.PROTOCOLS:
        hc = naming.health_check(ctx.cluster, proto)
        if hc not in obs.health_checks:
            # the UDP backend is health-checked over TCP as well
            plan.add("create", "health-check", hc, scope=ctx.region_scope,
                     attrs={"protocol": "tcp", "port": settings.health_check_port})
        be = naming.backend_service(ctx.cluster, proto)
        if be not in obs.backends:
            plan.add("create", "backend-service", be, scope=ctx.region_scope, attrs={
                "load_balancing_scheme": "EXTERNAL",
                "protocol": proto.upper(),
                "health_checks": hc,
                "health_checks_region": ctx.region,
            })


def _rule_attrs(ctx: ClusterContext, group: IngressGroup, proto: str) -> dict:
    return {
        "load_balancing_scheme": "EXTERNAL",
        "ip_protocol": proto.upper(),
        "ports": list(group.ports(proto)),
        "address": naming.ingress_address(ctx.cluster, group.index),
        "backend_service": naming.backend_service(ctx.cluster, proto),
    }


def _firewall_attrs(ctx: ClusterContext, rules: str, create: bool) -> dict:
    attrs = {"rules": rules, "source_ranges": [WORLD], "target_tags": [naming.node_tag(ctx.cluster)]}
    if create:
        attrs.update(network=ctx.network, direction="INGRESS", action="ALLOW", priority=1000)
    return attrs


def _plan_group(plan: ReconcilePlan, ctx: ClusterContext, group: IngressGroup, obs: ObservedIngress) -> None:
    c, i = ctx.cluster, group.index
    region = ctx.region_scope

    address = naming.ingress_address(c, i)
    if i not in obs.addresses:
        plan.add("create", "address", address, scope=region)

    if i in obs.legacy_rules:
        plan.add("delete", "forwarding-rule", naming.legacy_forwarding_rule(c, i), scope=region,
                 reason="superseded by per-protocol rules")

    for proto in naming.PROTOCOLS:
        name = naming.forwarding_rule(c, i, proto)
        want = group.canonical(proto)
        current = obs.rules.get((i, proto))
        if not want:
            if current is not None:
                plan.add("delete", "forwarding-rule", name, scope=region, reason=f"no {proto} ports")
            continue
        if current is None:
            plan.add("create", "forwarding-rule", name, scope=region, attrs=_rule_attrs(ctx, group, proto))
            continue
        have = rule_ports(current)
        if have != want:
            # forwarding rule ports are immutable
            plan.add("delete", "forwarding-rule", name, scope=region, reason=f"ports {have} -> {want}")
            plan.add("create", "forwarding-rule", name, scope=region, attrs=_rule_attrs(ctx, group, proto),
                     reason=f"ports {have} -> {want}")

    fw_name = naming.ingress_firewall(c, i)
    fw = obs.firewalls.get(i)
    want_rules = group.firewall_rules()
    if group.empty:
        if fw is not None:
            plan.add("delete", "firewall-rule", fw_name, reason="group has no ports")
    elif fw is None:
        plan.add("create", "firewall-rule", fw_name, attrs=_firewall_attrs(ctx, want_rules, create=True))
    else:
        have_rules = firewall_rules(fw)
        if have_rules != want_rules:
            plan.add("update", "firewall-rule", fw_name, attrs=_firewall_attrs(ctx, want_rules, create=False),
                     reason=f"rules {have_rules} -> {want_rules}")


def _plan_prune(plan: ReconcilePlan, ctx: ClusterContext, obs: ObservedIngress, desired: set) -> None:
    c = ctx.cluster
    region = ctx.region_scope
    for i in sorted(obs.indices - desired, reverse=True):
        reason = f"index {i} beyond {len(desired)} desired groups"
        if i in obs.firewalls:
            plan.add("delete", "firewall-rule", naming.ingress_firewall(c, i), reason=reason)
        for proto in naming.PROTOCOLS:
            if (i, proto) in obs.rules:
                plan.add("delete", "forwarding-rule", naming.forwarding_rule(c, i, proto), scope=region, reason=reason)
        if i in obs.legacy_rules:
            plan.add("delete", "forwarding-rule", naming.legacy_forwarding_rule(c, i), scope=region, reason=reason)
        # the address goes last; rules still reference it until then
        if i in obs.addresses:
            plan.add("delete", "address", naming.ingress_address(c, i), scope=region, reason=reason)


def plan_ingress(
    api,
    ctx: ClusterContext,
    settings: Settings,
    groups: Sequence[IngressGroup],
    observed: Optional[ObservedIngress] = None,
) -> ReconcilePlan:
    obs = observed if observed is not None else probe_ingress(api, ctx)
    plan = ReconcilePlan("ingress", desired_count=len(groups), observed_indices=sorted(obs.indices))

    gap = check_contiguous(obs.indices, "ingress")
    if gap:
        plan.warn(gap)

    _ensure_backends(plan, ctx, settings, obs)
    for group in groups:
        _plan_group(plan, ctx, group, obs)
    _plan_prune(plan, ctx, obs, {g.index for g in groups})

    validate_deletions(ctx, plan)
    return plan


def reconcile_ingress(
    api,
    ctx: ClusterContext,
    settings: Settings,
    groups: Sequence[IngressGroup],
    apply: bool = True,
    confirm: Optional[Confirm] = None,
) -> ReconcileResult:
    return run_domain(
        "ingress",
        lambda: plan_ingress(api, ctx, settings, groups),
        lambda plan: execute(api, ctx, plan, settings.retry, confirm=confirm),
        apply=apply,
    )
