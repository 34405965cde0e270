# probe.py
"""Remote-state prober.

Finds resources by deterministic name prefix scoped to the cluster, then keeps
only names that match the exact ownership pattern. A failed query is logged
and treated like an empty answer: the safe reading is "nothing there", which
can only lead to a create (that the executor tolerates as AlreadyExists),
never to a delete. The one place where "nothing there" *would* authorise a
delete, remote network existence for stale peerings, reports UNKNOWN instead.

All calls here are read-only, so independent ones run concurrently.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

import naming
from config import ClusterContext
from desired import PoolSpec, canonical_firewall_rules, canonical_ports
from errors import ApiError

log = logging.getLogger(__name__)

PRESENT = "PRESENT"
ABSENT = "ABSENT"
UNKNOWN = "UNKNOWN"

MAX_WORKERS = 8


def safe_list(api, kind: str, scope: Mapping[str, str], prefix: str = "") -> List[dict]:
    try:
        return api.list(kind, scope, prefix) or []
    except ApiError as e:
        log.warning("[probe] listing %s %s* failed, treating as none observed: %s", kind, prefix, e)
        return []


def safe_describe(api, kind: str, name: str, scope: Mapping[str, str]) -> Optional[dict]:
    try:
        return api.describe(kind, name, scope)
    except ApiError as e:
        log.warning("[probe] describing %s %s failed, treating as absent: %s", kind, name, e)
        return None


# ─────────────────────────────────────────────
# Canonical observed forms
# ─────────────────────────────────────────────
def rule_ports(rule: dict) -> str:
    """Forwarding rule -> canonical port string, from ``ports`` or ``portRange``."""
    ports: List[int] = []
    raw = rule.get("ports") or []
    if not raw and rule.get("portRange"):
        raw = [rule["portRange"]]
    for item in raw:
        for part in str(item).replace(";", ",").split(","):
            part = part.strip()
            if not part:
                continue
            start, _, end = part.partition("-")
            if end and end != start:
                ports.extend(range(int(start), int(end) + 1))
            else:
                ports.append(int(start))
    return canonical_ports(ports)


def firewall_rules(fw: dict) -> str:
    """Firewall rule ``allowed`` list -> "tcp:80,udp:53"."""
    rules: List[Tuple[str, str]] = []
    for allowed in fw.get("allowed") or []:
        proto = str(allowed.get("IPProtocol", "")).lower()
        ports = allowed.get("ports") or []
        if not ports:
            rules.append((proto, ""))
        rules.extend((proto, str(p)) for p in ports)
    return canonical_firewall_rules(rules)


def source_ranges(fw: dict) -> Tuple[str, ...]:
    return tuple(sorted(set(fw.get("sourceRanges") or [])))


# ─────────────────────────────────────────────
# Ingress
# ─────────────────────────────────────────────
@dataclass
class ObservedIngress:
    addresses: Dict[int, dict] = field(default_factory=dict)
    rules: Dict[Tuple[int, str], dict] = field(default_factory=dict)
    legacy_rules: Dict[int, dict] = field(default_factory=dict)
    firewalls: Dict[int, dict] = field(default_factory=dict)
    health_checks: Set[str] = field(default_factory=set)
    backends: Set[str] = field(default_factory=set)

    @property
    def indices(self) -> Set[int]:
        out = set(self.addresses) | set(self.legacy_rules) | set(self.firewalls)
        out |= {i for i, _ in self.rules}
        return out


def probe_ingress(api, ctx: ClusterContext) -> ObservedIngress:
    c = ctx.cluster
    hc_names = [naming.health_check(c, p) for p in naming.PROTOCOLS]
    be_names = [naming.backend_service(c, p) for p in naming.PROTOCOLS]

    with ThreadPoolExecutor(max_workers=MAX_WORKERS) as pool:
        f_addr = pool.submit(safe_list, api, "address", ctx.region_scope, naming.ingress_prefix(c))
        f_rules = pool.submit(safe_list, api, "forwarding-rule", ctx.region_scope, naming.forwarding_rule_prefix(c))
        f_fw = pool.submit(safe_list, api, "firewall-rule", {}, naming.ingress_prefix(c))
        f_hc = {n: pool.submit(safe_describe, api, "health-check", n, ctx.region_scope) for n in hc_names}
        f_be = {n: pool.submit(safe_describe, api, "backend-service", n, ctx.region_scope) for n in be_names}

    obs = ObservedIngress()
    for a in f_addr.result():
        idx = naming.address_index(c, a.get("name", ""))
        if idx is not None:
            obs.addresses[idx] = a
    for r in f_rules.result():
        key = naming.forwarding_rule_key(c, r.get("name", ""))
        if key is None:
            continue
        idx, proto = key
        if proto is None:
            obs.legacy_rules[idx] = r
        else:
            obs.rules[(idx, proto)] = r
    for fw in f_fw.result():
        idx = naming.firewall_index(c, fw.get("name", ""))
        if idx is not None:
            obs.firewalls[idx] = fw
    obs.health_checks = {n for n, f in f_hc.items() if f.result() is not None}
    obs.backends = {n for n, f in f_be.items() if f.result() is not None}
    return obs


# ─────────────────────────────────────────────
# Peering
# ─────────────────────────────────────────────
@dataclass
class RemoteView:
    network: str = UNKNOWN
    reverse: Optional[dict] = None
    ranges: Tuple[str, ...] = ()
    firewall: Optional[dict] = None
    icmp_firewall: Optional[dict] = None


@dataclass
class ObservedPeering:
    local: Dict[str, dict] = field(default_factory=dict)
    remotes: Dict[str, RemoteView] = field(default_factory=dict)

    def local_for(self, local_cluster: str, remote: str) -> Optional[dict]:
        return self.local.get(naming.peering(local_cluster, remote))


def network_state(api, network: str) -> str:
    try:
        return PRESENT if api.describe("network", network, {}) is not None else ABSENT
    except ApiError as e:
        log.warning("[probe] network %s state unknown: %s", network, e)
        return UNKNOWN


def remote_ranges(api, remote: str) -> Tuple[str, ...]:
    """Primary node range plus every secondary (pod) range of the remote cluster subnet."""
    subnet_name = naming.subnet(remote)
    remote_net = naming.network(remote)
    ranges: List[str] = []
    for sn in safe_list(api, "subnet", {}, subnet_name):
        if sn.get("name") != subnet_name or sn.get("network", "").rsplit("/", 1)[-1] != remote_net:
            continue
        if sn.get("ipCidrRange"):
            ranges.append(sn["ipCidrRange"])
        ranges.extend(r["ipCidrRange"] for r in sn.get("secondaryIpRanges") or [] if r.get("ipCidrRange"))
    return tuple(sorted(set(ranges)))


def _probe_remote(api, ctx: ClusterContext, remote: str) -> RemoteView:
    view = RemoteView(network=network_state(api, naming.network(remote)))
    view.firewall = safe_describe(api, "firewall-rule", naming.peer_firewall(ctx.cluster, remote), {})
    view.icmp_firewall = safe_describe(api, "firewall-rule", naming.peer_icmp_firewall(ctx.cluster, remote), {})
    if view.network == PRESENT:
        view.reverse = safe_describe(
            api, "peering", naming.peering(remote, ctx.cluster), {"network": naming.network(remote)}
        )
        view.ranges = remote_ranges(api, remote)
    return view


def probe_peering(api, ctx: ClusterContext, peers: Iterable[str]) -> ObservedPeering:
    obs = ObservedPeering()
    with ThreadPoolExecutor(max_workers=2) as pool:
        f_peerings = pool.submit(safe_list, api, "peering", {"network": ctx.network}, naming.peering_prefix(ctx.cluster))
        f_firewalls = pool.submit(safe_list, api, "firewall-rule", {}, naming.peer_firewall_prefix(ctx.cluster))

    for p in f_peerings.result():
        if naming.peering_remote(ctx.cluster, p.get("name", "")) is not None:
            obs.local[p["name"]] = p

    # leftover firewalls of a half-removed link still name their remote
    leftovers = [naming.peer_firewall_remote(ctx.cluster, fw.get("name", "")) for fw in f_firewalls.result()]
    remotes = list(dict.fromkeys([
        *peers,
        *(naming.peering_remote(ctx.cluster, n) for n in obs.local),
        *(r for r in leftovers if r is not None),
    ]))
    with ThreadPoolExecutor(max_workers=MAX_WORKERS) as pool:
        futures = {r: pool.submit(_probe_remote, api, ctx, r) for r in remotes}
    obs.remotes = {r: f.result() for r, f in futures.items()}
    return obs


# ─────────────────────────────────────────────
# Node pools
# ─────────────────────────────────────────────
@dataclass
class ObservedPool:
    group: Optional[dict] = None
    instances: Dict[int, dict] = field(default_factory=dict)
    members: Set[str] = field(default_factory=set)
    # backend service -> attached groups; None when the backend service is absent
    backends: Dict[str, Optional[Set[str]]] = field(default_factory=dict)


def _safe_members(api, group: str, zone: str) -> Set[str]:
    try:
        return set(api.list_members(group, zone))
    except ApiError as e:
        log.warning("[probe] listing members of %s failed, treating as empty: %s", group, e)
        return set()


def _safe_backend_groups(api, backend: str, region: str) -> Optional[Set[str]]:
    try:
        groups = api.backend_groups(backend, region)
    except ApiError as e:
        log.warning("[probe] reading backends of %s failed, treating as empty: %s", backend, e)
        return set()
    return None if groups is None else set(groups)


def probe_pool(api, ctx: ClusterContext, spec: PoolSpec) -> ObservedPool:
    c = ctx.cluster
    group = naming.instance_group(c, spec.name)
    be_names = [naming.backend_service(c, p) for p in naming.PROTOCOLS] if spec.ingress else []

    with ThreadPoolExecutor(max_workers=MAX_WORKERS) as pool:
        f_group = pool.submit(safe_describe, api, "instance-group", group, ctx.zone_scope)
        f_inst = pool.submit(safe_list, api, "instance", ctx.zone_scope, naming.instance_prefix(c, spec.name))
        f_members = pool.submit(_safe_members, api, group, ctx.zone)
        f_be = {b: pool.submit(_safe_backend_groups, api, b, ctx.region) for b in be_names}

    obs = ObservedPool(group=f_group.result())
    for inst in f_inst.result():
        idx = naming.instance_index(c, spec.name, inst.get("name", ""))
        if idx is not None:
            obs.instances[idx] = inst
    obs.members = f_members.result() if obs.group is not None else set()
    obs.backends = {b: f.result() for b, f in f_be.items()}
    return obs
