# desired.py
"""Desired-state parser.

Turns the compact environment encoding into canonical domain objects:

  INGRESS_IPV4_CONFIG="80,443/tcp;53/udp"     -> [IngressGroup(0, ...), IngressGroup(1, ...)]
  PEER_WITH="east west"                       -> ("east", "west")
  NODE_POOLS="worker" POOL_WORKER_COUNT=3 ... -> {"worker": PoolSpec(...)}

Anything malformed raises ConfigError. Callers parse everything before the
first remote call so a bad token never leaves a half-applied run behind.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from errors import ConfigError

log = logging.getLogger(__name__)

NAME_RE = re.compile(r"^[a-z]([-a-z0-9]*[a-z0-9])?$")
DISK_SIZE_RE = re.compile(r"^\d+(GB|TB)?$")
TAINT_EFFECTS = ("NoSchedule", "PreferNoSchedule", "NoExecute")
NETWORK_MODES = ("primary", "storage")


@dataclass(frozen=True)
class PortRule:
    port: int
    protocol: str


@dataclass(frozen=True)
class IngressGroup:
    index: int
    tcp: Tuple[int, ...] = ()
    udp: Tuple[int, ...] = ()

    def ports(self, protocol: str) -> Tuple[int, ...]:
        return self.tcp if protocol == "tcp" else self.udp

    def canonical(self, protocol: str) -> str:
        return canonical_ports(self.ports(protocol))

    def firewall_rules(self) -> str:
        return canonical_firewall_rules([("tcp", p) for p in self.tcp] + [("udp", p) for p in self.udp])

    @property
    def empty(self) -> bool:
        return not self.tcp and not self.udp

    def rules(self) -> List[PortRule]:
        return [PortRule(p, "tcp") for p in self.tcp] + [PortRule(p, "udp") for p in self.udp]


@dataclass(frozen=True)
class Taint:
    key: str
    value: str
    effect: str

    def __str__(self) -> str:
        return f"{self.key}={self.value}:{self.effect}" if self.value else f"{self.key}:{self.effect}"


@dataclass(frozen=True)
class DiskSpec:
    disk_type: str
    size: str
    device_name: str


@dataclass(frozen=True)
class PoolSpec:
    name: str
    count: int
    machine_type: str
    disk_size: str = "200GB"
    additional_disks: Tuple[DiskSpec, ...] = ()
    labels: Tuple[Tuple[str, str], ...] = ()
    taints: Tuple[Taint, ...] = ()
    network_mode: str = "primary"
    image: str = ""
    nested_virt: bool = False
    ingress: bool = False

    @property
    def label_map(self) -> Dict[str, str]:
        return dict(self.labels)

    @property
    def nic_count(self) -> int:
        return 2 if self.network_mode == "storage" else 1


@dataclass(frozen=True)
class DesiredState:
    ingress: Tuple[IngressGroup, ...] = ()
    peers: Tuple[str, ...] = ()
    pools: Mapping[str, PoolSpec] = field(default_factory=dict)


# ─────────────────────────────────────────────
# Canonical forms (shared with the prober)
# ─────────────────────────────────────────────
def canonical_ports(ports) -> str:
    return ",".join(str(p) for p in sorted({int(p) for p in ports}))


def canonical_firewall_rules(rules) -> str:
    """[(proto, port), ...] -> "tcp:80,tcp:443,udp:53"."""
    ordered = sorted({(str(proto).lower(), str(port)) for proto, port in rules}, key=_rule_sort_key)
    return ",".join(f"{proto}:{port}" if port else proto for proto, port in ordered)


def _rule_sort_key(rule: Tuple[str, str]):
    proto, port = rule
    start = port.split("-", 1)[0]
    return (proto, int(start) if start.isdigit() else -1, port)


# ─────────────────────────────────────────────
# Ingress
# ─────────────────────────────────────────────
def _parse_port(raw: str, token: str) -> int:
    if not raw.isdigit():
        raise ConfigError(f"invalid port token {token!r}: port must be numeric")
    port = int(raw)
    if not 1 <= port <= 65535:
        raise ConfigError(f"invalid port token {token!r}: port out of range")
    return port


def parse_port_token(token: str) -> List[PortRule]:
    token = token.strip()
    if "/" in token:
        raw, proto = token.split("/", 1)
        proto = proto.strip().lower()
        if proto not in ("tcp", "udp"):
            raise ConfigError(f"invalid port token {token!r}: protocol must be tcp or udp")
        return [PortRule(_parse_port(raw.strip(), token), proto)]
    port = _parse_port(token, token)
    return [PortRule(port, "tcp"), PortRule(port, "udp")]


def parse_ingress_group(index: int, text: str) -> IngressGroup:
    tcp: set[int] = set()
    udp: set[int] = set()
    for token in (text or "").split(","):
        if not token.strip():
            continue
        for rule in parse_port_token(token):
            (tcp if rule.protocol == "tcp" else udp).add(rule.port)
    return IngressGroup(index=index, tcp=tuple(sorted(tcp)), udp=tuple(sorted(udp)))


def parse_ingress_spec(spec: str, count: Optional[int] = None) -> Tuple[IngressGroup, ...]:
    """Parse ``a,b/tcp;c/udp`` into ordinal-indexed groups.

    ``count`` (INGRESS_IP_COUNT) pads with empty groups, each of which still
    reserves an address, or truncates with a warning.
    """
    spec = (spec or "").strip()
    raw_groups = spec.split(";") if spec else []
    groups = [parse_ingress_group(i, g) for i, g in enumerate(raw_groups)]

    if count is not None:
        if count < 0:
            raise ConfigError(f"INGRESS_IP_COUNT must be >= 0, got {count}")
        if len(groups) > count:
            log.warning(
                "[ingress] INGRESS_IPV4_CONFIG has %d groups but INGRESS_IP_COUNT is %d; ignoring groups >= %d",
                len(groups), count, count,
            )
            groups = groups[:count]
        while len(groups) < count:
            groups.append(IngressGroup(index=len(groups)))
    return tuple(groups)


# ─────────────────────────────────────────────
# Peers
# ─────────────────────────────────────────────
def parse_peer_list(text: str, local_cluster: str) -> Tuple[str, ...]:
    peers: List[str] = []
    for name in re.split(r"[,\s]+", (text or "").strip()):
        if not name:
            continue
        if not NAME_RE.match(name):
            raise ConfigError(f"invalid peer cluster name {name!r}")
        if name == local_cluster:
            raise ConfigError(f"cluster {local_cluster!r} cannot peer with itself")
        if name not in peers:
            peers.append(name)
    return tuple(peers)


# ─────────────────────────────────────────────
# Node pools
# ─────────────────────────────────────────────
def pool_env_key(pool: str, attr: str) -> str:
    return f"POOL_{pool.replace('-', '_').upper()}_{attr}"


def _parse_bool(value: str, key: str) -> bool:
    v = value.strip().lower()
    if v in ("1", "true", "yes"):
        return True
    if v in ("0", "false", "no", ""):
        return False
    raise ConfigError(f"{key}: expected a boolean, got {value!r}")


def _parse_int(value: str, key: str) -> int:
    v = (value or "").strip()
    if not v.isdigit():
        raise ConfigError(f"{key}: expected a non-negative integer, got {value!r}")
    return int(v)


def parse_labels(text: str) -> Tuple[Tuple[str, str], ...]:
    labels: Dict[str, str] = {}
    for pair in re.split(r"[,\s]+", (text or "").strip()):
        if not pair:
            continue
        key, _, value = pair.partition("=")
        if not key:
            raise ConfigError(f"invalid label {pair!r}")
        labels[key] = value
    return tuple(sorted(labels.items()))


def parse_taints(text: str) -> Tuple[Taint, ...]:
    taints: List[Taint] = []
    for item in re.split(r"[,\s]+", (text or "").strip()):
        if not item:
            continue
        kv, sep, effect = item.rpartition(":")
        if not sep or effect not in TAINT_EFFECTS or not kv:
            raise ConfigError(f"invalid taint {item!r}: expected key[=value]:{'|'.join(TAINT_EFFECTS)}")
        key, _, value = kv.partition("=")
        if not key:
            raise ConfigError(f"invalid taint {item!r}: missing key")
        taints.append(Taint(key, value, effect))
    return tuple(sorted(set(taints), key=str))


def parse_disks(text: str, key: str) -> Tuple[DiskSpec, ...]:
    disks: List[DiskSpec] = []
    for i, item in enumerate(re.split(r"[,\s]+", (text or "").strip())):
        if not item:
            continue
        parts = item.split(":")
        if len(parts) not in (2, 3) or not parts[0] or not parts[1]:
            raise ConfigError(f"{key}: invalid disk {item!r}, expected type:size[:device-name]")
        if not DISK_SIZE_RE.match(parts[1]):
            raise ConfigError(f"{key}: invalid disk size {parts[1]!r}")
        device = parts[2] if len(parts) == 3 and parts[2] else f"disk-{len(disks)}"
        disks.append(DiskSpec(parts[0], parts[1], device))
    return tuple(disks)


def parse_pool(name: str, env: Mapping[str, str], storage_enabled: bool = False) -> PoolSpec:
    if not NAME_RE.match(name):
        raise ConfigError(f"invalid pool name {name!r}")

    def get(attr: str, default: Optional[str] = None) -> Optional[str]:
        value = env.get(pool_env_key(name, attr))
        return default if value is None or value == "" else value

    count_key = pool_env_key(name, "COUNT")
    type_key = pool_env_key(name, "TYPE")
    if get("COUNT") is None:
        raise ConfigError(f"pool {name!r}: {count_key} is required")
    if get("TYPE") is None:
        raise ConfigError(f"pool {name!r}: {type_key} is required")
    count = _parse_int(get("COUNT"), count_key)

    machine_type = get("TYPE").strip()
    if machine_type == "custom":
        vcpu, mem_gb = get("VCPU"), get("MEMORY_GB")
        if vcpu is None or mem_gb is None:
            raise ConfigError(f"pool {name!r}: TYPE=custom requires VCPU and MEMORY_GB")
        vcpu_n = _parse_int(vcpu, pool_env_key(name, "VCPU"))
        mem_n = _parse_int(mem_gb, pool_env_key(name, "MEMORY_GB"))
        machine_type = f"{get('FAMILY', 'n2')}-custom-{vcpu_n}-{mem_n * 1024}"

    disk_size = get("DISK_SIZE", "200GB")
    if not DISK_SIZE_RE.match(disk_size):
        raise ConfigError(f"pool {name!r}: invalid DISK_SIZE {disk_size!r}")

    network_mode = get("NETWORK")
    if network_mode is None:
        legacy = get("USE_STORAGE_NET", "false")
        network_mode = "storage" if _parse_bool(legacy, pool_env_key(name, "USE_STORAGE_NET")) else "primary"
    if network_mode not in NETWORK_MODES:
        raise ConfigError(f"pool {name!r}: NETWORK must be one of {NETWORK_MODES}, got {network_mode!r}")
    if network_mode == "storage" and not storage_enabled:
        raise ConfigError(f"pool {name!r}: storage network requested but STORAGE_CIDR is not set")

    nested_virt = _parse_bool(get("ALLOW_NESTED_VIRT", "false"), pool_env_key(name, "ALLOW_NESTED_VIRT"))
    if nested_virt and machine_type.startswith("e2-"):
        raise ConfigError(f"pool {name!r}: nested virtualization is not supported on E2 machine types")

    ingress = _parse_bool(get("INGRESS", "true" if name == "worker" else "false"), pool_env_key(name, "INGRESS"))

    return PoolSpec(
        name=name,
        count=count,
        machine_type=machine_type,
        disk_size=disk_size,
        additional_disks=parse_disks(get("ADDITIONAL_DISKS", ""), pool_env_key(name, "ADDITIONAL_DISKS")),
        labels=parse_labels(get("LABELS", "")),
        taints=parse_taints(get("TAINTS", "")),
        network_mode=network_mode,
        image=get("IMAGE", ""),
        nested_virt=nested_virt,
        ingress=ingress,
    )


def parse_pools(env: Mapping[str, str], storage_enabled: bool = False) -> Dict[str, PoolSpec]:
    pools: Dict[str, PoolSpec] = {}
    for name in re.split(r"[,\s]+", (env.get("NODE_POOLS") or "").strip()):
        if name and name not in pools:
            pools[name] = parse_pool(name, env, storage_enabled=storage_enabled)
    return pools


def load_desired_state(env: Mapping[str, str], cluster: str, storage_enabled: bool = False) -> DesiredState:
    count_raw = env.get("INGRESS_IP_COUNT")
    count = _parse_int(count_raw, "INGRESS_IP_COUNT") if count_raw not in (None, "") else None
    return DesiredState(
        ingress=parse_ingress_spec(env.get("INGRESS_IPV4_CONFIG", ""), count),
        peers=parse_peer_list(env.get("PEER_WITH", ""), cluster),
        pools=parse_pools(env, storage_enabled=storage_enabled),
    )
