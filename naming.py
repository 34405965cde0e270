# naming.py
"""Deterministic resource names, and the patterns that prove ownership.

Every resource this tool creates is named from the cluster context, so the
prober can find it by prefix and the safety gate can refuse anything whose
name was not produced here.
"""

from __future__ import annotations

import re
from typing import Optional

PROTOCOLS = ("tcp", "udp")


# ─────────────────────────────────────────────
# Network
# ─────────────────────────────────────────────
def network(cluster: str) -> str:
    return f"{cluster}-vpc"


def subnet(cluster: str) -> str:
    return f"{cluster}-subnet"


def storage_network(cluster: str) -> str:
    return f"{cluster}-storage-vpc"


def storage_subnet(cluster: str) -> str:
    return f"{cluster}-storage-subnet"


def node_tag(cluster: str) -> str:
    return f"{cluster}-worker"


# ─────────────────────────────────────────────
# Ingress
# ─────────────────────────────────────────────
def ingress_address(cluster: str, index: int) -> str:
    return f"{cluster}-ingress-v4-{index}"


def forwarding_rule(cluster: str, index: int, protocol: str) -> str:
    return f"{cluster}-ingress-v4-rule-{index}-{protocol}"


def legacy_forwarding_rule(cluster: str, index: int) -> str:
    return f"{cluster}-ingress-v4-rule-{index}"


def ingress_firewall(cluster: str, index: int) -> str:
    return f"{cluster}-ingress-v4-{index}"


def ingress_prefix(cluster: str) -> str:
    return f"{cluster}-ingress-v4-"


def forwarding_rule_prefix(cluster: str) -> str:
    return f"{cluster}-ingress-v4-rule-"


def health_check(cluster: str, protocol: str) -> str:
    return f"{cluster}-worker-hc" if protocol == "tcp" else f"{cluster}-worker-udp-hc"


def backend_service(cluster: str, protocol: str) -> str:
    return f"{cluster}-worker-be" if protocol == "tcp" else f"{cluster}-worker-udp-be"


# ─────────────────────────────────────────────
# Peering
# ─────────────────────────────────────────────
def peering(local: str, remote: str) -> str:
    return f"peer-{local}-to-{remote}"


def peering_prefix(local: str) -> str:
    return f"peer-{local}-to-"


def peer_firewall(local: str, remote: str) -> str:
    return f"allow-{local}-from-{remote}-ceph"


def peer_icmp_firewall(local: str, remote: str) -> str:
    return f"allow-{local}-from-{remote}-icmp"


def peer_firewall_prefix(local: str) -> str:
    return f"allow-{local}-from-"


# ─────────────────────────────────────────────
# Node pools
# ─────────────────────────────────────────────
def instance(cluster: str, pool: str, index: int) -> str:
    return f"{cluster}-{pool}-{index}"


def instance_prefix(cluster: str, pool: str) -> str:
    return f"{cluster}-{pool}-"


def instance_group(cluster: str, pool: str) -> str:
    return f"{cluster}-ig-{pool}"


def instance_disk(instance_name: str, index: int) -> str:
    return f"{instance_name}-disk-{index}"


# ─────────────────────────────────────────────
# Identity
# ─────────────────────────────────────────────
def service_account(cluster: str) -> str:
    return f"{cluster}-sa"


def service_account_email(name: str, project: str) -> str:
    return f"{name}@{project}.iam.gserviceaccount.com"


# ─────────────────────────────────────────────
# Ownership patterns
# ─────────────────────────────────────────────
def _index_match(pattern: str, name: str) -> Optional[int]:
    m = re.fullmatch(pattern, name or "")
    return int(m.group(1)) if m else None


def address_index(cluster: str, name: str) -> Optional[int]:
    return _index_match(re.escape(ingress_prefix(cluster)) + r"(\d+)", name)


def firewall_index(cluster: str, name: str) -> Optional[int]:
    return _index_match(re.escape(ingress_prefix(cluster)) + r"(\d+)", name)


def forwarding_rule_key(cluster: str, name: str) -> Optional[tuple[int, Optional[str]]]:
    """(index, protocol) for a suffixed rule, (index, None) for a legacy rule."""
    m = re.fullmatch(re.escape(forwarding_rule_prefix(cluster)) + r"(\d+)(?:-(tcp|udp))?", name or "")
    if not m:
        return None
    return int(m.group(1)), m.group(2)


def instance_index(cluster: str, pool: str, name: str) -> Optional[int]:
    return _index_match(re.escape(instance_prefix(cluster, pool)) + r"(\d+)", name)


def peering_remote(local: str, name: str) -> Optional[str]:
    m = re.fullmatch(re.escape(peering_prefix(local)) + r"([a-z][-a-z0-9]*)", name or "")
    return m.group(1) if m else None


def peer_firewall_remote(local: str, name: str) -> Optional[str]:
    m = re.fullmatch(rf"allow-{re.escape(local)}-from-([a-z][-a-z0-9]*)-(?:ceph|icmp)", name or "")
    return m.group(1) if m else None


def is_generated_service_account(cluster: str, name: str) -> bool:
    """``{cluster}-sa`` or ``{cluster}-<4 hex>-sa``. Custom names never match."""
    return bool(re.fullmatch(rf"{re.escape(cluster)}(?:-[0-9a-f]{{4}})?-sa", name or ""))
