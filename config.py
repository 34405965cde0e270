# config.py
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Mapping, Optional

import naming
from errors import ConfigError
from retry import RetryPolicy

CLUSTER_NAME_RE = re.compile(r"^[a-z]([-a-z0-9]*[a-z0-9])?$")
# room for suffixes like "-bastion-ssh" and "-sa" within GCP name limits
MAX_CLUSTER_NAME = 20


@dataclass(frozen=True)
class ClusterContext:
    """Everything a reconciler needs to know about *where* it is working.

    Passed explicitly into every call; nothing reads cluster/zone globals.
    """

    cluster: str
    project: str
    region: str
    zone: str
    storage_enabled: bool = False

    @property
    def network(self) -> str:
        return naming.network(self.cluster)

    @property
    def subnet(self) -> str:
        return naming.subnet(self.cluster)

    @property
    def storage_network(self) -> Optional[str]:
        return naming.storage_network(self.cluster) if self.storage_enabled else None

    @property
    def storage_subnet(self) -> Optional[str]:
        return naming.storage_subnet(self.cluster) if self.storage_enabled else None

    @property
    def region_scope(self) -> dict:
        return {"region": self.region}

    @property
    def zone_scope(self) -> dict:
        return {"zone": self.zone}


@dataclass(frozen=True)
class Settings:
    retry: RetryPolicy = RetryPolicy()
    service_account: str = ""
    node_image: str = ""
    health_check_port: int = 80
    confirm_changes: bool = False
    delete_service_account: bool = False
    plan_format: str = "text"


def _flag(env: Mapping[str, str], key: str, default: str = "0") -> bool:
    return (env.get(key) or default).strip().lower() in ("1", "true", "yes")


def _number(env: Mapping[str, str], key: str, default: str, cast=int):
    raw = env.get(key) or default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigError(f"{key}: expected a number, got {raw!r}") from None


def load_context(env: Optional[Mapping[str, str]] = None) -> ClusterContext:
    env = os.environ if env is None else env

    cluster = env.get("CLUSTER_NAME") or "talos-gcp-cluster"
    if len(cluster) > MAX_CLUSTER_NAME:
        raise ConfigError(f"CLUSTER_NAME {cluster!r} is too long ({len(cluster)} chars, max {MAX_CLUSTER_NAME})")
    if not CLUSTER_NAME_RE.match(cluster):
        raise ConfigError(f"CLUSTER_NAME {cluster!r} must be lowercase letters, digits and '-'")

    project = env.get("PROJECT_ID") or ""
    if not project:
        raise ConfigError("PROJECT_ID is not set")

    region = env.get("REGION") or "us-central1"
    zone = env.get("ZONE") or f"{region}-b"
    if not zone.startswith(region + "-"):
        raise ConfigError(f"ZONE {zone!r} is not in REGION {region!r}")

    return ClusterContext(
        cluster=cluster,
        project=project,
        region=region,
        zone=zone,
        storage_enabled=bool(env.get("STORAGE_CIDR")),
    )


def load_settings(ctx: ClusterContext, env: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if env is None else env

    plan_format = (env.get("PLAN_FORMAT") or "text").lower()
    if plan_format not in ("text", "yaml"):
        raise ConfigError(f"PLAN_FORMAT must be text or yaml, got {plan_format!r}")

    return Settings(
        retry=RetryPolicy(
            attempts=_number(env, "RETRY_ATTEMPTS", "5"),
            base_delay=_number(env, "RETRY_BASE_SECONDS", "1", float),
            poll_interval=_number(env, "POLL_INTERVAL_SECONDS", "10", float),
            poll_attempts=_number(env, "POLL_MAX_ATTEMPTS", "30"),
        ),
        service_account=env.get("SA_NAME") or naming.service_account(ctx.cluster),
        node_image=env.get("NODE_IMAGE") or "",
        health_check_port=_number(env, "WORKER_HC_PORT", "80"),
        confirm_changes=_flag(env, "CONFIRM_CHANGES"),
        delete_service_account=_flag(env, "DELETE_SERVICE_ACCOUNT"),
        plan_format=plan_format,
    )
