# gcloud.py
"""Resource API backed by the gcloud CLI.

Every call is ``gcloud <group> <verb> ... --project=P --format=json``. The
reconcilers only ever see the small surface below (list/describe/create/
update/delete plus instance-group membership and backend attachment), so a
fake with the same methods is all the tests need.
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
from typing import Dict, List, Mapping, Optional, Sequence

import naming
from errors import AlreadyExists, ApiError, NotFound, TransientApiError

log = logging.getLogger(__name__)

# kind -> (command group, scope flag used by describe/create/update/delete)
KINDS: Dict[str, tuple] = {
    "address": (["compute", "addresses"], "region"),
    "forwarding-rule": (["compute", "forwarding-rules"], "region"),
    "firewall-rule": (["compute", "firewall-rules"], None),
    "health-check": (["compute", "health-checks"], "region"),
    "backend-service": (["compute", "backend-services"], "region"),
    "network": (["compute", "networks"], None),
    "subnet": (["compute", "networks", "subnets"], "region"),
    "peering": (["compute", "networks", "peerings"], "network"),
    "instance": (["compute", "instances"], "zone"),
    "instance-group": (["compute", "instance-groups", "unmanaged"], "zone"),
    "service-account": (["iam", "service-accounts"], None),
}

# list filters take the plural flag
LIST_SCOPE_FLAGS = {"region": "--regions", "zone": "--zones", "network": "--network"}

_NOT_FOUND = re.compile(r"was not found|notFound|does not exist|NOT_FOUND|is not a member", re.I)
_ALREADY_EXISTS = re.compile(r"already exists|alreadyExists|ALREADY_EXISTS|already a member|[Dd]uplicate backend", re.I)
_TRANSIENT = re.compile(
    r"rateLimitExceeded|RATE_LIMIT|RESOURCE_OPERATION_RATE_EXCEEDED|operation in progress|"
    r"resourceNotReady|is not ready|currently being|try again|backendError|"
    r"internal error|\b50[023]\b|UNAVAILABLE|deadline exceeded|timed out",
    re.I,
)


def classify_error(message: str, stderr: str, returncode: int) -> ApiError:
    if _ALREADY_EXISTS.search(stderr):
        return AlreadyExists(message, stderr, returncode)
    if _NOT_FOUND.search(stderr):
        return NotFound(message, stderr, returncode)
    if _TRANSIENT.search(stderr):
        return TransientApiError(message, stderr, returncode)
    return ApiError(message, stderr, returncode)


def _flag_name(key: str) -> str:
    return "--" + key.replace("_", "-")


def flags_from_attrs(attrs: Mapping[str, object]) -> List[str]:
    """{"ports": [80, 443], "quiet": True} -> ["--ports=80,443", "--quiet"].

    Keys whose value is a list of lists repeat the flag, which is how gcloud
    takes ``--network-interface`` and ``--create-disk``.
    """
    out: List[str] = []
    for key in sorted(attrs):
        value = attrs[key]
        if value is None or value is False or value == "" or value == [] or value == {}:
            continue
        flag = _flag_name(key)
        if value is True:
            out.append(flag)
        elif isinstance(value, (list, tuple)) and value and isinstance(value[0], (list, tuple)):
            for item in value:
                out.append(f"{flag}={','.join(str(v) for v in item)}")
        elif isinstance(value, (list, tuple)):
            out.append(f"{flag}={','.join(str(v) for v in value)}")
        elif isinstance(value, dict):
            out.append(f"{flag}={','.join(f'{k}={v}' for k, v in sorted(value.items()))}")
        else:
            out.append(f"{flag}={value}")
    return out


def basename(url: Optional[str]) -> str:
    return (url or "").rstrip("/").rsplit("/", 1)[-1]


class GcloudClient:
    def __init__(self, project: str, gcloud: str = "gcloud", timeout_s: int = 600):
        self.project = project
        self.gcloud = gcloud
        self.timeout_s = timeout_s

    # ─────────────────────────────────────────
    # Plumbing
    # ─────────────────────────────────────────
    def _run(self, args: Sequence[str]):
        cmd = [self.gcloud, *args, f"--project={self.project}", "--format=json", "--quiet"]
        log.debug("[gcloud] %s", " ".join(cmd))
        p = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=self.timeout_s,
        )
        if p.returncode != 0:
            raise classify_error(f"gcloud {' '.join(args[:3])} failed", p.stderr or "", p.returncode)
        text = (p.stdout or "").strip()
        if not text:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text

    def _scope_flags(self, kind: str, scope: Mapping[str, str]) -> List[str]:
        _, flag = KINDS[kind]
        if flag and scope.get(flag):
            return [f"--{flag}={scope[flag]}"]
        return []

    def _target(self, kind: str, name: str) -> str:
        if kind == "service-account" and "@" not in name:
            return naming.service_account_email(name, self.project)
        return name

    # ─────────────────────────────────────────
    # Generic resource verbs
    # ─────────────────────────────────────────
    def list(self, kind: str, scope: Mapping[str, str], prefix: str = "") -> List[dict]:
        group, flag = KINDS[kind]
        if kind == "peering":
            data = self._run([*group, "list", f"--network={scope['network']}"]) or []
            # one entry per network, each carrying its peerings
            items = [p for net in data for p in (net.get("peerings") or [])]
        else:
            args = [*group, "list"]
            if flag and scope.get(flag):
                args.append(f"{LIST_SCOPE_FLAGS[flag]}={scope[flag]}")
            # service-account names are resource paths; filter those locally
            if prefix and kind != "service-account":
                args.append(f"--filter=name~^{prefix}")
            items = self._run(args) or []
        if kind == "service-account":
            for item in items:
                item["name"] = str(item.get("email") or basename(item.get("name"))).split("@", 1)[0]
        return [i for i in items if not prefix or str(i.get("name", "")).startswith(prefix)]

    def describe(self, kind: str, name: str, scope: Mapping[str, str]) -> Optional[dict]:
        try:
            if kind == "peering":
                return next((p for p in self.list(kind, scope) if p.get("name") == name), None)
            group, _ = KINDS[kind]
            return self._run([*group, "describe", self._target(kind, name), *self._scope_flags(kind, scope)])
        except NotFound:
            return None

    def create(self, kind: str, name: str, scope: Mapping[str, str], attrs: Mapping[str, object]) -> None:
        group, _ = KINDS[kind]
        attrs = dict(attrs)
        verb = ["create"]
        if kind == "health-check":
            verb.append(attrs.pop("protocol", "tcp"))
        self._run([*group, *verb, name, *self._scope_flags(kind, scope), *flags_from_attrs(attrs)])

    def update(self, kind: str, name: str, scope: Mapping[str, str], attrs: Mapping[str, object]) -> None:
        group, _ = KINDS[kind]
        self._run([*group, "update", self._target(kind, name), *self._scope_flags(kind, scope), *flags_from_attrs(attrs)])

    def delete(self, kind: str, name: str, scope: Mapping[str, str]) -> None:
        group, _ = KINDS[kind]
        self._run([*group, "delete", self._target(kind, name), *self._scope_flags(kind, scope)])

    # ─────────────────────────────────────────
    # Instance-group membership
    # ─────────────────────────────────────────
    def list_members(self, group: str, zone: str) -> List[str]:
        args = [*KINDS["instance-group"][0], "list-instances", group, f"--zone={zone}"]
        return [basename(i.get("instance")) for i in (self._run(args) or [])]

    def add_member(self, group: str, zone: str, instance: str) -> None:
        self._run([*KINDS["instance-group"][0], "add-instances", group, f"--zone={zone}", f"--instances={instance}"])

    def remove_member(self, group: str, zone: str, instance: str) -> None:
        self._run([*KINDS["instance-group"][0], "remove-instances", group, f"--zone={zone}", f"--instances={instance}"])

    # ─────────────────────────────────────────
    # Load-balancer backends
    # ─────────────────────────────────────────
    def backend_groups(self, backend: str, region: str) -> Optional[List[str]]:
        """Instance groups behind ``backend``; None when the backend service does not exist."""
        be = self.describe("backend-service", backend, {"region": region})
        if be is None:
            return None
        return [basename(b.get("group")) for b in be.get("backends") or []]

    def attach_backend(self, backend: str, region: str, group: str, zone: str) -> None:
        self._run([
            *KINDS["backend-service"][0], "add-backend", backend, f"--region={region}",
            f"--instance-group={group}", f"--instance-group-zone={zone}",
        ])
