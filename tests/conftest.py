from __future__ import annotations

from types import SimpleNamespace
from typing import Dict, List, Optional, Tuple

import pytest

from config import ClusterContext, Settings
from errors import AlreadyExists, ApiError, NotFound
from retry import RetryPolicy


def _no_sleep(_seconds: float) -> None:
    return None


def _allowed(rules: str) -> List[dict]:
    """"tcp:80,tcp:443,icmp" -> GCP firewall ``allowed`` entries."""
    by_proto: Dict[str, List[str]] = {}
    for item in rules.split(","):
        proto, _, port = item.partition(":")
        by_proto.setdefault(proto, [])
        if port:
            by_proto[proto].append(port)
    return [{"IPProtocol": p, **({"ports": ports} if ports else {})} for p, ports in by_proto.items()]


class FakeResourceApi:
    """In-memory stand-in for GcloudClient. Stores resources in the shape gcloud returns them."""

    def __init__(self) -> None:
        self.resources: Dict[Tuple[str, str], dict] = {}
        self.members: Dict[str, set] = {}
        self.calls: List[Tuple[str, str, str]] = []
        self.failures: Dict[Tuple[str, str], list] = {}
        self.list_errors: set = set()
        self.describe_errors: set = set()

    # test helpers
    def seed(self, kind: str, name: str, **fields) -> dict:
        self.resources[(kind, name)] = {"name": name, **fields}
        return self.resources[(kind, name)]

    def fail(self, verb: str, name: str, *errors: Exception) -> None:
        self.failures.setdefault((verb, name), []).extend(errors)

    def names(self, kind: str) -> List[str]:
        return sorted(n for k, n in self.resources if k == kind)

    @property
    def mutations(self) -> List[Tuple[str, str, str]]:
        return list(self.calls)

    def _record(self, verb: str, kind: str, name: str) -> None:
        self.calls.append((verb, kind, name))
        queue = self.failures.get((verb, name))
        if queue:
            raise queue.pop(0)

    # reads
    def list(self, kind: str, scope, prefix: str = "") -> List[dict]:
        if kind in self.list_errors:
            raise ApiError(f"list {kind} failed", "permission denied")
        out = []
        for (k, n), r in sorted(self.resources.items()):
            if k != kind or not n.startswith(prefix):
                continue
            if kind == "peering" and r.get("network") != scope.get("network"):
                continue
            out.append(dict(r))
        return out

    def describe(self, kind: str, name: str, scope) -> Optional[dict]:
        if name in self.describe_errors:
            raise ApiError(f"describe {name} failed", "permission denied")
        r = self.resources.get((kind, name))
        if r is None:
            return None
        if kind == "peering" and r.get("network") != scope.get("network"):
            return None
        return dict(r)

    # writes
    def _observed(self, kind: str, name: str, scope, attrs) -> dict:
        if kind == "forwarding-rule":
            return {"name": name, "IPProtocol": attrs["ip_protocol"], "ports": [str(p) for p in attrs["ports"]]}
        if kind == "firewall-rule":
            return {"name": name, "allowed": _allowed(attrs["rules"]), "sourceRanges": list(attrs["source_ranges"])}
        if kind == "instance":
            return {
                "name": name,
                "machineType": f"https://compute/zones/z/machineTypes/{attrs['machine_type']}",
                "networkInterfaces": [{} for _ in attrs["network_interface"]],
                "status": "RUNNING",
            }
        if kind == "peering":
            return {"name": name, "network": scope["network"], "state": "ACTIVE"}
        if kind == "backend-service":
            return {"name": name, "backends": []}
        return {"name": name}

    def create(self, kind: str, name: str, scope, attrs) -> None:
        self._record("create", kind, name)
        if (kind, name) in self.resources:
            raise AlreadyExists(f"{name} exists", "already exists")
        self.resources[(kind, name)] = self._observed(kind, name, scope, attrs)

    def update(self, kind: str, name: str, scope, attrs) -> None:
        self._record("update", kind, name)
        r = self.resources[(kind, name)]
        if kind == "firewall-rule":
            r["allowed"] = _allowed(attrs["rules"])
            r["sourceRanges"] = list(attrs["source_ranges"])

    def delete(self, kind: str, name: str, scope) -> None:
        self._record("delete", kind, name)
        if (kind, name) not in self.resources:
            raise NotFound(f"{name} missing", "was not found")
        del self.resources[(kind, name)]

    def list_members(self, group: str, zone: str) -> List[str]:
        return sorted(self.members.get(group, set()))

    def add_member(self, group: str, zone: str, instance: str) -> None:
        self._record("add-member", "instance-group", group)
        members = self.members.setdefault(group, set())
        if instance in members:
            raise AlreadyExists(f"{instance} in {group}", "already a member")
        members.add(instance)

    def remove_member(self, group: str, zone: str, instance: str) -> None:
        self._record("remove-member", "instance-group", group)
        members = self.members.setdefault(group, set())
        if instance not in members:
            raise NotFound(f"{instance} not in {group}", "is not a member")
        members.discard(instance)

    def backend_groups(self, backend: str, region: str) -> Optional[List[str]]:
        r = self.resources.get(("backend-service", backend))
        return None if r is None else list(r.get("backends", []))

    def attach_backend(self, backend: str, region: str, group: str, zone: str) -> None:
        self._record("attach-backend", "backend-service", backend)
        self.resources[("backend-service", backend)].setdefault("backends", []).append(group)


class _Node:
    def __init__(self, name: str, labels: dict, taints: list) -> None:
        self.metadata = SimpleNamespace(name=name)
        self._labels = labels
        self._taints = taints

    def to_dict(self) -> dict:
        return {
            "metadata": {"name": self.metadata.name, "labels": dict(self._labels)},
            "spec": {"taints": [dict(t, time_added=None) for t in self._taints] or None},
        }


class FakeCoreV1:
    def __init__(self) -> None:
        self.nodes: Dict[str, dict] = {}
        self.patches: List[Tuple[str, dict]] = []
        self.errors: Dict[str, list] = {}

    def fail(self, method: str, *errors: Exception) -> None:
        """Queue errors raised by the next calls to ``method``, one per call."""
        self.errors.setdefault(method, []).extend(errors)

    def _raise_queued(self, method: str) -> None:
        queued = self.errors.get(method)
        if queued:
            raise queued.pop(0)

    def add_node(self, name: str, labels: Optional[dict] = None, taints: Optional[list] = None) -> None:
        self.nodes[name] = {"labels": dict(labels or {}), "taints": list(taints or [])}

    def list_node(self):
        self._raise_queued("list_node")
        return SimpleNamespace(items=[_Node(n, d["labels"], d["taints"]) for n, d in sorted(self.nodes.items())])

    def read_node(self, name: str):
        self._raise_queued("read_node")
        d = self.nodes[name]
        return _Node(name, d["labels"], d["taints"])

    def patch_node(self, name: str, body: dict) -> None:
        self._raise_queued("patch_node")
        self.patches.append((name, body))
        node = self.nodes[name]
        node["labels"].update(body.get("metadata", {}).get("labels", {}))
        if "taints" in body.get("spec", {}):
            node["taints"] = list(body["spec"]["taints"])


@pytest.fixture
def api() -> FakeResourceApi:
    return FakeResourceApi()


@pytest.fixture
def corev1() -> FakeCoreV1:
    return FakeCoreV1()


@pytest.fixture
def ctx() -> ClusterContext:
    return ClusterContext(cluster="lab", project="proj", region="us-central1", zone="us-central1-b")


@pytest.fixture
def storage_ctx() -> ClusterContext:
    return ClusterContext(cluster="lab", project="proj", region="us-central1", zone="us-central1-b", storage_enabled=True)


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(attempts=3, base_delay=0.0, poll_interval=0.0, poll_attempts=3, sleep=_no_sleep)


@pytest.fixture
def settings(policy: RetryPolicy) -> Settings:
    return Settings(retry=policy, service_account="lab-sa", node_image="talos-v1-7")
