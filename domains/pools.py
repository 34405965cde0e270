# domains/pools.py
"""Node pools: one unmanaged instance group per pool, instances ``{c}-{pool}-{i}``.

Scale-up creates the missing indices and joins them to the group. Scale-down
removes the highest indices first, each one leaving the group before its
instance is deleted. A running instance whose shape no longer matches the
pool is reported as drift and left alone.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple, TypeVar

from kubernetes.client.rest import ApiException
from tenacity import RetryError

import k8s
import naming
from config import ClusterContext, Settings
from desired import PoolSpec, pool_env_key
from errors import ActionFailed, IllegalTransition, ReconcileFailure, RetryExhausted, WaitTimeout
from executor import Confirm, execute
from gate import check_contiguous, instance_drift, validate_deletions
from probe import ObservedPool, probe_pool
from reconcile import Action, ReconcilePlan, ReconcileResult, run_domain
from retry import RetryPolicy, poll_until, with_backoff

log = logging.getLogger(__name__)

T = TypeVar("T")


class NodeState(str, Enum):
    ABSENT = "ABSENT"
    CREATING = "CREATING"
    PRESENT = "PRESENT"
    DRIFTED = "DRIFTED"
    PENDING_DELETE = "PENDING_DELETE"


TRANSITIONS = {
    NodeState.ABSENT: {NodeState.CREATING},
    NodeState.CREATING: {NodeState.PRESENT},
    NodeState.PRESENT: {NodeState.DRIFTED, NodeState.PENDING_DELETE},
    NodeState.DRIFTED: set(),
    NodeState.PENDING_DELETE: {NodeState.ABSENT},
}


@dataclass
class NodeInstance:
    cluster: str
    pool: str
    index: int
    state: NodeState = NodeState.ABSENT

    @property
    def name(self) -> str:
        return naming.instance(self.cluster, self.pool, self.index)

    def transition(self, new: NodeState) -> None:
        if new not in TRANSITIONS[self.state]:
            raise IllegalTransition(f"{self.name}: {self.state.value} -> {new.value}")
        log.debug("[pools] %s %s -> %s", self.name, self.state.value, new.value)
        self.state = new


# ─────────────────────────────────────────────
# Instance shape
# ─────────────────────────────────────────────
def instance_attrs(ctx: ClusterContext, settings: Settings, spec: PoolSpec, name: str) -> dict:
    nics = [[f"network={ctx.network}", f"subnet={ctx.subnet}", "no-address"]]
    if spec.network_mode == "storage":
        nics.append([f"network={ctx.storage_network}", f"subnet={ctx.storage_subnet}", "no-address"])

    disks = [
        [
            f"name={naming.instance_disk(name, n)}",
            f"size={d.size}",
            f"type={d.disk_type}",
            f"device-name={d.device_name}",
            "mode=rw",
            "auto-delete=yes",
        ]
        for n, d in enumerate(spec.additional_disks)
    ]

    image = spec.image or settings.node_image
    return {
        "pool": spec.name,
        "image": image,
        "machine_type": spec.machine_type,
        "boot_disk_size": spec.disk_size,
        "network_interface": nics,
        "create_disk": disks,
        "service_account": naming.service_account_email(settings.service_account, ctx.project),
        "scopes": ["cloud-platform"],
        "tags": [naming.node_tag(ctx.cluster), name],
        "labels": {"cluster": ctx.cluster, "pool": spec.name},
        "metadata": {"node-image": image} if image else None,
        "enable_nested_virtualization": spec.nested_virt,
    }


# ─────────────────────────────────────────────
# Plan
# ─────────────────────────────────────────────
def plan_pool(
    api,
    ctx: ClusterContext,
    settings: Settings,
    spec: PoolSpec,
    observed: Optional[ObservedPool] = None,
) -> ReconcilePlan:
    obs = observed if observed is not None else probe_pool(api, ctx, spec)
    c, zone = ctx.cluster, ctx.zone_scope
    group = naming.instance_group(c, spec.name)
    plan = ReconcilePlan(f"pool:{spec.name}", pool=spec.name, count=spec.count,
                         observed_indices=sorted(obs.instances))

    gap = check_contiguous(obs.instances, f"pool {spec.name}")
    if gap:
        plan.warn(gap)
    if not (spec.image or settings.node_image) and len(obs.instances) < spec.count:
        plan.warn(f"pool {spec.name}: neither {pool_env_key(spec.name, 'IMAGE')} nor NODE_IMAGE is set; gcloud default applies")

    if obs.group is None:
        plan.add("create", "instance-group", group, scope=zone, attrs={"pool": spec.name})

    for i in range(spec.count):
        current = obs.instances.get(i)
        node = NodeInstance(c, spec.name, i, NodeState.ABSENT if current is None else NodeState.PRESENT)
        if current is None:
            node.transition(NodeState.CREATING)
            plan.add("create", "instance", node.name, scope=zone,
                     attrs=instance_attrs(ctx, settings, spec, node.name), wait_status="RUNNING")
            plan.add("add-member", "instance-group", group, scope=zone,
                     attrs={"instance": node.name, "pool": spec.name})
        else:
            drift = instance_drift(spec, current)
            if drift:
                node.transition(NodeState.DRIFTED)
                plan["drift"].append(f"{node.name}: {'; '.join(drift)} (recreate manually to apply)")
            else:
                status = current.get("status", "RUNNING")
                if status != "RUNNING":
                    plan.warn(f"{node.name} is {status}")
                if node.name not in obs.members:
                    plan.add("add-member", "instance-group", group, scope=zone,
                             attrs={"instance": node.name, "pool": spec.name})
        plan["states"][node.name] = node.state.value

    for i in sorted(set(obs.instances) - set(range(spec.count)), reverse=True):
        node = NodeInstance(c, spec.name, i, NodeState.PRESENT)
        node.transition(NodeState.PENDING_DELETE)
        reason = f"index {i} beyond count {spec.count}"
        if node.name in obs.members:
            plan.add("remove-member", "instance-group", group, scope=zone,
                     attrs={"instance": node.name, "pool": spec.name}, reason=reason)
        plan.add("delete", "instance", node.name, scope=zone, attrs={"pool": spec.name}, reason=reason)
        plan["states"][node.name] = node.state.value

    if spec.ingress:
        for backend, groups in obs.backends.items():
            if groups is None:
                plan["deferred"].append(f"attach {group} to {backend}: backend service does not exist")
            elif group not in groups:
                plan.add("attach-backend", "backend-service", backend, scope=ctx.region_scope,
                         attrs={"group": group, "zone": ctx.zone})

    validate_deletions(ctx, plan)
    return plan


def reconcile_pool(
    api,
    ctx: ClusterContext,
    settings: Settings,
    spec: PoolSpec,
    apply: bool = True,
    confirm: Optional[Confirm] = None,
) -> ReconcileResult:
    return run_domain(
        f"pool:{spec.name}",
        lambda: plan_pool(api, ctx, settings, spec),
        lambda plan: execute(api, ctx, plan, settings.retry, confirm=confirm),
        apply=apply,
    )


# ─────────────────────────────────────────────
# Node labels and taints
# ─────────────────────────────────────────────
def _node_state(corev1, name: str) -> Optional[dict]:
    try:
        node = k8s.read_node(corev1, name)
    except ApiException:
        return None
    return {
        "labels": (node.get("metadata") or {}).get("labels") or {},
        "taints": (node.get("spec") or {}).get("taints") or [],
    }


def _node_call(fn: Callable[[], T], name: str, policy: RetryPolicy, corev1=None) -> T:
    """Run a Kubernetes call with backoff; failures come out as node ReconcileFailures.

    ``corev1`` is only needed to record the node's last state. Leave it out
    for calls that are not about a single node.
    """
    try:
        return with_backoff(fn, attempts=policy.attempts, base_delay=policy.base_delay,
                            retryable=k8s.is_retryable, sleep=policy.sleep)
    except RetryError as e:
        cause = e.last_attempt.exception()
        raise RetryExhausted(
            "node",
            name,
            last_state=_node_state(corev1, name) if corev1 is not None else None,
            cause=cause,
            message=f"node {name} gave up after {policy.attempts} attempts: {cause}",
        ) from cause
    except ApiException as e:
        state = _node_state(corev1, name) if corev1 is not None else None
        raise ActionFailed("node", name, last_state=state, cause=e) from e


def _registered(corev1, ctx: ClusterContext, spec: PoolSpec, policy: RetryPolicy) -> List[str]:
    pattern = naming.instance_prefix(ctx.cluster, spec.name) + "*"
    names = []
    for n in _node_call(lambda: k8s.list_node_names(corev1), pattern, policy):
        idx = naming.instance_index(ctx.cluster, spec.name, n)
        if idx is not None and idx < spec.count:
            names.append(n)
    return sorted(names)


def plan_pool_labels(corev1, ctx: ClusterContext, spec: PoolSpec, policy: RetryPolicy) -> ReconcilePlan:
    """Wait for the pool's nodes to register, then plan label/taint patches for them."""
    plan = ReconcilePlan(f"labels:{spec.name}", pool=spec.name)
    if not (spec.labels or spec.taints) or spec.count == 0:
        return plan

    nodes = poll_until(
        lambda: _registered(corev1, ctx, spec, policy),
        bool,
        interval=policy.poll_interval,
        attempts=policy.poll_attempts,
        sleep=policy.sleep,
    )
    if nodes is None:
        raise WaitTimeout("node", naming.instance_prefix(ctx.cluster, spec.name) + "*",
                          message=f"no nodes of pool {spec.name} registered with the cluster")
    if len(nodes) < spec.count:
        plan.warn(f"pool {spec.name}: only {len(nodes)}/{spec.count} nodes registered; labelling those")

    for name in nodes:
        node = _node_call(lambda: k8s.read_node(corev1, name), name, policy)
        labels = k8s.missing_labels(node, spec.label_map)
        taints_changed = k8s.merged_taints(node, spec.taints) != k8s.merged_taints(node, ())
        if labels or taints_changed:
            plan.add("update", "node", name, attrs={
                "labels": labels,
                "taints": [str(t) for t in spec.taints] if taints_changed else [],
            })
    return plan


def apply_pool_labels(
    corev1,
    spec: PoolSpec,
    plan: ReconcilePlan,
    policy: RetryPolicy = RetryPolicy(),
) -> Tuple[List[Action], List[Action]]:
    applied: List[Action] = []
    for action in plan.actions:
        try:
            if action.attrs.get("labels"):
                _node_call(lambda: k8s.ensure_node_labels(corev1, action.name, spec.label_map),
                           action.name, policy, corev1)
            if action.attrs.get("taints"):
                _node_call(lambda: k8s.ensure_node_taints(corev1, action.name, spec.taints),
                           action.name, policy, corev1)
        except ReconcileFailure as e:
            e.applied = applied
            raise
        log.info("[pools] %s", action)
        applied.append(action)
    return applied, []


def reconcile_pool_labels(corev1, ctx: ClusterContext, settings: Settings, spec: PoolSpec) -> ReconcileResult:
    return run_domain(
        f"labels:{spec.name}",
        lambda: plan_pool_labels(corev1, ctx, spec, settings.retry),
        lambda plan: apply_pool_labels(corev1, spec, plan, settings.retry),
    )
