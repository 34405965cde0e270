from __future__ import annotations

from desired import PoolSpec
from gate import check_contiguous, instance_drift, owned_by_cluster, service_account_deletable, validate_deletions
from reconcile import Action, ReconcilePlan


def _delete(kind: str, name: str, **kwargs) -> Action:
    return Action("delete", kind, name, **kwargs)


def _instance(machine_type: str = "e2-standard-4", nics: int = 1) -> dict:
    return {
        "machineType": f"https://www.googleapis.com/compute/v1/projects/p/zones/z/machineTypes/{machine_type}",
        "networkInterfaces": [{} for _ in range(nics)],
    }


def test_ownership_follows_naming(ctx) -> None:
    assert owned_by_cluster(ctx, _delete("address", "lab-ingress-v4-3"))
    assert owned_by_cluster(ctx, _delete("forwarding-rule", "lab-ingress-v4-rule-0-udp"))
    assert owned_by_cluster(ctx, _delete("forwarding-rule", "lab-ingress-v4-rule-0"))
    assert owned_by_cluster(ctx, _delete("firewall-rule", "allow-lab-from-east-ceph"))
    assert owned_by_cluster(ctx, _delete("peering", "peer-lab-to-east", scope={"network": "lab-vpc"}))
    assert owned_by_cluster(ctx, _delete("instance", "lab-worker-4", attrs={"pool": "worker"}))


def test_foreign_names_are_not_owned(ctx) -> None:
    assert not owned_by_cluster(ctx, _delete("address", "labx-ingress-v4-3"))
    assert not owned_by_cluster(ctx, _delete("address", "lab-ingress-v4-3-old"))
    assert not owned_by_cluster(ctx, _delete("firewall-rule", "allow-east-from-lab-ceph"))
    assert not owned_by_cluster(ctx, _delete("peering", "peer-east-to-west", scope={"network": "lab-vpc"}))
    # right name, wrong pool
    assert not owned_by_cluster(ctx, _delete("instance", "lab-worker-4", attrs={"pool": "storage"}))
    assert not owned_by_cluster(ctx, _delete("instance", "lab-worker-4"))
    assert not owned_by_cluster(ctx, _delete("network", "lab-vpc"))


def test_reverse_peering_needs_matching_remote_network(ctx) -> None:
    assert owned_by_cluster(ctx, _delete("peering", "peer-east-to-lab", scope={"network": "east-vpc"}))
    assert not owned_by_cluster(ctx, _delete("peering", "peer-east-to-lab", scope={"network": "west-vpc"}))


def test_service_account_guard(ctx) -> None:
    assert service_account_deletable(ctx, "lab-sa")
    assert service_account_deletable(ctx, "lab-1f2e-sa")
    assert not service_account_deletable(ctx, "shared-nodes")
    assert not service_account_deletable(ctx, "lab-XYZW-sa")
    assert service_account_deletable(ctx, "shared-nodes", force=True)


def test_validate_deletions_moves_denied_actions(ctx) -> None:
    plan = ReconcilePlan("ingress")
    plan.add("create", "address", "lab-ingress-v4-0")
    plan.add("delete", "address", "other-ingress-v4-1")
    plan.add("delete", "address", "lab-ingress-v4-2")

    res = validate_deletions(ctx, plan)

    assert res.ok is True
    assert [str(a) for a in plan.actions] == ["create address lab-ingress-v4-0", "delete address lab-ingress-v4-2"]
    assert plan["denied"] == ["address other-ingress-v4-1"]
    assert any("refusing" in w for w in res.warnings)
    assert plan["warnings"] == res.warnings


def test_instance_drift_compares_type_and_nics() -> None:
    spec = PoolSpec(name="worker", count=1, machine_type="e2-standard-4")
    assert instance_drift(spec, _instance()) == []
    assert instance_drift(spec, _instance("e2-standard-8")) == ["machine type e2-standard-8 != e2-standard-4"]
    assert len(instance_drift(spec, _instance(nics=2))) == 1


def test_check_contiguous() -> None:
    assert check_contiguous([0, 1, 2], "pool worker") is None
    assert check_contiguous([], "pool worker") is None
    warning = check_contiguous([0, 2, 3], "pool worker")
    assert warning is not None and "missing [1]" in warning
