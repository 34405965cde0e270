from __future__ import annotations

from domains.peering import CEPH_RULES, plan_peering, reconcile_peering


def _verbs(plan) -> list:
    return [(a.verb, a.kind, a.name) for a in plan.actions]


def _remote_cluster(api, name: str, cidr: str = "10.1.0.0/20", pods: str = "10.100.0.0/16") -> None:
    api.seed("network", f"{name}-vpc")
    api.seed(
        "subnet",
        f"{name}-subnet",
        network=f"https://compute/projects/p/global/networks/{name}-vpc",
        ipCidrRange=cidr,
        secondaryIpRanges=[{"rangeName": "pods", "ipCidrRange": pods}],
    )


def _link(api, local: str, remote: str) -> None:
    api.seed("peering", f"peer-{local}-to-{remote}", network=f"{local}-vpc", state="ACTIVE")
    api.seed("peering", f"peer-{remote}-to-{local}", network=f"{remote}-vpc", state="ACTIVE")
    api.seed("firewall-rule", f"allow-{local}-from-{remote}-ceph")
    api.seed("firewall-rule", f"allow-{local}-from-{remote}-icmp")


def test_new_link_creates_both_sides_and_firewalls(api, ctx) -> None:
    _remote_cluster(api, "east")

    plan = plan_peering(api, ctx, ("east",))

    assert _verbs(plan) == [
        ("create", "peering", "peer-lab-to-east"),
        ("create", "peering", "peer-east-to-lab"),
        ("create", "firewall-rule", "allow-lab-from-east-ceph"),
        ("create", "firewall-rule", "allow-lab-from-east-icmp"),
    ]
    local, reverse, ceph, icmp = plan.actions
    assert local.scope == {"network": "lab-vpc"} and local.attrs["peer_network"] == "east-vpc"
    assert reverse.scope == {"network": "east-vpc"} and reverse.attrs["peer_network"] == "lab-vpc"
    assert ceph.attrs["rules"] == "tcp:3300,tcp:6789,tcp:6800-7300"
    assert ceph.attrs["source_ranges"] == ["10.1.0.0/20", "10.100.0.0/16"]
    assert icmp.attrs["rules"] == "icmp"


def test_link_converges(api, ctx, settings) -> None:
    _remote_cluster(api, "east")

    assert reconcile_peering(api, ctx, settings, ("east",)).ok
    calls = len(api.calls)
    second = reconcile_peering(api, ctx, settings, ("east",))

    assert second.plan.converged
    assert len(api.calls) == calls
    assert second.plan["states"] == {"peer-lab-to-east": "ACTIVE", "peer-east-to-lab": "ACTIVE"}


def test_missing_remote_network_defers(api, ctx) -> None:
    plan = plan_peering(api, ctx, ("east",))

    assert plan.actions == []
    assert plan["deferred"] == ["east: remote network east-vpc is ABSENT"]


def test_unreadable_remote_network_defers(api, ctx) -> None:
    _remote_cluster(api, "east")
    api.describe_errors.add("east-vpc")

    plan = plan_peering(api, ctx, ("east",))

    assert plan.actions == []
    assert "UNKNOWN" in plan["deferred"][0]


def test_drifted_source_ranges_are_updated(api, ctx) -> None:
    _remote_cluster(api, "east")
    _link(api, "lab", "east")
    api.seed(
        "firewall-rule",
        "allow-lab-from-east-ceph",
        allowed=[{"IPProtocol": "tcp", "ports": ["6789", "3300", "6800-7300"]}],
        sourceRanges=["10.1.0.0/20"],
    )
    api.seed("firewall-rule", "allow-lab-from-east-icmp", allowed=[{"IPProtocol": "icmp"}],
             sourceRanges=["10.1.0.0/20", "10.100.0.0/16"])

    plan = plan_peering(api, ctx, ("east",))

    assert _verbs(plan) == [("update", "firewall-rule", "allow-lab-from-east-ceph")]
    assert plan.actions[0].attrs == {"rules": CEPH_RULES, "source_ranges": ["10.1.0.0/20", "10.100.0.0/16"]}


def test_inactive_peering_is_reported(api, ctx) -> None:
    _remote_cluster(api, "east")
    _link(api, "lab", "east")
    api.resources[("peering", "peer-lab-to-east")]["state"] = "INACTIVE"

    plan = plan_peering(api, ctx, ("east",))

    assert plan["states"]["peer-lab-to-east"] == "INACTIVE"
    assert any("INACTIVE" in w for w in plan["warnings"])


def test_stale_link_is_preserved_while_remote_network_exists(api, ctx) -> None:
    _remote_cluster(api, "east")
    _link(api, "lab", "east")

    plan = plan_peering(api, ctx, ())

    assert plan.actions == []
    assert len(plan["preserved"]) == 3
    assert all("PRESENT" in p for p in plan["preserved"])


def test_stale_link_is_preserved_when_remote_state_unknown(api, ctx) -> None:
    _link(api, "lab", "east")
    api.describe_errors.add("east-vpc")

    plan = plan_peering(api, ctx, ())

    assert plan.actions == []
    assert plan["preserved"]


def test_stale_link_is_removed_once_remote_network_is_gone(api, ctx, settings) -> None:
    _link(api, "lab", "east")
    # the remote network and its side of the link are gone
    del api.resources[("peering", "peer-east-to-lab")]

    plan = plan_peering(api, ctx, ())

    assert _verbs(plan) == [
        ("delete", "firewall-rule", "allow-lab-from-east-ceph"),
        ("delete", "firewall-rule", "allow-lab-from-east-icmp"),
        ("delete", "peering", "peer-lab-to-east"),
    ]
    assert reconcile_peering(api, ctx, settings, ()).ok
    assert api.names("peering") == []
    assert api.names("firewall-rule") == []


def test_leftover_firewalls_of_a_removed_link_are_cleaned_up(api, ctx) -> None:
    api.seed("firewall-rule", "allow-lab-from-east-icmp")

    plan = plan_peering(api, ctx, ())

    assert _verbs(plan) == [("delete", "firewall-rule", "allow-lab-from-east-icmp")]


def test_other_clusters_links_are_not_touched(api, ctx) -> None:
    _link(api, "west", "east")

    plan = plan_peering(api, ctx, ())

    assert plan.actions == []
    assert plan["preserved"] == []
