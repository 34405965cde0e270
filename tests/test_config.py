from __future__ import annotations

import pytest

from config import load_context, load_settings
from errors import ConfigError
from mode import compute_mode


def test_context_defaults() -> None:
    ctx = load_context({"PROJECT_ID": "proj"})
    assert ctx.cluster == "talos-gcp-cluster"
    assert ctx.region == "us-central1"
    assert ctx.zone == "us-central1-b"
    assert ctx.network == "talos-gcp-cluster-vpc"
    assert ctx.storage_network is None


def test_context_requires_project() -> None:
    with pytest.raises(ConfigError, match="PROJECT_ID"):
        load_context({"CLUSTER_NAME": "lab"})


@pytest.mark.parametrize("name", ["a-very-long-cluster-name-x", "Lab", "lab_1", "-lab"])
def test_context_rejects_bad_cluster_names(name: str) -> None:
    with pytest.raises(ConfigError):
        load_context({"PROJECT_ID": "proj", "CLUSTER_NAME": name})


def test_zone_must_be_in_region() -> None:
    with pytest.raises(ConfigError):
        load_context({"PROJECT_ID": "proj", "REGION": "europe-west1", "ZONE": "us-central1-a"})


def test_storage_cidr_enables_storage_network() -> None:
    ctx = load_context({"PROJECT_ID": "proj", "CLUSTER_NAME": "lab", "STORAGE_CIDR": "10.10.0.0/24"})
    assert ctx.storage_network == "lab-storage-vpc"
    assert ctx.storage_subnet == "lab-storage-subnet"


def test_settings_from_env() -> None:
    env = {
        "PROJECT_ID": "proj",
        "CLUSTER_NAME": "lab",
        "RETRY_ATTEMPTS": "7",
        "RETRY_BASE_SECONDS": "0.5",
        "POLL_MAX_ATTEMPTS": "12",
        "CONFIRM_CHANGES": "true",
        "PLAN_FORMAT": "YAML",
    }
    settings = load_settings(load_context(env), env)
    assert settings.retry.attempts == 7
    assert settings.retry.base_delay == 0.5
    assert settings.retry.poll_attempts == 12
    assert settings.retry.poll_interval == 10.0
    assert settings.confirm_changes is True
    assert settings.delete_service_account is False
    assert settings.service_account == "lab-sa"
    assert settings.plan_format == "yaml"


def test_settings_reject_garbage() -> None:
    env = {"PROJECT_ID": "proj", "RETRY_ATTEMPTS": "many"}
    with pytest.raises(ConfigError, match="RETRY_ATTEMPTS"):
        load_settings(load_context(env), env)
    env = {"PROJECT_ID": "proj", "PLAN_FORMAT": "json"}
    with pytest.raises(ConfigError):
        load_settings(load_context(env), env)


def test_mode_defaults_to_plan() -> None:
    assert compute_mode({}) == "PLAN"
    assert compute_mode({"RECONCILE_MODE": "bogus"}) == "PLAN"
    assert compute_mode({"RECONCILE_MODE": "apply"}) == "APPLY"
    assert compute_mode({"MODE": "APPLY"}) == "APPLY"
    assert compute_mode({"RECONCILE_MODE": "PLAN", "MODE": "APPLY"}) == "PLAN"
