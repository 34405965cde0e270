# domains/identity.py
from __future__ import annotations

from typing import Optional

from config import ClusterContext, Settings
from executor import execute
from gate import validate_deletions
from probe import safe_describe
from reconcile import ReconcilePlan, ReconcileResult, run_domain


def plan_identity(api, ctx: ClusterContext, settings: Settings, observed: Optional[dict] = None) -> ReconcilePlan:
    """Ensure the node service account exists. Never deletes."""
    name = settings.service_account
    current = observed if observed is not None else safe_describe(api, "service-account", name, {})
    plan = ReconcilePlan("identity", service_account=name)
    if current is None:
        plan.add("create", "service-account", name, attrs={"display_name": f"{ctx.cluster} nodes"})
    return plan


def plan_release(api, ctx: ClusterContext, settings: Settings, observed: Optional[dict] = None) -> ReconcilePlan:
    """Delete the service account, if the safety gate agrees it belongs to this cluster.

    Custom SA_NAME accounts are only released with DELETE_SERVICE_ACCOUNT set.
    """
    name = settings.service_account
    current = observed if observed is not None else safe_describe(api, "service-account", name, {})
    plan = ReconcilePlan("identity", service_account=name)
    if current is not None:
        plan.add("delete", "service-account", name, reason="cluster teardown")
    validate_deletions(ctx, plan, force_identity=settings.delete_service_account)
    return plan


def reconcile_identity(api, ctx: ClusterContext, settings: Settings, apply: bool = True) -> ReconcileResult:
    return run_domain(
        "identity",
        lambda: plan_identity(api, ctx, settings),
        lambda plan: execute(api, ctx, plan, settings.retry),
        apply=apply,
    )


def release_identity(api, ctx: ClusterContext, settings: Settings, apply: bool = True) -> ReconcileResult:
    return run_domain(
        "identity",
        lambda: plan_release(api, ctx, settings),
        lambda plan: execute(api, ctx, plan, settings.retry),
        apply=apply,
    )
