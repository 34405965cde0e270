# app.py
from __future__ import annotations

import logging
import os
import sys
from typing import Callable, List, Optional, Tuple

from kubernetes import client, config

from config import ClusterContext, Settings, load_context, load_settings
from desired import DesiredState, load_desired_state
from domains.identity import reconcile_identity
from domains.ingress import reconcile_ingress
from domains.peering import reconcile_peering
from domains.pools import reconcile_pool, reconcile_pool_labels
from errors import ConfigError
from executor import Confirm
from gcloud import GcloudClient
from mode import compute_mode
from reconcile import Action, ReconcileResult, plan_to_yaml, print_plan

log = logging.getLogger("controller")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


# ─────────────────────────────────────────────
# Setup
# ─────────────────────────────────────────────
def configure_logging(env=None) -> None:
    env = os.environ if env is None else env
    level = (env.get("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )


def load_corev1():
    """CoreV1 client for node labelling, or None when no cluster is reachable yet."""
    try:
        config.load_incluster_config()
        print("[controller] using in-cluster config")
    except config.ConfigException:
        try:
            config.load_kube_config()
            print("[controller] using kubeconfig (local)")
        except config.ConfigException as e:
            log.warning("[controller] no kubernetes config available: %s", e)
            return None
    return client.CoreV1Api()


def confirm_prompt(action: Action) -> bool:
    answer = input(f"[controller] {action} -- proceed? [y/N] ")
    return answer.strip().lower() in ("y", "yes")


def load_all(env=None) -> Tuple[ClusterContext, Settings, DesiredState]:
    """Parse every input before anything touches the API."""
    env = os.environ if env is None else env
    ctx = load_context(env)
    settings = load_settings(ctx, env)
    desired = load_desired_state(env, ctx.cluster, storage_enabled=ctx.storage_enabled)
    return ctx, settings, desired


# ─────────────────────────────────────────────
# Phases
# ─────────────────────────────────────────────
def run(
    api,
    ctx: ClusterContext,
    settings: Settings,
    desired: DesiredState,
    apply: bool = True,
    corev1=None,
    confirm: Optional[Confirm] = None,
) -> List[ReconcileResult]:
    """identity -> ingress -> peering -> pools -> node labels. Stops at the first failed phase."""
    phases: List[Tuple[str, Callable[[], ReconcileResult]]] = [
        ("identity", lambda: reconcile_identity(api, ctx, settings, apply=apply)),
        ("ingress", lambda: reconcile_ingress(api, ctx, settings, desired.ingress, apply=apply, confirm=confirm)),
        ("peering", lambda: reconcile_peering(api, ctx, settings, desired.peers, apply=apply, confirm=confirm)),
    ]
    for name, spec in desired.pools.items():
        phases.append(
            (f"pool:{name}", lambda spec=spec: reconcile_pool(api, ctx, settings, spec, apply=apply, confirm=confirm))
        )

    labelled = [spec for spec in desired.pools.values() if spec.labels or spec.taints]
    if apply and labelled:
        if corev1 is None:
            log.warning("[controller] no cluster access; skipping node labels and taints")
        else:
            for spec in labelled:
                phases.append((f"labels:{spec.name}", lambda spec=spec: reconcile_pool_labels(corev1, ctx, settings, spec)))

    results: List[ReconcileResult] = []
    for name, phase in phases:
        result = phase()
        results.append(result)
        if not result.ok:
            log.error("[controller] %s failed; halting remaining phases", name)
            break
    return results


def report(results: List[ReconcileResult], apply: bool, plan_format: str = "text", out=print) -> None:
    if not apply and plan_format == "yaml":
        out(plan_to_yaml([r.plan for r in results]))
        return
    for r in results:
        print_plan(r.plan, out=out)
        if apply:
            out(f"[controller] domain={r.domain} ok={r.ok} applied={len(r.applied)} skipped={len(r.skipped)}")
        if r.failure is not None:
            out(f"[controller] failure: {r.failure}")


# ─────────────────────────────────────────────
# Main
# ─────────────────────────────────────────────
def main() -> int:
    configure_logging()
    try:
        ctx, settings, desired = load_all()
    except ConfigError as e:
        print(f"[controller] config error: {e}")
        return EXIT_CONFIG

    mode = compute_mode()
    apply = mode == "APPLY"
    print(f"[controller] cluster={ctx.cluster} project={ctx.project} zone={ctx.zone} mode={mode}")

    api = GcloudClient(ctx.project)
    needs_cluster = apply and any(s.labels or s.taints for s in desired.pools.values())
    corev1 = load_corev1() if needs_cluster else None
    confirm = confirm_prompt if apply and settings.confirm_changes else None

    results = run(api, ctx, settings, desired, apply=apply, corev1=corev1, confirm=confirm)
    report(results, apply, settings.plan_format)
    return EXIT_OK if all(r.ok for r in results) else EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
