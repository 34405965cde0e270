# executor.py
"""Apply a ReconcilePlan against the resource API, one action at a time.

Order is the plan's order; nothing is reordered or parallelised here.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional, Tuple

from tenacity import RetryError

from config import ClusterContext
from errors import ActionFailed, AlreadyExists, ApiError, NotFound, RetryExhausted, WaitTimeout
from reconcile import Action, ReconcilePlan
from retry import RetryPolicy, poll_until, with_backoff

log = logging.getLogger(__name__)

# bookkeeping attrs that only the planner and the safety gate read
META_ATTRS = ("pool",)

TOLERATE_EXISTS = ("create", "add-member", "attach-backend")
TOLERATE_MISSING = ("delete", "remove-member")

Confirm = Callable[[Action], bool]


def _api_attrs(action: Action) -> dict:
    return {k: v for k, v in action.attrs.items() if k not in META_ATTRS}


def _dispatch(api, action: Action) -> None:
    verb, kind, name, scope = action.verb, action.kind, action.name, action.scope
    if verb == "create":
        api.create(kind, name, scope, _api_attrs(action))
    elif verb == "update":
        api.update(kind, name, scope, _api_attrs(action))
    elif verb == "delete":
        api.delete(kind, name, scope)
    elif verb == "add-member":
        api.add_member(name, scope["zone"], action.attrs["instance"])
    elif verb == "remove-member":
        api.remove_member(name, scope["zone"], action.attrs["instance"])
    elif verb == "attach-backend":
        api.attach_backend(name, scope["region"], action.attrs["group"], action.attrs["zone"])
    else:
        raise ValueError(f"unknown verb {verb!r}")


def _invoke(api, action: Action) -> None:
    try:
        _dispatch(api, action)
    except AlreadyExists:
        if action.verb not in TOLERATE_EXISTS:
            raise
        log.info("[executor] %s %s already present", action.kind, action.name)
    except NotFound:
        if action.verb not in TOLERATE_MISSING:
            raise
        log.info("[executor] %s %s already gone", action.kind, action.name)


def _last_state(api, action: Action) -> Optional[dict]:
    try:
        return api.describe(action.kind, action.name, action.scope)
    except ApiError:
        return None


def _wait_for_status(api, action: Action, policy: RetryPolicy) -> None:
    seen: List[Optional[dict]] = [None]

    def probe():
        seen[0] = _last_state(api, action)
        return seen[0]

    def done(state) -> bool:
        return bool(state) and state.get("status") == action.wait_status

    log.info("[executor] waiting for %s %s to reach %s", action.kind, action.name, action.wait_status)
    if poll_until(probe, done, interval=policy.poll_interval, attempts=policy.poll_attempts, sleep=policy.sleep) is None:
        state = seen[0]
        raise WaitTimeout(
            action.kind,
            action.name,
            last_state=state,
            message=(
                f"{action.kind} {action.name} did not reach {action.wait_status} "
                f"(last status {(state or {}).get('status', 'absent')})"
            ),
        )


def _instance_of(action: Action) -> Optional[str]:
    if action.kind == "instance" and action.verb == "delete":
        return action.name
    if action.kind == "instance-group" and action.verb == "remove-member":
        return action.attrs.get("instance")
    return None


def execute(
    api,
    ctx: ClusterContext,
    plan: ReconcilePlan,
    policy: RetryPolicy = RetryPolicy(),
    confirm: Optional[Confirm] = None,
) -> Tuple[List[Action], List[Action]]:
    """Run every action in ``plan``. Returns (applied, skipped).

    ``confirm`` is asked once per instance about to be taken out of service;
    a refusal skips both its group removal and its deletion. Removals run
    highest index first, so after a refusal every later removal in the same
    pool is skipped without asking and the surviving indices stay contiguous.

    Raises RetryExhausted, ActionFailed or WaitTimeout; the exception's
    ``applied`` attribute lists what had already gone through.
    """
    applied: List[Action] = []
    skipped: List[Action] = []
    verdicts = {}
    refused_pools = set()

    for action in plan.actions:
        instance = _instance_of(action)
        if instance and confirm is not None:
            pool = action.attrs.get("pool")
            if instance not in verdicts:
                verdicts[instance] = pool not in refused_pools and bool(confirm(action))
                if not verdicts[instance]:
                    refused_pools.add(pool)
            if not verdicts[instance]:
                log.warning("[executor] skipped %s (not confirmed)", action)
                skipped.append(action)
                continue

        log.info("[executor] %s", action)
        try:
            with_backoff(
                lambda: _invoke(api, action),
                attempts=policy.attempts,
                base_delay=policy.base_delay,
                sleep=policy.sleep,
            )
            if action.wait_status:
                _wait_for_status(api, action, policy)
        except RetryError as e:
            cause = e.last_attempt.exception()
            failure = RetryExhausted(
                action.kind,
                action.name,
                last_state=_last_state(api, action),
                cause=cause,
                message=f"{action} gave up after {policy.attempts} attempts: {cause}",
            )
            failure.applied = applied
            raise failure from cause
        except ApiError as e:
            failure = ActionFailed(action.kind, action.name, last_state=_last_state(api, action), cause=e)
            failure.applied = applied
            raise failure from e
        except WaitTimeout as e:
            # the create itself went through
            applied.append(action)
            e.applied = applied
            raise
        applied.append(action)

    log.info("[executor] %s: applied=%d skipped=%d", ctx.cluster, len(applied), len(skipped))
    return applied, skipped
