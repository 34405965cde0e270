# mode.py
import os

MODES = {"PLAN", "APPLY"}


def compute_mode(env=None) -> str:
    """
    Decide reconcile mode.
    Priority:
      1) Environment variable RECONCILE_MODE (PLAN/APPLY)
      2) Environment variable MODE
      3) Default to PLAN
    """
    env = os.environ if env is None else env
    for key in ("RECONCILE_MODE", "MODE"):
        value = (env.get(key) or "").strip().upper()
        if value in MODES:
            return value
    return "PLAN"
