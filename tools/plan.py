#!/usr/bin/env python3
"""Plan-only runner: prints what the reconciler would change without applying anything.

Usage:
  PROJECT_ID=my-project CLUSTER_NAME=lab NODE_POOLS=worker POOL_WORKER_COUNT=2 \
  POOL_WORKER_TYPE=e2-standard-4 INGRESS_IPV4_CONFIG="80,443/tcp" python3 tools/plan.py

Notes:
- Uses your local gcloud credentials (same behavior as app.py).
- Only list/describe calls are issued; nothing is created, updated or deleted.
- PLAN_FORMAT=yaml prints one YAML document per domain.
"""

from __future__ import annotations

import sys
from pathlib import Path

# Ensure project root is on sys.path when running as a script
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app import EXIT_CONFIG, EXIT_OK, configure_logging, load_all, report, run  # noqa: E402
from errors import ConfigError  # noqa: E402
from gcloud import GcloudClient  # noqa: E402


def main() -> int:
    configure_logging()
    try:
        ctx, settings, desired = load_all()
    except ConfigError as e:
        print(f"[plan] config error: {e}")
        return EXIT_CONFIG

    print(f"[plan] cluster={ctx.cluster} project={ctx.project} zone={ctx.zone}")
    results = run(GcloudClient(ctx.project), ctx, settings, desired, apply=False)
    report(results, apply=False, plan_format=settings.plan_format)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
