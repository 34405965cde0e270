#!/usr/bin/env python3
"""Release the cluster's node service account.

Usage:
  PROJECT_ID=my-project CLUSTER_NAME=lab RECONCILE_MODE=APPLY python3 tools/release_identity.py

Notes:
- Only ``{cluster}-sa`` and ``{cluster}-<4 hex>-sa`` are released on their own.
  A custom SA_NAME may be shared with other clusters and additionally needs
  DELETE_SERVICE_ACCOUNT=true.
- Without RECONCILE_MODE=APPLY this only prints the plan.
"""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app import EXIT_CONFIG, EXIT_FAILED, EXIT_OK, configure_logging, report  # noqa: E402
from config import load_context, load_settings  # noqa: E402
from domains.identity import release_identity  # noqa: E402
from errors import ConfigError  # noqa: E402
from gcloud import GcloudClient  # noqa: E402
from mode import compute_mode  # noqa: E402


def main() -> int:
    configure_logging()
    try:
        ctx = load_context()
        settings = load_settings(ctx)
    except ConfigError as e:
        print(f"[identity] config error: {e}")
        return EXIT_CONFIG

    apply = compute_mode() == "APPLY"
    result = release_identity(GcloudClient(ctx.project), ctx, settings, apply=apply)
    report([result], apply, settings.plan_format)
    return EXIT_OK if result.ok else EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
