#!/usr/bin/env python3
from __future__ import annotations

import json
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from licensing.db import init_license_db
from licensing.service import build_license_service
from licensing.tasks import run_recompute_subscriptions
from observability import configure_json_logging


def main() -> int:
    configure_json_logging()
    init_license_db()
    result = run_recompute_subscriptions(build_license_service())
    print(f"[recompute-subscriptions] {json.dumps(result, sort_keys=True)}")
    return 1 if result["failed"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
