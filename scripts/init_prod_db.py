#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path

from sqlalchemy import create_engine, text

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from config import DATABASE_URL
from licensing.db import missing_license_tables, upgrade_license_schema


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Migrate the license database to the latest schema.")
    parser.add_argument("--database-url", default=str(DATABASE_URL or os.getenv("DATABASE_URL", "")).strip())
    parser.add_argument("--revision", default="head")
    parser.add_argument("--attempts", type=int, default=int(os.getenv("INIT_DB_MAX_ATTEMPTS", "30")))
    parser.add_argument("--sleep-seconds", type=float, default=float(os.getenv("INIT_DB_SLEEP_SECONDS", "2")))
    return parser.parse_args()


def _wait_until_reachable(engine, attempts: int, sleep_seconds: float) -> None:
    for attempt in range(1, max(1, attempts) + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            print(f"[init-prod-db] database reachable (attempt={attempt})")
            return
        except Exception as exc:  # noqa: BLE001
            print(f"[init-prod-db] database not ready ({attempt}/{attempts}): {exc.__class__.__name__}")
            time.sleep(max(0.5, sleep_seconds))
    raise RuntimeError(f"database not reachable after {attempts} attempts")


def main() -> int:
    args = _parse_args()
    if not args.database_url:
        print("[init-prod-db] DATABASE_URL is missing")
        return 2
    if not args.database_url.lower().startswith("postgresql"):
        print("[init-prod-db] DATABASE_URL must be PostgreSQL in production")
        return 2

    engine = create_engine(args.database_url, pool_pre_ping=True)
    try:
        _wait_until_reachable(engine, args.attempts, args.sleep_seconds)
        # Migration errors propagate; a half-migrated schema must not be papered over.
        upgrade_license_schema(args.database_url, args.revision)
        print(f"[init-prod-db] alembic upgrade {args.revision} completed")
        missing = missing_license_tables(engine)
    finally:
        engine.dispose()

    if missing:
        print(f"[init-prod-db] license tables missing after upgrade: {', '.join(missing)}")
        return 1
    print("[init-prod-db] license schema ready")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
