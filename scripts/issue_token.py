#!/usr/bin/env python3
"""Issue an activation token offline, optionally recording it for the user."""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from licensing.errors import LicenseError
from licensing.license_crypto import load_private_key
from licensing.models import Term
from licensing.service import load_signing_key, normalize_identity
from licensing.token_codec import coerce_term, issue_token


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Issue a signed activation token")
    parser.add_argument("--user-id", required=True, help="identity the token is bound to")
    parser.add_argument("--term", required=True, choices=[item.value for item in Term])
    parser.add_argument("--private-key", default="", help="hex or PEM key; defaults to LICENSE_PRIVATE_KEY")
    parser.add_argument("--purchase-time-ms", type=int, default=0, help="defaults to now")
    parser.add_argument("--record", action="store_true", help="store the token and recompute the subscription")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    try:
        user_id = normalize_identity(args.user_id)
        term = coerce_term(args.term)
        private_key = load_private_key(args.private_key) if args.private_key else load_signing_key()
    except (LicenseError, ValueError) as exc:
        print(f"[issue-token] {exc}")
        return 2

    purchase_ms = int(args.purchase_time_ms) or int(time.time() * 1000)
    code = issue_token(user_id, term, purchase_ms, private_key)
    print(code)

    if args.record:
        from datetime import datetime, timezone

        from licensing.db import init_license_db, session_scope
        from licensing.models import TokenSource
        from licensing.repository import LicenseRepository
        from licensing.service import build_license_service

        init_license_db()
        with session_scope() as session:
            LicenseRepository(session).append_token(
                code=code,
                user_id=user_id,
                term=term,
                purchase_time=purchase_ms // 1000,
                source=TokenSource.ADMIN,
                now=datetime.now(timezone.utc),
            )
        subscription = build_license_service(private_key=private_key).recompute_subscription(user_id)
        print(f"[issue-token] recorded for {user_id}, expire_at={subscription.expire_at}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
