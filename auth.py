from __future__ import annotations

import hmac


def check_admin_token(provided: str | None, expected: str | None) -> bool:
    """
    Constant-time comparison of an operator credential.

    An unset ``expected`` token rejects everything instead of allowing everyone.
    """

    secret = str(expected or "").strip()
    candidate = str(provided or "").strip()
    if not secret or not candidate:
        return False
    return hmac.compare_digest(secret.encode("utf-8"), candidate.encode("utf-8"))


def extract_bearer_token(authorization: str | None) -> str:
    raw = str(authorization or "").strip()
    if not raw:
        return ""
    scheme, _, token = raw.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()
