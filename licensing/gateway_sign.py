from __future__ import annotations

import hashlib
import hmac
from collections.abc import Mapping
from typing import Any, Final

SIGN_FIELD: Final[str] = "sign"
SIGN_TYPE_FIELD: Final[str] = "sign_type"
SIGN_TYPE_MD5: Final[str] = "MD5"
_EXCLUDED_FIELDS: Final[frozenset[str]] = frozenset({SIGN_FIELD, SIGN_TYPE_FIELD})


def canonical_string(params: Mapping[str, Any]) -> str:
    """
    Build the epay-style string-to-sign.

    - Empty values (``None`` / ``""``) are dropped, as are ``sign`` and ``sign_type``.
    - Remaining keys are sorted by code point and joined as ``k=v`` with ``&``.
    """

    pairs: list[str] = []
    for key in sorted(str(name) for name in params.keys()):
        if key in _EXCLUDED_FIELDS:
            continue
        value = params.get(key)
        if value is None:
            continue
        text = str(value)
        if text == "":
            continue
        pairs.append(f"{key}={text}")
    return "&".join(pairs)


def gateway_digest(params: Mapping[str, Any], secret: str) -> str:
    payload = canonical_string(params) + str(secret or "")
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def sign_gateway_params(params: Mapping[str, Any], secret: str) -> dict[str, Any]:
    if not str(secret or ""):
        raise ValueError("gateway secret is required for signing")
    signed = dict(params)
    signed[SIGN_FIELD] = gateway_digest(params, secret)
    signed[SIGN_TYPE_FIELD] = SIGN_TYPE_MD5
    return signed


def verify_gateway_signature(params: Mapping[str, Any], secret: str) -> bool:
    """Constant-time check of ``params["sign"]``; missing secret or sign is a failure."""

    if not str(secret or ""):
        return False
    provided = str(params.get(SIGN_FIELD) or "").strip().lower()
    if not provided:
        return False
    expected = gateway_digest(params, secret)
    return hmac.compare_digest(expected, provided)
