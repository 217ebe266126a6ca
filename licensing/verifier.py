from __future__ import annotations

import datetime as dt
import math
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Optional

from cryptography.hazmat.primitives.asymmetric import ec

from .accumulator import DAY_SECONDS, AccumulatedSubscription, TokenClaim, accumulate
from .token_codec import VerifiedToken, verify_token

EXPIRE_DATE_FORMAT = "%Y-%m-%d %H:%M"


@dataclass(frozen=True)
class VipStatus:
    vip_keys: list[str] = field(default_factory=list)
    is_vip: bool = False
    expire_date: str = ""
    remaining_days: int = 0
    free_trial_used: bool = False
    is_lifetime: bool = False
    expire_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "vipKeys": list(self.vip_keys),
            "isVip": self.is_vip,
            "expireDate": self.expire_date,
            "remainingDays": self.remaining_days,
            "freeTrialUsed": self.free_trial_used,
            "isLifetime": self.is_lifetime,
            "expireAt": self.expire_at,
        }


def format_expire_date(epoch_seconds: int) -> str:
    return dt.datetime.fromtimestamp(int(epoch_seconds), tz=dt.timezone.utc).strftime(EXPIRE_DATE_FORMAT)


def verified_claims(
    identity: str,
    tokens: Iterable[str],
    public_key: ec.EllipticCurvePublicKey,
) -> list[VerifiedToken]:
    """Tokens that decode and verify for ``identity``; everything else is dropped."""

    accepted: list[VerifiedToken] = []
    for token in tokens:
        verified = verify_token(identity, token, public_key)
        if verified is not None:
            accepted.append(verified)
    return accepted


def accumulate_tokens(
    identity: str,
    tokens: Iterable[str],
    public_key: ec.EllipticCurvePublicKey,
) -> AccumulatedSubscription:
    claims = [
        TokenClaim(purchase_seconds=item.purchase_seconds, term=item.term)
        for item in verified_claims(identity, tokens, public_key)
    ]
    return accumulate(claims)


def calculate_status(
    identity: str,
    tokens: Iterable[str],
    public_key: ec.EllipticCurvePublicKey,
    *,
    free_trial_used: bool = False,
    now: Optional[float] = None,
) -> VipStatus:
    """
    Build the VIP snapshot a client shows for ``identity``.

    - Invalid tokens are ignored, never fatal.
    - A token dated after ``now`` voids the whole status (clock rollback).
    - ``remaining_days`` rounds up and is 0 when not VIP.
    """

    keys = [str(item) for item in tokens]
    current = int(time.time() if now is None else now)
    subscription = accumulate_tokens(identity, keys, public_key)
    if not subscription.has_tokens:
        return VipStatus(vip_keys=keys, free_trial_used=free_trial_used)

    is_vip = subscription.is_valid(current)
    remaining_days = 0
    if is_vip:
        remaining_days = int(math.ceil(max(0, subscription.expire_at - current) / DAY_SECONDS))
    return VipStatus(
        vip_keys=keys,
        is_vip=is_vip,
        expire_date=format_expire_date(subscription.expire_at),
        remaining_days=remaining_days,
        free_trial_used=free_trial_used,
        is_lifetime=subscription.is_lifetime,
        expire_at=subscription.expire_at,
    )
