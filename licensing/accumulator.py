from __future__ import annotations

import datetime as dt
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Final

from .models import Term

DAY_SECONDS: Final[int] = 24 * 60 * 60
TRIAL_DAYS: Final[int] = 7
MONTH_DAYS: Final[int] = 30
LIFETIME_YEARS: Final[int] = 99


@dataclass(frozen=True)
class TokenClaim:
    """A verified (purchase second, term) pair contributing to a subscription."""

    purchase_seconds: int
    term: Term


@dataclass(frozen=True)
class AccumulatedSubscription:
    expire_at: int = 0
    is_lifetime: bool = False
    latest_purchase: int = 0
    purchases: tuple[int, ...] = field(default=())

    @property
    def has_tokens(self) -> bool:
        return bool(self.purchases)

    def is_valid(self, now_seconds: int) -> bool:
        """
        Whether the subscription is active at ``now_seconds``.

        A token dated after ``now`` means the local clock was rolled back; the
        whole subscription is then treated as invalid.
        """

        if not self.purchases:
            return False
        now = int(now_seconds)
        if self.latest_purchase > now:
            return False
        return self.is_lifetime or self.expire_at > now


def _add_years(epoch_seconds: int, years: int) -> int:
    start = dt.datetime.fromtimestamp(int(epoch_seconds), tz=dt.timezone.utc)
    target_year = start.year + int(years)
    try:
        shifted = start.replace(year=target_year)
    except ValueError:
        # Feb 29 in a non-leap target year overflows into Mar 1.
        shifted = start.replace(year=target_year, month=3, day=1)
    return int(shifted.timestamp())


def term_duration_seconds(term: Term, purchase_seconds: int) -> int:
    if term == Term.TRIAL:
        return TRIAL_DAYS * DAY_SECONDS
    if term == Term.MONTH:
        return MONTH_DAYS * DAY_SECONDS
    if term == Term.YEAR:
        return _add_years(purchase_seconds, 1) - int(purchase_seconds)
    if term == Term.LIFETIME:
        return _add_years(purchase_seconds, LIFETIME_YEARS) - int(purchase_seconds)
    raise ValueError(f"unsupported term: {term}")


def accumulate(claims: Iterable[TokenClaim]) -> AccumulatedSubscription:
    """
    Fold verified token claims into one expiration instant.

    - Claims are processed in ascending purchase order (sorted here, stable).
    - A lapsed subscription restarts at the purchase instant; an active one
      (including an exact tie) is extended.
    - Lifetime sets ``purchase + 99 years`` and stops the fold.
    """

    ordered = sorted(claims, key=lambda claim: int(claim.purchase_seconds))
    current_expire = 0
    is_lifetime = False
    purchases: list[int] = []
    for claim in ordered:
        purchase = int(claim.purchase_seconds)
        purchases.append(purchase)
        if claim.term == Term.LIFETIME:
            current_expire = _add_years(purchase, LIFETIME_YEARS)
            is_lifetime = True
            break
        duration = term_duration_seconds(claim.term, purchase)
        if current_expire < purchase:
            current_expire = purchase + duration
        else:
            current_expire += duration
    return AccumulatedSubscription(
        expire_at=current_expire,
        is_lifetime=is_lifetime,
        latest_purchase=max(purchases) if purchases else 0,
        purchases=tuple(purchases),
    )
