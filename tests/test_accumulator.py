from __future__ import annotations

from datetime import datetime, timezone

from licensing.accumulator import DAY_SECONDS, TokenClaim, accumulate, term_duration_seconds
from licensing.models import Term

T0 = 1_700_000_000
MONTH = 30 * DAY_SECONDS


def _ts(year: int, month: int, day: int) -> int:
    return int(datetime(year, month, day, tzinfo=timezone.utc).timestamp())


def test_no_claims_is_never_valid() -> None:
    result = accumulate([])
    assert not result.has_tokens
    assert result.expire_at == 0
    assert not result.is_valid(T0)


def test_active_purchase_stacks_on_current_expiration() -> None:
    result = accumulate(
        [
            TokenClaim(purchase_seconds=T0, term=Term.MONTH),
            TokenClaim(purchase_seconds=T0 + 10 * DAY_SECONDS, term=Term.MONTH),
        ]
    )
    assert result.expire_at == T0 + 2 * MONTH
    assert result.is_valid(T0 + 50 * DAY_SECONDS)
    assert not result.is_valid(T0 + 2 * MONTH)


def test_lapsed_subscription_restarts_at_purchase() -> None:
    second = T0 + 40 * DAY_SECONDS
    result = accumulate(
        [
            TokenClaim(purchase_seconds=T0, term=Term.MONTH),
            TokenClaim(purchase_seconds=second, term=Term.TRIAL),
        ]
    )
    assert result.expire_at == second + 7 * DAY_SECONDS


def test_purchase_at_exact_expiration_still_stacks() -> None:
    result = accumulate(
        [
            TokenClaim(purchase_seconds=T0, term=Term.MONTH),
            TokenClaim(purchase_seconds=T0 + MONTH, term=Term.MONTH),
        ]
    )
    assert result.expire_at == T0 + 2 * MONTH


def test_claims_are_folded_in_purchase_order() -> None:
    forward = [
        TokenClaim(purchase_seconds=T0, term=Term.MONTH),
        TokenClaim(purchase_seconds=T0 + 40 * DAY_SECONDS, term=Term.MONTH),
    ]
    assert accumulate(reversed(forward)) == accumulate(forward)


def test_lifetime_dominates_and_stops_the_fold() -> None:
    result = accumulate(
        [
            TokenClaim(purchase_seconds=T0, term=Term.YEAR),
            TokenClaim(purchase_seconds=T0 + DAY_SECONDS, term=Term.LIFETIME),
            TokenClaim(purchase_seconds=T0 + 2 * DAY_SECONDS, term=Term.MONTH),
        ]
    )
    assert result.is_lifetime
    start = datetime.fromtimestamp(T0 + DAY_SECONDS, tz=timezone.utc)
    assert result.expire_at == int(start.replace(year=start.year + 99).timestamp())
    assert result.purchases == (T0, T0 + DAY_SECONDS)
    assert result.is_valid(T0 + 365 * DAY_SECONDS)


def test_year_term_follows_the_calendar() -> None:
    assert term_duration_seconds(Term.YEAR, _ts(2023, 1, 1)) == 365 * DAY_SECONDS
    assert term_duration_seconds(Term.YEAR, _ts(2024, 1, 1)) == 366 * DAY_SECONDS


def test_leap_day_year_rolls_to_march_first() -> None:
    leap_day = _ts(2024, 2, 29)
    result = accumulate([TokenClaim(purchase_seconds=leap_day, term=Term.YEAR)])
    assert result.expire_at == _ts(2025, 3, 1)


def test_future_dated_token_voids_validity() -> None:
    result = accumulate(
        [
            TokenClaim(purchase_seconds=T0, term=Term.YEAR),
            TokenClaim(purchase_seconds=T0 + 100 * DAY_SECONDS, term=Term.MONTH),
        ]
    )
    # Expiration is well in the future, but "now" is before the second purchase.
    now = T0 + 50 * DAY_SECONDS
    assert result.expire_at > now
    assert not result.is_valid(now)
    assert result.is_valid(T0 + 100 * DAY_SECONDS)


def test_future_dated_lifetime_is_not_valid_yet() -> None:
    result = accumulate([TokenClaim(purchase_seconds=T0, term=Term.LIFETIME)])
    assert not result.is_valid(T0 - 1)
    assert result.is_valid(T0)
