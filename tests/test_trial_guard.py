from __future__ import annotations

from datetime import datetime, timezone

import pytest

from licensing import (
    LicenseRepository,
    LicenseService,
    MockGateway,
    build_session_factory,
    init_license_db,
    session_scope,
)
from licensing.errors import InvalidRequestError, TrialAlreadyUsedError
from licensing.license_crypto import generate_key_pair, load_private_key
from licensing.models import Term, TokenSource
from licensing.token_codec import verify_token
from licensing.trial import grant_trial, has_used_trial

NOW = 1_700_000_000.0


def _make_service():
    engine, session_factory = build_session_factory("sqlite+pysqlite:///:memory:")
    init_license_db(engine)
    service = LicenseService(
        session_factory=session_factory,
        gateway=MockGateway(),
        private_key=load_private_key(generate_key_pair().private_key_hex),
        clock=lambda: NOW,
    )
    return service, session_factory


def test_grant_trial_first_write_wins() -> None:
    _, sf = _make_service()
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    with session_scope(sf) as session:
        repo = LicenseRepository(session)
        assert not has_used_trial(repo, "alice")
        assert grant_trial(repo, "alice", now) is True
        assert grant_trial(repo, "alice", now) is False
        assert has_used_trial(repo, "alice")
        assert not has_used_trial(repo, "bob")


def test_trial_request_issues_seven_day_token_once() -> None:
    service, sf = _make_service()
    first = service.create_order("alice", "7d")

    assert first.trial_created
    assert first.out_trade_no is None
    verified = verify_token("alice", first.activation_code, service.public_key)
    assert verified is not None
    assert verified.term == Term.TRIAL
    assert verified.purchase_seconds == int(NOW)

    second = service.request_trial("alice")
    assert not second.trial_created
    assert second.activation_code == first.activation_code

    with session_scope(sf) as session:
        repo = LicenseRepository(session)
        tokens = repo.list_tokens("alice")
        assert [item.source for item in tokens] == [TokenSource.TRIAL]
        assert repo.get_subscription("alice").expire_at == int(NOW) + 7 * 24 * 60 * 60
    assert service.has_used_trial("alice")
    assert not service.has_used_trial("bob")


def test_trial_record_without_token_is_refused() -> None:
    service, sf = _make_service()
    with session_scope(sf) as session:
        grant_trial(LicenseRepository(session), "alice")
    with pytest.raises(TrialAlreadyUsedError):
        service.request_trial("alice")


def test_trial_does_not_create_orders() -> None:
    service, sf = _make_service()
    service.request_trial("alice")
    with session_scope(sf) as session:
        assert LicenseRepository(session).list_orders(user_id="alice") == []


def test_trial_requires_identity() -> None:
    service, _ = _make_service()
    with pytest.raises(InvalidRequestError):
        service.request_trial("")
    with pytest.raises(InvalidRequestError):
        service.has_used_trial(" ")
