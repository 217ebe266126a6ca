from __future__ import annotations

from licensing import (
    LicenseRepository,
    LicenseService,
    MockGateway,
    build_session_factory,
    init_license_db,
    session_scope,
)
from licensing.license_crypto import generate_key_pair, load_private_key
from licensing.models import Term, TokenSource
from licensing.tasks import run_recompute_subscriptions
from licensing.token_codec import issue_token

NOW = 1_700_000_000


def test_recompute_repairs_stale_subscriptions() -> None:
    engine, sf = build_session_factory("sqlite+pysqlite:///:memory:")
    init_license_db(engine)
    key = load_private_key(generate_key_pair().private_key_hex)
    service = LicenseService(
        session_factory=sf,
        gateway=MockGateway(),
        private_key=key,
        clock=lambda: float(NOW),
    )

    with session_scope(sf) as session:
        repo = LicenseRepository(session)
        # Tokens written without a recompute, as after a crash between the two steps.
        for user_id, term in (("alice", Term.MONTH), ("bob", Term.LIFETIME)):
            repo.append_token(
                code=issue_token(user_id, term, NOW * 1000, key),
                user_id=user_id,
                term=term,
                purchase_time=NOW,
                source=TokenSource.ADMIN,
            )
        # A token signed by another key is stored but never counts.
        stranger = load_private_key(generate_key_pair().private_key_hex)
        repo.append_token(
            code=issue_token("carol", Term.YEAR, NOW * 1000, stranger),
            user_id="carol",
            term=Term.YEAR,
            purchase_time=NOW,
            source=TokenSource.ADMIN,
        )

    result = run_recompute_subscriptions(service, session_factory=sf)
    assert result == {"users": 3, "recomputed": 3, "failed": 0}

    with session_scope(sf) as session:
        repo = LicenseRepository(session)
        assert repo.get_subscription("alice").expire_at == NOW + 30 * 24 * 60 * 60
        assert repo.get_subscription("bob").is_lifetime is True
        assert repo.get_subscription("carol") is None


def test_recompute_counts_failures_and_continues() -> None:
    engine, sf = build_session_factory("sqlite+pysqlite:///:memory:")
    init_license_db(engine)
    key = load_private_key(generate_key_pair().private_key_hex)

    class _FlakyService(LicenseService):
        def recompute_subscription(self, identity):
            if identity == "alice":
                raise RuntimeError("boom")
            return super().recompute_subscription(identity)

    service = _FlakyService(session_factory=sf, gateway=MockGateway(), private_key=key)
    with session_scope(sf) as session:
        repo = LicenseRepository(session)
        for user_id in ("alice", "bob"):
            repo.append_token(
                code=issue_token(user_id, Term.TRIAL, NOW * 1000, key),
                user_id=user_id,
                term=Term.TRIAL,
                purchase_time=NOW,
                source=TokenSource.TRIAL,
            )

    assert run_recompute_subscriptions(service, session_factory=sf) == {"users": 2, "recomputed": 1, "failed": 1}


def test_recompute_clears_record_when_no_token_verifies() -> None:
    engine, sf = build_session_factory("sqlite+pysqlite:///:memory:")
    init_license_db(engine)
    old_key = load_private_key(generate_key_pair().private_key_hex)
    with session_scope(sf) as session:
        repo = LicenseRepository(session)
        repo.append_token(
            code=issue_token("alice", Term.LIFETIME, NOW * 1000, old_key),
            user_id="alice",
            term=Term.LIFETIME,
            purchase_time=NOW,
            source=TokenSource.ADMIN,
        )
        repo.upsert_subscription("alice", expire_at=2_700_000_000, is_lifetime=True)

    rotated = LicenseService(
        session_factory=sf,
        gateway=MockGateway(),
        private_key=load_private_key(generate_key_pair().private_key_hex),
        clock=lambda: float(NOW),
    )
    view = rotated.get_subscription("alice")
    assert view.subscribed is False

    with session_scope(sf) as session:
        repo = LicenseRepository(session)
        assert repo.get_subscription("alice") is None
        assert len(repo.list_tokens("alice")) == 1
