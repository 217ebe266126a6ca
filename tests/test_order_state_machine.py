"""Order lifecycle: creation, idempotent confirmation, notify and query reconciliation."""

from __future__ import annotations

import json

import pytest

from licensing import (
    LicenseRepository,
    LicenseService,
    MockGateway,
    build_session_factory,
    init_license_db,
    session_scope,
)
from licensing.errors import (
    ConfigurationError,
    GatewayRejectedError,
    InvalidRequestError,
    InvalidTermError,
    OrderNotFoundError,
    PaymentValidationError,
    SignatureMismatchError,
    UnauthorizedError,
)
from licensing.gateway_sign import sign_gateway_params
from licensing.license_crypto import generate_key_pair, load_private_key
from licensing.models import OrderStatus, Term, TokenSource
from licensing.service import price_to_cents
from licensing.token_codec import verify_token

GATEWAY_KEY = "merchant-key"
ADMIN_TOKEN = "admin-secret"
NOW = 1_700_000_000.0


def _make_service(**overrides):
    engine, session_factory = build_session_factory("sqlite+pysqlite:///:memory:")
    init_license_db(engine)
    gateway = MockGateway()
    kwargs = dict(
        session_factory=session_factory,
        gateway=gateway,
        private_key=load_private_key(generate_key_pair().private_key_hex),
        gateway_key=GATEWAY_KEY,
        admin_token=ADMIN_TOKEN,
        public_base_url="https://vip.example.com",
        clock=lambda: NOW,
    )
    kwargs.update(overrides)
    return LicenseService(**kwargs), gateway, session_factory


def _notify_params(out_trade_no: str, *, money: str = "5", status: str = "TRADE_SUCCESS") -> dict:
    return sign_gateway_params(
        {
            "pid": "1001",
            "trade_no": "T" + out_trade_no,
            "out_trade_no": out_trade_no,
            "type": "alipay",
            "name": "product",
            "money": money,
            "trade_status": status,
        },
        GATEWAY_KEY,
    )


def test_create_order_persists_pending_order() -> None:
    service, gateway, sf = _make_service()
    checkout = service.create_order("alice", "1m", "10.0.0.1")

    assert checkout.out_trade_no.startswith("SY_1700000000000_")
    assert checkout.money == "5"
    assert checkout.qrcode.startswith("mock://pay")
    assert checkout.activation_code is None

    with session_scope(sf) as session:
        order = LicenseRepository(session).get_order(checkout.out_trade_no)
        assert order is not None
        assert order.status == OrderStatus.PENDING
        assert order.term == Term.MONTH
        assert order.amount_cents == 500
        assert order.user_id == "alice"
        assert order.product_name == "【任务笔记管理插件】月付"


def test_create_order_validates_input() -> None:
    service, _, _ = _make_service()
    with pytest.raises(InvalidTermError):
        service.create_order("alice", "2w")
    with pytest.raises(InvalidRequestError):
        service.create_order("   ", "1m")
    with pytest.raises(InvalidRequestError):
        service.create_order("x" * 129, "1m")


def test_gateway_rejection_leaves_no_order() -> None:
    service, gateway, sf = _make_service()
    gateway.reject_next = "商户已关闭"
    with pytest.raises(GatewayRejectedError):
        service.create_order("alice", "1y")
    with session_scope(sf) as session:
        assert LicenseRepository(session).list_orders(user_id="alice") == []


def test_missing_price_is_configuration_error() -> None:
    service, _, _ = _make_service(term_prices={"1m": "5"})
    with pytest.raises(ConfigurationError):
        service.create_order("alice", "Lifetime")


def test_confirm_payment_mints_exactly_one_token() -> None:
    service, _, sf = _make_service()
    checkout = service.create_order("alice", "1y")

    first = service.confirm_payment(checkout.out_trade_no, "T1")
    second = service.confirm_payment(checkout.out_trade_no, "T1")

    assert first.newly_paid is True
    assert second.newly_paid is False
    assert first.activation_code == second.activation_code
    assert verify_token("alice", first.activation_code, service.public_key) is not None

    with session_scope(sf) as session:
        repo = LicenseRepository(session)
        tokens = repo.list_tokens("alice")
        order = repo.get_order(checkout.out_trade_no)
        assert len(tokens) == 1
        assert tokens[0].source == TokenSource.ORDER
        assert tokens[0].order_id == order.id
        assert order.status == OrderStatus.PAID
        assert order.gateway_trade_no == "T1"
        subscription = repo.get_subscription("alice")
        assert subscription is not None
        assert subscription.expire_at > int(NOW)


def test_confirm_unknown_order_raises() -> None:
    service, _, _ = _make_service()
    with pytest.raises(OrderNotFoundError):
        service.confirm_payment("SY_missing")


def test_notify_success_then_replay_is_duplicate() -> None:
    service, _, sf = _make_service()
    checkout = service.create_order("alice", "1m")
    params = _notify_params(checkout.out_trade_no)

    first = service.process_notify(params)
    replay = service.process_notify(params)

    assert first.status == "processed"
    assert replay.status == "duplicate"
    assert first.activation_code == replay.activation_code
    with session_scope(sf) as session:
        repo = LicenseRepository(session)
        assert len(repo.list_tokens("alice")) == 1
        outcomes = sorted(item.outcome for item in repo.list_audit_logs(out_trade_no=checkout.out_trade_no))
        assert outcomes == ["duplicate", "processed"]


def test_notify_with_bad_signature_is_rejected_and_audited() -> None:
    service, _, sf = _make_service()
    checkout = service.create_order("alice", "1m")
    params = dict(_notify_params(checkout.out_trade_no), money="0.01")

    with pytest.raises(SignatureMismatchError):
        service.process_notify(params)

    with session_scope(sf) as session:
        repo = LicenseRepository(session)
        order = repo.get_order(checkout.out_trade_no)
        assert order.status == OrderStatus.PENDING
        logs = repo.list_audit_logs(out_trade_no=checkout.out_trade_no)
        assert [item.outcome for item in logs] == ["rejected_signature"]
        assert logs[0].signature_valid is False
        assert json.loads(logs[0].raw_payload)["money"] == "0.01"


def test_notify_ignores_non_success_status() -> None:
    service, _, sf = _make_service()
    checkout = service.create_order("alice", "1m")
    outcome = service.process_notify(_notify_params(checkout.out_trade_no, status="WAIT_BUYER_PAY"))

    assert outcome.status == "ignored"
    with session_scope(sf) as session:
        assert LicenseRepository(session).get_order(checkout.out_trade_no).status == OrderStatus.PENDING


def test_notify_money_mismatch_is_rejected() -> None:
    service, _, sf = _make_service()
    checkout = service.create_order("alice", "1y")
    with pytest.raises(PaymentValidationError):
        service.process_notify(_notify_params(checkout.out_trade_no, money="0.01"))
    with session_scope(sf) as session:
        repo = LicenseRepository(session)
        assert repo.get_order(checkout.out_trade_no).status == OrderStatus.PENDING
        assert repo.list_tokens("alice") == []


def test_notify_for_unknown_order_is_acknowledged() -> None:
    service, _, sf = _make_service()
    outcome = service.process_notify(_notify_params("SY_ghost"))
    assert outcome.status == "unknown_order"
    with session_scope(sf) as session:
        logs = LicenseRepository(session).list_audit_logs(out_trade_no="SY_ghost")
        assert [item.outcome for item in logs] == ["unknown_order"]


def test_query_status_reconciles_with_gateway() -> None:
    service, gateway, _ = _make_service()
    checkout = service.create_order("alice", "1m")

    pending = service.query_status(checkout.out_trade_no)
    assert pending.paid is False
    assert pending.status == 0
    assert pending.activation_code is None

    gateway.mark_paid(checkout.out_trade_no, "T42")
    paid = service.query_status(checkout.out_trade_no)
    assert paid.paid is True
    assert paid.message == "支付成功"
    assert paid.activation_code

    again = service.query_status(checkout.out_trade_no)
    assert again.message == "已支付"
    assert again.activation_code == paid.activation_code


def test_query_status_after_notify_does_not_mint_again() -> None:
    service, gateway, sf = _make_service()
    checkout = service.create_order("alice", "Lifetime")
    notified = service.process_notify(_notify_params(checkout.out_trade_no, money="99"))
    gateway.mark_paid(checkout.out_trade_no)

    status = service.query_status(checkout.out_trade_no)
    assert status.activation_code == notified.activation_code
    with session_scope(sf) as session:
        assert len(LicenseRepository(session).list_tokens("alice")) == 1


def test_query_status_validation() -> None:
    service, _, _ = _make_service()
    with pytest.raises(InvalidRequestError):
        service.query_status("")
    with pytest.raises(OrderNotFoundError):
        service.query_status("SY_missing")


def test_admin_token_issuance_requires_matching_secret() -> None:
    service, _, sf = _make_service()
    with pytest.raises(UnauthorizedError):
        service.issue_admin_token("alice", "1y", "wrong")
    with pytest.raises(UnauthorizedError):
        service.issue_admin_token("alice", "1y", "")

    code = service.issue_admin_token("alice", "1y", ADMIN_TOKEN)
    verified = verify_token("alice", code, service.public_key)
    assert verified is not None
    assert verified.term == Term.YEAR
    with session_scope(sf) as session:
        tokens = LicenseRepository(session).list_tokens("alice")
        assert [item.source for item in tokens] == [TokenSource.ADMIN]


def test_admin_is_denied_when_no_secret_is_configured() -> None:
    service, _, _ = _make_service(admin_token="")
    with pytest.raises(UnauthorizedError):
        service.issue_admin_token("alice", "1y", "")


def test_subscription_view_stacks_paid_orders() -> None:
    service, _, _ = _make_service()
    for _ in range(2):
        checkout = service.create_order("alice", "1m")
        service.confirm_payment(checkout.out_trade_no)

    view = service.get_subscription("alice")
    assert view.subscribed
    assert view.has_tokens
    assert view.expire_at == int(NOW) + 60 * 24 * 60 * 60
    assert not view.is_lifetime

    empty = service.get_subscription("nobody")
    assert not empty.subscribed
    assert not empty.has_tokens


@pytest.mark.parametrize(
    ("price", "cents"),
    [("5", 500), ("0.01", 1), ("99.00", 9900), (30, 3000)],
)
def test_price_to_cents(price, cents) -> None:
    assert price_to_cents(price) == cents


@pytest.mark.parametrize("price", ["", "abc", "-1", "NaN"])
def test_price_to_cents_rejects_bad_amounts(price) -> None:
    with pytest.raises(PaymentValidationError):
        price_to_cents(price)
