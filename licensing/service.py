from __future__ import annotations

import json
import secrets
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Final, Optional

from cryptography.hazmat.primitives.asymmetric import ec

from auth import check_admin_token
from observability import get_logger, log_event

from .accumulator import AccumulatedSubscription, TokenClaim, accumulate
from .db import SessionFactory, session_scope
from .errors import (
    ConfigurationError,
    InvalidRequestError,
    LicenseError,
    OrderNotFoundError,
    PaymentValidationError,
    SignatureMismatchError,
    TrialAlreadyUsedError,
    UnauthorizedError,
)
from .gateway import BasePaymentGateway
from .gateway_sign import SIGN_FIELD, verify_gateway_signature
from .models import OrderStatus, Term, TokenSource
from .repository import LicenseRepository
from .token_codec import coerce_term, issue_token
from .trial import grant_trial, has_used_trial
from .verifier import format_expire_date, verified_claims

TRADE_SUCCESS: Final[str] = "TRADE_SUCCESS"
OUT_TRADE_NO_PREFIX: Final[str] = "SY_"
MAX_IDENTITY_LENGTH: Final[int] = 128
DEFAULT_PRODUCT_NAME_PREFIX: Final[str] = "【任务笔记管理插件】"
TERM_LABELS: Final[dict[Term, str]] = {
    Term.TRIAL: "7天试用",
    Term.MONTH: "月付",
    Term.YEAR: "年付",
    Term.LIFETIME: "终身",
}
DEFAULT_TERM_PRICES: Final[dict[str, str]] = {"1m": "5", "1y": "30", "Lifetime": "99"}
_TRADE_NO_ALPHABET: Final[str] = "0123456789abcdefghijklmnopqrstuvwxyz"

_LOGGER = get_logger("vipserver.licensing.service")


@dataclass(frozen=True)
class CheckoutResult:
    """
    Outcome of a purchase request.

    Trials carry an ``activation_code`` right away; paid terms carry the
    gateway QR payload and an ``out_trade_no`` to poll.
    """

    term: Term
    out_trade_no: Optional[str] = None
    qrcode: str = ""
    img: str = ""
    money: str = ""
    activation_code: Optional[str] = None
    trial_created: bool = False


@dataclass(frozen=True)
class ConfirmResult:
    out_trade_no: str
    user_id: str
    activation_code: Optional[str]
    newly_paid: bool


@dataclass(frozen=True)
class PaymentStatus:
    out_trade_no: str
    status: int
    paid: bool
    message: str = ""
    activation_code: Optional[str] = None


@dataclass(frozen=True)
class NotifyOutcome:
    status: str
    out_trade_no: Optional[str] = None
    activation_code: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionView:
    user_id: str
    subscribed: bool
    expire_at: int = 0
    expire_date: str = ""
    is_lifetime: bool = False
    has_tokens: bool = False


def new_out_trade_no(now_ms: int) -> str:
    suffix = "".join(secrets.choice(_TRADE_NO_ALPHABET) for _ in range(9))
    return f"{OUT_TRADE_NO_PREFIX}{int(now_ms)}_{suffix}"


def price_to_cents(price: Any) -> int:
    try:
        amount = Decimal(str(price).strip())
    except (InvalidOperation, ValueError) as exc:
        raise PaymentValidationError(f"invalid amount: {price!r}") from exc
    if not amount.is_finite() or amount < 0:
        raise PaymentValidationError(f"invalid amount: {price!r}")
    return int((amount * 100).quantize(Decimal("1")))


def normalize_identity(identity: Any) -> str:
    value = str(identity or "").strip()
    if not value:
        raise InvalidRequestError("缺少必要参数: userId")
    if len(value) > MAX_IDENTITY_LENGTH:
        raise InvalidRequestError(f"userId must be at most {MAX_IDENTITY_LENGTH} characters")
    return value


class LicenseService:
    """
    Order lifecycle, token issuance and gateway reconciliation.

    Gateway calls never run inside a database transaction. Subscriptions are
    recomputed from stored tokens after each issuance and on every query, so a
    failed recompute is repaired by the next read.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        gateway: BasePaymentGateway,
        private_key: ec.EllipticCurvePrivateKey,
        gateway_key: str = "",
        admin_token: str = "",
        term_prices: Optional[Mapping[str, str]] = None,
        product_name_prefix: str = DEFAULT_PRODUCT_NAME_PREFIX,
        public_base_url: str = "",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._private_key = private_key
        self._public_key = private_key.public_key()
        self._gateway_key = str(gateway_key or "")
        self._admin_token = str(admin_token or "")
        self._term_prices = dict(term_prices if term_prices is not None else DEFAULT_TERM_PRICES)
        self._product_name_prefix = str(product_name_prefix or "")
        self._public_base_url = str(public_base_url or "").strip().rstrip("/")
        self._clock = clock

    @property
    def gateway(self) -> BasePaymentGateway:
        return self._gateway

    @property
    def public_key(self) -> ec.EllipticCurvePublicKey:
        return self._public_key

    def _now_ms(self) -> int:
        return int(float(self._clock()) * 1000)

    @staticmethod
    def _as_datetime(now_ms: int) -> datetime:
        return datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc)

    def product_name(self, term: Term) -> str:
        return f"{self._product_name_prefix}{TERM_LABELS[term]}"

    def price_for(self, term: Term) -> str:
        price = str(self._term_prices.get(term.value) or "").strip()
        if not price:
            raise ConfigurationError(f"no price configured for term {term.value}")
        try:
            price_to_cents(price)
        except PaymentValidationError as exc:
            raise ConfigurationError(f"invalid price configured for term {term.value}: {price}") from exc
        return price

    # Purchase

    def create_order(
        self,
        identity: str,
        term: str | Term,
        client_ip: str = "",
        *,
        base_url: Optional[str] = None,
    ) -> CheckoutResult:
        user_id = normalize_identity(identity)
        normalized_term = coerce_term(term)
        if normalized_term == Term.TRIAL:
            return self.request_trial(user_id)

        money = self.price_for(normalized_term)
        name = self.product_name(normalized_term)
        now_ms = self._now_ms()
        out_trade_no = new_out_trade_no(now_ms)
        callback_base = self._public_base_url or str(base_url or "").strip().rstrip("/")
        checkout = self._gateway.create_order(
            out_trade_no=out_trade_no,
            name=name,
            money=money,
            notify_url=f"{callback_base}/api/notify",
            return_url=f"{callback_base}/api/return",
            client_ip=str(client_ip or "").strip() or "0.0.0.0",
        )
        with session_scope(self._session_factory) as session:
            repo = LicenseRepository(session)
            repo.create_order(
                out_trade_no=out_trade_no,
                user_id=user_id,
                term=normalized_term,
                amount_cents=price_to_cents(money),
                product_name=name,
                pay_type=self._gateway.pay_type,
                gateway=self._gateway.name,
                now=self._as_datetime(now_ms),
            )
        log_event(
            _LOGGER,
            20,
            "license.order.created",
            out_trade_no=out_trade_no,
            user_id=user_id,
            term=normalized_term.value,
            gateway=self._gateway.name,
        )
        return CheckoutResult(
            term=normalized_term,
            out_trade_no=out_trade_no,
            qrcode=checkout.qrcode,
            img=checkout.img,
            money=money,
        )

    def request_trial(self, identity: str) -> CheckoutResult:
        """
        Hand out the one-time 7 day trial token.

        Asking again returns the same token; a concurrent loser gets the
        winner's token.
        """

        user_id = normalize_identity(identity)
        now_ms = self._now_ms()
        with session_scope(self._session_factory) as session:
            repo = LicenseRepository(session)
            existing = repo.get_trial_token(user_id)
            if existing is not None:
                return CheckoutResult(term=Term.TRIAL, activation_code=existing.code)
            if not grant_trial(repo, user_id, self._as_datetime(now_ms)):
                existing = repo.get_trial_token(user_id)
                if existing is not None:
                    return CheckoutResult(term=Term.TRIAL, activation_code=existing.code)
                raise TrialAlreadyUsedError("试用资格已使用")
            code = issue_token(user_id, Term.TRIAL, now_ms, self._private_key)
            repo.append_token(
                code=code,
                user_id=user_id,
                term=Term.TRIAL,
                purchase_time=now_ms // 1000,
                source=TokenSource.TRIAL,
                now=self._as_datetime(now_ms),
            )
        log_event(_LOGGER, 20, "license.trial.granted", user_id=user_id)
        self._recompute_quietly(user_id)
        return CheckoutResult(term=Term.TRIAL, activation_code=code, trial_created=True)

    def has_used_trial(self, identity: str) -> bool:
        user_id = normalize_identity(identity)
        with session_scope(self._session_factory) as session:
            return has_used_trial(LicenseRepository(session), user_id)

    # Confirmation

    def confirm_payment(self, out_trade_no: str, gateway_trade_no: Optional[str] = None) -> ConfirmResult:
        """
        Move an order to paid and mint its token, at most once.

        The conditional UPDATE decides the single winner; every other caller
        gets the token that winner minted.
        """

        key = str(out_trade_no or "").strip()
        now_ms = self._now_ms()
        with session_scope(self._session_factory) as session:
            repo = LicenseRepository(session)
            order = repo.get_order(key)
            if order is None:
                raise OrderNotFoundError(f"订单不存在: {key}")
            order_id, user_id, term = order.id, order.user_id, order.term
            won = repo.mark_order_paid_if_pending(
                key,
                gateway_trade_no=gateway_trade_no,
                paid_at=self._as_datetime(now_ms),
            )
            if won:
                code: Optional[str] = issue_token(user_id, term, now_ms, self._private_key)
                repo.append_token(
                    code=code,
                    user_id=user_id,
                    term=term,
                    purchase_time=now_ms // 1000,
                    source=TokenSource.ORDER,
                    order_id=order_id,
                    now=self._as_datetime(now_ms),
                )
            else:
                existing = repo.get_token_for_order(order_id)
                code = existing.code if existing is not None else None
        if won:
            log_event(
                _LOGGER,
                20,
                "license.order.paid",
                out_trade_no=key,
                user_id=user_id,
                term=term.value,
                gateway_trade_no=gateway_trade_no or "",
            )
            self._recompute_quietly(user_id)
        else:
            log_event(_LOGGER, 20, "license.order.already_paid", out_trade_no=key)
        return ConfirmResult(out_trade_no=key, user_id=user_id, activation_code=code, newly_paid=won)

    def query_status(self, out_trade_no: str) -> PaymentStatus:
        key = str(out_trade_no or "").strip()
        if not key:
            raise InvalidRequestError("缺少订单号")
        with session_scope(self._session_factory) as session:
            repo = LicenseRepository(session)
            order = repo.get_order(key)
            if order is None:
                raise OrderNotFoundError(f"订单不存在: {key}")
            if order.status == OrderStatus.PAID:
                token = repo.get_token_for_order(order.id)
                return PaymentStatus(
                    out_trade_no=key,
                    status=1,
                    paid=True,
                    message="已支付",
                    activation_code=token.code if token is not None else None,
                )

        remote = self._gateway.query_order(key)
        if remote.paid:
            confirmed = self.confirm_payment(key, remote.trade_no)
            return PaymentStatus(
                out_trade_no=key,
                status=1,
                paid=True,
                message="支付成功",
                activation_code=confirmed.activation_code,
            )
        return PaymentStatus(out_trade_no=key, status=remote.status, paid=False, message=remote.message)

    def process_notify(self, params: Mapping[str, Any]) -> NotifyOutcome:
        """
        Handle an asynchronous gateway callback.

        - A bad signature is audited and rejected; ``trade_status`` is never read.
        - Only ``TRADE_SUCCESS`` moves an order; other statuses are acknowledged.
        - ``money``, when present, must match the stored order amount.
        """

        payload = {str(k): ("" if v is None else str(v)) for k, v in dict(params).items()}
        raw_payload = json.dumps(payload, ensure_ascii=False, sort_keys=True)
        signature = payload.get(SIGN_FIELD) or None
        out_trade_no = payload.get("out_trade_no", "").strip() or None
        trade_status = payload.get("trade_status", "").strip()
        event_type = f"notify.{trade_status.lower() or 'unknown'}"

        if not verify_gateway_signature(payload, self._gateway_key):
            self._audit(
                event_type="notify",
                out_trade_no=out_trade_no,
                raw_payload=raw_payload,
                signature=signature,
                signature_valid=False,
                outcome="rejected_signature",
                detail="invalid gateway signature",
            )
            log_event(_LOGGER, 30, "license.notify.rejected_signature", out_trade_no=out_trade_no or "")
            raise SignatureMismatchError("sign error")

        if trade_status != TRADE_SUCCESS:
            self._audit(
                event_type=event_type,
                out_trade_no=out_trade_no,
                raw_payload=raw_payload,
                signature=signature,
                signature_valid=True,
                outcome="ignored",
                detail=f"trade_status={trade_status or '-'}",
            )
            log_event(_LOGGER, 20, "license.notify.ignored", out_trade_no=out_trade_no or "", trade_status=trade_status)
            return NotifyOutcome(status="ignored", out_trade_no=out_trade_no)

        with session_scope(self._session_factory) as session:
            order = LicenseRepository(session).get_order(out_trade_no or "")
            amount_cents = int(order.amount_cents) if order is not None else None
        if amount_cents is None:
            self._audit(
                event_type=event_type,
                out_trade_no=out_trade_no,
                raw_payload=raw_payload,
                signature=signature,
                signature_valid=True,
                outcome="unknown_order",
                detail="order not found",
            )
            log_event(_LOGGER, 30, "license.notify.unknown_order", out_trade_no=out_trade_no or "")
            return NotifyOutcome(status="unknown_order", out_trade_no=out_trade_no)

        money = payload.get("money", "").strip()
        if money:
            try:
                paid_cents = price_to_cents(money)
            except PaymentValidationError:
                paid_cents = -1
            if paid_cents != amount_cents:
                self._audit(
                    event_type=event_type,
                    out_trade_no=out_trade_no,
                    raw_payload=raw_payload,
                    signature=signature,
                    signature_valid=True,
                    outcome="rejected_validation",
                    detail=f"money mismatch: expected_cents={amount_cents} got={money}",
                )
                log_event(
                    _LOGGER,
                    40,
                    "license.notify.amount_mismatch",
                    out_trade_no=out_trade_no or "",
                    expected_cents=amount_cents,
                    money=money,
                )
                raise PaymentValidationError("money mismatch for out_trade_no")

        try:
            confirmed = self.confirm_payment(out_trade_no or "", payload.get("trade_no") or None)
        except LicenseError as exc:
            self._audit(
                event_type=event_type,
                out_trade_no=out_trade_no,
                raw_payload=raw_payload,
                signature=signature,
                signature_valid=True,
                outcome="error",
                detail=str(exc),
            )
            raise
        status = "processed" if confirmed.newly_paid else "duplicate"
        self._audit(
            event_type=event_type,
            out_trade_no=out_trade_no,
            raw_payload=raw_payload,
            signature=signature,
            signature_valid=True,
            outcome=status,
        )
        return NotifyOutcome(status=status, out_trade_no=out_trade_no, activation_code=confirmed.activation_code)

    # Admin

    def issue_admin_token(self, identity: str, term: str | Term, admin_token: str) -> str:
        if not check_admin_token(admin_token, self._admin_token):
            log_event(_LOGGER, 30, "license.admin.unauthorized")
            raise UnauthorizedError("无权限")
        user_id = normalize_identity(identity)
        normalized_term = coerce_term(term)
        now_ms = self._now_ms()
        code = issue_token(user_id, normalized_term, now_ms, self._private_key)
        with session_scope(self._session_factory) as session:
            LicenseRepository(session).append_token(
                code=code,
                user_id=user_id,
                term=normalized_term,
                purchase_time=now_ms // 1000,
                source=TokenSource.ADMIN,
                now=self._as_datetime(now_ms),
            )
        log_event(_LOGGER, 20, "license.admin.token_issued", user_id=user_id, term=normalized_term.value)
        self._recompute_quietly(user_id)
        return code

    # Subscriptions

    def recompute_subscription(self, identity: str) -> AccumulatedSubscription:
        """Re-derive and store the subscription from every verifiable stored token."""

        user_id = normalize_identity(identity)
        with session_scope(self._session_factory) as session:
            repo = LicenseRepository(session)
            codes = [row.code for row in repo.list_tokens(user_id)]
            verified = verified_claims(user_id, codes, self._public_key)
            subscription = accumulate(
                TokenClaim(purchase_seconds=item.purchase_seconds, term=item.term) for item in verified
            )
            if len(verified) < len(codes):
                log_event(
                    _LOGGER,
                    30,
                    "license.subscription.unverifiable_tokens",
                    user_id=user_id,
                    stored=len(codes),
                    verified=len(verified),
                )
            if subscription.has_tokens:
                repo.upsert_subscription(
                    user_id,
                    expire_at=subscription.expire_at,
                    is_lifetime=subscription.is_lifetime,
                )
            elif repo.delete_subscription(user_id):
                # No stored token verifies under the current key any more.
                log_event(_LOGGER, 30, "license.subscription.cleared", user_id=user_id, stored=len(codes))
        return subscription

    def get_subscription(self, identity: str) -> SubscriptionView:
        user_id = normalize_identity(identity)
        subscription = self.recompute_subscription(user_id)
        if not subscription.has_tokens:
            return SubscriptionView(user_id=user_id, subscribed=False)
        now = int(float(self._clock()))
        return SubscriptionView(
            user_id=user_id,
            subscribed=subscription.is_valid(now),
            expire_at=subscription.expire_at,
            expire_date=format_expire_date(subscription.expire_at),
            is_lifetime=subscription.is_lifetime,
            has_tokens=True,
        )

    def _recompute_quietly(self, user_id: str) -> None:
        try:
            self.recompute_subscription(user_id)
        except Exception as exc:  # noqa: BLE001
            # The token is already committed; the next query recomputes.
            log_event(
                _LOGGER,
                40,
                "license.subscription.recompute_failed",
                user_id=user_id,
                error=str(exc),
            )

    def _audit(
        self,
        *,
        event_type: str,
        raw_payload: str,
        outcome: str,
        out_trade_no: Optional[str] = None,
        signature: Optional[str] = None,
        signature_valid: bool = False,
        detail: Optional[str] = None,
    ) -> None:
        with session_scope(self._session_factory) as session:
            LicenseRepository(session).record_audit_log(
                source=self._gateway.name,
                event_type=event_type,
                out_trade_no=out_trade_no,
                raw_payload=raw_payload,
                signature=signature,
                signature_valid=signature_valid,
                outcome=outcome,
                detail=detail,
            )


def load_signing_key() -> ec.EllipticCurvePrivateKey:
    from config import LICENSE_PRIVATE_KEY, LICENSE_PRIVATE_KEY_PATH

    from .license_crypto import LicenseKeyError, load_key_material, load_private_key

    material = load_key_material(value=LICENSE_PRIVATE_KEY, path=LICENSE_PRIVATE_KEY_PATH)
    if not material:
        raise ConfigurationError("LICENSE_PRIVATE_KEY/LICENSE_PRIVATE_KEY_PATH is missing")
    try:
        return load_private_key(material)
    except (LicenseKeyError, ValueError) as exc:
        raise ConfigurationError(f"invalid LICENSE_PRIVATE_KEY: {exc}") from exc


def build_license_service(
    *,
    session_factory: Optional[SessionFactory] = None,
    gateway: Optional[BasePaymentGateway] = None,
    private_key: Optional[ec.EllipticCurvePrivateKey] = None,
) -> LicenseService:
    """Wire a service from config; explicit arguments win over configuration."""

    from config import ADMIN_TOKEN, GATEWAY_KEY, PRODUCT_NAME_PREFIX, PUBLIC_BASE_URL, TERM_PRICES

    from .db import SessionLocal
    from .gateway import get_payment_gateway

    return LicenseService(
        session_factory=session_factory or SessionLocal,
        gateway=gateway or get_payment_gateway(),
        private_key=private_key or load_signing_key(),
        gateway_key=GATEWAY_KEY,
        admin_token=ADMIN_TOKEN,
        term_prices=TERM_PRICES,
        product_name_prefix=PRODUCT_NAME_PREFIX,
        public_base_url=PUBLIC_BASE_URL,
    )
