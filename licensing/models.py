from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import BigInteger, Boolean, DateTime, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Term(str, enum.Enum):
    TRIAL = "7d"
    MONTH = "1m"
    YEAR = "1y"
    LIFETIME = "Lifetime"


PAID_TERMS: tuple[Term, ...] = (Term.MONTH, Term.YEAR, Term.LIFETIME)


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"


class TokenSource(str, enum.Enum):
    TRIAL = "trial"
    ORDER = "order"
    ADMIN = "admin"


class LicenseOrder(Base):
    __tablename__ = "license_orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    out_trade_no: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    term: Mapped[Term] = mapped_column(Enum(Term, native_enum=False, values_callable=lambda e: [m.value for m in e]))
    amount_cents: Mapped[int] = mapped_column(Integer, default=0)
    product_name: Mapped[str] = mapped_column(String(255), default="")
    pay_type: Mapped[str] = mapped_column(String(32), default="alipay")
    gateway: Mapped[str] = mapped_column(String(32), default="mock")
    status: Mapped[OrderStatus] = mapped_column(Enum(OrderStatus, native_enum=False), default=OrderStatus.PENDING)
    gateway_trade_no: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    tokens: Mapped[list["ActivationToken"]] = relationship(back_populates="order")


class ActivationToken(Base):
    """Append-only. A minted token is never modified or deleted."""

    __tablename__ = "license_activation_tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    code: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    term: Mapped[Term] = mapped_column(Enum(Term, native_enum=False, values_callable=lambda e: [m.value for m in e]))
    purchase_time: Mapped[int] = mapped_column(BigInteger)
    source: Mapped[TokenSource] = mapped_column(Enum(TokenSource, native_enum=False), default=TokenSource.ORDER)
    order_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("license_orders.id"), nullable=True, unique=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    order: Mapped[Optional[LicenseOrder]] = relationship(back_populates="tokens")


class TrialRecord(Base):
    __tablename__ = "license_trial_records"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class SubscriptionRecord(Base):
    """Derived state; always recomputable from the user's activation tokens."""

    __tablename__ = "license_subscriptions"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    expire_at: Mapped[int] = mapped_column(BigInteger, default=0)
    is_lifetime: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class LicenseAuditLog(Base):
    """
    Append-only record of every gateway callback and checkout attempt.

    Signature failures are stored too; raw payload is kept for disputes.
    """

    __tablename__ = "license_audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    source: Mapped[str] = mapped_column(String(32), default="gateway", index=True)
    event_type: Mapped[str] = mapped_column(String(64), index=True)
    out_trade_no: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    signature: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    signature_valid: Mapped[bool] = mapped_column(Boolean, default=False)
    raw_payload: Mapped[str] = mapped_column(Text)
    outcome: Mapped[str] = mapped_column(String(32), index=True)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


Index("ix_license_orders_user_status", LicenseOrder.user_id, LicenseOrder.status)
Index("ix_license_tokens_user_purchase", ActivationToken.user_id, ActivationToken.purchase_time)
