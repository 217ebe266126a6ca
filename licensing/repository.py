from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Select, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import (
    ActivationToken,
    LicenseAuditLog,
    LicenseOrder,
    OrderStatus,
    SubscriptionRecord,
    Term,
    TokenSource,
    TrialRecord,
)


def _as_utc_aware(dt: datetime) -> datetime:
    """
    Normalize datetimes to UTC aware.

    SQLite returns offset-naive datetimes even for DateTime(timezone=True)
    columns; naive values are treated as UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class LicenseStateError(RuntimeError):
    pass


class LicenseRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    # Orders

    def create_order(
        self,
        *,
        out_trade_no: str,
        user_id: str,
        term: Term,
        amount_cents: int,
        product_name: str = "",
        pay_type: str = "alipay",
        gateway: str = "mock",
        now: Optional[datetime] = None,
    ) -> LicenseOrder:
        key = str(out_trade_no or "").strip()
        if not key:
            raise LicenseStateError("out_trade_no is required")
        existing = self.get_order(key)
        if existing is not None:
            return existing
        current = _as_utc_aware(now) if now else datetime.now(timezone.utc)
        order = LicenseOrder(
            out_trade_no=key,
            user_id=str(user_id or "").strip(),
            term=term,
            amount_cents=int(amount_cents),
            product_name=str(product_name or "")[:255],
            pay_type=str(pay_type or "alipay")[:32],
            gateway=str(gateway or "mock")[:32],
            status=OrderStatus.PENDING,
            created_at=current,
            updated_at=current,
        )
        try:
            with self.session.begin_nested():
                self.session.add(order)
                self.session.flush()
        except IntegrityError:
            # Concurrent duplicate insert; fall back to the existing row.
            existing = self.get_order(key)
            if existing is not None:
                return existing
            raise
        return order

    def get_order(self, out_trade_no: str) -> Optional[LicenseOrder]:
        key = str(out_trade_no or "").strip()
        if not key:
            return None
        return self.session.scalar(select(LicenseOrder).where(LicenseOrder.out_trade_no == key))

    def list_orders(
        self,
        *,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[LicenseOrder]:
        query: Select[Any] = select(LicenseOrder).order_by(LicenseOrder.created_at.desc())
        if user_id:
            query = query.where(LicenseOrder.user_id == str(user_id).strip())
        if status:
            query = query.where(LicenseOrder.status == status)
        query = query.limit(max(1, min(int(limit), 200))).offset(max(0, int(offset)))
        return list(self.session.scalars(query).all())

    def mark_order_paid_if_pending(
        self,
        out_trade_no: str,
        *,
        gateway_trade_no: Optional[str] = None,
        paid_at: Optional[datetime] = None,
    ) -> bool:
        """
        Atomically move an order from pending to paid.

        Returns True only for the caller whose UPDATE matched the pending row;
        every concurrent or repeated caller gets False.
        """

        current = _as_utc_aware(paid_at) if paid_at else datetime.now(timezone.utc)
        values: dict[str, Any] = {"status": OrderStatus.PAID, "paid_at": current, "updated_at": current}
        trade_no = str(gateway_trade_no or "").strip()
        if trade_no:
            values["gateway_trade_no"] = trade_no[:128]
        result = self.session.execute(
            update(LicenseOrder)
            .where(
                LicenseOrder.out_trade_no == str(out_trade_no or "").strip(),
                LicenseOrder.status == OrderStatus.PENDING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        won = int(result.rowcount or 0) == 1
        if won:
            # Identity-map copies still carry status=pending.
            self.session.expire_all()
        return won

    # Activation tokens

    def append_token(
        self,
        *,
        code: str,
        user_id: str,
        term: Term,
        purchase_time: int,
        source: TokenSource,
        order_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ActivationToken:
        current = _as_utc_aware(now) if now else datetime.now(timezone.utc)
        token = ActivationToken(
            code=str(code or "").strip(),
            user_id=str(user_id or "").strip(),
            term=term,
            purchase_time=int(purchase_time),
            source=source,
            order_id=order_id,
            created_at=current,
        )
        self.session.add(token)
        self.session.flush()
        return token

    def list_tokens(self, user_id: str) -> list[ActivationToken]:
        key = str(user_id or "").strip()
        if not key:
            return []
        query = (
            select(ActivationToken)
            .where(ActivationToken.user_id == key)
            .order_by(ActivationToken.purchase_time.asc(), ActivationToken.created_at.asc())
        )
        return list(self.session.scalars(query).all())

    def get_token_for_order(self, order_id: str) -> Optional[ActivationToken]:
        if not order_id:
            return None
        return self.session.scalar(select(ActivationToken).where(ActivationToken.order_id == order_id))

    def get_trial_token(self, user_id: str) -> Optional[ActivationToken]:
        key = str(user_id or "").strip()
        if not key:
            return None
        query = (
            select(ActivationToken)
            .where(ActivationToken.user_id == key, ActivationToken.source == TokenSource.TRIAL)
            .order_by(ActivationToken.created_at.asc())
            .limit(1)
        )
        return self.session.scalar(query)

    def list_user_ids_with_tokens(self) -> list[str]:
        rows = self.session.scalars(select(ActivationToken.user_id).distinct()).all()
        return sorted({str(item).strip() for item in rows if str(item).strip()})

    # Trial records

    def has_trial_record(self, user_id: str) -> bool:
        key = str(user_id or "").strip()
        if not key:
            return False
        return self.session.get(TrialRecord, key) is not None

    def insert_trial_if_absent(self, user_id: str, *, now: Optional[datetime] = None) -> bool:
        key = str(user_id or "").strip()
        if not key:
            raise LicenseStateError("user_id is required")
        if self.has_trial_record(key):
            return False
        current = _as_utc_aware(now) if now else datetime.now(timezone.utc)
        try:
            with self.session.begin_nested():
                self.session.add(TrialRecord(user_id=key, created_at=current))
                self.session.flush()
        except IntegrityError:
            # Another request recorded the trial first.
            return False
        return True

    # Subscriptions

    def get_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        key = str(user_id or "").strip()
        if not key:
            return None
        return self.session.get(SubscriptionRecord, key)

    def upsert_subscription(
        self,
        user_id: str,
        *,
        expire_at: int,
        is_lifetime: bool,
        now: Optional[datetime] = None,
    ) -> SubscriptionRecord:
        key = str(user_id or "").strip()
        if not key:
            raise LicenseStateError("user_id is required")
        current = _as_utc_aware(now) if now else datetime.now(timezone.utc)
        record = self.session.get(SubscriptionRecord, key)
        if record is None:
            record = SubscriptionRecord(
                user_id=key,
                expire_at=int(expire_at),
                is_lifetime=bool(is_lifetime),
                updated_at=current,
            )
            try:
                with self.session.begin_nested():
                    self.session.add(record)
                    self.session.flush()
                return record
            except IntegrityError:
                record = self.session.get(SubscriptionRecord, key)
                if record is None:
                    raise
        record.expire_at = int(expire_at)
        record.is_lifetime = bool(is_lifetime)
        record.updated_at = current
        self.session.flush()
        return record

    def delete_subscription(self, user_id: str) -> bool:
        record = self.session.get(SubscriptionRecord, str(user_id or "").strip())
        if record is None:
            return False
        self.session.delete(record)
        self.session.flush()
        return True

    # Audit

    def record_audit_log(
        self,
        *,
        source: str,
        event_type: str,
        raw_payload: str,
        outcome: str,
        signature: Optional[str] = None,
        signature_valid: bool = False,
        out_trade_no: Optional[str] = None,
        detail: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> LicenseAuditLog:
        log = LicenseAuditLog(
            source=str(source or "gateway")[:32],
            event_type=str(event_type or "")[:64] or "unknown",
            out_trade_no=str(out_trade_no)[:64] if out_trade_no else None,
            signature=str(signature)[:512] if signature else None,
            signature_valid=bool(signature_valid),
            raw_payload=str(raw_payload or ""),
            outcome=str(outcome or "")[:32] or "unknown",
            detail=str(detail) if detail else None,
            occurred_at=_as_utc_aware(occurred_at) if occurred_at else datetime.now(timezone.utc),
        )
        self.session.add(log)
        self.session.flush()
        return log

    def list_audit_logs(
        self,
        *,
        out_trade_no: Optional[str] = None,
        outcome: Optional[str] = None,
        limit: int = 50,
    ) -> list[LicenseAuditLog]:
        query = select(LicenseAuditLog).order_by(LicenseAuditLog.occurred_at.desc())
        if out_trade_no:
            query = query.where(LicenseAuditLog.out_trade_no == out_trade_no)
        if outcome:
            query = query.where(LicenseAuditLog.outcome == outcome)
        query = query.limit(max(1, min(int(limit), 200)))
        return list(self.session.scalars(query).all())
