from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Select, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import (
    CreditGrant,
    Order,
    OrderStatus,
    UserCredits,
    WebhookAuditLog,
)


def _as_utc_aware(dt: datetime) -> datetime:
    """
    Normalize datetimes to UTC aware.

    SQLite returns offset-naive datetimes even when the column is declared
    with DateTime(timezone=True); treat naive values as UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class SettlementStateError(RuntimeError):
    pass


@dataclass(frozen=True)
class CreditGrantOutcome:
    applied: bool
    duplicate: bool
    grant_id: Optional[str] = None


class SettlementRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create_order(
        self,
        order_id: str,
        user_id: str,
        *,
        total_amount_centavos: int = 0,
        currency: str = "PHP",
        status: OrderStatus = OrderStatus.TO_PAY,
        now: Optional[datetime] = None,
    ) -> Order:
        key = str(order_id or "").strip()
        if not key:
            raise SettlementStateError("order_id is required")
        owner = str(user_id or "").strip()
        if not owner:
            raise SettlementStateError("user_id is required")
        existing = self.session.get(Order, key)
        if existing is not None:
            return existing

        current = _as_utc_aware(now) if now else datetime.now(timezone.utc)
        order = Order(
            order_id=key,
            user_id=owner,
            status=status,
            total_amount_centavos=int(total_amount_centavos),
            currency=str(currency or "PHP").strip().upper(),
            created_at=current,
            updated_at=current,
        )
        try:
            with self.session.begin_nested():
                self.session.add(order)
                self.session.flush()
        except IntegrityError:
            # Concurrent duplicate insert; fall back to the existing row.
            existing = self.session.get(Order, key)
            if existing is not None:
                return existing
            raise
        return order

    def get_order(self, order_id: str) -> Optional[Order]:
        key = str(order_id or "").strip()
        if not key:
            return None
        return self.session.get(Order, key)

    def get_order_status(self, order_id: str) -> Optional[OrderStatus]:
        key = str(order_id or "").strip()
        if not key:
            return None
        status = self.session.scalar(select(Order.status).where(Order.order_id == key))
        return OrderStatus(status) if status is not None else None

    def compare_and_set_order_status(
        self,
        order_id: str,
        *,
        expected: OrderStatus,
        target: OrderStatus,
        payment_reference: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Single-row conditional update.

        Returns False when the row no longer holds `expected`, letting the
        caller re-read and decide again.
        """

        current = _as_utc_aware(now) if now else datetime.now(timezone.utc)
        values: dict[str, Any] = {"status": target, "updated_at": current}
        if payment_reference:
            values["payment_reference"] = str(payment_reference)
        result = self.session.execute(
            update(Order)
            .where(Order.order_id == order_id, Order.status == expected)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        return int(result.rowcount or 0) == 1

    def list_orders(
        self,
        *,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Order]:
        query: Select[Any] = select(Order).order_by(Order.created_at.desc())
        if user_id:
            query = query.where(Order.user_id == user_id)
        if status:
            query = query.where(Order.status == status)
        query = query.limit(max(1, min(int(limit), 200))).offset(max(0, int(offset)))
        return list(self.session.scalars(query).all())

    def add_credits(self, user_id: str, credits: int, *, now: Optional[datetime] = None) -> bool:
        """
        Atomically add `credits` to the user's balance.

        The increment is expressed in SQL so concurrent deliveries cannot lose
        updates; the first purchase inserts the row instead.
        """

        amount = int(credits)
        if amount <= 0:
            raise SettlementStateError("credits must be positive")
        current = _as_utc_aware(now) if now else datetime.now(timezone.utc)
        for _attempt in range(3):
            result = self.session.execute(
                update(UserCredits)
                .where(UserCredits.user_id == user_id)
                .values(
                    credits_remaining=UserCredits.credits_remaining + amount,
                    total_credits_purchased=UserCredits.total_credits_purchased + amount,
                    updated_at=current,
                )
                .execution_options(synchronize_session="fetch")
            )
            if int(result.rowcount or 0) == 1:
                return True
            try:
                with self.session.begin_nested():
                    self.session.add(
                        UserCredits(
                            user_id=user_id,
                            credits_remaining=amount,
                            total_credits_purchased=amount,
                            created_at=current,
                            updated_at=current,
                        )
                    )
                    self.session.flush()
                return True
            except IntegrityError:
                # Another delivery created the row first; retry the increment.
                continue
        raise SettlementStateError(f"credit increment conflict for user={user_id}")

    def get_credit_balance(self, user_id: str) -> int:
        balance = self.session.scalar(
            select(UserCredits.credits_remaining).where(UserCredits.user_id == user_id)
        )
        return int(balance or 0)

    def get_credit_grant(self, idempotency_key: str) -> Optional[CreditGrant]:
        return self.session.scalar(select(CreditGrant).where(CreditGrant.idempotency_key == idempotency_key))

    def list_credit_grants(self, *, user_id: str, limit: int = 50) -> list[CreditGrant]:
        query = (
            select(CreditGrant)
            .where(CreditGrant.user_id == user_id)
            .order_by(CreditGrant.created_at.desc())
            .limit(max(1, min(int(limit), 200)))
        )
        return list(self.session.scalars(query).all())

    def apply_credit_grant(
        self,
        *,
        idempotency_key: str,
        user_id: str,
        order_id: str,
        credits: int,
        provider_event_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CreditGrantOutcome:
        """
        Record the grant ledger row and increment the balance in one nested
        transaction. A key that is already present means the grant was applied
        by an earlier delivery.
        """

        existing = self.get_credit_grant(idempotency_key)
        if existing is not None:
            return CreditGrantOutcome(applied=False, duplicate=True, grant_id=existing.id)

        current = _as_utc_aware(now) if now else datetime.now(timezone.utc)
        try:
            with self.session.begin_nested():
                grant = CreditGrant(
                    idempotency_key=idempotency_key,
                    user_id=user_id,
                    order_id=order_id,
                    credits=int(credits),
                    provider_event_id=provider_event_id,
                    created_at=current,
                )
                self.session.add(grant)
                self.session.flush()
                applied = self.add_credits(user_id, int(credits), now=current)
                if not applied:
                    raise SettlementStateError(f"credit increment not applied for user={user_id}")
                return CreditGrantOutcome(applied=True, duplicate=False, grant_id=grant.id)
        except IntegrityError:
            # Concurrent duplicate insert on idempotency_key.
            existing = self.get_credit_grant(idempotency_key)
            if existing is not None:
                return CreditGrantOutcome(applied=False, duplicate=True, grant_id=existing.id)
            raise

    def record_audit_log(
        self,
        *,
        event_type: str,
        raw_payload: str,
        outcome: str,
        signature_valid: bool,
        request_id: Optional[str] = None,
        provider_event_id: Optional[str] = None,
        order_id: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> WebhookAuditLog:
        log = WebhookAuditLog(
            request_id=request_id,
            event_type=str(event_type or "unknown")[:64],
            provider_event_id=provider_event_id,
            order_id=order_id,
            signature_valid=bool(signature_valid),
            raw_payload=str(raw_payload or ""),
            outcome=str(outcome or "unknown")[:32],
            detail=detail,
        )
        self.session.add(log)
        self.session.flush()
        return log

    def list_audit_logs(
        self,
        *,
        limit: int = 50,
        order_id: Optional[str] = None,
        outcome: Optional[str] = None,
    ) -> list[WebhookAuditLog]:
        query: Select[Any] = select(WebhookAuditLog).order_by(WebhookAuditLog.occurred_at.desc())
        if order_id:
            query = query.where(WebhookAuditLog.order_id == order_id)
        if outcome:
            query = query.where(WebhookAuditLog.outcome == outcome)
        query = query.limit(max(1, min(int(limit), 200)))
        return list(self.session.scalars(query).all())
