from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, DateTime, Enum, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class OrderStatus(str, enum.Enum):
    TO_PAY = "to_pay"
    PAYMENT_FAILED = "payment_failed"
    TO_SHIP = "to_ship"
    TO_RECEIVE = "to_receive"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    PENDING_CANCELLATION = "pending_cancellation"
    RETURN_REFUND = "return_refund"


class OrderKind(str, enum.Enum):
    """Settlement variant of an order id; chosen at checkout, carried in provider metadata."""

    PHYSICAL = "physical"
    CREDIT_PURCHASE = "credit_purchase"


class Order(Base):
    __tablename__ = "settlement_orders"

    order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus, native_enum=False), default=OrderStatus.TO_PAY, index=True
    )
    total_amount_centavos: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(8), default="PHP")
    payment_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class UserCredits(Base):
    __tablename__ = "settlement_user_credits"
    __table_args__ = (CheckConstraint("credits_remaining >= 0", name="ck_settlement_user_credits_remaining_nonneg"),)

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    credits_remaining: Mapped[int] = mapped_column(Integer, default=0)
    total_credits_purchased: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class CreditGrant(Base):
    """
    Ledger of applied credit increments.

    The unique idempotency key is written in the same transaction as the
    balance increment, which is what makes a redelivered webhook a no-op.
    """

    __tablename__ = "settlement_credit_grants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    idempotency_key: Mapped[str] = mapped_column(String(160), unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    order_id: Mapped[str] = mapped_column(String(64), index=True)
    credits: Mapped[int] = mapped_column(Integer)
    provider_event_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class WebhookAuditLog(Base):
    """
    Append-only record of every webhook delivery, including rejected ones.

    The raw payload is kept for dispute resolution with the provider.
    """

    __tablename__ = "settlement_webhook_audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    request_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    event_type: Mapped[str] = mapped_column(String(64), index=True)
    provider_event_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    signature_valid: Mapped[bool] = mapped_column(Boolean, default=False)
    raw_payload: Mapped[str] = mapped_column(Text)
    outcome: Mapped[str] = mapped_column(String(32), index=True)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


Index("ix_settlement_orders_user_status", Order.user_id, Order.status)
