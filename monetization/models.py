from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

MONEY = Numeric(12, 2, asdecimal=True)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class UserRole(str, enum.Enum):
    USER = "user"
    VIP = "vip"
    ADMIN = "admin"


class PlanType(str, enum.Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"


class TransactionType(str, enum.Enum):
    JEEZ_PURCHASE = "jeez_purchase"
    JEEZ_SPEND = "jeez_spend"
    VIP_SUBSCRIPTION = "vip_subscription"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, enum.Enum):
    PAYPAL = "paypal"
    CREDIT_CARD = "credit_card"
    WALLET = "wallet"


class OrderStatus(str, enum.Enum):
    CREATED = "created"
    PENDING = "pending"
    APPROVED = "approved"
    COMPLETED = "completed"
    FAILED = "failed"


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[UserRole] = mapped_column(Enum(UserRole, native_enum=False), default=UserRole.USER, index=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    wallet: Mapped[Optional["JeezBalance"]] = relationship(back_populates="user", uselist=False)
    subscription: Mapped[Optional["VIPSubscription"]] = relationship(back_populates="user", uselist=False)


class JeezBalance(Base):
    __tablename__ = "jeez_balances"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_jeez_balances_non_negative"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), unique=True, index=True)
    balance: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"))
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    user: Mapped[User] = relationship(back_populates="wallet")


class VIPSubscription(Base):
    __tablename__ = "vip_subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), unique=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    plan_type: Mapped[PlanType] = mapped_column(Enum(PlanType, native_enum=False))
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, default=True)
    renewal_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    user: Mapped[User] = relationship(back_populates="subscription")


class Transaction(Base):
    """
    Append-only ledger entry.

    `transaction_id` is the caller-supplied idempotency token; the unique
    constraint on it is what makes every balance or subscription mutation
    exactly-once per token.
    """

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    transaction_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    transaction_type: Mapped[TransactionType] = mapped_column(Enum(TransactionType, native_enum=False))
    amount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"))
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus, native_enum=False), default=TransactionStatus.PENDING
    )
    payment_method: Mapped[PaymentMethod] = mapped_column(Enum(PaymentMethod, native_enum=False))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    capture_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    vip_subscription_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    meta_json: Mapped[Optional[str]] = mapped_column("metadata", Text, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class PayPalOrder(Base):
    __tablename__ = "paypal_orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    # Provider id; null until PayPal acknowledges the order.
    order_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True, index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    product_id: Mapped[str] = mapped_column(String(64), index=True)
    amount: Mapped[Decimal] = mapped_column(MONEY)
    currency: Mapped[str] = mapped_column(String(8), default="USD")
    status: Mapped[OrderStatus] = mapped_column(Enum(OrderStatus, native_enum=False), default=OrderStatus.CREATED)
    approve_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    capture_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    webhook_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    raw_webhook_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class WebhookAuditLog(Base):
    """
    Append-only record of every webhook delivery, including rejected ones.

    The raw body is kept for dispute resolution.
    """

    __tablename__ = "webhook_audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    provider: Mapped[str] = mapped_column(String(32), default="paypal", index=True)
    event_type: Mapped[str] = mapped_column(String(64), index=True)
    external_event_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    external_order_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    transmission_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    signature_valid: Mapped[bool] = mapped_column(Boolean, default=False)
    raw_payload: Mapped[str] = mapped_column(Text)
    outcome: Mapped[str] = mapped_column(String(32), index=True)
    http_status: Mapped[int] = mapped_column(Integer, default=200)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


Index("ix_transactions_user_created", Transaction.user_id, Transaction.created_at)
Index("ix_paypal_orders_user_status", PayPalOrder.user_id, PayPalOrder.status)
Index("ix_vip_subscriptions_active_expires", VIPSubscription.is_active, VIPSubscription.expires_at)
