"""
Support billing database tables.

Three logical records plus the webhook ledger:
- support_plans: one active plan per community
- support_subscriptions: one open subscription per (user, community)
- support_payments: append-only billing attempts
- support_webhook_events: provider event ids already handled
"""

from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from community_support.db import Base, TimestampMixin


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""

    PENDING = "pending"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


OPEN_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
)

# Shared by the ORM index and the migration
OPEN_STATUS_PREDICATE = "status IN ('active', 'past_due')"


class PaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PaymentMethodKind(str, Enum):
    CARD = "card"
    UNKNOWN = "unknown"


class WebhookOutcome(str, Enum):
    """How a provider event was disposed of."""

    PROCESSED = "processed"
    IGNORED = "ignored"
    UNMATCHED = "unmatched"


class SupportPlan(TimestampMixin, Base):
    """Recurring monthly support plan published by a community owner."""

    __tablename__ = "support_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    community_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    monthly_price_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    benefits: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index(
            "uq_support_plans_active_community",
            "community_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
        CheckConstraint("monthly_price_minor > 0", name="ck_support_plans_price_positive"),
    )

    def __repr__(self) -> str:
        return f"<SupportPlan(id={self.id}, community_id={self.community_id}, active={self.is_active})>"


class SupportSubscription(TimestampMixin, Base):
    """A member's support of one community under one plan."""

    __tablename__ = "support_subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    community_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    plan_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("support_plans.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubscriptionStatus.PENDING.value
    )

    current_period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Optimistic lock counter, bumped by the ORM on every UPDATE
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index(
            "uq_support_subscriptions_open_user_community",
            "user_id",
            "community_id",
            unique=True,
            postgresql_where=text(OPEN_STATUS_PREDICATE),
            sqlite_where=text(OPEN_STATUS_PREDICATE),
        ),
        UniqueConstraint(
            "provider",
            "provider_subscription_id",
            name="uq_support_subscriptions_provider_ref",
        ),
        CheckConstraint(
            "current_period_end >= current_period_start",
            name="ck_support_subscriptions_period",
        ),
        Index("ix_support_subscriptions_community_status", "community_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<SupportSubscription(id={self.id}, user_id={self.user_id}, "
            f"community_id={self.community_id}, status={self.status})>"
        )


class SupportPayment(Base):
    """One billing attempt reported by the provider. Never updated."""

    __tablename__ = "support_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("support_subscriptions.id"), nullable=False, index=True
    )
    amount_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    payment_method: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentMethodKind.UNKNOWN.value
    )
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_transaction_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    billing_period_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    billing_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint(
            "provider",
            "provider_transaction_id",
            name="uq_support_payments_provider_transaction",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<SupportPayment(id={self.id}, subscription_id={self.subscription_id}, "
            f"status={self.status}, amount_minor={self.amount_minor})>"
        )


class ProcessedWebhookEvent(Base):
    """Durable dedup ledger for provider webhook deliveries."""

    __tablename__ = "support_webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    subscription_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_support_webhook_events_provider_event"),
    )


__all__ = [
    "OPEN_STATUSES",
    "OPEN_STATUS_PREDICATE",
    "PaymentMethodKind",
    "PaymentStatus",
    "ProcessedWebhookEvent",
    "SubscriptionStatus",
    "SupportPayment",
    "SupportPlan",
    "SupportSubscription",
    "WebhookOutcome",
]
