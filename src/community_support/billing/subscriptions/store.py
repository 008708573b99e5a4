"""
Subscription store.

Atomic reads and writes over support subscriptions, payments and the webhook
ledger. The store flushes but never commits; the caller owns the unit of work.
Uniqueness is enforced by the database:
- one open subscription per (user, community), via a partial unique index
- one payment per (provider, provider_transaction_id)
- one ledger row per (provider, event_id)
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from community_support.billing.exceptions import AlreadySubscribed
from community_support.billing.subscriptions.models import (
    OPEN_STATUSES,
    ProcessedWebhookEvent,
    SupportPayment,
    SupportPlan,
    SupportSubscription,
)

logger = structlog.get_logger(__name__)

_OPEN_VALUES = [status.value for status in OPEN_STATUSES]


@dataclass
class NewPayment:
    subscription_id: int
    amount_minor: int
    currency: str
    payment_method: str
    provider: str
    provider_transaction_id: str
    status: str
    billing_period_start: datetime | None = None
    billing_period_end: datetime | None = None


class SubscriptionStore:
    """Persistence for the subscription lifecycle engine."""

    def __init__(self, db_session: AsyncSession) -> None:
        self.db = db_session

    # ==================== Subscriptions ====================

    async def get(self, subscription_id: int) -> SupportSubscription | None:
        return await self.db.get(SupportSubscription, subscription_id)

    async def reload(self, subscription_id: int) -> SupportSubscription | None:
        """Read the row again, discarding any identity-map copy."""
        return await self.db.get(SupportSubscription, subscription_id, populate_existing=True)

    async def find_open(self, user_id: int, community_id: int) -> SupportSubscription | None:
        result = await self.db.execute(
            select(SupportSubscription).where(
                SupportSubscription.user_id == user_id,
                SupportSubscription.community_id == community_id,
                SupportSubscription.status.in_(_OPEN_VALUES),
            )
        )
        return result.scalar_one_or_none()

    async def find_by_provider_ref(
        self, provider: str, provider_subscription_id: str
    ) -> SupportSubscription | None:
        result = await self.db.execute(
            select(SupportSubscription).where(
                SupportSubscription.provider == provider,
                SupportSubscription.provider_subscription_id == provider_subscription_id,
            )
        )
        return result.scalar_one_or_none()

    async def create(
        self,
        *,
        user_id: int,
        community_id: int,
        plan_id: int,
        status: str,
        current_period_start: datetime,
        current_period_end: datetime,
        provider: str,
        provider_subscription_id: str | None,
        cancel_at_period_end: bool = False,
    ) -> SupportSubscription:
        """
        Insert a subscription.

        Raises:
            AlreadySubscribed: another open subscription for (user, community)
                won the race to the partial unique index. The session is
                rolled back before raising.
        """
        subscription = SupportSubscription(
            user_id=user_id,
            community_id=community_id,
            plan_id=plan_id,
            status=status,
            current_period_start=current_period_start,
            current_period_end=current_period_end,
            provider=provider,
            provider_subscription_id=provider_subscription_id,
            cancel_at_period_end=cancel_at_period_end,
        )
        self.db.add(subscription)
        try:
            await self.db.flush()
        except IntegrityError as e:
            await self.db.rollback()
            if await self.find_open(user_id, community_id) is not None:
                logger.info(
                    "subscription.create.conflict",
                    user_id=user_id,
                    community_id=community_id,
                )
                raise AlreadySubscribed(
                    "You are already supporting this community",
                    user_id=user_id,
                    community_id=community_id,
                ) from e
            raise
        return subscription

    async def save(self, subscription: SupportSubscription) -> SupportSubscription:
        """
        Flush a mutated subscription.

        The UPDATE is guarded by the row version; a concurrent writer makes it
        raise ``sqlalchemy.orm.exc.StaleDataError``.
        """
        await self.db.flush()
        return subscription

    # ==================== Payments ====================

    async def find_payment(
        self, provider: str, provider_transaction_id: str
    ) -> SupportPayment | None:
        result = await self.db.execute(
            select(SupportPayment).where(
                SupportPayment.provider == provider,
                SupportPayment.provider_transaction_id == provider_transaction_id,
            )
        )
        return result.scalar_one_or_none()

    async def append_payment(self, payment: NewPayment) -> tuple[SupportPayment, bool]:
        """
        Append a payment unless the provider transaction is already recorded.

        Returns:
            The payment row and whether it was created by this call
        """
        existing = await self.find_payment(payment.provider, payment.provider_transaction_id)
        if existing is not None:
            return existing, False

        row = SupportPayment(
            subscription_id=payment.subscription_id,
            amount_minor=payment.amount_minor,
            currency=payment.currency,
            payment_method=payment.payment_method,
            provider=payment.provider,
            provider_transaction_id=payment.provider_transaction_id,
            status=payment.status,
            billing_period_start=payment.billing_period_start,
            billing_period_end=payment.billing_period_end,
        )
        self.db.add(row)
        await self.db.flush()
        return row, True

    async def count_payments(self, subscription_id: int) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(SupportPayment)
            .where(SupportPayment.subscription_id == subscription_id)
        )
        return int(result.scalar_one())

    async def list_payments(
        self, subscription_id: int, limit: int = 10, offset: int = 0
    ) -> list[SupportPayment]:
        result = await self.db.execute(
            select(SupportPayment)
            .where(SupportPayment.subscription_id == subscription_id)
            .order_by(SupportPayment.created_at.desc(), SupportPayment.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    # ==================== Webhook ledger ====================

    async def is_event_processed(self, provider: str, event_id: str) -> bool:
        result = await self.db.execute(
            select(ProcessedWebhookEvent.id).where(
                ProcessedWebhookEvent.provider == provider,
                ProcessedWebhookEvent.event_id == event_id,
            )
        )
        return result.first() is not None

    async def mark_event_processed(
        self,
        provider: str,
        event_id: str,
        event_type: str,
        outcome: str,
        subscription_id: int | None = None,
    ) -> ProcessedWebhookEvent:
        """Record the event in the ledger; IntegrityError means a concurrent delivery won."""
        row = ProcessedWebhookEvent(
            provider=provider,
            event_id=event_id,
            event_type=event_type,
            outcome=outcome,
            subscription_id=subscription_id,
        )
        self.db.add(row)
        await self.db.flush()
        return row

    # ==================== Read models ====================

    async def list_open_for_user(self, user_id: int) -> list[tuple[SupportSubscription, SupportPlan]]:
        result = await self.db.execute(
            select(SupportSubscription, SupportPlan)
            .join(SupportPlan, SupportSubscription.plan_id == SupportPlan.id)
            .where(
                SupportSubscription.user_id == user_id,
                SupportSubscription.status.in_(_OPEN_VALUES),
            )
            .order_by(SupportSubscription.created_at.desc(), SupportSubscription.id.desc())
        )
        return [(row[0], row[1]) for row in result.all()]

    async def get_open_with_plan(
        self, user_id: int, community_id: int
    ) -> tuple[SupportSubscription, SupportPlan] | None:
        result = await self.db.execute(
            select(SupportSubscription, SupportPlan)
            .join(SupportPlan, SupportSubscription.plan_id == SupportPlan.id)
            .where(
                SupportSubscription.user_id == user_id,
                SupportSubscription.community_id == community_id,
                SupportSubscription.status.in_(_OPEN_VALUES),
            )
        )
        row = result.first()
        return (row[0], row[1]) if row else None

    async def list_community_open(
        self, community_id: int, limit: int = 20, offset: int = 0
    ) -> tuple[int, list[SupportSubscription]]:
        filters: list[Any] = [
            SupportSubscription.community_id == community_id,
            SupportSubscription.status.in_(_OPEN_VALUES),
        ]
        total = await self.db.execute(
            select(func.count()).select_from(SupportSubscription).where(*filters)
        )
        rows = await self.db.execute(
            select(SupportSubscription)
            .where(*filters)
            .order_by(SupportSubscription.created_at.desc(), SupportSubscription.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return int(total.scalar_one()), list(rows.scalars().all())


__all__ = ["NewPayment", "SubscriptionStore"]
