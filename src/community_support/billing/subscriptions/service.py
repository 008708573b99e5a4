"""
Subscription lifecycle engine.

Orchestrates user-initiated subscribe/cancel requests against the payment
provider and applies normalized provider events to the local record.

User mutations always call the provider first and persist second, with no
database transaction held open across the provider call. Provider events are
authoritative for status and billing period.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from community_support.billing.config import BillingConfig, get_billing_config
from community_support.billing.exceptions import (
    AlreadySubscribed,
    AuthorizationError,
    CommunityNotFound,
    PlanNotFound,
    ProviderError,
    ReconciliationRequired,
    SubscriptionNotFound,
    ValidationError,
)
from community_support.billing.metrics import BillingMetrics, get_billing_metrics
from community_support.billing.money_utils import money_handler
from community_support.billing.providers.base import (
    PaymentProviderAdapter,
    ProviderRegistry,
    ProviderSubscription,
)
from community_support.billing.subscriptions import state_machine
from community_support.billing.subscriptions.models import (
    PaymentStatus,
    SupportPayment,
    SupportPlan,
    SupportSubscription,
    WebhookOutcome,
)
from community_support.billing.subscriptions.plans import PlanDirectory, SqlPlanDirectory
from community_support.billing.subscriptions.schemas import SubscriptionWithPlanResponse
from community_support.billing.subscriptions.store import NewPayment, SubscriptionStore
from community_support.billing.webhooks.events import (
    LifecycleEvent,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionDeleted,
    SubscriptionUpdated,
)
from community_support.communities import CommunityDirectory
from community_support.logging import log_subscription_audit

logger = structlog.get_logger(__name__)

MAX_STALE_RETRIES = 3


@dataclass(frozen=True)
class CallerIdentity:
    """The authenticated member making a request."""

    user_id: int
    email: str
    display_name: str | None = None


@dataclass
class EventResult:
    """How the engine disposed of one provider event."""

    outcome: WebhookOutcome
    subscription_id: int | None = None
    transition: state_machine.Transition | None = None


class SubscriptionLifecycleEngine:
    """
    State machine and idempotency layer for support subscriptions.

    Handles:
    - Subscribe: provider customer, priced offering and subscription, then persist
    - Cancel: provider cancel first, then mirror locally
    - Provider events: payment succeeded/failed, subscription deleted/updated
    """

    def __init__(
        self,
        db_session: AsyncSession,
        providers: ProviderRegistry,
        communities: CommunityDirectory,
        plans: PlanDirectory | None = None,
        config: BillingConfig | None = None,
        metrics: BillingMetrics | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.db = db_session
        self.store = SubscriptionStore(db_session)
        self.providers = providers
        self.communities = communities
        self.plans = plans or SqlPlanDirectory(db_session)
        self.config = config or get_billing_config()
        self.metrics = metrics or get_billing_metrics()
        self.clock = clock or (lambda: datetime.now(UTC))

    def _audit(self, action: str, subscription: SupportSubscription, **details: Any) -> None:
        if not self.config.audit_log_enabled:
            return
        log_subscription_audit(
            action,
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            community_id=subscription.community_id,
            provider=subscription.provider,
            **details,
        )

    # ==================== Subscribe ====================

    def _resolve_adapter(self, provider: str) -> PaymentProviderAdapter:
        if not self.config.is_supported_provider(provider) or not self.providers.supports(provider):
            raise ValidationError(f"Unsupported payment provider: {provider}", field="provider")
        return self.providers.get(provider)

    async def subscribe(
        self,
        member: CallerIdentity,
        community_id: int,
        provider: str,
        payment_method_ref: str,
    ) -> SupportSubscription:
        """
        Subscribe a member to a community's active support plan.

        Args:
            member: Authenticated caller
            community_id: Community to support
            provider: Payment provider name
            payment_method_ref: Provider payment method reference

        Returns:
            The persisted subscription, in the provider's reported status

        Raises:
            ValidationError: unsupported provider, missing payment method or email
            CommunityNotFound, PlanNotFound: nothing to subscribe to
            AlreadySubscribed: an open subscription already exists
            PaymentDeclined, ProviderUnavailable, ProviderRejected: provider failure,
                nothing persisted
            ReconciliationRequired: provider succeeded but the row could not be saved
        """
        adapter = self._resolve_adapter(provider)
        if not payment_method_ref or not payment_method_ref.strip():
            raise ValidationError("A payment method is required", field="paymentMethodId")
        # The provider customer is looked up by email
        if not member.email or "@" not in member.email:
            raise ValidationError("A billing email address is required", field="email")

        if not await self.communities.community_exists(community_id):
            raise CommunityNotFound("Community not found", community_id=community_id)

        plan = await self.plans.get_active_plan(community_id)
        if plan is None or not plan.is_active:
            raise PlanNotFound(
                "This community does not have an active support plan", community_id=community_id
            )

        if await self.store.find_open(member.user_id, community_id) is not None:
            raise AlreadySubscribed(
                "You are already supporting this community",
                user_id=member.user_id,
                community_id=community_id,
            )

        # No transaction stays open across provider calls
        await self.db.rollback()

        customer = await adapter.ensure_customer(
            member.email, member.display_name, member.user_id
        )
        offering = await adapter.ensure_priced_offering(
            community_id,
            plan.id,
            plan.name,
            plan.description,
            plan.amount_minor,
            plan.currency,
        )
        provider_sub = await adapter.create_provider_subscription(
            customer,
            offering,
            payment_method_ref,
            metadata={
                "user_id": str(member.user_id),
                "community_id": str(community_id),
                "plan_id": str(plan.id),
            },
        )

        try:
            subscription = await self.store.create(
                user_id=member.user_id,
                community_id=community_id,
                plan_id=plan.id,
                status=provider_sub.status,
                current_period_start=provider_sub.current_period_start,
                current_period_end=max(
                    provider_sub.current_period_end, provider_sub.current_period_start
                ),
                provider=provider,
                provider_subscription_id=provider_sub.id,
                cancel_at_period_end=provider_sub.cancel_at_period_end,
            )
            await self.db.commit()
        except AlreadySubscribed:
            await self._compensate_orphan(adapter, provider, provider_sub)
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise self._divergence(
                "subscribe", provider, provider_sub.id, None, e
            ) from e

        self.metrics.record_subscription_created(provider, subscription.status)
        self._audit(
            "support.subscription.created",
            subscription,
            plan_id=plan.id,
            provider_subscription_id=provider_sub.id,
            status=subscription.status,
        )
        logger.info(
            "subscription.created",
            subscription_id=subscription.id,
            user_id=member.user_id,
            community_id=community_id,
            status=subscription.status,
        )
        return subscription

    async def _compensate_orphan(
        self,
        adapter: PaymentProviderAdapter,
        provider: str,
        provider_sub: ProviderSubscription,
    ) -> None:
        """Cancel a provider subscription whose local row lost the uniqueness race."""
        try:
            await adapter.cancel_provider_subscription(provider_sub.id, at_period_end=False)
            logger.info(
                "subscription.orphan.canceled",
                provider=provider,
                provider_subscription_id=provider_sub.id,
            )
        except ProviderError as e:
            self.metrics.record_divergence(provider, "compensate")
            logger.error(
                "subscription.orphan.cancel_failed",
                provider=provider,
                provider_subscription_id=provider_sub.id,
                error_code=e.error_code,
            )

    def _divergence(
        self,
        operation: str,
        provider: str,
        provider_subscription_id: str | None,
        subscription_id: int | None,
        error: Exception,
    ) -> ReconciliationRequired:
        self.metrics.record_divergence(provider, operation)
        logger.error(
            "subscription.persist.divergent",
            operation=operation,
            provider=provider,
            provider_subscription_id=provider_subscription_id,
            subscription_id=subscription_id,
            error=str(error),
        )
        return ReconciliationRequired(
            f"Provider accepted {operation} but the local record could not be updated",
            provider=provider,
            provider_subscription_id=provider_subscription_id,
            subscription_id=subscription_id,
        )

    # ==================== Cancel ====================

    async def cancel(
        self, user_id: int, subscription_id: int, at_period_end: bool = True
    ) -> SupportSubscription:
        """
        Cancel a subscription held by ``user_id``.

        The provider is told first; the local row is only changed once the
        provider accepted the cancel. A provider failure leaves the row as it was.
        """
        subscription = await self.store.get(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound("Subscription not found", subscription_id=subscription_id)
        if subscription.user_id != user_id:
            raise AuthorizationError("You can only cancel your own subscriptions", user_id=user_id)
        state_machine.ensure_can_cancel(subscription)

        provider = subscription.provider
        provider_subscription_id = subscription.provider_subscription_id
        await self.db.rollback()

        if provider_subscription_id:
            adapter = self.providers.get(provider)
            await adapter.cancel_provider_subscription(provider_subscription_id, at_period_end)

        now = self.clock()

        def mutate(sub: SupportSubscription) -> state_machine.Transition:
            if not state_machine.can_cancel(sub):
                # A provider event already got the row there
                return state_machine.Transition("cancel_requested", sub.status, sub.status)
            return state_machine.apply_cancel(sub, at_period_end, now)

        try:
            subscription, transition = await self._apply_with_retry(subscription_id, mutate)
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise self._divergence(
                "cancel", provider, provider_subscription_id, subscription_id, e
            ) from e

        self.metrics.record_subscription_canceled(provider, at_period_end)
        self._audit(
            "support.subscription.cancel_requested",
            subscription,
            at_period_end=at_period_end,
            from_status=transition.from_status,
            to_status=transition.to_status,
        )
        logger.info(
            "subscription.canceled",
            subscription_id=subscription_id,
            at_period_end=at_period_end,
            status=subscription.status,
        )
        return subscription

    async def _apply_with_retry(
        self,
        subscription_id: int,
        mutate: Callable[[SupportSubscription], state_machine.Transition],
    ) -> tuple[SupportSubscription, state_machine.Transition]:
        """Re-read, re-apply and commit until the version check passes."""
        attempt = 0
        while True:
            attempt += 1
            subscription = await self.store.reload(subscription_id)
            if subscription is None:
                raise SubscriptionNotFound(
                    "Subscription not found", subscription_id=subscription_id
                )
            transition = mutate(subscription)
            try:
                await self.store.save(subscription)
                await self.db.commit()
                return subscription, transition
            except StaleDataError:
                await self.db.rollback()
                logger.info(
                    "subscription.write.stale",
                    subscription_id=subscription_id,
                    attempt=attempt,
                )
                if attempt == MAX_STALE_RETRIES:
                    raise

    # ==================== Provider events ====================

    async def apply_event(self, event: LifecycleEvent) -> EventResult:
        """
        Apply one normalized provider event.

        Changes are flushed but not committed, so the caller can record the
        event in the webhook ledger within the same transaction. A concurrent
        writer surfaces as ``StaleDataError`` from the flush.
        """
        subscription = await self.store.find_by_provider_ref(
            event.provider, event.provider_subscription_id
        )
        if subscription is None:
            logger.warning(
                "webhook.event.unmatched",
                provider=event.provider,
                provider_subscription_id=event.provider_subscription_id,
                kind=event.kind,
            )
            return EventResult(WebhookOutcome.UNMATCHED)

        now = self.clock()
        if isinstance(event, PaymentSucceeded | PaymentFailed):
            transition = await self._apply_payment(subscription, event)
        elif isinstance(event, SubscriptionDeleted):
            transition = state_machine.apply_deleted(subscription, now)
        elif isinstance(event, SubscriptionUpdated):
            transition = state_machine.apply_updated(
                subscription,
                status=event.status,
                period_start=event.current_period_start,
                period_end=event.current_period_end,
                cancel_at_period_end=event.cancel_at_period_end,
                now=now,
            )
        else:
            raise ValidationError(f"Unsupported lifecycle event: {type(event).__name__}")

        if transition.changed:
            await self.store.save(subscription)
        if transition.status_changed:
            self._audit(
                "support.subscription.status_changed",
                subscription,
                trigger=transition.event,
                from_status=transition.from_status,
                to_status=transition.to_status,
            )

        logger.info(
            "subscription.event.applied",
            subscription_id=subscription.id,
            kind=event.kind,
            from_status=transition.from_status,
            to_status=transition.to_status,
            changed=sorted(transition.changes),
        )
        return EventResult(WebhookOutcome.PROCESSED, subscription.id, transition)

    async def _apply_payment(
        self, subscription: SupportSubscription, event: PaymentSucceeded | PaymentFailed
    ) -> state_machine.Transition:
        succeeded = isinstance(event, PaymentSucceeded)
        transition = state_machine.apply_payment(subscription, succeeded)
        status = PaymentStatus.SUCCEEDED if succeeded else PaymentStatus.FAILED

        payment, created = await self.store.append_payment(
            NewPayment(
                subscription_id=subscription.id,
                amount_minor=event.amount_minor,
                currency=event.currency.upper(),
                payment_method=event.payment_method.value,
                provider=event.provider,
                provider_transaction_id=event.provider_transaction_id,
                status=status.value,
                billing_period_start=event.period_start,
                billing_period_end=event.period_end,
            )
        )
        if created:
            self.metrics.record_payment(
                event.provider, status.value, event.amount_minor, event.currency.upper()
            )
            self._audit(
                "support.payment.recorded",
                subscription,
                payment_id=payment.id,
                status=status.value,
                amount_minor=event.amount_minor,
                currency=event.currency.upper(),
            )
        else:
            logger.info(
                "payment.duplicate_transaction",
                provider=event.provider,
                provider_transaction_id=event.provider_transaction_id,
            )
        return transition


class SupportSubscriptionQueries:
    """Read models over subscriptions and payments, with access checks."""

    def __init__(self, db_session: AsyncSession, communities: CommunityDirectory):
        self.store = SubscriptionStore(db_session)
        self.communities = communities

    async def _require_holder_or_owner(
        self, user_id: int, subscription: SupportSubscription, message: str
    ) -> None:
        if subscription.user_id == user_id:
            return
        if not await self.communities.is_owner(user_id, subscription.community_id):
            raise AuthorizationError(message, user_id=user_id)

    async def get_subscription(self, user_id: int, subscription_id: int) -> SupportSubscription:
        subscription = await self.store.get(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound("Subscription not found", subscription_id=subscription_id)
        await self._require_holder_or_owner(
            user_id, subscription, "You can only view your own subscriptions"
        )
        return subscription

    async def list_my_subscriptions(self, user_id: int) -> list[SubscriptionWithPlanResponse]:
        rows = await self.store.list_open_for_user(user_id)
        locale = self.config.currency.default_locale
        return [_with_plan(sub, plan, locale) for sub, plan in rows]

    async def get_my_community_subscription(
        self, user_id: int, community_id: int
    ) -> SubscriptionWithPlanResponse:
        row = await self.store.get_open_with_plan(user_id, community_id)
        if row is None:
            raise SubscriptionNotFound("You are not supporting this community")
        return _with_plan(*row, self.config.currency.default_locale)

    async def list_subscribers(
        self, user_id: int, community_id: int, page: int = 1, limit: int = 20
    ) -> tuple[int, list[SupportSubscription]]:
        if not await self.communities.is_owner(user_id, community_id):
            raise AuthorizationError("Only community owners can view subscribers", user_id=user_id)
        return await self.store.list_community_open(
            community_id, limit=limit, offset=(page - 1) * limit
        )

    async def payment_history(
        self, user_id: int, subscription_id: int, page: int = 1, limit: int = 10
    ) -> tuple[SupportSubscription, list[SupportPayment]]:
        subscription = await self.store.get(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound("Subscription not found", subscription_id=subscription_id)
        await self._require_holder_or_owner(
            user_id, subscription, "You can only view your own payment history"
        )
        payments = await self.store.list_payments(
            subscription_id, limit=limit, offset=(page - 1) * limit
        )
        return subscription, payments


def _with_plan(
    sub: SupportSubscription, plan: SupportPlan, locale: str
) -> SubscriptionWithPlanResponse:
    base = SubscriptionWithPlanResponse.model_fields.keys() - {
        "plan_name",
        "monthly_price_minor",
        "currency",
        "monthly_price_display",
    }
    return SubscriptionWithPlanResponse(
        **{name: getattr(sub, name) for name in base},
        plan_name=plan.name,
        monthly_price_minor=plan.monthly_price_minor,
        currency=plan.currency,
        monthly_price_display=money_handler.format_minor_units(
            plan.monthly_price_minor, plan.currency, locale
        ),
    )


__all__ = [
    "CallerIdentity",
    "EventResult",
    "SubscriptionLifecycleEngine",
    "SupportSubscriptionQueries",
]
