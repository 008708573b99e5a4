"""
Webhook handlers for payment providers.

A delivery is verified on its exact raw bytes before anything else happens,
then deduplicated by provider event id, normalized and applied through the
lifecycle engine. The ledger row and the side effects commit together.
"""

import json
import time
from abc import ABC, abstractmethod
from typing import Any

import stripe
import structlog
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from community_support.billing.config import BillingConfig, get_billing_config
from community_support.billing.exceptions import InvalidSignature, ValidationError
from community_support.billing.metrics import BillingMetrics, get_billing_metrics
from community_support.billing.money_utils import money_handler
from community_support.billing.providers.stripe import PROVIDER_NAME as STRIPE
from community_support.billing.providers.stripe import (
    normalize_stripe_status,
    stripe_precision,
    subscription_period,
)
from community_support.billing.subscriptions.models import PaymentMethodKind, WebhookOutcome
from community_support.billing.subscriptions.service import SubscriptionLifecycleEngine
from community_support.billing.webhooks.events import LifecycleEvent, parse_lifecycle_event

logger = structlog.get_logger(__name__)

MAX_STALE_RETRIES = 3


class WebhookHandler(ABC):
    """Base webhook handler"""

    signature_header: str = ""

    def __init__(
        self,
        db_session: AsyncSession,
        engine: SubscriptionLifecycleEngine,
        config: BillingConfig | None = None,
        metrics: BillingMetrics | None = None,
    ):
        self.db = db_session
        self.engine = engine
        self.store = engine.store
        self.config = config or get_billing_config()
        self.metrics = metrics or get_billing_metrics()

    @abstractmethod
    async def verify_signature(
        self, payload: bytes, signature: str | None, headers: dict[str, str] | None = None
    ) -> bool:
        """Verify webhook signature"""

    @abstractmethod
    def normalize_event(self, event_type: str, data: dict[str, Any]) -> LifecycleEvent | None:
        """Map a provider payload to a lifecycle event, or None for types we ignore"""

    @abstractmethod
    def _extract_event_id(self, data: dict[str, Any]) -> str | None:
        """Extract the provider's unique event id"""

    @abstractmethod
    def _extract_event_type(self, data: dict[str, Any], headers: dict[str, str]) -> str:
        """Extract event type from webhook data"""

    @abstractmethod
    def _get_provider_name(self) -> str:
        """Get provider name"""

    async def handle_webhook(
        self,
        payload: bytes,
        signature: str | None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """
        Handle one webhook delivery.

        Returns:
            Disposition: processed, ignored, unmatched, duplicate or failed

        Raises:
            InvalidSignature: the delivery failed verification; nothing was read
            ValidationError: the verified body is not a usable event envelope
            OperationalError: the database is unreachable; the provider should redeliver
        """
        provider = self._get_provider_name()
        headers = headers or {}

        if not await self.verify_signature(payload, signature, headers):
            logger.warning("webhook.signature.invalid", provider=provider)
            raise InvalidSignature("Invalid webhook signature", provider=provider)

        try:
            data = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValidationError("Invalid webhook payload") from e
        if not isinstance(data, dict):
            raise ValidationError("Invalid webhook payload")

        event_id = self._extract_event_id(data)
        if not event_id:
            raise ValidationError("Webhook payload has no event id", field="id")
        event_type = self._extract_event_type(data, headers)

        self.metrics.record_webhook_received(provider, event_type)
        start = time.perf_counter()

        try:
            result = await self._process(provider, event_id, event_type, data)
        except OperationalError:
            await self.db.rollback()
            self.metrics.record_webhook_processed(
                provider, event_type, "error", (time.perf_counter() - start) * 1000
            )
            logger.error(
                "webhook.database.unavailable",
                provider=provider,
                event_id=event_id,
                event_type=event_type,
            )
            raise
        except Exception as e:
            # Isolated per event: rolled back, logged and acknowledged
            await self.db.rollback()
            logger.exception(
                "webhook.processing.failed",
                provider=provider,
                event_id=event_id,
                event_type=event_type,
                error=str(e),
            )
            result = {
                "status": "failed",
                "event_id": event_id,
                "event_type": event_type,
                "error": getattr(e, "error_code", type(e).__name__),
            }

        self.metrics.record_webhook_processed(
            provider, event_type, result["status"], (time.perf_counter() - start) * 1000
        )
        return result

    async def _process(
        self, provider: str, event_id: str, event_type: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        duplicate = {"status": "duplicate", "event_id": event_id, "event_type": event_type}
        attempt = 0
        while True:
            attempt += 1
            if await self.store.is_event_processed(provider, event_id):
                logger.info("webhook.event.duplicate", provider=provider, event_id=event_id)
                return duplicate

            try:
                event = self.normalize_event(event_type, data)
                if event is None:
                    outcome, subscription_id = WebhookOutcome.IGNORED, None
                    logger.info(
                        "webhook.event.ignored",
                        provider=provider,
                        event_id=event_id,
                        event_type=event_type,
                    )
                else:
                    applied = await self.engine.apply_event(event)
                    outcome, subscription_id = applied.outcome, applied.subscription_id

                await self.store.mark_event_processed(
                    provider, event_id, event_type, outcome.value, subscription_id
                )
                await self.db.commit()
            except StaleDataError:
                await self.db.rollback()
                logger.info(
                    "webhook.event.stale_retry",
                    provider=provider,
                    event_id=event_id,
                    attempt=attempt,
                )
                if attempt == MAX_STALE_RETRIES:
                    raise
                continue
            except IntegrityError:
                await self.db.rollback()
                if await self.store.is_event_processed(provider, event_id):
                    logger.info(
                        "webhook.event.concurrent_duplicate", provider=provider, event_id=event_id
                    )
                    return duplicate
                raise

            return {
                "status": outcome.value,
                "event_id": event_id,
                "event_type": event_type,
                "subscription_id": subscription_id,
            }


def _obj_get(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


class StripeWebhookHandler(WebhookHandler):
    """Stripe webhook handler"""

    signature_header = "stripe-signature"

    PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    HANDLED_EVENT_TYPES = frozenset(
        {PAYMENT_SUCCEEDED, PAYMENT_FAILED, SUBSCRIPTION_DELETED, SUBSCRIPTION_UPDATED}
    )

    async def verify_signature(
        self, payload: bytes, signature: str | None, headers: dict[str, str] | None = None
    ) -> bool:
        """Verify Stripe webhook signature and freshness with the Stripe SDK"""
        if not self.config.stripe or not self.config.stripe.webhook_secret:
            logger.error("webhook.stripe.secret_missing")
            return False
        if not signature:
            return False

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self.config.stripe.webhook_secret,
                tolerance=self.config.webhook.tolerance_seconds or None,
            )
        except UnicodeDecodeError:
            return False
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook.stripe.signature_rejected", reason=str(e))
            return False
        return True

    def _extract_event_id(self, data: dict[str, Any]) -> str | None:
        return data.get("id")

    def _extract_event_type(self, data: dict[str, Any], headers: dict[str, str]) -> str:
        return data.get("type", "unknown")

    def _get_provider_name(self) -> str:
        return STRIPE

    def normalize_event(self, event_type: str, data: dict[str, Any]) -> LifecycleEvent | None:
        if event_type not in self.HANDLED_EVENT_TYPES:
            return None

        obj = _obj_get(data, "data", "object")
        if not isinstance(obj, dict):
            raise ValidationError("Stripe event has no data.object")

        if event_type in (self.PAYMENT_SUCCEEDED, self.PAYMENT_FAILED):
            return self._normalize_invoice(event_type, obj)

        if event_type == self.SUBSCRIPTION_DELETED:
            return parse_lifecycle_event(
                {
                    "kind": "subscription_deleted",
                    "provider": STRIPE,
                    "provider_subscription_id": obj.get("id"),
                }
            )

        if event_type == self.SUBSCRIPTION_UPDATED:
            start, end = subscription_period(obj)
            return parse_lifecycle_event(
                {
                    "kind": "subscription_updated",
                    "provider": STRIPE,
                    "provider_subscription_id": obj.get("id"),
                    "status": normalize_stripe_status(obj.get("status")),
                    "current_period_start": start,
                    "current_period_end": end,
                    "cancel_at_period_end": bool(obj.get("cancel_at_period_end", False)),
                }
            )

        return None

    def _normalize_invoice(self, event_type: str, invoice: dict[str, Any]) -> LifecycleEvent | None:
        subscription_id = invoice.get("subscription") or _obj_get(
            invoice, "parent", "subscription_details", "subscription"
        )
        if isinstance(subscription_id, dict):
            subscription_id = subscription_id.get("id")
        if not subscription_id:
            # One-off invoice, nothing to reconcile
            return None

        succeeded = event_type == self.PAYMENT_SUCCEEDED
        currency = money_handler.normalize_currency(invoice.get("currency") or "")
        stripe_amount = int(invoice.get("amount_paid" if succeeded else "amount_due") or 0)
        amount_minor = money_handler.rescale_minor_units(
            stripe_amount, stripe_precision(currency), money_handler.get_currency_precision(currency)
        )

        payment_intent = invoice.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")
        charge = invoice.get("charge")
        if isinstance(charge, dict):
            charge = charge.get("id")

        period_start = invoice.get("period_start")
        period_end = invoice.get("period_end")
        line_period = _obj_get(invoice, "lines", "data")
        if line_period and isinstance(line_period, list):
            period_start = _obj_get(line_period[0], "period", "start") or period_start
            period_end = _obj_get(line_period[0], "period", "end") or period_end

        return parse_lifecycle_event(
            {
                "kind": "payment_succeeded" if succeeded else "payment_failed",
                "provider": STRIPE,
                "provider_subscription_id": subscription_id,
                "provider_transaction_id": charge or payment_intent or invoice.get("id"),
                "amount_minor": amount_minor,
                "currency": currency,
                "payment_method": (
                    PaymentMethodKind.CARD if payment_intent else PaymentMethodKind.UNKNOWN
                ),
                "period_start": period_start,
                "period_end": period_end,
            }
        )


WEBHOOK_HANDLERS: dict[str, type[WebhookHandler]] = {
    STRIPE: StripeWebhookHandler,
}


__all__ = [
    "WEBHOOK_HANDLERS",
    "StripeWebhookHandler",
    "WebhookHandler",
]
