"""
Billing module metrics
"""

import structlog
from opentelemetry import metrics
from opentelemetry.metrics import Meter

logger = structlog.get_logger(__name__)


class BillingMetrics:
    """Billing metrics collector"""

    def __init__(self, meter: Meter | None = None) -> None:
        """Initialize billing metrics"""

        self.meter = meter or metrics.get_meter("community_support.billing")

        # Subscription metrics
        self.subscription_created_counter = self.meter.create_counter(
            name="support.subscription.created",
            description="Number of subscriptions created",
        )
        self.subscription_canceled_counter = self.meter.create_counter(
            name="support.subscription.canceled",
            description="Number of user-initiated cancellations",
        )

        # Payment metrics
        self.payment_recorded_counter = self.meter.create_counter(
            name="support.payment.recorded",
            description="Number of payments appended from provider events",
        )
        self.revenue_counter = self.meter.create_counter(
            name="support.revenue.total",
            description="Succeeded payment amounts",
            unit="minor_units",
        )

        # Provider metrics
        self.provider_failure_counter = self.meter.create_counter(
            name="support.provider.failure",
            description="Failed outbound provider calls",
        )
        self.divergence_counter = self.meter.create_counter(
            name="support.provider.divergence",
            description="Provider changes that could not be persisted locally",
        )

        # Webhook metrics
        self.webhook_received_counter = self.meter.create_counter(
            name="support.webhook.received",
            description="Number of webhooks received",
        )
        self.webhook_processed_counter = self.meter.create_counter(
            name="support.webhook.processed",
            description="Number of webhooks handled, by outcome",
        )
        self.webhook_duration_histogram = self.meter.create_histogram(
            name="support.webhook.duration",
            description="Webhook processing duration",
            unit="ms",
        )

    def record_subscription_created(self, provider: str, status: str) -> None:
        """Record a persisted subscription"""
        self.subscription_created_counter.add(1, {"provider": provider, "status": status})

    def record_subscription_canceled(self, provider: str, at_period_end: bool) -> None:
        """Record a user cancellation mirrored locally"""
        self.subscription_canceled_counter.add(
            1, {"provider": provider, "at_period_end": str(at_period_end)}
        )

    def record_payment(self, provider: str, status: str, amount_minor: int, currency: str) -> None:
        """Record an appended payment row"""
        attributes = {"provider": provider, "status": status, "currency": currency}
        self.payment_recorded_counter.add(1, attributes)
        if status == "succeeded":
            self.revenue_counter.add(amount_minor, attributes)

    def record_provider_failure(self, provider: str, operation: str, error_code: str) -> None:
        """Record a failed provider call"""
        self.provider_failure_counter.add(
            1, {"provider": provider, "operation": operation, "error_code": error_code}
        )

    def record_divergence(self, provider: str, operation: str) -> None:
        """Record a provider success that was not persisted locally"""
        self.divergence_counter.add(1, {"provider": provider, "operation": operation})

    def record_webhook_received(self, provider: str, event_type: str) -> None:
        """Record webhook receipt"""
        self.webhook_received_counter.add(1, {"provider": provider, "event_type": event_type})
        logger.debug("webhook.received", provider=provider, event_type=event_type)

    def record_webhook_processed(
        self,
        provider: str,
        event_type: str,
        outcome: str,
        duration_ms: float,
    ) -> None:
        """Record webhook processing result"""
        attributes = {"provider": provider, "event_type": event_type, "outcome": outcome}
        self.webhook_processed_counter.add(1, attributes)
        self.webhook_duration_histogram.record(duration_ms, attributes)


_billing_metrics: BillingMetrics | None = None


def get_billing_metrics() -> BillingMetrics:
    """Get the global billing metrics instance"""
    global _billing_metrics
    if _billing_metrics is None:
        _billing_metrics = BillingMetrics()
    return _billing_metrics


def set_billing_metrics(metrics_instance: BillingMetrics | None) -> None:
    """Set the global billing metrics instance"""
    global _billing_metrics
    _billing_metrics = metrics_instance
