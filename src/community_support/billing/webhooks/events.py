"""
Normalized provider events.

Provider payloads are mapped once, at the ingestion boundary, into a tagged
union the lifecycle engine understands. The engine never reads provider field
names.
"""

from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from community_support.billing.subscriptions.models import PaymentMethodKind


class _ProviderEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    provider_subscription_id: str


class _PaymentEvent(_ProviderEvent):
    provider_transaction_id: str
    amount_minor: int = Field(ge=0)
    currency: str = Field(min_length=3, max_length=3)
    payment_method: PaymentMethodKind = PaymentMethodKind.UNKNOWN
    period_start: datetime | None = None
    period_end: datetime | None = None


class PaymentSucceeded(_PaymentEvent):
    kind: Literal["payment_succeeded"] = "payment_succeeded"


class PaymentFailed(_PaymentEvent):
    kind: Literal["payment_failed"] = "payment_failed"


class SubscriptionDeleted(_ProviderEvent):
    kind: Literal["subscription_deleted"] = "subscription_deleted"


class SubscriptionUpdated(_ProviderEvent):
    kind: Literal["subscription_updated"] = "subscription_updated"

    status: Literal["pending", "active", "past_due", "canceled"]
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False

    @model_validator(mode="after")
    def check_period(self) -> "SubscriptionUpdated":
        if self.current_period_end < self.current_period_start:
            raise ValueError("current_period_end must not precede current_period_start")
        return self


LifecycleEvent = Annotated[
    PaymentSucceeded | PaymentFailed | SubscriptionDeleted | SubscriptionUpdated,
    Field(discriminator="kind"),
]

_lifecycle_event_adapter: TypeAdapter[Any] = TypeAdapter(LifecycleEvent)


def parse_lifecycle_event(data: dict[str, Any]) -> Any:
    """Validate a dict carrying a ``kind`` tag into the matching event."""
    return _lifecycle_event_adapter.validate_python(data)


__all__ = [
    "LifecycleEvent",
    "PaymentFailed",
    "PaymentSucceeded",
    "SubscriptionDeleted",
    "SubscriptionUpdated",
    "parse_lifecycle_event",
]
