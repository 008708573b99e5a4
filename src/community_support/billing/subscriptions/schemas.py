"""
Pydantic schemas for support subscription requests and read models.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SubscribeRequest(BaseModel):
    """Schema for subscribing to a community's support plan."""

    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    community_id: int = Field(alias="communityId", gt=0, description="Community to support")
    payment_method_id: str = Field(
        alias="paymentMethodId", min_length=1, description="Provider payment method reference"
    )
    provider: str = Field(default="stripe", description="Payment provider name")

    @field_validator("provider")
    @classmethod
    def lower_provider(cls, v: str) -> str:
        return v.lower()


class CancelRequest(BaseModel):
    """Schema for canceling a subscription."""

    model_config = ConfigDict(populate_by_name=True)

    cancel_at_period_end: bool = Field(
        default=True,
        alias="cancelAtPeriodEnd",
        description="Keep access until the current period ends",
    )


class SubscriptionResponse(BaseModel):
    """Schema for a support subscription."""

    id: int = Field(description="Subscription ID")
    user_id: int = Field(description="Supporting user")
    community_id: int = Field(description="Supported community")
    plan_id: int = Field(description="Support plan")
    status: str = Field(description="pending, active, past_due or canceled")
    current_period_start: datetime = Field(description="Start of the current billing period")
    current_period_end: datetime = Field(description="End of the current billing period")
    provider: str = Field(description="Payment provider")
    provider_subscription_id: str | None = Field(None, description="Provider subscription ID")
    cancel_at_period_end: bool = Field(description="Cancellation scheduled at period end")
    canceled_at: datetime | None = Field(None, description="When cancellation was requested")
    created_at: datetime = Field(description="Creation timestamp")
    updated_at: datetime = Field(description="Last update timestamp")

    model_config = ConfigDict(from_attributes=True)


class SubscriptionWithPlanResponse(SubscriptionResponse):
    """Subscription joined with the plan it was bought under."""

    plan_name: str = Field(description="Support plan name")
    monthly_price_minor: int = Field(description="Plan price in minor units")
    currency: str = Field(description="Plan currency")
    monthly_price_display: str = Field(description="Locale formatted plan price")


class CancelResponse(BaseModel):
    """Schema for the result of a cancellation."""

    message: str = Field(description="Human readable outcome")
    subscription: SubscriptionResponse


class SubscriberListResponse(BaseModel):
    """Schema for a paginated list of a community's open subscriptions."""

    total: int = Field(description="Total open subscriptions")
    page: int = Field(description="Current page number")
    limit: int = Field(description="Items per page")
    results: list[SubscriptionResponse] = Field(default_factory=list)


class PaymentResponse(BaseModel):
    """Schema for a recorded payment."""

    id: int = Field(description="Payment ID")
    subscription_id: int = Field(description="Subscription charged")
    amount_minor: int = Field(description="Amount in minor units")
    currency: str = Field(description="ISO 4217 currency code")
    payment_method: str = Field(description="Payment method kind")
    provider: str = Field(description="Payment provider")
    provider_transaction_id: str = Field(description="Provider transaction reference")
    status: str = Field(description="succeeded or failed")
    billing_period_start: datetime | None = Field(None, description="Billed period start")
    billing_period_end: datetime | None = Field(None, description="Billed period end")
    created_at: datetime = Field(description="When the payment was recorded")

    model_config = ConfigDict(from_attributes=True)


class PaymentHistoryResponse(BaseModel):
    """Schema for a page of a subscription's payment history."""

    subscription_id: int
    status: str
    page: int
    limit: int
    payments: list[PaymentResponse] = Field(default_factory=list)


__all__ = [
    "CancelRequest",
    "CancelResponse",
    "PaymentHistoryResponse",
    "PaymentResponse",
    "SubscribeRequest",
    "SubscriberListResponse",
    "SubscriptionResponse",
    "SubscriptionWithPlanResponse",
]
