"""
Payment provider adapter contract.

Adapters translate between the subscription engine and an external payment
provider. They never persist anything locally; the engine decides what to do
with the normalized results they return.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

from community_support.billing.exceptions import ValidationError


@dataclass
class CustomerRef:
    """Provider-side customer handle."""

    id: str
    email: str


@dataclass
class OfferingRef:
    """Provider-side product and recurring price for a support plan."""

    product_id: str
    price_id: str
    amount_minor: int
    currency: str


@dataclass
class ProviderSubscription:
    """Provider subscription state, with status already normalized."""

    id: str
    status: str
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False


class PaymentProviderAdapter(ABC):
    """Abstract base class for payment provider adapters."""

    name: str = ""

    @abstractmethod
    async def ensure_customer(
        self, email: str, display_name: str | None, internal_user_id: int
    ) -> CustomerRef:
        """Find the customer by email or create it."""

    @abstractmethod
    async def ensure_priced_offering(
        self,
        community_id: int,
        plan_id: int,
        name: str,
        description: str | None,
        amount_minor: int,
        currency: str,
    ) -> OfferingRef:
        """Resolve (or create) the product and monthly price for a plan."""

    @abstractmethod
    async def create_provider_subscription(
        self,
        customer: CustomerRef,
        offering: OfferingRef,
        payment_method_ref: str,
        metadata: dict[str, str] | None = None,
    ) -> ProviderSubscription:
        """Attach the payment method and start a recurring subscription."""

    @abstractmethod
    async def cancel_provider_subscription(
        self, provider_subscription_id: str, at_period_end: bool
    ) -> ProviderSubscription:
        """Cancel immediately or schedule cancellation at period end."""


class ProviderRegistry:
    """Maps provider names to adapter instances."""

    def __init__(self, adapters: dict[str, PaymentProviderAdapter] | None = None) -> None:
        self._adapters: dict[str, PaymentProviderAdapter] = dict(adapters or {})

    def register(self, name: str, adapter: PaymentProviderAdapter) -> None:
        self._adapters[name] = adapter

    def supports(self, name: str) -> bool:
        return name in self._adapters

    def get(self, name: str) -> PaymentProviderAdapter:
        adapter = self._adapters.get(name)
        if adapter is None:
            raise ValidationError(f"Unsupported payment provider: {name}", field="provider")
        return adapter

    @property
    def names(self) -> list[str]:
        return sorted(self._adapters)


__all__ = [
    "CustomerRef",
    "OfferingRef",
    "PaymentProviderAdapter",
    "ProviderRegistry",
    "ProviderSubscription",
]
