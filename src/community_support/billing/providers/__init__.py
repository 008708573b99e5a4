"""Payment provider adapters."""

from community_support.billing.providers.base import (
    CustomerRef,
    OfferingRef,
    PaymentProviderAdapter,
    ProviderRegistry,
    ProviderSubscription,
)

__all__ = [
    "CustomerRef",
    "OfferingRef",
    "PaymentProviderAdapter",
    "ProviderRegistry",
    "ProviderSubscription",
]
