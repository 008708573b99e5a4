"""
Support billing module.

Provides:
- Support plans and member subscriptions
- Provider-authoritative lifecycle reconciliation
- Append-only payment history
- Webhook ingestion for provider notifications
"""

from community_support.billing.exceptions import (
    AlreadyCanceled,
    AlreadySubscribed,
    AuthorizationError,
    CommunityNotFound,
    CommunityServiceError,
    InvalidSignature,
    NotFound,
    PaymentDeclined,
    PlanNotFound,
    ProviderError,
    ProviderRejected,
    ProviderResourceNotFound,
    ProviderUnavailable,
    ReconciliationRequired,
    SubscriptionNotFound,
    SupportBillingError,
    ValidationError,
)

__all__ = [
    "SupportBillingError",
    "ValidationError",
    "AuthorizationError",
    "NotFound",
    "SubscriptionNotFound",
    "PlanNotFound",
    "CommunityNotFound",
    "CommunityServiceError",
    "ProviderResourceNotFound",
    "AlreadySubscribed",
    "AlreadyCanceled",
    "ProviderError",
    "PaymentDeclined",
    "ProviderUnavailable",
    "ProviderRejected",
    "InvalidSignature",
    "ReconciliationRequired",
]
