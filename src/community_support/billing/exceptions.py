"""
Support billing exceptions.

Every error raised by the lifecycle engine, the provider adapters and the
webhook pipeline derives from SupportBillingError so the HTTP layer can render
it uniformly with its status code, machine-readable code and recovery hint.
"""

from typing import Any


class SupportBillingError(Exception):
    """
    Base support billing error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "SUPPORT_BILLING_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class ValidationError(SupportBillingError):
    """Malformed or unsupported input."""

    def __init__(self, message: str, field: str | None = None) -> None:
        context = {}
        if field:
            context["field"] = field

        super().__init__(
            message,
            "VALIDATION_ERROR",
            status_code=400,
            context=context,
            recovery_hint="Correct the request and try again",
        )


class AuthorizationError(SupportBillingError):
    """Caller is not the subscription holder or community owner."""

    def __init__(self, message: str, user_id: int | None = None) -> None:
        context = {}
        if user_id is not None:
            context["user_id"] = user_id

        super().__init__(message, "NOT_AUTHORIZED", status_code=403, context=context)


class NotFound(SupportBillingError):
    """Base for missing plan, subscription or community."""

    def __init__(
        self,
        message: str,
        error_code: str = "NOT_FOUND",
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, error_code, status_code=404, context=context, recovery_hint=recovery_hint
        )


class SubscriptionNotFound(NotFound):
    """Subscription not found error."""

    def __init__(
        self,
        message: str,
        subscription_id: int | None = None,
        provider_subscription_id: str | None = None,
    ):
        context: dict[str, Any] = {}
        if subscription_id is not None:
            context["subscription_id"] = subscription_id
        if provider_subscription_id:
            context["provider_subscription_id"] = provider_subscription_id

        super().__init__(
            message,
            "SUBSCRIPTION_NOT_FOUND",
            context=context,
            recovery_hint="Verify the subscription ID and ensure it exists",
        )


class PlanNotFound(NotFound):
    """The community has no active support plan."""

    def __init__(self, message: str, community_id: int | None = None) -> None:
        context = {}
        if community_id is not None:
            context["community_id"] = community_id

        super().__init__(
            message,
            "PLAN_NOT_FOUND",
            context=context,
            recovery_hint="The community owner must publish an active support plan first",
        )


class CommunityNotFound(NotFound):
    """Community does not exist or is inactive."""

    def __init__(self, message: str, community_id: int | None = None) -> None:
        context = {}
        if community_id is not None:
            context["community_id"] = community_id

        super().__init__(message, "COMMUNITY_NOT_FOUND", context=context)


class AlreadySubscribed(SupportBillingError):
    """The user already has an open subscription to this community."""

    def __init__(self, message: str, user_id: int, community_id: int) -> None:
        super().__init__(
            message,
            "ALREADY_SUBSCRIBED",
            status_code=409,
            context={"user_id": user_id, "community_id": community_id},
            recovery_hint="Cancel the existing subscription before subscribing again",
        )


class AlreadyCanceled(SupportBillingError):
    """The subscription is canceled or already scheduled for cancellation."""

    def __init__(self, message: str, subscription_id: int) -> None:
        super().__init__(
            message,
            "ALREADY_CANCELED",
            status_code=409,
            context={"subscription_id": subscription_id},
        )


class ProviderError(SupportBillingError):
    """Base for failures reported by a payment provider adapter."""

    def __init__(
        self,
        message: str,
        error_code: str,
        status_code: int,
        provider: str | None = None,
        provider_code: str | None = None,
        recovery_hint: str | None = None,
    ):
        context = {}
        if provider:
            context["provider"] = provider
        if provider_code:
            context["provider_code"] = provider_code

        super().__init__(
            message,
            error_code,
            status_code=status_code,
            context=context,
            recovery_hint=recovery_hint,
        )


class PaymentDeclined(ProviderError):
    """The provider rejected the payment instrument. Not retried automatically."""

    def __init__(
        self, message: str, provider: str | None = None, provider_code: str | None = None
    ) -> None:
        super().__init__(
            message,
            "PAYMENT_DECLINED",
            status_code=402,
            provider=provider,
            provider_code=provider_code,
            recovery_hint="Use a different payment method",
        )


class ProviderUnavailable(ProviderError):
    """Transient provider or network fault; the operation was not applied locally."""

    def __init__(
        self, message: str, provider: str | None = None, provider_code: str | None = None
    ) -> None:
        super().__init__(
            message,
            "PROVIDER_UNAVAILABLE",
            status_code=503,
            provider=provider,
            provider_code=provider_code,
            recovery_hint="Retry the operation later",
        )


class ProviderRejected(ProviderError):
    """The provider refused the request (invalid amount, currency or parameters)."""

    def __init__(
        self, message: str, provider: str | None = None, provider_code: str | None = None
    ) -> None:
        super().__init__(
            message,
            "PROVIDER_REJECTED",
            status_code=502,
            provider=provider,
            provider_code=provider_code,
        )


class ProviderResourceNotFound(NotFound):
    """The provider does not know the referenced object."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        context = {}
        if provider:
            context["provider"] = provider

        super().__init__(message, "PROVIDER_RESOURCE_NOT_FOUND", context=context)


class InvalidSignature(SupportBillingError):
    """Webhook failed authenticity or freshness checks."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        context = {}
        if provider:
            context["provider"] = provider

        super().__init__(message, "INVALID_SIGNATURE", status_code=400, context=context)


class ReconciliationRequired(SupportBillingError):
    """Provider-side change succeeded but could not be persisted locally."""

    def __init__(
        self,
        message: str,
        provider: str,
        provider_subscription_id: str | None,
        subscription_id: int | None = None,
    ):
        context: dict[str, Any] = {
            "provider": provider,
            "provider_subscription_id": provider_subscription_id,
        }
        if subscription_id is not None:
            context["subscription_id"] = subscription_id

        super().__init__(
            message,
            "RECONCILIATION_REQUIRED",
            status_code=500,
            context=context,
            recovery_hint="The provider is authoritative; the next provider event will resynchronize",
        )


class CommunityServiceError(SupportBillingError):
    """The community service could not answer a lookup."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        context = {}
        if status_code is not None:
            context["upstream_status"] = status_code

        super().__init__(
            message,
            "COMMUNITY_SERVICE_UNAVAILABLE",
            status_code=503,
            context=context,
            recovery_hint="Retry the operation later",
        )
