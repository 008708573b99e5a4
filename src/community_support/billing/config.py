"""
Billing module configuration
"""

import os
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class StripeConfig(BaseModel):
    """Stripe configuration"""

    model_config = ConfigDict()

    api_key: str = Field(..., description="Stripe API key")
    webhook_secret: str | None = Field(None, description="Stripe webhook secret")
    publishable_key: str | None = Field(None, description="Stripe publishable key")
    max_network_retries: int = Field(0, description="Retries performed by the Stripe SDK")


class CurrencyConfig(BaseModel):
    """Currency configuration"""

    model_config = ConfigDict()

    default_locale: str = Field("en_US", description="Locale used for display formatting")


class PaymentConfig(BaseModel):
    """Payment provider configuration"""

    model_config = ConfigDict()

    supported_providers: list[str] = Field(
        default_factory=lambda: ["stripe"],
        description="Providers a member may subscribe through",
    )
    provider_timeout_seconds: float = Field(
        20.0, description="Timeout for a single outbound provider call"
    )


class WebhookConfig(BaseModel):
    """Inbound webhook configuration"""

    model_config = ConfigDict()

    tolerance_seconds: int = Field(300, description="Maximum accepted signature age")


def _default_currency_config() -> CurrencyConfig:
    """Create default CurrencyConfig instance"""
    return CurrencyConfig(default_locale="en_US")


def _default_payment_config() -> PaymentConfig:
    """Create default PaymentConfig instance"""
    return PaymentConfig(
        supported_providers=["stripe"],
        provider_timeout_seconds=20.0,
    )


def _default_webhook_config() -> WebhookConfig:
    """Create default WebhookConfig instance"""
    return WebhookConfig(tolerance_seconds=300)


class BillingConfig(BaseModel):
    """Main billing configuration"""

    model_config = ConfigDict()

    # Provider configurations
    stripe: StripeConfig | None = None

    # Module configurations
    currency: CurrencyConfig = Field(default_factory=_default_currency_config)
    payment: PaymentConfig = Field(default_factory=_default_payment_config)
    webhook: WebhookConfig = Field(default_factory=_default_webhook_config)

    # Audit
    audit_log_enabled: bool = Field(True, description="Enable billing audit logging")

    def is_supported_provider(self, provider: str) -> bool:
        """Check whether subscribe requests may use ``provider``."""
        return provider in self.payment.supported_providers

    @classmethod
    def from_env(cls) -> "BillingConfig":
        """Create configuration from settings"""

        config_dict: dict[str, Any] = {}

        from community_support.settings import settings

        if settings.billing.stripe_api_key:
            config_dict["stripe"] = StripeConfig(
                api_key=settings.billing.stripe_api_key,
                webhook_secret=settings.billing.stripe_webhook_secret or None,
                publishable_key=settings.billing.stripe_publishable_key or None,
                max_network_retries=settings.billing.max_network_retries,
            )

        config_dict["currency"] = CurrencyConfig(
            default_locale=settings.billing.display_locale,
        )

        config_dict["payment"] = PaymentConfig(
            supported_providers=settings.billing.supported_providers,
            provider_timeout_seconds=settings.billing.provider_timeout_seconds,
        )

        config_dict["webhook"] = WebhookConfig(
            tolerance_seconds=settings.billing.webhook_tolerance_seconds,
        )

        config_dict["audit_log_enabled"] = os.getenv("BILLING_AUDIT_LOG", "true").lower() == "true"

        return cls(**config_dict)


# Global configuration instance
_billing_config: BillingConfig | None = None


def get_billing_config() -> BillingConfig:
    """Get the global billing configuration instance"""
    global _billing_config
    if _billing_config is None:
        _billing_config = BillingConfig.from_env()
    return _billing_config


def set_billing_config(config: BillingConfig | None) -> None:
    """Set the global billing configuration instance"""
    global _billing_config
    _billing_config = config
