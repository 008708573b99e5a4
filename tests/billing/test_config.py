"""Tests for billing configuration and application settings."""

import pytest

from community_support.billing.config import (
    BillingConfig,
    StripeConfig,
    get_billing_config,
    set_billing_config,
)
from community_support.settings import Environment, Settings

pytestmark = pytest.mark.unit


class TestBillingConfig:
    def test_defaults(self):
        config = BillingConfig()

        assert config.stripe is None
        assert config.currency.default_locale == "en_US"
        assert config.payment.supported_providers == ["stripe"]
        assert config.payment.provider_timeout_seconds == 20.0
        assert config.webhook.tolerance_seconds == 300

    def test_supported_provider(self):
        config = BillingConfig()
        assert config.is_supported_provider("stripe")
        assert not config.is_supported_provider("paypal")

    def test_from_env_reads_settings(self, monkeypatch):
        settings = Settings(
            billing={
                "stripe_api_key": "sk_test_abc",
                "stripe_webhook_secret": "whsec_abc",
                "webhook_tolerance_seconds": 60,
                "provider_timeout_seconds": 5.0,
                "max_network_retries": 2,
                "display_locale": "de_DE",
            }
        )
        monkeypatch.setattr("community_support.settings.settings", settings)

        config = BillingConfig.from_env()

        assert config.stripe == StripeConfig(
            api_key="sk_test_abc",
            webhook_secret="whsec_abc",
            publishable_key=None,
            max_network_retries=2,
        )
        assert config.webhook.tolerance_seconds == 60
        assert config.payment.provider_timeout_seconds == 5.0
        assert config.currency.default_locale == "de_DE"
        assert config.audit_log_enabled is True

    def test_audit_log_can_be_disabled(self, monkeypatch):
        monkeypatch.setenv("BILLING_AUDIT_LOG", "false")
        assert BillingConfig.from_env().audit_log_enabled is False

    def test_from_env_without_key_has_no_stripe(self, monkeypatch):
        settings = Settings(billing={"stripe_api_key": ""})
        monkeypatch.setattr("community_support.settings.settings", settings)

        assert BillingConfig.from_env().stripe is None

    def test_global_accessors(self):
        custom = BillingConfig(webhook={"tolerance_seconds": 10})
        set_billing_config(custom)
        assert get_billing_config() is custom


class TestSettings:
    def test_nested_environment_variables(self, monkeypatch):
        monkeypatch.setenv("BILLING__STRIPE_API_KEY", "sk_env")
        monkeypatch.setenv("COMMUNITY_SERVICE__BASE_URL", "http://communities:9000")
        monkeypatch.setenv("ENVIRONMENT", "Production")

        settings = Settings()

        assert settings.billing.stripe_api_key == "sk_env"
        assert settings.community_service.base_url == "http://communities:9000"
        assert settings.environment == Environment.PRODUCTION
        assert settings.is_production
