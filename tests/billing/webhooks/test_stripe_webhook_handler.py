"""
Stripe webhook handler tests.

Signature verification is exercised on raw bytes; processing runs against
SQLite through the real lifecycle engine.
"""

import json
import time
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from community_support.billing.config import BillingConfig, StripeConfig, WebhookConfig
from community_support.billing.exceptions import InvalidSignature, ValidationError
from community_support.billing.subscriptions.models import (
    ProcessedWebhookEvent,
    SupportPayment,
    SupportSubscription,
)
from community_support.billing.webhooks.events import (
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionDeleted,
    SubscriptionUpdated,
)
from community_support.billing.webhooks.handlers import StripeWebhookHandler
from tests.billing.conftest import sign_stripe_payload, stripe_event
from tests.conftest import PERIOD_END, PERIOD_START, WEBHOOK_SECRET


def invoice(
    invoice_id: str = "in_1",
    subscription: str | None = "sub_X",
    charge: str | None = "ch_1",
    payment_intent: str | None = "pi_1",
    amount_paid: int = 999,
    amount_due: int = 999,
    currency: str = "usd",
) -> dict:
    obj = {
        "id": invoice_id,
        "object": "invoice",
        "subscription": subscription,
        "charge": charge,
        "payment_intent": payment_intent,
        "amount_paid": amount_paid,
        "amount_due": amount_due,
        "currency": currency,
        "period_start": int(PERIOD_START.timestamp()),
        "period_end": int(PERIOD_START.timestamp()),
        "lines": {
            "data": [
                {
                    "period": {
                        "start": int(PERIOD_START.timestamp()),
                        "end": int(PERIOD_END.timestamp()),
                    }
                }
            ]
        },
    }
    return obj


def subscription_object(status: str = "active", cancel_at_period_end: bool = False) -> dict:
    return {
        "id": "sub_X",
        "object": "subscription",
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "current_period_start": int(PERIOD_START.timestamp()),
        "current_period_end": int(PERIOD_END.timestamp()),
    }


@pytest.fixture
def handler(async_db_session, lifecycle_engine, billing_config, billing_metrics):
    return StripeWebhookHandler(
        async_db_session,
        lifecycle_engine,
        config=billing_config,
        metrics=billing_metrics,
    )


def signed(payload: bytes, age_seconds: int = 0) -> str:
    return sign_stripe_payload(payload, timestamp=int(time.time()) - age_seconds)


async def count(session, model) -> int:
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.mark.unit
class TestSignatureVerification:
    async def test_valid_signature(self, handler):
        payload = b'{"id": "evt_1"}'
        assert await handler.verify_signature(payload, signed(payload))

    async def test_any_v1_candidate_may_match(self, handler):
        payload = b'{"id": "evt_1"}'
        header = signed(payload)
        ts, good = header.split(",")
        assert await handler.verify_signature(payload, f"{ts},v1=deadbeef,{good},v0=ignored")

    async def test_tampered_body_is_rejected(self, handler):
        payload = b'{"id": "evt_1"}'
        assert not await handler.verify_signature(b'{"id": "evt_2"}', signed(payload))

    async def test_reformatted_json_is_rejected(self, handler):
        payload = b'{"id":"evt_1"}'
        reformatted = json.dumps(json.loads(payload), indent=2).encode()
        assert not await handler.verify_signature(reformatted, signed(payload))

    async def test_wrong_secret_is_rejected(self, handler):
        payload = b'{"id": "evt_1"}'
        header = sign_stripe_payload(payload, secret="whsec_other")
        assert not await handler.verify_signature(payload, header)

    async def test_stale_timestamp_is_rejected(self, handler):
        payload = b'{"id": "evt_1"}'
        assert not await handler.verify_signature(payload, signed(payload, age_seconds=600))
        assert await handler.verify_signature(payload, signed(payload, age_seconds=60))

    async def test_non_utf8_body_is_rejected(self, handler):
        header = sign_stripe_payload(b"\xff\xfe")
        assert not await handler.verify_signature(b"\xff\xfe", header)

    @pytest.mark.parametrize("header", [None, "", "garbage", "t=abc,v1=00", "v1=00", "t=1760000000"])
    async def test_malformed_header_is_rejected(self, handler, header):
        assert not await handler.verify_signature(b"{}", header)

    async def test_missing_secret_fails_closed(self, async_db_session, lifecycle_engine):
        handler = StripeWebhookHandler(
            async_db_session,
            lifecycle_engine,
            config=BillingConfig(stripe=StripeConfig(api_key="sk_test_123")),
        )
        payload = b'{"id": "evt_1"}'
        assert not await handler.verify_signature(payload, signed(payload))

    async def test_zero_tolerance_disables_freshness_check(self, async_db_session, lifecycle_engine):
        handler = StripeWebhookHandler(
            async_db_session,
            lifecycle_engine,
            config=BillingConfig(
                stripe=StripeConfig(api_key="sk_test_123", webhook_secret=WEBHOOK_SECRET),
                webhook=WebhookConfig(tolerance_seconds=0),
            ),
        )
        payload = b'{"id": "evt_1"}'
        assert await handler.verify_signature(payload, signed(payload, age_seconds=86_400))

    async def test_invalid_signature_processes_nothing(self, handler, async_db_session):
        payload = stripe_event("evt_1", "invoice.payment_succeeded", invoice())
        handler.engine.apply_event = AsyncMock()

        with pytest.raises(InvalidSignature) as exc_info:
            await handler.handle_webhook(payload, "t=1,v1=00")

        assert exc_info.value.status_code == 400
        handler.engine.apply_event.assert_not_awaited()
        assert await count(async_db_session, ProcessedWebhookEvent) == 0


@pytest.mark.unit
class TestNormalization:
    def test_payment_succeeded(self, handler):
        event = handler.normalize_event("invoice.payment_succeeded", {"data": {"object": invoice()}})

        assert isinstance(event, PaymentSucceeded)
        assert event.provider == "stripe"
        assert event.provider_subscription_id == "sub_X"
        assert event.provider_transaction_id == "ch_1"
        assert event.amount_minor == 999
        assert event.currency == "USD"
        assert event.payment_method == "card"
        assert event.period_start == PERIOD_START
        assert event.period_end == PERIOD_END

    def test_payment_failed_uses_amount_due(self, handler):
        obj = invoice(charge=None, amount_paid=0, amount_due=999)
        event = handler.normalize_event("invoice.payment_failed", {"data": {"object": obj}})

        assert isinstance(event, PaymentFailed)
        assert event.amount_minor == 999
        assert event.provider_transaction_id == "pi_1"

    def test_invoice_without_payment_intent(self, handler):
        obj = invoice(charge=None, payment_intent=None)
        event = handler.normalize_event("invoice.payment_failed", {"data": {"object": obj}})
        assert event.provider_transaction_id == "in_1"
        assert event.payment_method == "unknown"

    def test_subscription_under_invoice_parent(self, handler):
        obj = invoice(subscription=None)
        obj["parent"] = {"subscription_details": {"subscription": "sub_parent"}}
        event = handler.normalize_event("invoice.payment_succeeded", {"data": {"object": obj}})
        assert event.provider_subscription_id == "sub_parent"

    def test_one_off_invoice_is_ignored(self, handler):
        obj = invoice(subscription=None)
        assert handler.normalize_event("invoice.payment_succeeded", {"data": {"object": obj}}) is None

    def test_zero_decimal_currency(self, handler):
        obj = invoice(amount_paid=1200, currency="jpy")
        event = handler.normalize_event("invoice.payment_succeeded", {"data": {"object": obj}})
        assert event.amount_minor == 1200
        assert event.currency == "JPY"

    def test_subscription_deleted(self, handler):
        event = handler.normalize_event(
            "customer.subscription.deleted", {"data": {"object": subscription_object("canceled")}}
        )
        assert isinstance(event, SubscriptionDeleted)
        assert event.provider_subscription_id == "sub_X"

    def test_subscription_updated_maps_status(self, handler):
        event = handler.normalize_event(
            "customer.subscription.updated",
            {"data": {"object": subscription_object("unpaid", cancel_at_period_end=True)}},
        )
        assert isinstance(event, SubscriptionUpdated)
        assert event.status == "past_due"
        assert event.cancel_at_period_end is True
        assert event.current_period_end == PERIOD_END

    def test_unknown_type_is_ignored(self, handler):
        assert handler.normalize_event("charge.refunded", {"data": {"object": {}}}) is None

    def test_unknown_type_without_object_is_ignored(self, handler):
        assert handler.normalize_event("account.future_thing", {"data": {}}) is None
        assert handler.normalize_event("account.future_thing", {}) is None

    def test_missing_object_is_invalid(self, handler):
        with pytest.raises(ValidationError):
            handler.normalize_event("invoice.payment_succeeded", {"data": {}})


@pytest.mark.integration
class TestHandleWebhook:
    async def test_payment_succeeded_reactivates_past_due(
        self, handler, make_subscription, async_db_session, billing_metrics
    ):
        subscription = await make_subscription(status="past_due")
        payload = stripe_event("evt_1", "invoice.payment_succeeded", invoice())

        result = await handler.handle_webhook(payload, signed(payload))

        assert result == {
            "status": "processed",
            "event_id": "evt_1",
            "event_type": "invoice.payment_succeeded",
            "subscription_id": subscription.id,
        }
        row = await async_db_session.get(SupportSubscription, subscription.id, populate_existing=True)
        assert row.status == "active"
        assert await count(async_db_session, SupportPayment) == 1
        billing_metrics.record_webhook_received.assert_called_once_with(
            "stripe", "invoice.payment_succeeded"
        )

    async def test_replay_is_a_no_op(self, handler, make_subscription, async_db_session):
        subscription = await make_subscription(status="past_due")
        payload = stripe_event("evt_1", "invoice.payment_succeeded", invoice())

        await handler.handle_webhook(payload, signed(payload))
        after_first = await async_db_session.get(
            SupportSubscription, subscription.id, populate_existing=True
        )
        first_state = (after_first.status, after_first.version, after_first.updated_at)

        replay = await handler.handle_webhook(payload, signed(payload))

        assert replay["status"] == "duplicate"
        after_second = await async_db_session.get(
            SupportSubscription, subscription.id, populate_existing=True
        )
        assert (after_second.status, after_second.version, after_second.updated_at) == first_state
        assert await count(async_db_session, SupportPayment) == 1
        assert await count(async_db_session, ProcessedWebhookEvent) == 1

    async def test_new_event_for_same_charge_appends_nothing(
        self, handler, make_subscription, async_db_session
    ):
        await make_subscription(status="past_due")
        first = stripe_event("evt_1", "invoice.payment_succeeded", invoice())
        second = stripe_event("evt_2", "invoice.payment_succeeded", invoice())

        await handler.handle_webhook(first, signed(first))
        result = await handler.handle_webhook(second, signed(second))

        assert result["status"] == "processed"
        assert await count(async_db_session, SupportPayment) == 1
        assert await count(async_db_session, ProcessedWebhookEvent) == 2

    async def test_example_cycle_records_two_payments(
        self, handler, make_subscription, async_db_session
    ):
        subscription = await make_subscription(status="active")

        failed = stripe_event(
            "evt_1", "invoice.payment_failed", invoice(charge="ch_declined", amount_paid=0)
        )
        await handler.handle_webhook(failed, signed(failed))
        row = await async_db_session.get(SupportSubscription, subscription.id, populate_existing=True)
        assert row.status == "past_due"

        paid = stripe_event("evt_2", "invoice.payment_succeeded", invoice(charge="ch_paid"))
        await handler.handle_webhook(paid, signed(paid))
        row = await async_db_session.get(SupportSubscription, subscription.id, populate_existing=True)
        assert row.status == "active"

        statuses = (
            await async_db_session.execute(
                select(SupportPayment.status).order_by(SupportPayment.id)
            )
        ).scalars().all()
        assert statuses == ["failed", "succeeded"]

    async def test_unknown_type_is_acknowledged(self, handler, async_db_session):
        payload = stripe_event("evt_9", "customer.created", {"id": "cus_1"})

        result = await handler.handle_webhook(payload, signed(payload))

        assert result["status"] == "ignored"
        ledger = (await async_db_session.execute(select(ProcessedWebhookEvent))).scalar_one()
        assert ledger.outcome == "ignored"

    async def test_unknown_type_without_object_is_ignored(self, handler, async_db_session):
        payload = json.dumps({"id": "evt_10", "type": "account.future_thing", "data": {}}).encode()

        result = await handler.handle_webhook(payload, signed(payload))

        assert result["status"] == "ignored"
        assert "error" not in result
        assert await count(async_db_session, ProcessedWebhookEvent) == 1

    async def test_unmatched_subscription_is_dropped(self, handler, support_plan, async_db_session):
        payload = stripe_event(
            "evt_1", "customer.subscription.deleted", {"id": "sub_sandbox", "status": "canceled"}
        )

        result = await handler.handle_webhook(payload, signed(payload))

        assert result["status"] == "unmatched"
        assert result["subscription_id"] is None
        assert await count(async_db_session, ProcessedWebhookEvent) == 1

    async def test_updated_event_keeps_first_canceled_at(
        self, handler, make_subscription, async_db_session
    ):
        subscription = await make_subscription()
        first = stripe_event(
            "evt_1", "customer.subscription.updated", subscription_object(cancel_at_period_end=True)
        )
        await handler.handle_webhook(first, signed(first))
        row = await async_db_session.get(SupportSubscription, subscription.id, populate_existing=True)
        canceled_at = row.canceled_at
        assert canceled_at is not None

        handler.engine.clock = lambda: datetime(2027, 1, 1, tzinfo=UTC)
        second = stripe_event(
            "evt_2", "customer.subscription.updated", subscription_object(cancel_at_period_end=True)
        )
        await handler.handle_webhook(second, signed(second))
        row = await async_db_session.get(SupportSubscription, subscription.id, populate_existing=True)
        assert row.canceled_at == canceled_at

    async def test_handler_failure_is_isolated(
        self, handler, make_subscription, async_db_session, billing_metrics
    ):
        subscription = await make_subscription(status="past_due")
        handler.engine.apply_event = AsyncMock(side_effect=RuntimeError("boom"))
        payload = stripe_event("evt_1", "invoice.payment_succeeded", invoice())

        result = await handler.handle_webhook(payload, signed(payload))

        assert result["status"] == "failed"
        assert result["error"] == "RuntimeError"
        row = await async_db_session.get(SupportSubscription, subscription.id, populate_existing=True)
        assert row.status == "past_due"
        # Not recorded, so a redelivery is processed normally
        assert not await handler.store.is_event_processed("stripe", "evt_1")

    async def test_invalid_event_payload_is_isolated(self, handler, make_subscription):
        await make_subscription()
        bad = subscription_object()
        bad["current_period_end"] = bad["current_period_start"] - 10
        payload = stripe_event("evt_1", "customer.subscription.updated", bad)

        result = await handler.handle_webhook(payload, signed(payload))

        assert result["status"] == "failed"

    async def test_database_outage_propagates(self, handler):
        handler.store.is_event_processed = AsyncMock(
            side_effect=OperationalError("SELECT", {}, Exception("connection refused"))
        )
        payload = stripe_event("evt_1", "invoice.payment_succeeded", invoice())

        with pytest.raises(OperationalError):
            await handler.handle_webhook(payload, signed(payload))

    async def test_verified_non_json_body_is_rejected(self, handler):
        payload = b"not json"
        with pytest.raises(ValidationError):
            await handler.handle_webhook(payload, signed(payload))

    async def test_missing_event_id_is_rejected(self, handler):
        payload = json.dumps({"type": "invoice.payment_succeeded"}).encode()
        with pytest.raises(ValidationError):
            await handler.handle_webhook(payload, signed(payload))
