"""
Webhook endpoint tests over httpx.AsyncClient.
"""

import json

import pytest
from sqlalchemy import func, select

from community_support.billing.subscriptions.models import SupportPayment, SupportSubscription
from tests.billing.conftest import sign_stripe_payload, stripe_event

pytestmark = [pytest.mark.integration, pytest.mark.asyncio]


def paid_invoice(charge: str = "ch_1") -> dict:
    return {
        "id": "in_1",
        "object": "invoice",
        "subscription": "sub_X",
        "charge": charge,
        "payment_intent": "pi_1",
        "amount_paid": 999,
        "amount_due": 999,
        "currency": "usd",
    }


async def post_event(client, payload: bytes, signature: str | None = None):
    headers = {"Content-Type": "application/json"}
    headers["Stripe-Signature"] = signature or sign_stripe_payload(payload)
    return await client.post("/support/webhooks/stripe", content=payload, headers=headers)


class TestStripeWebhookEndpoint:
    async def test_processed(self, client, make_subscription, session_maker):
        subscription = await make_subscription(status="past_due")
        payload = stripe_event("evt_1", "invoice.payment_succeeded", paid_invoice())

        response = await post_event(client, payload)

        assert response.status_code == 200
        assert response.json() == {
            "received": True,
            "status": "processed",
            "event_id": "evt_1",
            "event_type": "invoice.payment_succeeded",
            "subscription_id": subscription.id,
        }
        async with session_maker() as session:
            row = await session.get(SupportSubscription, subscription.id)
            assert row.status == "active"

    async def test_duplicate_delivery_acknowledged(self, client, make_subscription, session_maker):
        await make_subscription(status="past_due")
        payload = stripe_event("evt_1", "invoice.payment_succeeded", paid_invoice())

        first = await post_event(client, payload)
        second = await post_event(client, payload)

        assert first.json()["status"] == "processed"
        assert second.status_code == 200
        assert second.json()["status"] == "duplicate"
        async with session_maker() as session:
            total = await session.execute(select(func.count()).select_from(SupportPayment))
            assert total.scalar_one() == 1

    async def test_bad_signature_is_400(self, client, make_subscription, session_maker):
        subscription = await make_subscription(status="past_due")
        payload = stripe_event("evt_1", "invoice.payment_succeeded", paid_invoice())

        response = await post_event(client, payload, signature="t=1,v1=deadbeef")

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_SIGNATURE"
        async with session_maker() as session:
            row = await session.get(SupportSubscription, subscription.id)
            assert row.status == "past_due"

    async def test_missing_signature_is_400(self, client):
        payload = stripe_event("evt_1", "ping", {})
        response = await client.post("/support/webhooks/stripe", content=payload)
        assert response.status_code == 400

    async def test_signature_covers_exact_bytes(self, client, make_subscription):
        await make_subscription(status="past_due")
        original = stripe_event("evt_1", "invoice.payment_succeeded", paid_invoice())
        reserialized = json.dumps(json.loads(original), separators=(",", ":")).encode()

        response = await post_event(client, reserialized, signature=sign_stripe_payload(original))

        assert response.status_code == 400

    async def test_unknown_event_type_is_200(self, client):
        payload = stripe_event("evt_2", "product.created", {"id": "prod_1"})

        response = await post_event(client, payload)

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    async def test_unknown_provider_is_400(self, client):
        response = await client.post(
            "/support/webhooks/paypal", content=b"{}", headers={"Stripe-Signature": "t=1,v1=00"}
        )
        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"
