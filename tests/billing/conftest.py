"""
Fixtures for exercising the billing routers over HTTP.
"""

import hashlib
import hmac
import json
import time
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from community_support.billing.dependencies import (
    get_community_directory,
    get_provider_registry,
)
from community_support.billing.providers.base import ProviderRegistry
from community_support.db import get_async_session
from community_support.main import create_application
from tests.conftest import MEMBER_ID, WEBHOOK_SECRET


def sign_stripe_payload(
    payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None
) -> str:
    """Build a ``Stripe-Signature`` header value for ``payload``."""
    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(
        secret.encode("utf-8"), f"{ts}.".encode() + payload, hashlib.sha256
    ).hexdigest()
    return f"t={ts},v1={digest}"


def stripe_event(event_id: str, event_type: str, obj: dict[str, Any]) -> bytes:
    return json.dumps(
        {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}
    ).encode()


def member_headers(user_id: int = MEMBER_ID) -> dict[str, str]:
    return {
        "X-User-ID": str(user_id),
        "X-User-Email": f"user{user_id}@example.com",
        "X-User-Name": f"User {user_id}",
    }


@pytest.fixture
def app(session_maker, provider_adapter, communities):
    application = create_application()

    async def override_session():
        async with session_maker() as session:
            yield session

    application.dependency_overrides[get_async_session] = override_session
    application.dependency_overrides[get_provider_registry] = lambda: ProviderRegistry(
        {"stripe": provider_adapter}
    )
    application.dependency_overrides[get_community_directory] = lambda: communities
    yield application
    application.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
