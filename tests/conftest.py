"""
Global pytest configuration and fixtures for community support billing tests.

Database-backed tests run against an in-memory SQLite database through
aiosqlite; the payment provider and the community service are replaced with
in-process fakes.
"""

import os
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Keep tests off any developer database configured through .env
os.environ.pop("DATABASE_URL", None)
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")

from community_support.billing.config import (  # noqa: E402
    BillingConfig,
    StripeConfig,
    set_billing_config,
)
from community_support.billing.exceptions import SupportBillingError  # noqa: E402
from community_support.billing.metrics import BillingMetrics  # noqa: E402
from community_support.billing.providers.base import (  # noqa: E402
    CustomerRef,
    OfferingRef,
    PaymentProviderAdapter,
    ProviderRegistry,
    ProviderSubscription,
)
from community_support.billing.subscriptions.models import (  # noqa: E402
    SupportPlan,
    SupportSubscription,
)
from community_support.billing.subscriptions.service import (  # noqa: E402
    CallerIdentity,
    SubscriptionLifecycleEngine,
)
from community_support.db import Base  # noqa: E402

WEBHOOK_SECRET = "whsec_test123"

FIXED_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
PERIOD_START = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
PERIOD_END = PERIOD_START + timedelta(days=30)

COMMUNITY_ID = 1
OWNER_ID = 50
MEMBER_ID = 3


def naive(value: datetime | None) -> datetime | None:
    """SQLite hands datetimes back without tzinfo; compare on the wall-clock value."""
    if value is None:
        return None
    return value.replace(tzinfo=None) if value.tzinfo else value


# =============================================================================
# Fakes
# =============================================================================


class FakeProviderAdapter(PaymentProviderAdapter):
    """In-memory provider that records calls and fails on demand."""

    name = "stripe"

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.failures: dict[str, SupportBillingError] = {}
        self.subscription_status = "active"
        self.next_subscription_ids: list[str] = []
        self.before_create: Callable[[], Awaitable[None]] | None = None
        self._counter = 0

    def _record(self, operation: str, *args: Any) -> None:
        self.calls.append((operation, args))
        failure = self.failures.get(operation)
        if failure is not None:
            raise failure

    @property
    def operations(self) -> list[str]:
        return [operation for operation, _ in self.calls]

    async def ensure_customer(
        self, email: str, display_name: str | None, internal_user_id: int
    ) -> CustomerRef:
        self._record("ensure_customer", email, display_name, internal_user_id)
        return CustomerRef(id=f"cus_{internal_user_id}", email=email)

    async def ensure_priced_offering(
        self,
        community_id: int,
        plan_id: int,
        name: str,
        description: str | None,
        amount_minor: int,
        currency: str,
    ) -> OfferingRef:
        self._record(
            "ensure_priced_offering", community_id, plan_id, name, description, amount_minor, currency
        )
        return OfferingRef(
            product_id=f"prod_{community_id}_{plan_id}",
            price_id=f"price_{plan_id}_{amount_minor}",
            amount_minor=amount_minor,
            currency=currency,
        )

    async def create_provider_subscription(
        self,
        customer: CustomerRef,
        offering: OfferingRef,
        payment_method_ref: str,
        metadata: dict[str, str] | None = None,
    ) -> ProviderSubscription:
        self._record("create_provider_subscription", customer.id, offering.price_id, payment_method_ref)
        if self.before_create is not None:
            await self.before_create()
        self._counter += 1
        sub_id = (
            self.next_subscription_ids.pop(0) if self.next_subscription_ids else f"sub_{self._counter}"
        )
        return ProviderSubscription(
            id=sub_id,
            status=self.subscription_status,
            current_period_start=PERIOD_START,
            current_period_end=PERIOD_END,
        )

    async def cancel_provider_subscription(
        self, provider_subscription_id: str, at_period_end: bool
    ) -> ProviderSubscription:
        self._record("cancel_provider_subscription", provider_subscription_id, at_period_end)
        return ProviderSubscription(
            id=provider_subscription_id,
            status="active" if at_period_end else "canceled",
            current_period_start=PERIOD_START,
            current_period_end=PERIOD_END,
            cancel_at_period_end=at_period_end,
        )


class FakeCommunityDirectory:
    """Community existence and ownership held in memory."""

    def __init__(self, owners: dict[int, int] | None = None) -> None:
        # community_id -> owner user id
        self.owners = dict(owners or {})

    async def community_exists(self, community_id: int) -> bool:
        return community_id in self.owners

    async def is_owner(self, user_id: int, community_id: int) -> bool:
        return self.owners.get(community_id) == user_id


# =============================================================================
# Configuration
# =============================================================================


@pytest.fixture
def billing_config() -> BillingConfig:
    return BillingConfig(
        stripe=StripeConfig(
            api_key="sk_test_123",
            publishable_key="pk_test_123",
            webhook_secret=WEBHOOK_SECRET,
        ),
    )


@pytest.fixture(autouse=True)
def _install_billing_config(billing_config):
    set_billing_config(billing_config)
    yield
    set_billing_config(None)


@pytest.fixture
def billing_metrics() -> MagicMock:
    return MagicMock(spec=BillingMetrics)


# =============================================================================
# Database
# =============================================================================


@pytest_asyncio.fixture
async def async_db_engine():
    """In-memory SQLite engine shared across sessions through a single connection."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(async_db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_db_engine, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def async_db_session(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def support_plan(session_maker) -> SupportPlan:
    """Active plan for COMMUNITY_ID priced at 999 USD minor units."""
    async with session_maker() as session:
        plan = SupportPlan(
            community_id=COMMUNITY_ID,
            name="Gold supporters",
            description="Keeps the lights on",
            monthly_price_minor=999,
            currency="USD",
            benefits="Supporter badge",
            is_active=True,
        )
        session.add(plan)
        await session.commit()
        return plan


@pytest.fixture
def make_subscription(session_maker, support_plan):
    """Insert a subscription row directly, bypassing the engine."""

    async def _make(**overrides: Any) -> SupportSubscription:
        values: dict[str, Any] = {
            "user_id": MEMBER_ID,
            "community_id": COMMUNITY_ID,
            "plan_id": support_plan.id,
            "status": "active",
            "current_period_start": PERIOD_START,
            "current_period_end": PERIOD_END,
            "provider": "stripe",
            "provider_subscription_id": "sub_X",
            "cancel_at_period_end": False,
        }
        values.update(overrides)
        async with session_maker() as session:
            subscription = SupportSubscription(**values)
            session.add(subscription)
            await session.commit()
            return subscription

    return _make


# =============================================================================
# Engine
# =============================================================================


@pytest.fixture
def provider_adapter() -> FakeProviderAdapter:
    return FakeProviderAdapter()


@pytest.fixture
def communities() -> FakeCommunityDirectory:
    return FakeCommunityDirectory({COMMUNITY_ID: OWNER_ID})


@pytest.fixture
def member() -> CallerIdentity:
    return CallerIdentity(user_id=MEMBER_ID, email="member@example.com", display_name="Member Three")


@pytest.fixture
def lifecycle_engine(
    async_db_session, provider_adapter, communities, billing_config, billing_metrics
) -> SubscriptionLifecycleEngine:
    return SubscriptionLifecycleEngine(
        async_db_session,
        providers=ProviderRegistry({"stripe": provider_adapter}),
        communities=communities,
        config=billing_config,
        metrics=billing_metrics,
        clock=lambda: FIXED_NOW,
    )
