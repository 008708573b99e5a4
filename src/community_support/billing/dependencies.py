"""
Support billing dependencies.

Wires the lifecycle engine, provider registry and community directory into
FastAPI routes, and resolves the caller from gateway identity headers.
"""

from functools import lru_cache
from typing import Annotated

import structlog
from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from community_support.billing.config import get_billing_config
from community_support.billing.providers.base import ProviderRegistry
from community_support.billing.providers.stripe import StripeProviderAdapter
from community_support.billing.subscriptions.service import (
    CallerIdentity,
    SubscriptionLifecycleEngine,
    SupportSubscriptionQueries,
)
from community_support.communities import CommunityDirectory, CommunityServiceClient
from community_support.db import get_async_session
from community_support.settings import settings

logger = structlog.get_logger(__name__)


async def get_current_member(
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_email: Annotated[str | None, Header()] = None,
    x_user_name: Annotated[str | None, Header()] = None,
) -> CallerIdentity:
    """
    Resolve the caller from headers set by the API gateway.

    Raises:
        HTTPException: 401 when the gateway did not forward an identity
    """
    if not x_user_id or not x_user_id.isdigit():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return CallerIdentity(
        user_id=int(x_user_id),
        email=x_user_email or "",
        display_name=x_user_name,
    )


@lru_cache(maxsize=1)
def get_provider_registry() -> ProviderRegistry:
    """Build adapters for every configured provider."""
    config = get_billing_config()
    registry = ProviderRegistry()
    if config.stripe is not None:
        registry.register(
            "stripe",
            StripeProviderAdapter.from_config(
                config.stripe.api_key,
                timeout_seconds=config.payment.provider_timeout_seconds,
                max_network_retries=config.stripe.max_network_retries,
            ),
        )
    else:
        logger.warning("billing.stripe.not_configured")
    return registry


@lru_cache(maxsize=1)
def get_community_directory() -> CommunityDirectory:
    return CommunityServiceClient(
        base_url=settings.community_service.base_url,
        token=settings.community_service.api_token or None,
        timeout=settings.community_service.timeout_seconds,
    )


def get_lifecycle_engine(
    db: Annotated[AsyncSession, Depends(get_async_session)],
    providers: Annotated[ProviderRegistry, Depends(get_provider_registry)],
    communities: Annotated[CommunityDirectory, Depends(get_community_directory)],
) -> SubscriptionLifecycleEngine:
    """Dependency to get a SubscriptionLifecycleEngine bound to the request session."""
    return SubscriptionLifecycleEngine(db, providers=providers, communities=communities)


def get_subscription_queries(
    db: Annotated[AsyncSession, Depends(get_async_session)],
    communities: Annotated[CommunityDirectory, Depends(get_community_directory)],
) -> SupportSubscriptionQueries:
    return SupportSubscriptionQueries(db, communities)


__all__ = [
    "get_community_directory",
    "get_current_member",
    "get_lifecycle_engine",
    "get_provider_registry",
    "get_subscription_queries",
]
