"""
Support subscription router.

Thin HTTP layer over the lifecycle engine and read models. Domain errors
propagate as SupportBillingError and are rendered by the application's
exception handler.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Body, Depends, Query, status

from community_support.billing.dependencies import (
    get_current_member,
    get_lifecycle_engine,
    get_subscription_queries,
)
from community_support.billing.subscriptions.schemas import (
    CancelRequest,
    CancelResponse,
    PaymentHistoryResponse,
    PaymentResponse,
    SubscribeRequest,
    SubscriberListResponse,
    SubscriptionResponse,
    SubscriptionWithPlanResponse,
)
from community_support.billing.subscriptions.service import (
    CallerIdentity,
    SubscriptionLifecycleEngine,
    SupportSubscriptionQueries,
)

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Support Subscriptions"])


# ==================== Lifecycle Endpoints ====================


@router.post(
    "/subscriptions",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_subscription(
    request: SubscribeRequest,
    member: Annotated[CallerIdentity, Depends(get_current_member)],
    engine: Annotated[SubscriptionLifecycleEngine, Depends(get_lifecycle_engine)],
) -> SubscriptionResponse:
    """Subscribe the caller to a community's active support plan."""
    subscription = await engine.subscribe(
        member,
        community_id=request.community_id,
        provider=request.provider,
        payment_method_ref=request.payment_method_id,
    )
    return SubscriptionResponse.model_validate(subscription)


@router.post("/subscriptions/{subscription_id}/cancel", response_model=CancelResponse)
async def cancel_subscription(
    subscription_id: int,
    member: Annotated[CallerIdentity, Depends(get_current_member)],
    engine: Annotated[SubscriptionLifecycleEngine, Depends(get_lifecycle_engine)],
    request: Annotated[CancelRequest | None, Body()] = None,
) -> CancelResponse:
    """Cancel the caller's subscription, at period end unless told otherwise."""
    at_period_end = request.cancel_at_period_end if request is not None else True
    subscription = await engine.cancel(member.user_id, subscription_id, at_period_end)
    message = (
        "Subscription will cancel at the end of the current billing period"
        if at_period_end
        else "Subscription has been canceled immediately"
    )
    return CancelResponse(
        message=message, subscription=SubscriptionResponse.model_validate(subscription)
    )


# ==================== Read Models ====================


@router.get("/subscriptions", response_model=list[SubscriptionWithPlanResponse])
async def list_my_subscriptions(
    member: Annotated[CallerIdentity, Depends(get_current_member)],
    queries: Annotated[SupportSubscriptionQueries, Depends(get_subscription_queries)],
) -> list[SubscriptionWithPlanResponse]:
    """List the caller's open subscriptions."""
    return await queries.list_my_subscriptions(member.user_id)


@router.get("/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: int,
    member: Annotated[CallerIdentity, Depends(get_current_member)],
    queries: Annotated[SupportSubscriptionQueries, Depends(get_subscription_queries)],
) -> SubscriptionResponse:
    subscription = await queries.get_subscription(member.user_id, subscription_id)
    return SubscriptionResponse.model_validate(subscription)


@router.get("/subscriptions/{subscription_id}/payments", response_model=PaymentHistoryResponse)
async def get_payment_history(
    subscription_id: int,
    member: Annotated[CallerIdentity, Depends(get_current_member)],
    queries: Annotated[SupportSubscriptionQueries, Depends(get_subscription_queries)],
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(10, ge=1, le=100, description="Items per page"),
) -> PaymentHistoryResponse:
    """Payment history, visible to the subscription holder and the community owner."""
    subscription, payments = await queries.payment_history(
        member.user_id, subscription_id, page=page, limit=limit
    )
    return PaymentHistoryResponse(
        subscription_id=subscription.id,
        status=subscription.status,
        page=page,
        limit=limit,
        payments=[PaymentResponse.model_validate(p) for p in payments],
    )


@router.get(
    "/communities/{community_id}/subscription",
    response_model=SubscriptionWithPlanResponse,
)
async def get_my_community_subscription(
    community_id: int,
    member: Annotated[CallerIdentity, Depends(get_current_member)],
    queries: Annotated[SupportSubscriptionQueries, Depends(get_subscription_queries)],
) -> SubscriptionWithPlanResponse:
    return await queries.get_my_community_subscription(member.user_id, community_id)


@router.get("/communities/{community_id}/subscribers", response_model=SubscriberListResponse)
async def list_community_subscribers(
    community_id: int,
    member: Annotated[CallerIdentity, Depends(get_current_member)],
    queries: Annotated[SupportSubscriptionQueries, Depends(get_subscription_queries)],
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(20, ge=1, le=100, description="Items per page"),
) -> SubscriberListResponse:
    """Open subscriptions of a community. Owner only."""
    total, subscriptions = await queries.list_subscribers(
        member.user_id, community_id, page=page, limit=limit
    )
    return SubscriberListResponse(
        total=total,
        page=page,
        limit=limit,
        results=[SubscriptionResponse.model_validate(s) for s in subscriptions],
    )


__all__ = ["router"]
