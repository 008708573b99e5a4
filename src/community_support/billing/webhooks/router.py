"""
Provider webhook endpoint.

The body is read as raw bytes and handed to the provider's handler untouched;
it is never parsed before the signature has been checked.
"""

from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from community_support.billing.dependencies import get_lifecycle_engine
from community_support.billing.exceptions import ValidationError
from community_support.billing.subscriptions.service import SubscriptionLifecycleEngine
from community_support.billing.webhooks.handlers import WEBHOOK_HANDLERS, WebhookHandler
from community_support.db import get_async_session

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Support Webhooks"])


def get_webhook_handler(
    provider: str,
    db: Annotated[AsyncSession, Depends(get_async_session)],
    engine: Annotated[SubscriptionLifecycleEngine, Depends(get_lifecycle_engine)],
) -> WebhookHandler:
    handler_cls = WEBHOOK_HANDLERS.get(provider.lower())
    if handler_cls is None:
        raise ValidationError(f"Unsupported webhook provider: {provider}", field="provider")
    return handler_cls(db, engine)


@router.post("/webhooks/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    handler: Annotated[WebhookHandler, Depends(get_webhook_handler)],
) -> dict[str, Any]:
    """
    Receive a provider notification.

    Always answers 200 once the signature is valid, including for duplicates,
    ignored types and isolated handler failures.
    """
    payload = await request.body()
    signature = request.headers.get(handler.signature_header)
    result = await handler.handle_webhook(payload, signature, dict(request.headers))
    return {"received": True, **result}


__all__ = ["get_webhook_handler", "router"]
