"""
Community support billing application.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from community_support.billing.dependencies import get_community_directory
from community_support.billing.exceptions import SupportBillingError
from community_support.billing.subscriptions.router import router as subscriptions_router
from community_support.billing.webhooks.router import router as webhooks_router
from community_support.communities import CommunityServiceClient
from community_support.db import check_database_health
from community_support.logging import setup_logging
from community_support.settings import settings

API_PREFIX = "/support"


def support_billing_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render domain errors with their status code and recovery hint."""
    if not isinstance(exc, SupportBillingError):
        raise exc
    logger = structlog.get_logger(__name__)
    log = logger.warning if exc.status_code >= 500 else logger.info
    log(
        "request.domain_error",
        path=request.url.path,
        error_code=exc.error_code,
        status_code=exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Manage application lifecycle events."""
    logger = structlog.get_logger(__name__)
    logger.info(
        "service.startup.begin",
        service=settings.app_name,
        version=settings.app_version,
        environment=settings.environment,
    )

    yield

    communities = get_community_directory()
    if isinstance(communities, CommunityServiceClient):
        await communities.close()
    logger.info("service.shutdown.complete")


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    setup_logging()

    app = FastAPI(
        title="Community Support Billing",
        description="Recurring community support plans billed through payment providers",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
    )

    app.add_exception_handler(SupportBillingError, support_billing_error_handler)

    app.include_router(subscriptions_router, prefix=API_PREFIX)
    app.include_router(webhooks_router, prefix=API_PREFIX)

    @app.get("/health")
    async def health_check() -> dict[str, Any]:
        """Health check endpoint for monitoring."""
        return {
            "status": "healthy",
            "version": settings.app_version,
            "environment": settings.environment,
        }

    @app.get("/health/ready")
    async def readiness_check() -> dict[str, Any]:
        database_ok = await check_database_health()
        return {
            "status": "ready" if database_ok else "not ready",
            "database": database_ok,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    return app


app = create_application()
