"""
Structured logging for the support billing service.

Operational logs and the subscription audit trail both go through structlog;
audit entries use the ``audit`` logger name.
"""

import logging
import sys
from typing import Any

import structlog

from community_support.settings import settings


def setup_logging() -> None:
    """
    Setup structured logging with structlog.

    Uses settings from centralized configuration.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=settings.observability.log_level.value,
    )

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.observability.enable_correlation_ids:
        processors.insert(
            0,
            structlog.processors.CallsiteParameterAdder(
                parameters=[structlog.processors.CallsiteParameter.THREAD_NAME]
            ),
        )

    if settings.observability.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger, defaulting to the caller's module name."""
    return structlog.get_logger(name)


def get_audit_logger(**context: Any) -> structlog.stdlib.BoundLogger:
    """
    Get the audit logger with ``context`` bound to every entry.

    Audit entries go to the ``audit`` logger so they can be routed apart from
    operational logs.
    """
    return structlog.get_logger("audit").bind(**context)


def log_subscription_audit(
    action: str,
    subscription_id: int,
    user_id: int,
    community_id: int,
    provider: str,
    **details: Any,
) -> None:
    """
    Record a change to a support subscription or its payments.

    Every entry carries the subscription, member, community and provider so a
    trail can be rebuilt per subscription.
    """
    get_audit_logger(
        subscription_id=subscription_id,
        user_id=user_id,
        community_id=community_id,
        provider=provider,
    ).info(action, **details)
