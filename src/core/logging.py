"""Logging and observability configuration using Pydantic Logfire.

This module provides standardized logging utilities and configuration.
All modules should use Python's standard logging library (logging.getLogger(__name__)),
and Logfire will automatically capture and enrich these logs.

Standard usage:
    import logging
    logger = logging.getLogger(__name__)
    logger.info("Message", extra={"key": "value"})

Structured logging utilities:
    log_with_context(logger, "info", "Message", tenant_id="t1", offline_id="dev1-1700000000-abcd")
"""

import logging

import logfire
from fastapi import FastAPI

from src.core.config import Settings, settings


def configure_logfire(app_settings: Settings | None = None) -> None:
    """Configure Pydantic Logfire with token from environment."""
    active = app_settings or settings
    logfire.configure(
        token=active.logfire_token,
        service_name="fieldsync",
        service_version="0.1.0",
        environment=active.environment,
        send_to_logfire="if-token-present",
        console=False if active.is_production else None,
    )

    logger = logging.getLogger(__name__)
    logger.info("Logfire configured successfully")


def instrument_fastapi(app: FastAPI) -> None:
    """Add Logfire instrumentation to FastAPI application."""
    logfire.instrument_fastapi(app)
    logger = logging.getLogger(__name__)
    logger.info("FastAPI instrumentation configured")


def span(name: str) -> logfire.LogfireSpan:
    """Create a custom span for service layer functions.

    Usage:
        with span("completion_ledger.record"):
            # Your service logic here
            pass
    """
    return logfire.span(name)


def log_with_context(
    logger: logging.Logger,
    level: str,
    message: str,
    **context: object,
) -> None:
    """Log a message with structured context fields.

    Args:
        logger: Logger instance to use
        level: Log level ("debug", "info", "warning", "error", "critical")
        message: Log message
        **context: Additional context fields (tenant_id, offline_id, task_id, etc.)
    """
    log_method = getattr(logger, level.lower())
    log_method(message, extra=context)


def log_with_tenant_context(
    logger: logging.Logger,
    level: str,
    message: str,
    tenant_id: str | None = None,
    **extra: object,
) -> None:
    """Log a message with tenant context.

    Usage:
        log_with_tenant_context(logger, "info", "Push processed", tenant_id="t1", created=3)
    """
    context = {"tenant_id": tenant_id, **extra} if tenant_id else extra
    log_with_context(logger, level, message, **context)
