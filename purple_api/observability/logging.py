"""
Structured Logging with Structlog.

Every entry carries the service identity and deployment; request-scoped
fields (request_id) are bound through contextvars by the HTTP middleware.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from purple_api.config import settings

# Chatty libraries that log every request or statement at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "uvicorn.access")


def add_service_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp service, version and deployment on every entry."""
    event_dict.setdefault("service", settings.service_name)
    event_dict.setdefault("version", settings.api_version)
    event_dict.setdefault("deployment", settings.deployment)
    return event_dict


def _resolve_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging() -> None:
    """
    Configure structlog over stdlib logging.

    JSON output (log_format=json) looks like:
    {
        "event": "payment_confirmed",
        "level": "info",
        "timestamp": "2025-01-08T12:00:00.123456Z",
        "logger": "purple_api.services.checkout",
        "service": "purple-api",
        "deployment": "production",
        "request_id": "...",
        "checkout_id": "...",
        ...
    }
    """
    level = _resolve_level(settings.log_level)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    # ConsoleRenderer formats exceptions itself
    if settings.log_format == "json":
        processors.append(structlog.processors.format_exc_info)
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    processors.append(renderer)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("checkout_created", checkout_id=checkout.id)
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """
    Bind fields to every log entry emitted inside the block.

    Usage:
        with log_context(request_id="req-123"):
            logger.info("request_started")
    """
    with structlog.contextvars.bound_contextvars(**fields):
        yield
