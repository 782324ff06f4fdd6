"""structlog setup for the scoring API.

Every event carries the service name, version and environment so API and
worker logs from several deployments can share one sink.
"""

import logging
from collections.abc import MutableMapping
from typing import Any

import structlog

from irac.config import Settings

# Chatty at INFO and duplicated by our own scoring_* events
_QUIET_LOGGERS = ("sqlalchemy.engine", "uvicorn.access", "httpx")


def _service_context(settings: Settings) -> structlog.types.Processor:
    context = {
        "service": settings.service_name,
        "version": settings.app_version,
        "environment": settings.environment,
    }

    def add_service(_logger: Any, _method: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
        for key, value in context.items():
            event_dict.setdefault(key, value)
        return event_dict

    return add_service


def setup_logging(settings: Settings) -> None:
    """Configure structlog for JSON (deployments) or console (local) output."""
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if settings.log_format == "json" else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _service_context(settings),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level)
    if not settings.debug:
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(max(level, logging.WARNING))
