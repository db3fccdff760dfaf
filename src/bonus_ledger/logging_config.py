"""Structured logging for the ledger services and the bonus worker."""

import logging
from decimal import Decimal
from typing import Any

import structlog

from bonus_ledger.config import Settings


def _stringify_decimals(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Render Decimal amounts as plain strings instead of ``Decimal('…')`` reprs."""
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = str(value)
    return event_dict


def setup_logging(settings: Settings) -> None:
    """Configure structlog for JSON or console output.

    Every line carries the deployment environment and app version so worker
    and service logs can be told apart once shipped.
    """
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if settings.log_format == "json" else structlog.dev.ConsoleRenderer()
    )
    static_fields = {"environment": settings.environment, "app_version": settings.app_version}

    def _add_static_fields(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        for key, value in static_fields.items():
            event_dict.setdefault(key, value)
        return event_dict

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            _add_static_fields,
            _stringify_decimals,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
    # SQL statements are logged only in debug.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if settings.debug else logging.WARNING)


def bind_job_context(job: str, **values: object) -> None:
    """Attach the running job name (and extra keys) to every log line in this context."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(job=job, **values)
