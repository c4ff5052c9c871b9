"""Structured logging setup.

Modules obtain a logger with ``get_logger(__name__)`` and log with key/value
context, e.g. ``logger.info("Finding created", finding_id=str(finding.id))``.
"""

import logging
from typing import Any

import structlog


def configure_logging(level: int | str = logging.INFO, json_logs: bool = True) -> None:
    """Configure structlog and the standard logging bridge.

    Args:
        level: Root log level (name or number).
        json_logs: Render JSON lines when True, console output otherwise.
    """
    renderer: Any = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=level, format="%(message)s")


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to ``name``."""
    return structlog.get_logger(name)


def bind_request_context(**kwargs: Any) -> None:
    """Bind fields (tenant_id, request_id) to every log line of the current task."""
    structlog.contextvars.bind_contextvars(**kwargs)
