"""
Logging configuration for Synapse Query.

Provides structured logging with correlation IDs bound through context
variables, and JSON or console output depending on the environment.
"""
import logging
import sys
from typing import Any, Optional
from uuid import uuid4

import structlog

from .config import LogFormat, get_settings

_configured = False


def configure_logging(
    level: Optional[str] = None,
    log_format: Optional[str] = None,
    force: bool = False
) -> None:
    """
    Configure structlog for the engine.

    Args:
        level: Minimum level name, defaults to the configured log level
        log_format: "json" or "console", defaults to the configured format
        force: Reconfigure even if logging was already set up
    """
    global _configured
    if _configured and not force:
        return

    settings = get_settings()
    level_name = (level or settings.log_level.value).upper()
    renderer_name = log_format or settings.log_format.value

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level_name, logging.INFO),
    )

    if renderer_name == LogFormat.JSON.value:
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        cache_logger_on_first_use=False,
    )
    _configured = True


class CorrelationContext:
    """Context manager binding a correlation ID and extra fields to every log line."""

    def __init__(self, correlation_id: Optional[str] = None, **context: Any):
        self.correlation_id = correlation_id or str(uuid4())
        self.context = context
        self._tokens = None

    def __enter__(self):
        self._tokens = structlog.contextvars.bind_contextvars(
            correlation_id=self.correlation_id, **self.context
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._tokens is not None:
            structlog.contextvars.reset_contextvars(**self._tokens)
            self._tokens = None
