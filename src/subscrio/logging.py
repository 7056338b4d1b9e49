"""
Logging configuration for hosts embedding subscrio.

Every subscrio module logs through ``structlog.get_logger(__name__)`` with
event context (subscription_key, event_id, ...) bound as keyword arguments.
Call ``setup_logging()`` once at startup to route those events through the
standard library handlers with the renderer chosen in settings.
"""

import logging

import structlog

from subscrio.settings import get_settings

_SHARED_PROCESSORS: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.filter_by_level,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
]


def setup_logging() -> None:
    """Configure structlog from ``SUBSCRIO_LOGGING__LEVEL`` and ``SUBSCRIO_LOGGING__FORMAT``."""
    settings = get_settings()
    level = settings.logging.level.value
    logging.basicConfig(format="%(message)s", level=level)
    logging.getLogger("subscrio").setLevel(level)

    renderer: structlog.types.Processor
    if settings.logging.format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[*_SHARED_PROCESSORS, renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a subscrio logger; ``name`` defaults to the caller's module."""
    return structlog.get_logger(name)
