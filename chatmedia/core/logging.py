"""structlog setup for the download command.

Events are rendered as JSON lines unless ``CHATMEDIA_DEBUG`` is set, in which
case they go to a colored console renderer.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

from chatmedia.core.config import settings

# Third-party loggers that report every request at INFO
NOISY_LOGGERS = ("googleapiclient.discovery_cache", "google.auth", "httpx")


def setup_logging(level: str | None = None) -> None:
    """Route structlog through stdlib logging on stdout.

    Args:
        level: Level name from ``--log-level``; ``settings.log_level`` otherwise.
    """
    level_name = (level or settings.log_level).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.debug:
        renderers: list[Any] = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger, normally called with ``__name__``."""
    return structlog.get_logger(name)
