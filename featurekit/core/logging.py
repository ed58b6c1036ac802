"""
Structured logging setup.

Usage:
    from featurekit.core.config import get_settings
    from featurekit.core.logging import configure_logging

    configure_logging(get_settings())

    logger = structlog.get_logger(__name__)
    logger.info("flag_evaluated", flag_key="dark_mode", reason="default")
"""

from __future__ import annotations

import logging
import sys

import structlog

from featurekit.core.config import Settings


def configure_logging(settings: Settings) -> None:
    """
    Configure structlog and the stdlib root logger.

    log_format "json" renders one JSON object per line (production),
    anything else uses the colored console renderer (development).
    """
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
