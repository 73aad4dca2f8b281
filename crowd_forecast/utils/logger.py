"""Structured logging utilities."""

from __future__ import annotations

import logging
import sys
from typing import Optional

from crowd_forecast.utils.config import get_settings


_LOGGER_INITIALIZED = False

# httpx logs every request at INFO.
_QUIET_LIBRARIES = ("httpx", "httpcore")


def configure_logging(level: Optional[str] = None) -> None:
    """Configure process-wide logging once.

    The poller, the forecast cycle and the persistence layer all write through
    the same stdout handler so their lines interleave in one stream.
    """

    global _LOGGER_INITIALIZED
    if _LOGGER_INITIALIZED:
        return

    settings = get_settings()
    resolved_level = (level or settings.log_level).upper()

    logging.basicConfig(
        level=resolved_level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stdout,
    )
    for library in _QUIET_LIBRARIES:
        logging.getLogger(library).setLevel(logging.WARNING)
    _LOGGER_INITIALIZED = True


def get_logger(name: str) -> logging.Logger:
    """Return a configured logger for the requested module."""
    configure_logging()
    return logging.getLogger(name)
