"""Environment-aware logging setup.

Operational messages always go through. Detailed error payloads (request
context, provider codes, stack traces) are only emitted in development so that
production logs never leak internals.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from .config import Settings, get_settings

ROOT_LOGGER_NAME = "vetconnect"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class DevelopmentOnlyFilter(logging.Filter):
    """Drop records flagged as ``detail`` unless running in development."""

    def __init__(self, enabled: bool) -> None:
        super().__init__()
        self.enabled = enabled

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "detail", False):
            return self.enabled
        return True


def configure_logging(settings: Settings | None = None) -> logging.Logger:
    """Install a single stream handler on the package logger and return it."""

    settings = settings or get_settings()
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    level = getattr(logging, settings.log_level.strip().upper(), logging.INFO)
    logger.setLevel(level)

    for handler in list(logger.handlers):
        if getattr(handler, "_vetconnect", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(DevelopmentOnlyFilter(settings.is_development))
    handler._vetconnect = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    return logger


def log_detail(
    logger: logging.Logger,
    message: str,
    data: Optional[Any] = None,
    *,
    level: int = logging.ERROR,
    exc_info: Any = None,
) -> None:
    """Log ``message`` with its full payload, visible in development only."""

    logger.log(level, "%s %r", message, data, exc_info=exc_info, extra={"detail": True, "data": data})
