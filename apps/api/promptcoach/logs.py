from __future__ import annotations

import sys

from loguru import logger

from .config import settings

LOG_FORMAT = "<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | {name}:{function} | {message}"


def configure_logging(level: str | None = None) -> None:
    """Replace loguru's default sink with a single stderr sink."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=(level or settings.log_level).upper(),
        format=LOG_FORMAT,
        backtrace=False,
        diagnose=False,
    )


def mask_secret(value: str | None) -> str:
    return "[SET]" if value else "[NOT SET]"
