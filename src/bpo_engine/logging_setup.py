from __future__ import annotations

import sys

from loguru import logger

from bpo_engine.settings import EngineSettings

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> | {extra} | <level>{message}</level>"
)


def configure_logging(settings: EngineSettings) -> None:
    """Replace loguru's default sink with one honoring the configured level/format."""

    logger.remove()
    logger.add(
        sys.stderr,
        level=settings.log_level.upper(),
        format=_FORMAT,
        serialize=settings.log_json,
        backtrace=False,
        diagnose=False,
    )
