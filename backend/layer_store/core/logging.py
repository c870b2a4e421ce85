"""Loguru sink configuration for the service."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from layer_store.core import config


def configure_logging(settings: config.Settings) -> None:
    """Install the stderr sink and the optional error-file sink.

    Existing sinks are removed first so repeated application factory calls
    (tests create many apps) do not duplicate output.

    Args:
        settings: Application settings providing ``log_level`` and
            ``error_log_file``.
    """
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level.upper())
    if settings.error_log_file is not None:
        settings.ensure_directories()
        logger.add(
            settings.error_log_file,
            level="ERROR",
            format="{time:YYYY-MM-DDTHH:mm:ss.SSSZ} [{level}] {message}",
        )
