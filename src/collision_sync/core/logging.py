"""Logging setup shared by the CLI, API and batch runner."""

from __future__ import annotations

import logging
import os


def configure_logging(level: str | None = None) -> None:
    """Initialize basic logging with a shared format and log level.

    The level can be provided directly (usually ``AppSettings.log_level``) or
    via the ``LOG_LEVEL`` environment variable, defaulting to ``INFO``.
    """

    resolved_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if resolved_level not in logging.getLevelNamesMapping():
        resolved_level = "INFO"
    logging.basicConfig(
        level=resolved_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # boto is chatty at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)
