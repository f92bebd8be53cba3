"""Process-wide logging setup for hosts embedding the sync layer."""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s — %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str | int = "INFO") -> logging.Logger:
    """Configure root logging once and return the ``praysync`` logger.

    Safe to call repeatedly; ``basicConfig`` is a no-op after the first call
    unless handlers were removed.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stdout,
    )
    logger = logging.getLogger("praysync")
    logger.setLevel(level)
    return logger
