"""Logging setup for the CLI and worker processes."""

import logging
import sys

LOG_FORMAT = "[chainctl] %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install one stream handler on the package logger."""
    logger = logging.getLogger("chainctl")
    logger.setLevel(level.upper())
    if not any(getattr(h, "_chainctl", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._chainctl = True
        logger.addHandler(handler)
