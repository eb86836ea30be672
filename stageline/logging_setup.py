"""Logging initialization helpers."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str | Path] = None,
    *,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """Configure the `stageline` logger (and its children) once.

    Other loggers (e.g. apscheduler) are left to their own configuration.
    """
    logger = logging.getLogger("stageline")
    if getattr(logger, "_stageline_configured", False):
        return logger

    numeric_level = getattr(logging, str(level or "INFO").upper(), logging.INFO)
    formatter = logging.Formatter(fmt=DEFAULT_FORMAT, datefmt=DEFAULT_DATEFMT)

    stream = logging.StreamHandler()
    stream.setLevel(numeric_level)
    stream.setFormatter(formatter)
    handlers: list[logging.Handler] = [stream]

    if log_file:
        file_path = Path(log_file)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(file_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
        fh.setLevel(numeric_level)
        fh.setFormatter(formatter)
        handlers.append(fh)

    logger.setLevel(numeric_level)
    logger.handlers = handlers
    logger.propagate = False
    setattr(logger, "_stageline_configured", True)
    return logger
