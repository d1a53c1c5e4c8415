"""Shared logging configuration for the engine, functions and scripts."""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

NOISY_LOGGERS = ("httpx", "httpcore", "openai", "urllib3", "supabase", "postgrest")


def setup_logging(
    level: Optional[str] = None,
    format_string: Optional[str] = None,
    include_timestamp: bool = True,
) -> None:
    """Configure the root logger with a stdout handler.

    Args:
        level: Logging level name. If None, reads LOG_LEVEL (default INFO).
        format_string: Custom format string.
        include_timestamp: Whether to include timestamps in the default format.

    Example:
        >>> setup_logging(level="DEBUG")
        >>> logging.getLogger("src.shared.batch.scheduler").debug("visible")
    """
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO").upper()

    if format_string is None:
        if include_timestamp:
            format_string = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        else:
            format_string = "[%(levelname)s] %(name)s: %(message)s"

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=format_string,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
        force=True,
    )

    # HTTP client chatter drowns out batch progress lines
    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger(name)
    if level:
        logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    return logger
