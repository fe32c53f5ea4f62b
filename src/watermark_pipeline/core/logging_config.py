"""Centralized logging configuration for the watermark pipeline."""

import os
import sys
import logging
from typing import Optional

DEFAULT_LOGGER_NAME = "watermark-pipeline"

LEVEL_ENV = "WATERMARK_LOG_LEVEL"
FORMAT_ENV = "WATERMARK_LOG_FORMAT"

STRUCTURED_FORMAT = "%(asctime)s | %(name)s | %(levelname)-8s | %(module)s:%(lineno)d | %(message)s"
SIMPLE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _resolve_level(level: Optional[str]) -> int:
    name = (level or os.getenv(LEVEL_ENV, "INFO")).upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def _build_handler(format_type: str) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    if os.getenv(FORMAT_ENV, format_type).lower() == "structured":
        handler.setFormatter(logging.Formatter(STRUCTURED_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S"))
    else:
        handler.setFormatter(logging.Formatter(SIMPLE_FORMAT))
    return handler


def setup_logger(
    name: str = DEFAULT_LOGGER_NAME,
    level: Optional[str] = None,
    format_type: str = "structured",
) -> logging.Logger:
    """
    Configure and return a stdout logger.

    Args:
        name: Logger name (defaults to "watermark-pipeline")
        level: Level name; falls back to WATERMARK_LOG_LEVEL, then INFO.
            Unknown names also fall back to INFO.
        format_type: "structured" or "simple"; WATERMARK_LOG_FORMAT wins
            when set.

    A logger gets a single handler however often it is configured.
    """
    logger = logging.getLogger(name)
    logger.setLevel(_resolve_level(level))
    if not logger.handlers:
        logger.addHandler(_build_handler(format_type))
    logger.propagate = False
    return logger


def get_logger(name: str = DEFAULT_LOGGER_NAME) -> logging.Logger:
    """``get_logger("apply")`` returns the ``watermark-pipeline.apply`` logger."""
    if not name.startswith(DEFAULT_LOGGER_NAME):
        name = f"{DEFAULT_LOGGER_NAME}.{name}"
    return setup_logger(name)


def configure_worker_logging(worker_name: str, level: Optional[str] = None) -> logging.Logger:
    """One named logger per queue worker so interleaved consumer output stays attributable."""
    return setup_logger(f"{DEFAULT_LOGGER_NAME}.worker.{worker_name}", level=level)


logger = setup_logger()
