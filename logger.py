"""Logging configuration for the chat stream proxy."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler

import colorlog

LOGGER_NAME = "chat_proxy"


def setup_logging(
    log_path: str | None = None,
    use_color: bool | None = None,
    level: str | None = None,
) -> logging.Logger:
    """
    Configure the service logger.

    With a log path, records go to a rotating file:
      - maxBytes: 1 MB
      - backupCount: 3
    Without one (or when the file cannot be opened) they go to the console.

    ``level`` defaults to LOG_LEVEL; DISABLE turns logging off entirely.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper().strip()
    logger = logging.getLogger(LOGGER_NAME)

    # Clear existing handlers to avoid duplication
    logger.handlers.clear()

    if level_name == "DISABLE":
        logging.disable(logging.CRITICAL)
        logger.addHandler(logging.NullHandler())
        logger.propagate = False
        return logger

    logging.disable(logging.NOTSET)
    numeric_level = getattr(logging, level_name, logging.INFO)
    logger.setLevel(numeric_level)

    fallback_err: Exception | None = None
    if log_path:
        handler, fallback_err = _create_log_handler(log_path)
    else:
        handler = logging.StreamHandler()

    if use_color is None:
        use_color = os.getenv("LOG_COLOR", "true").lower() in ("true", "1", "yes")
    # Color codes only make sense on a terminal, never in the rotated file.
    color = use_color and not isinstance(handler, RotatingFileHandler)
    handler.setFormatter(_create_log_formatter(color))

    logger.addHandler(handler)
    if fallback_err is not None:
        logger.warning(
            "Failed to open log file %r (%s). Falling back to stdout/stderr logging.",
            log_path,
            fallback_err,
        )
    logger.propagate = False
    return logger


def _create_log_handler(log_path: str) -> tuple[logging.Handler, Exception | None]:
    """Create log handler with fallback to StreamHandler on error."""
    try:
        return RotatingFileHandler(
            log_path,
            maxBytes=1_048_576,  # 1 MB
            backupCount=3,
            encoding="utf-8",
        ), None
    except OSError as e:
        return logging.StreamHandler(), e


def _create_log_formatter(color: bool) -> logging.Formatter:
    """Create log formatter, colored if requested."""
    if color:
        return colorlog.ColoredFormatter(
            "%(log_color)s%(asctime)s %(levelname)-8s%(reset)s %(name)s - %(message)s",
            datefmt=None,
            reset=True,
            log_colors={
                'DEBUG': 'cyan',
                'INFO': 'green',
                'WARNING': 'yellow',
                'ERROR': 'red',
                'CRITICAL': 'red,bg_white',
            },
            secondary_log_colors={},
            style='%'
        )
    return logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")


def mask_secret(s: str, keep_start: int = 6, keep_end: int = 4) -> str:
    """Mask a secret string, keeping only start and end characters."""
    s = (s or "").strip()
    if not s:
        return ""
    if len(s) <= keep_start + keep_end:
        return "*" * len(s)
    return f"{s[:keep_start]}...{s[-keep_end:]}"
