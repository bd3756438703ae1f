"""Logging configuration for the chat relay."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

import colorlog

LOGGER_NAME = "chat_relay"


def setup_logging(level_name: str = "INFO", log_path: str = "", color: bool = True) -> logging.Logger:
    """
    Configure the service logger.

    When log_path is set, logs go to a rotating file with:
      - maxBytes: 1 MB
      - backupCount: 3
    otherwise to stderr.

    LOG_LEVEL=DISABLE disables logging entirely.
    """
    level_name = (level_name or "INFO").upper().strip()
    logger = logging.getLogger(LOGGER_NAME)

    # Clear existing handlers to avoid duplication
    logger.handlers.clear()

    if level_name == "DISABLE":
        logging.disable(logging.CRITICAL)
        logger.addHandler(logging.NullHandler())
        logger.propagate = False
        return logger

    logging.disable(logging.NOTSET)
    level = getattr(logging, level_name, logging.INFO)
    logger.setLevel(level)

    handler, fallback_err = _create_log_handler(log_path)
    handler.setFormatter(_create_log_formatter(color and not log_path))

    logger.addHandler(handler)
    if fallback_err is not None:
        logger.warning(
            "Failed to open log file %r (%s). Falling back to stderr logging.",
            log_path,
            fallback_err,
        )
    logger.propagate = False
    return logger


def _create_log_handler(log_path: str) -> tuple[logging.Handler, Exception | None]:
    """Create log handler, falling back to StreamHandler when the file cannot be opened."""
    if not log_path:
        return logging.StreamHandler(), None
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
    """Create log formatter, colored for terminals."""
    if color:
        return colorlog.ColoredFormatter(
            "%(log_color)s%(asctime)s %(levelname)-8s%(reset)s %(name)s - %(message)s",
            reset=True,
            log_colors={
                "DEBUG": "blue",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
            style="%",
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
