"""Logging setup for enrollcore.

Every component logs through ``logging.getLogger(__name__)`` under the
``enrollcore`` namespace. ``setup_logging`` attaches a rotating file handler
(and optionally stderr) to that namespace, with a filter that masks payment
secrets before anything is written.
"""

from __future__ import annotations

import logging
import os
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path

ROOT_LOGGER = "enrollcore"
LOG_FILE = "enrollcore.log"
MAX_BYTES = 10 * 1024 * 1024
BACKUP_COUNT = 5

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

SENSITIVE_PATTERNS = [
    (re.compile(r"\b(?:\d[ -]?){12,18}\d\b"), "[CARD_NUMBER]"),
    (re.compile(r"Bearer [A-Za-z0-9._-]+"), "Bearer [REDACTED]"),
    (re.compile(r"\b(?:sk|rk)_(?:live|test)_[A-Za-z0-9]+"), "[GATEWAY_KEY]"),
    (re.compile(r"token=[A-Za-z0-9._-]+"), "token=[REDACTED]"),
]


def sanitize_for_log(text: str) -> str:
    """Mask card numbers, bearer tokens and gateway keys in ``text``."""
    for pattern, replacement in SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class RedactingFilter(logging.Filter):
    """Rewrites each record's message through sanitize_for_log."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = sanitize_for_log(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(
    log_dir: str | Path | None = None,
    level: str | None = None,
    *,
    log_file: str = LOG_FILE,
    max_bytes: int = MAX_BYTES,
    backup_count: int = BACKUP_COUNT,
    console: bool = True,
) -> logging.Logger:
    """Route ``enrollcore.*`` loggers to a rotating file.

    Calling it again replaces the handlers from the previous call.

    Args:
        log_dir: Directory for the log file. ``ENROLLCORE_LOG_DIR`` wins when set,
            else this, else ``logs``.
        level: Level name. ``ENROLLCORE_LOG_LEVEL`` wins when set, else this,
            else INFO. Unknown names fall back to INFO.
        log_file: File name inside ``log_dir``.
        max_bytes: Rotation threshold.
        backup_count: Rotated files kept.
        console: Also write to stderr.

    Returns:
        The ``enrollcore`` logger.
    """
    directory = Path(os.environ.get("ENROLLCORE_LOG_DIR") or log_dir or "logs")
    directory.mkdir(parents=True, exist_ok=True)
    level_name = (os.environ.get("ENROLLCORE_LOG_LEVEL") or level or "INFO").upper()
    log_level = logging.getLevelName(level_name)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(log_level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    log_path = directory / log_file
    handlers: list[logging.Handler] = [
        RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler())

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    redactor = RedactingFilter()
    for handler in handlers:
        handler.setLevel(log_level)
        handler.setFormatter(formatter)
        handler.addFilter(redactor)
        logger.addHandler(handler)

    logger.info("Logging to %s at %s", log_path, logging.getLevelName(log_level))
    return logger
