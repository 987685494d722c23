"""
Centralized logging manager for the service.

Usage:
- Use get_logger() to obtain a logger instance.
  Logs always go to the console; when LOG_FILE is configured they are also
  appended to that file.
- Pass a prefix (e.g. "[WebAuthn Challenge]") to tag every message emitted
  through that logger.
"""

import logging
import os
import sys

from passkey_service.config import settings

LOG_LEVEL: str = os.getenv("LOG_LEVEL", settings.LOG_LEVEL).upper()
LOG_FILE: str = os.getenv("LOG_FILE", settings.LOG_FILE or "")
LOG_FORMAT: str = "[%(asctime)s] %(levelname)s in %(name)s: %(message)s"


class PrefixFilter(logging.Filter):
    """Prepend a fixed tag to every record passing through a logger."""

    def __init__(self, prefix: str):
        super().__init__()
        self.prefix = prefix

    def filter(self, record: logging.LogRecord) -> bool:
        if self.prefix and not getattr(record, "_prefix_applied", False):
            record.msg = f"{self.prefix} {record.msg}"
            record._prefix_applied = True
        return True


def _ensure_console_handler(logger: logging.Logger, formatter: logging.Formatter) -> bool:
    """
    Ensure logger has a StreamHandler for console output.

    Args:
        logger: The logger instance to check and modify
        formatter: The formatter to apply to the StreamHandler

    Returns:
        bool: True if a new StreamHandler was added, False if one already existed
    """
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler) and handler.stream is sys.stdout:
            return False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logger.level)
    logger.addHandler(console_handler)
    return True


def _ensure_file_handler(logger: logging.Logger, formatter: logging.Formatter, log_file: str) -> bool:
    target = os.path.abspath(log_file)
    if any(isinstance(h, logging.FileHandler) and getattr(h, "baseFilename", None) == target for h in logger.handlers):
        return False

    directory = os.path.dirname(target)
    if directory:
        os.makedirs(directory, exist_ok=True)
    file_handler = logging.FileHandler(target, encoding="utf-8")
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    return True


def get_logger(name: str = "Passkey_Service", prefix: str = "") -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    logger.propagate = False

    formatter = logging.Formatter(LOG_FORMAT)

    if _ensure_console_handler(logger, formatter):
        logger.debug("[LoggingManager] Console StreamHandler attached to logger '%s'", name)

    if LOG_FILE and _ensure_file_handler(logger, formatter, LOG_FILE):
        logger.debug("[LoggingManager] FileHandler attached to logger '%s' (%s)", name, LOG_FILE)

    if prefix and not any(isinstance(f, PrefixFilter) and f.prefix == prefix for f in logger.filters):
        logger.addFilter(PrefixFilter(prefix))

    return logger
