"""Centralized logging configuration for the application."""
from __future__ import annotations

import hashlib
import logging
import logging.handlers
import os
import time

from crm.core.config import settings

SECURITY_LOGGER_NAME = "crm.security"


def setup_logging() -> None:
    """Configure application and uvicorn loggers with sane defaults."""
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    os.makedirs("logs", exist_ok=True)
    formatter = logging.Formatter(
        "%(asctime)sZ | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    logging.Formatter.converter = time.gmtime

    file_handler = logging.handlers.RotatingFileHandler(
        "logs/app.log",
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [file_handler, stream_handler]

    # Explicit security logger with same handlers for quick filtering.
    security_logger = logging.getLogger(SECURITY_LOGGER_NAME)
    security_logger.setLevel(log_level)
    security_logger.propagate = True

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(log_level)


def get_security_logger() -> logging.Logger:
    return logging.getLogger(SECURITY_LOGGER_NAME)


def anonymize(value: str | None) -> str:
    """Short, stable digest used instead of e-mails or tokens in log lines."""
    if not value:
        return "none"
    return hashlib.sha256(value.strip().lower().encode()).hexdigest()[:12]


__all__ = ["SECURITY_LOGGER_NAME", "anonymize", "get_security_logger", "setup_logging"]
