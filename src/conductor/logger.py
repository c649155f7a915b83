"""Logging helpers for conductor."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

__all__ = ["setup_logger", "get_logger"]

ROOT_LOGGER_NAME = "conductor"
CONSOLE_FORMAT = "[%(levelname).1s] %(message)s"
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 3


def setup_logger(
    name: str = ROOT_LOGGER_NAME,
    verbose: bool = False,
    log_file: str | Path | None = None,
) -> logging.Logger:
    """Configure and return the package logger.

    Args:
        name: Logger name; defaults to the package root so module loggers inherit it.
        verbose: ``True`` enables DEBUG output; ``False`` keeps output at WARNING+.
        log_file: Optional path for a rotating file log. Empty or ``None`` disables it.
    """
    logger = logging.getLogger(name)
    level = logging.DEBUG if verbose else logging.WARNING

    # Reconfigure safely if setup_logger is called more than once.
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(level)
    logger.propagate = False

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a logger by name without changing its configuration."""
    return logging.getLogger(name)
