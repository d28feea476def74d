"""
Logging configuration for Engine Agent.

The process driver calls ``configure_logging()`` once at startup and
``shutdown_logging()`` before exit. Components receive their logger at
construction time; ``get_logger()`` hands out children of the agent logger.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Union

ROOT_LOGGER_NAME = "engine-agent"

_TEXT_FORMAT = "[%(asctime)s] [%(name)s] [%(levelname)s] %(message)s"


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with any ``extra`` fields merged in."""

    _RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": self.formatTime(record),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in self._RESERVED and not key.startswith("_"):
                entry[key] = value
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get a logger under the agent namespace.

    Args:
        name: Child name (e.g. ``"engine"``). If None, returns the agent logger.

    Returns:
        Logger instance. Handlers live on the agent logger only.
    """
    if not name or name == ROOT_LOGGER_NAME:
        return logging.getLogger(ROOT_LOGGER_NAME)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def configure_logging(
    level: Union[str, int] = "INFO",
    log_file: Optional[str] = None,
    log_format: str = "text",
) -> logging.Logger:
    """
    Configure the agent logger with a console handler and an optional file handler.

    Args:
        level: Log level name or number.
        log_file: Path of a log file. Falls back to the ``LOG_FILE`` environment variable.
        log_format: ``"text"`` or ``"json"``.

    Returns:
        The configured agent logger.
    """
    logger_instance = logging.getLogger(ROOT_LOGGER_NAME)
    shutdown_logging()

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger_instance.setLevel(level)
    logger_instance.propagate = False

    if log_format == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(_TEXT_FORMAT)

    log_file = log_file or os.environ.get("LOG_FILE")
    if log_file:
        try:
            path = Path(log_file)
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(path)
            file_handler.setFormatter(formatter)
            logger_instance.addHandler(file_handler)
        except OSError as e:
            # If file logging fails, just use console
            print(f"Warning: Could not set up file logging: {e}", file=sys.stderr)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger_instance.addHandler(console_handler)

    return logger_instance


def shutdown_logging() -> None:
    """Flush and detach every handler of the agent logger."""
    logger_instance = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(logger_instance.handlers):
        try:
            handler.flush()
            handler.close()
        except (OSError, ValueError):
            # stream already closed underneath the handler
            pass
        finally:
            logger_instance.removeHandler(handler)


__all__ = ["JsonFormatter", "configure_logging", "get_logger", "shutdown_logging", "ROOT_LOGGER_NAME"]
