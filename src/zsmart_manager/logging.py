"""
Logging setup for the Z Smart Server manager.

Two output styles are supported:
- plain text lines for interactive terminal use (the default)
- JSON objects, one per line, for unattended runs whose output is collected
  by journald or a log shipper

Module loggers are obtained with get_logger(__name__) and pass structured
context through the standard `extra` parameter.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from zsmart_manager.config import LoggingConfig

ROOT_LOGGER_NAME = "zsmart_manager"

DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

# Attributes present on every LogRecord; anything else came from `extra`
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JSONFormatter(logging.Formatter):
    """
    A logging formatter that outputs log records as JSON objects.

    Each log record is formatted with the fields timestamp, level, logger and
    message, plus any fields supplied through `extra`.
    """

    def format(self, record: logging.LogRecord) -> str:
        """
        Format the log record as a JSON string.

        Args:
            record: The log record to format.

        Returns:
            JSON-formatted string representation of the log record.
        """
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in set(record.__dict__.keys()) - _RESERVED_RECORD_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    level: str = "INFO",
    json_format: bool = False,
    log_to_stdout: bool = True,
    log_file: Path | str | None = None,
) -> logging.Logger:
    """
    Configure logging for the manager.

    Args:
        config: Optional LoggingConfig. If provided, overrides the keyword
            parameters.
        level: Log level if no config is provided.
        json_format: Whether to emit JSON lines instead of plain text.
        log_to_stdout: Whether to log to stdout.
        log_file: Optional file path that receives a copy of every record.

    Returns:
        The package root logger.

    Example:
        >>> from zsmart_manager.logging import setup_logging
        >>> logger = setup_logging(level="DEBUG")
        >>> logger.info("Manager started", extra={"directory": "/srv/app"})
    """
    if config is not None:
        level = config.level
        json_format = config.json_format
        log_to_stdout = config.log_to_stdout
        log_file = config.log_file

    log_level = getattr(logging, level.upper(), logging.INFO)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates on re-configuration
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter: logging.Formatter = (
        JSONFormatter() if json_format else logging.Formatter(DEFAULT_LOG_FORMAT)
    )

    if log_to_stdout:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setLevel(log_level)
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setLevel(log_level)
        # Files are always machine-readable
        file_handler.setFormatter(JSONFormatter())
        logger.addHandler(file_handler)

    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a specific module.

    Args:
        name: The name for the logger, typically __name__ of the calling module.
            The "zsmart_manager." prefix is added automatically if not present.

    Returns:
        A child logger of the package root logger.
    """
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"

    return logging.getLogger(name)
