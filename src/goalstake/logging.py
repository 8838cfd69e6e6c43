"""Structured logging configuration for goalstake."""

import json
import logging
import sys
from typing import Any


def setup_logging(
    level: int = logging.INFO,
    json_format: bool = False,
) -> logging.Logger:
    """
    Configure logging for the escrow client.

    Args:
        level: Logging level (default: INFO)
        json_format: If True, output JSON-formatted logs

    Returns:
        Configured root ``goalstake`` logger
    """
    logger = logging.getLogger("goalstake")
    logger.setLevel(level)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)

    if json_format:
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    return logger


class JsonFormatter(logging.Formatter):
    """JSON log formatter; fields passed via ``extra={"fields": {...}}`` are merged in."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            log_data.update(fields)

        return json.dumps(log_data, default=str)


def get_logger(name: str | None = None) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name (will be prefixed with 'goalstake.')

    Returns:
        Logger instance
    """
    if name:
        return logging.getLogger(f"goalstake.{name}")
    return logging.getLogger("goalstake")
