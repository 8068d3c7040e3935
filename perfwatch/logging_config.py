"""
Logging Configuration for perfwatch.

Provides structured JSON logging or human-readable text logging for the
``perfwatch`` logger hierarchy.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, Optional

LOGGER_NAME = "perfwatch"

# Attributes every LogRecord has; anything else came in through ``extra=``
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "taskName",
}

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat()
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS and key not in log_data:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO",
    format: Literal["json", "text"] = "json",
    log_file: Optional[Path] = None,
) -> logging.Logger:
    """
    Configure logging for perfwatch.

    Args:
        level: Logging level
        format: Log format (json or text)
        log_file: Optional log file path

    Returns:
        Configured ``perfwatch`` logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level))

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter: logging.Formatter = (
        JSONFormatter() if format == "json" else logging.Formatter(TEXT_FORMAT)
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level))
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(getattr(logging, level))
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
