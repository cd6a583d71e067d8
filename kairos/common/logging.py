"""
Logging for the Kairos proactive service.

The service logger is "kairos.<service>". The engine modules (loops, store,
router) log under their import path, "kairos.services.*", and get the same
handler so one process writes one stream.

Tick and reminder correlation travels in `extra`:

    logger.info("Decision: ...", extra={"tick_id": tick_id})
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Union

ENGINE_LOGGER = "kairos.services"

# Correlation fields passed through `extra`
CONTEXT_FIELDS = ("tick_id", "reminder_id", "reason", "topic", "endpoint", "duration_ms")


def _context(record: logging.LogRecord) -> dict:
    return {key: getattr(record, key) for key in CONTEXT_FIELDS if hasattr(record, key)}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, stamped with the record's own time."""

    def format(self, record):
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service_name", record.name),
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0]:
            log_data["exception"] = self.formatException(record.exc_info)
        log_data.update(_context(record))
        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines; tick and reminder ids are appended when present."""

    def __init__(self, service_name: str):
        super().__init__(
            f"%(asctime)s [{service_name}] %(levelname)s %(name)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record):
        line = super().format(record)
        ids = [f"{key}={getattr(record, key)}" for key in ("tick_id", "reminder_id") if hasattr(record, key)]
        if ids:
            line = f"{line} [{' '.join(ids)}]"
        return line


def parse_level(level: Union[int, str]) -> int:
    """Accept 10 or "debug"; anything unknown means INFO."""
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).strip().upper())
    return value if isinstance(value, int) else logging.INFO


def setup_logging(
    service_name: str,
    level: Union[int, str] = logging.INFO,
    json_output: bool = False,
) -> logging.Logger:
    """Set up logging for a service.

    Args:
        service_name: Name of the service (e.g., "proactive")
        level: Logging level, as a number or a name such as "debug"
        json_output: If True, use JSON format. If False, use human-readable format.

    Returns:
        The "kairos.<service_name>" logger. The engine loggers share its handler.
    """
    level = parse_level(level)
    logger = logging.getLogger(f"kairos.{service_name}")
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)
        handler.setFormatter(JSONFormatter() if json_output else TextFormatter(service_name))
        logger.addHandler(handler)

    engines = logging.getLogger(ENGINE_LOGGER)
    if not engines.handlers:
        engines.setLevel(level)
        for handler in logger.handlers:
            engines.addHandler(handler)

    return logger
