"""
Logging configuration for netfault.

Provides a consistent format across all modules with:
- Human-readable output for interactive campaigns
- JSON line output for machine consumption
- Run ID tracking so every line emitted during a scenario names its run
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import UTC, datetime

# Run ID of the scenario currently being executed
current_run_id: ContextVar[str | None] = ContextVar("current_run_id", default=None)


class NetfaultFormatter(logging.Formatter):
    """
    Formatter for netfault logs.

    Includes timestamp, level, module, run_id (if set), and message.
    """

    def format(self, record: logging.LogRecord) -> str:
        record.timestamp = datetime.now(UTC).isoformat()

        run_id = current_run_id.get()
        record.run_id = f"[{run_id}] " if run_id else ""

        return super().format(record)


class JsonFormatter(NetfaultFormatter):
    """Formatter emitting one JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        super().format(record)

        entry = {
            "timestamp": record.timestamp,
            "level": record.levelname,
            "module": record.name,
            "run_id": current_run_id.get(),
            "message": record.getMessage(),
        }
        for key in ("scenario", "state", "targets", "error_type"):
            if hasattr(record, key):
                entry[key] = getattr(record, key)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", json_output: bool = False) -> logging.Logger:
    """
    Configure logging for netfault.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, emit one JSON object per line

    Returns:
        Configured root logger
    """
    root = logging.getLogger()
    root.handlers.clear()

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root.setLevel(numeric_level)

    # stdout belongs to command output
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(numeric_level)

    if json_output:
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = NetfaultFormatter(
            "%(timestamp)s | %(levelname)-8s | %(name)s | %(run_id)s%(message)s"
        )
    handler.setFormatter(formatter)
    root.addHandler(handler)

    return root


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a specific module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def set_run_id(run_id: str) -> None:
    """Set the current run ID for log correlation."""
    current_run_id.set(run_id)


def clear_run_id() -> None:
    """Clear the current run ID."""
    current_run_id.set(None)
