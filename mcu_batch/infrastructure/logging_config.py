"""Structured logging configuration.

JSON lines for production runs, human-readable lines for development.
Batch context (batch_id, encounter_id, actor) passed through ``extra`` is
carried into the JSON output, as is the worker thread name so per-item
writes from the fan-out pool can be told apart.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

# Extra attributes copied into JSON output when present on a record
CONTEXT_FIELDS = ("batch_id", "encounter_id", "actor", "type_id", "operation")

# Driver loggers that are noisy at INFO
QUIET_LOGGERS = ("duckdb", "psycopg2")

TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] %(message)s'


class StructuredFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        log_data: Dict[str, Any] = {
            "timestamp": timestamp.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
            "location": f"{record.module}:{record.lineno}",
        }
        log_data.update({
            name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)
        })
        log_data.update(getattr(record, "extra_fields", None) or {})

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def _build_formatter(use_json: bool) -> logging.Formatter:
    if use_json:
        return StructuredFormatter()
    return logging.Formatter(TEXT_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')


def setup_logging(use_json: bool = False, log_level: str = "INFO") -> None:
    """Configure the root logger for the CLI or an embedding service.

    Parameters:
        use_json: Use JSON formatting (for production)
        log_level: Logging level name; unknown names fall back to INFO
    """
    level = getattr(logging, str(log_level).upper(), None)
    if not isinstance(level, int):
        level = logging.INFO

    # stderr keeps stdout free for the CLI's result tables
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(_build_formatter(use_json))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
