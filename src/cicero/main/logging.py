import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from rich.logging import RichHandler

from cicero.main.config import get_loglevel
from cicero.main.request_context import get_log_context

JSON_LOGS_ENABLED = os.getenv("JSON_LOGS", "true").lower() in {"1", "true", "yes", "on"}

# Attributes every LogRecord carries; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class ContextJSONFormatter(logging.Formatter):
    """One JSON object per line.

    Keys: timestamp, level, logger, message, then the bound log context
    (``run_id``, ``client_id``, ``outbox_id``), then ``extra`` fields, then
    ``exception`` when there is one. Context wins over a clashing extra.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(
                timespec="milliseconds"
            ),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in get_log_context().items():
            entry.setdefault(key, value)

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key.startswith("_") or value is None:
                continue
            entry.setdefault(key, value)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


for _name in ("sqlalchemy.engine", "sqlalchemy.pool", "sqlalchemy.orm", "sqlalchemy.dialects"):
    _sa_logger = logging.getLogger(_name)
    _sa_logger.setLevel(logging.WARNING)
    _sa_logger.propagate = False


def _build_handler(level: int) -> logging.Handler:
    if JSON_LOGS_ENABLED:
        handler: logging.Handler = logging.StreamHandler(stream=sys.stdout)
        handler.setFormatter(ContextJSONFormatter())
    else:
        handler = RichHandler(rich_tracebacks=True, markup=False, show_path=False)
    handler.setLevel(level)
    return handler


class SimpleLogger(logging.Logger):
    """Logger with its own handler, so worker output does not depend on root config."""

    def __init__(self, name: str = "cicero", level: int = logging.INFO):
        super().__init__(name, level)
        self.addHandler(_build_handler(level))


def get_logger(module_name: str) -> SimpleLogger:
    return SimpleLogger(name=module_name, level=get_loglevel())
