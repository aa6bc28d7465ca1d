"""
Structured event logging for the tubepool service.

Every module gets its logger through get_logger(component, module) and logs
dotted event names with keyword context:

    log = get_logger("tubepool", "cache")
    log.info("tubepool.cache.hit", tab="home", page=0)

Records go through the standard logging module, so handlers and levels are
configured in one place by configure_logging().
"""

import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

_CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value if value and " " not in value else repr(value)
    return str(value)


class StructuredLogger:
    """Thin wrapper that turns (event, **fields) calls into log records."""

    def __init__(self, component: str, module: str):
        self.component = component
        self.module = module
        self._logger = logging.getLogger(f"{component}.{module}")

    def _log(self, level: int, event: str, fields: dict, exc_info=None):
        if not self._logger.isEnabledFor(level):
            return
        rendered = " ".join(f"{k}={_render(v)}" for k, v in fields.items())
        message = f"{event} {rendered}" if rendered else event
        self._logger.log(
            level,
            message,
            exc_info=exc_info,
            extra={"event": event, "fields": fields},
        )

    def debug(self, event: str, **fields):
        self._log(logging.DEBUG, event, fields)

    def info(self, event: str, **fields):
        self._log(logging.INFO, event, fields)

    def warning(self, event: str, **fields):
        self._log(logging.WARNING, event, fields)

    def error(self, event: str, **fields):
        self._log(logging.ERROR, event, fields)

    def exception(self, exc: BaseException, event: str, context: Optional[dict] = None):
        """Log an exception with its traceback and type."""
        fields = dict(context or {})
        fields["error_type"] = type(exc).__name__
        fields["error"] = str(exc)
        self._log(logging.ERROR, event, fields, exc_info=(type(exc), exc, exc.__traceback__))


class JsonLinesFormatter(logging.Formatter):
    """One JSON object per line, for the optional log file."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "event": getattr(record, "event", record.getMessage()),
        }
        fields = getattr(record, "fields", None)
        if fields:
            entry.update({k: v for k, v in fields.items() if k not in entry})
        if record.exc_info:
            entry["traceback"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO", log_file: Optional[str] = None):
    """Install console (and optional JSON-lines file) handlers on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    for handler in list(root.handlers):
        if getattr(handler, "_tubepool", False):
            root.removeHandler(handler)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
    console._tubepool = True
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(JsonLinesFormatter())
        file_handler._tubepool = True
        root.addHandler(file_handler)


def get_logger(component: str, module: str) -> StructuredLogger:
    """Get a structured logger for a component module."""
    return StructuredLogger(component, module)
