"""
Logging setup for drain / replay runs.

Human-readable lines go to stderr (stdout carries the run summary); an
optional file receives one JSON object per line. Loggers obtained through
``get_logger`` accept keyword context that ends up as ``key=value`` on the
console and as top-level keys in JSON.
"""
import json
import logging
import logging.config
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

PACKAGE_LOGGER = "mqbackup"
# Client libraries that log every connection/channel event at INFO.
QUIET_LIBRARIES = ("pika",)

CONSOLE_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
CONSOLE_DATEFMT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5


def _context(record: logging.LogRecord) -> Dict[str, Any]:
    return getattr(record, "context", None) or {}


class JSONFormatter(logging.Formatter):
    """One JSON document per record; context fields are merged at top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
        }
        entry.update(_context(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ContextFormatter(logging.Formatter):
    """Plain console format with structured fields appended as key=value."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = _context(record)
        if fields:
            line += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        return line


class StructuredLogger:
    """Thin wrapper so call sites can write ``logger.info("msg", queue=q)``."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _emit(self, level: int, message: str, exc_info: bool, fields: Dict[str, Any]) -> None:
        if not self.logger.isEnabledFor(level):
            return
        context = {k: v for k, v in fields.items() if v is not None}
        self.logger.log(level, message, exc_info=exc_info, extra={"context": context}, stacklevel=3)

    def debug(self, message: str, **fields):
        self._emit(logging.DEBUG, message, False, fields)

    def info(self, message: str, **fields):
        self._emit(logging.INFO, message, False, fields)

    def warning(self, message: str, **fields):
        self._emit(logging.WARNING, message, False, fields)

    def error(self, message: str, exc_info: bool = False, **fields):
        self._emit(logging.ERROR, message, exc_info, fields)


def _logging_config(level: str, handlers: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    names = list(handlers)
    loggers = {PACKAGE_LOGGER: {"level": level, "handlers": names, "propagate": False}}
    for library in QUIET_LIBRARIES:
        loggers[library] = {"level": "WARNING", "handlers": names, "propagate": False}
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {"()": ContextFormatter, "fmt": CONSOLE_FORMAT, "datefmt": CONSOLE_DATEFMT},
            "json": {"()": JSONFormatter},
        },
        "handlers": handlers,
        "loggers": loggers,
        "root": {"level": "WARNING", "handlers": names},
    }


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True
) -> None:
    """
    (Re)configure logging for a run.

    Args:
        log_level: Level for the package loggers (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path for JSON lines output (rotated at 10MB)
        enable_console: Log to stderr
    """
    level = log_level.upper()
    handlers: Dict[str, Dict[str, Any]] = {}

    if enable_console:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "stream": sys.stderr,
            "formatter": "console",
        }

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": log_file,
            "maxBytes": LOG_FILE_MAX_BYTES,
            "backupCount": LOG_FILE_BACKUPS,
            "encoding": "utf-8",
            "formatter": "json",
        }

    logging.config.dictConfig(_logging_config(level, handlers))


def get_logger(name: str) -> StructuredLogger:
    """Structured logger namespaced under the package logger."""
    if name != PACKAGE_LOGGER and not name.startswith(PACKAGE_LOGGER + "."):
        name = f"{PACKAGE_LOGGER}.{name}"
    return StructuredLogger(name)


def log_run_event(event_type: str, operation: str, **details) -> None:
    """Run lifecycle line (``run_started`` / ``run_finished``) on ``mqbackup.runs``."""
    get_logger("runs").info(f"{operation} {event_type}", event=event_type, operation=operation, **details)
