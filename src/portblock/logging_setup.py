import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, TextIO


# Record attributes carried into the output when a logger sets them
CONTEXT_FIELDS = ("first_port", "block", "port", "ports", "event", "details")

LOG_FORMATS = ("json", "text")


def _context(record: logging.LogRecord, fields: Iterable[str]) -> dict[str, Any]:
    return {
        field: getattr(record, field)
        for field in fields
        if getattr(record, field, None) is not None
    }


def _timestamp(record: logging.LogRecord) -> str:
    ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.%f") + "Z"


class JSONFormatter(logging.Formatter):
    """One JSON object per line with the port context of the record."""

    def __init__(self, fields: Iterable[str] = CONTEXT_FIELDS):
        super().__init__()
        self.fields = tuple(fields)

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            **_context(record, self.fields),
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, separators=(",", ":"))


class TextFormatter(logging.Formatter):
    """Human readable lines: `<ts> LEVEL logger: msg key=value ...`."""

    def __init__(self, fields: Iterable[str] = CONTEXT_FIELDS):
        super().__init__()
        self.fields = tuple(fields)

    def format(self, record: logging.LogRecord) -> str:
        line = f"{_timestamp(record)} {record.levelname:<8} {record.name}: {record.getMessage()}"
        context = _context(record, self.fields)
        if context:
            line += " " + " ".join(f"{k}={v}" for k, v in context.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str = "INFO", stream: Optional[TextIO] = None, fmt: str = "json") -> None:
    """Replace the root handlers with a single formatted stream handler.

    Logs go to stdout unless another stream is given. The CLI passes stderr
    so that port numbers printed on stdout stay machine readable.
    """
    if fmt not in LOG_FORMATS:
        raise ValueError(f"Unknown log format: {fmt}")

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream if stream is not None else sys.stdout)
    handler.setFormatter(JSONFormatter() if fmt == "json" else TextFormatter())
    root_logger.addHandler(handler)


class ContextualLogger:
    """Logger wrapper that attaches port context to every record."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)
        self.context: dict[str, Any] = {}

    def bind(self, **kwargs) -> "ContextualLogger":
        """Create a new logger with additional context."""
        new_logger = ContextualLogger(self.logger.name)
        new_logger.context = {**self.context, **kwargs}
        return new_logger

    def _log(self, level: int, msg: str, *args, exc_info=None, **kwargs):
        extra = {**self.context, **kwargs}
        self.logger.log(level, msg, *args, extra=extra, exc_info=exc_info)

    def debug(self, msg: str, *args, **kwargs):
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs):
        """Log at ERROR with the active exception's traceback."""
        self._log(logging.ERROR, msg, *args, exc_info=True, **kwargs)

    def critical(self, msg: str, *args, **kwargs):
        self._log(logging.CRITICAL, msg, *args, **kwargs)


def get_logger(name: str) -> ContextualLogger:
    """Get a contextual logger for the given name."""
    return ContextualLogger(name)
