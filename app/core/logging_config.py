"""
Logging setup for LookEscolar.

JSON lines for production log shipping, colored single lines for local work.
Every handler carries a ``RedactionFilter`` so access tokens and parent
emails never reach a log sink in the clear, whichever module logged them.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from app.core.audit import mask_path_tokens, mask_sensitive

# Attributes every LogRecord has; anything else came in through ``extra=``
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine", "aiosqlite")


def record_extras(record: logging.LogRecord) -> dict:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


def _mask_arg(value):
    return mask_path_tokens(value) if isinstance(value, str) else value


class RedactionFilter(logging.Filter):
    """Masks token paths in the message and its args, plus token-bearing extras, in place."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = mask_path_tokens(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(_mask_arg(arg) for arg in record.args)
        elif isinstance(record.args, dict):
            record.args = {key: _mask_arg(value) for key, value in record.args.items()}

        extras = record_extras(record)
        for key, value in mask_sensitive(extras).items():
            setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line, extras flattened into the top level."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        log_data.update(record_extras(record))
        return json.dumps(log_data, default=str)


class ColoredFormatter(logging.Formatter):
    """Terminal output for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"
    DIM = "\033[2m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        message = (
            f"{self.DIM}{timestamp}{self.RESET} "
            f"{color}{record.levelname:8}{self.RESET} "
            f"{self.DIM}{record.name}{self.RESET} - {record.getMessage()}"
        )
        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"
        return message


def _handler(handler: logging.Handler, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(RedactionFilter())
    return handler


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: str | None = None,
) -> None:
    """
    Configure the root logger.

    Args:
        level: Log level name
        json_format: JSON on stdout instead of colored text
        log_file: Optional extra file sink, always JSON
    """
    log_level = getattr(logging, level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_formatter = JSONFormatter() if json_format else ColoredFormatter()
    root_logger.addHandler(_handler(logging.StreamHandler(sys.stdout), log_level, console_formatter))
    if log_file:
        root_logger.addHandler(_handler(logging.FileHandler(log_file), log_level, JSONFormatter()))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
