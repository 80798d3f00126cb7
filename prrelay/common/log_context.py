"""
Log Context

Structured key=value log lines carried explicitly through each call chain.
A LogContext is immutable: ``bind`` returns a new context with extra fields,
so a job's trace/job/repo fields follow it without any process-wide state.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict, Optional

_MAX_VALUE_LEN = 160
_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


class LogContext:
    """Logger plus a frozen set of fields appended to every line"""

    def __init__(self, logger: logging.Logger, fields: Optional[Dict[str, Any]] = None):
        self._logger = logger
        self._fields: Dict[str, Any] = dict(fields or {})

    @classmethod
    def for_module(cls, name: str, **fields: Any) -> "LogContext":
        return cls(logging.getLogger(name), fields)

    @property
    def fields(self) -> Dict[str, Any]:
        return dict(self._fields)

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    def bind(self, **fields: Any) -> "LogContext":
        merged = dict(self._fields)
        merged.update(fields)
        return LogContext(self._logger, merged)

    def with_logger(self, name: str) -> "LogContext":
        """Same fields, different module logger"""
        return LogContext(logging.getLogger(name), self._fields)

    def debug(self, message: str, **fields: Any) -> None:
        self._log(logging.DEBUG, message, fields)

    def info(self, message: str, **fields: Any) -> None:
        self._log(logging.INFO, message, fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._log(logging.WARNING, message, fields)

    def error(self, message: str, **fields: Any) -> None:
        self._log(logging.ERROR, message, fields)

    def _log(self, level: int, message: str, fields: Dict[str, Any]) -> None:
        if not self._logger.isEnabledFor(level):
            return
        merged = dict(self._fields)
        merged.update(fields)
        self._logger.log(level, format_event(message, merged))


def format_event(message: str, fields: Dict[str, Any]) -> str:
    parts = [message]
    for key in sorted(fields):
        parts.append(f"{key}={_normalize(fields[key])}")
    return " ".join(parts)


def _normalize(value: Any) -> str:
    if value is None:
        text = "null"
    elif isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, (int, float)):
        text = str(value)
    elif isinstance(value, BaseException):
        text = f"{type(value).__name__}: {value}"
    else:
        text = " ".join(str(value).split())
        if len(text) > _MAX_VALUE_LEN:
            text = f"{text[:_MAX_VALUE_LEN]}..."
        if not text:
            text = "<empty>"

    if any(ch.isspace() for ch in text) or "=" in text:
        return json.dumps(text)
    return text


def configure_logging(level: str = "info") -> None:
    """Attach a single stderr handler to the ``prrelay`` logger tree"""
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        raise ValueError(f"Unsupported log level: {level!r}")

    logger = logging.getLogger("prrelay")
    logger.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(numeric)
