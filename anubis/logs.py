"""Structured JSON logging and a filter for noisy HTTP server errors."""

from __future__ import annotations

import json
import logging
import re
import sys
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, TextIO

_SLOG_LEVELS = {"DEBUG": -4, "INFO": 0, "WARN": 4, "ERROR": 8}
_LEVEL_RE = re.compile(r"^(DEBUG|INFO|WARN|ERROR)([+-]\d+)?$", re.IGNORECASE)
_SUPPRESSED = "context canceled"

_json_handler: logging.Handler | None = None


class ErrorLogFilter:
    """A writable stream that drops messages about cancelled requests.

    Everything else is forwarded to ``unwrap``; with no ``unwrap`` the data
    is discarded.
    """

    def __init__(self, unwrap: TextIO | None = None) -> None:
        self.unwrap = unwrap

    def write(self, data: str) -> int:
        if _SUPPRESSED in data:
            return len(data)
        if self.unwrap is not None:
            self.unwrap.write(data)
        return len(data)

    def flush(self) -> None:
        if self.unwrap is not None and hasattr(self.unwrap, "flush"):
            self.unwrap.flush()


def _parse_slog_level(text: str) -> int:
    match = _LEVEL_RE.match(text.strip())
    if match is None:
        raise ValueError(f"slog: level string {text!r}: unknown name")
    base = _SLOG_LEVELS[match.group(1).upper()]
    offset = int(match.group(2)) if match.group(2) else 0
    return base + offset


def _python_level(slog_level: int) -> int:
    return max(1, 20 + (slog_level * 10) // 4)


def _level_name(levelno: int) -> str:
    slog_level = round((levelno - 20) * 4 / 10)
    for name, base in sorted(_SLOG_LEVELS.items(), key=lambda item: -item[1]):
        if slog_level >= base:
            offset = slog_level - base
            return name if offset == 0 else f"{name}{offset:+d}"
    offset = slog_level - _SLOG_LEVELS["DEBUG"]
    return f"DEBUG{offset:+d}"


class _JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "time": datetime.fromtimestamp(record.created, timezone.utc).astimezone().isoformat(),
            "level": _level_name(record.levelno),
            "source": {
                "function": record.funcName,
                "file": record.pathname,
                "line": record.lineno,
            },
            "msg": record.getMessage(),
        }
        payload.update(getattr(record, "attrs", {}))
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class _AttrLogger(logging.LoggerAdapter):
    """A logger carrying key/value attributes into every record."""

    def process(self, msg, kwargs):
        extra = dict(kwargs.get("extra") or {})
        attrs = dict(self.extra)
        attrs.update(extra.get("attrs", {}))
        extra["attrs"] = attrs
        kwargs["extra"] = extra
        return msg, kwargs

    def with_attrs(self, **attrs: Any) -> "_AttrLogger":
        merged = dict(self.extra)
        merged.update(attrs)
        return _AttrLogger(self.logger, merged)


def init_logging(level: str) -> int:
    """Send JSON logs to stderr at ``level`` and return the level applied.

    Unknown level names fall back to INFO with a notice on stderr.
    """
    global _json_handler
    try:
        python_level = _python_level(_parse_slog_level(level))
    except ValueError as err:
        print(f"invalid log level {level}: {err}, using info", file=sys.stderr)
        python_level = logging.INFO

    root = logging.getLogger()
    if _json_handler is not None:
        root.removeHandler(_json_handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JSONFormatter())
    root.addHandler(handler)
    root.setLevel(python_level)
    _json_handler = handler
    return python_level


def _header(headers: Mapping[str, str], name: str) -> str:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return ""


def get_request_logger(headers: Mapping[str, str]) -> _AttrLogger:
    """Return a logger annotated with the identifying headers of a request."""
    return _AttrLogger(
        logging.getLogger("anubis"),
        {
            "user_agent": _header(headers, "User-Agent"),
            "accept_language": _header(headers, "Accept-Language"),
            "priority": _header(headers, "Priority"),
            "x-forwarded-for": _header(headers, "X-Forwarded-For"),
            "x-real-ip": _header(headers, "X-Real-Ip"),
        },
    )


def get_filtered_http_logger() -> logging.Logger:
    """Return a stderr logger for the HTTP server that hides cancelled requests."""
    logger = logging.getLogger("anubis.http")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    handler = logging.StreamHandler(ErrorLogFilter(sys.stderr))
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return logger