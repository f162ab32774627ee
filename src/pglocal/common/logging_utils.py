"""Logging helpers shared by every pglocal module.

Modules log through ``logging.getLogger(__name__)``; structured DEBUG traces
attach their fields with ``extra=extra_context(...)`` and the formatter
installed by :func:`configure_logging` renders them as ``key=value`` pairs.
"""
from __future__ import annotations

import logging
import os
import re
import time
from typing import Any, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

from pglocal.constants import Constants

STRUCTURED_FIELDS = (
    "event",
    "component",
    "action",
    "outcome",
    "target",
    "attempt",
    "status_code",
    "duration_ms",
    "key",
    "version",
    "pid",
)

_SECRET_PATTERNS = [
    re.compile(r"(password=)[^\s&]+", re.IGNORECASE),
    re.compile(r"(--password[= ])\S+", re.IGNORECASE),
    re.compile(r"(Bearer )\S+"),
    re.compile(r"(postgres(?:ql)?://[^:/@\s]+:)[^@\s]+(@)"),
]


class StructuredFormatter(logging.Formatter):
    """Formatter that appends known structured extras to DEBUG records."""

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        if record.levelno > logging.DEBUG:
            return text
        pairs = [
            f"{name}={getattr(record, name)}"
            for name in STRUCTURED_FIELDS
            if getattr(record, name, None) is not None
        ]
        if pairs:
            text = f"{text} [{' '.join(pairs)}]"
        return text


def configure_logging(level: Optional[str] = None, logfile: Optional[str] = None) -> None:
    """Configure the root logger for CLI use.

    Level precedence: explicit argument, then ``PGLOCAL_LOG_LEVEL``, then WARNING.
    """
    level_name = (level or os.environ.get(Constants.ENV_LOG_LEVEL) or "WARNING").upper()
    level_value = getattr(logging, level_name, logging.WARNING)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console = logging.StreamHandler()
    console.setFormatter(StructuredFormatter(Constants.LOG_FORMAT))
    root.addHandler(console)

    if logfile:
        file_handler = logging.FileHandler(logfile)
        file_handler.setFormatter(StructuredFormatter(Constants.LOG_FILE_FORMAT))
        root.addHandler(file_handler)

    root.setLevel(level_value)


def extra_context(**fields: Any) -> Dict[str, Any]:
    """Build an ``extra`` mapping for a log call, dropping unset fields."""
    return {name: value for name, value in fields.items() if value is not None}


def is_debug_enabled(logger: logging.Logger) -> bool:
    return logger.isEnabledFor(logging.DEBUG)


def safe_url(url: str) -> str:
    """Strip userinfo and query string so URLs can be logged."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return "<invalid url>"
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit((parts.scheme, host, parts.path, "", ""))


def redact(text: str) -> str:
    """Mask passwords and tokens in free-form text such as command lines."""
    for pattern in _SECRET_PATTERNS:
        if pattern.groups == 2:
            text = pattern.sub(r"\1***\2", text)
        else:
            text = pattern.sub(r"\1***", text)
    return text


class Timer:
    """Context manager measuring elapsed wall time."""

    def __init__(self) -> None:
        self._start = 0.0
        self._end: Optional[float] = None

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        self._end = None
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self._end = time.perf_counter()

    def duration_ms(self) -> int:
        end = self._end if self._end is not None else time.perf_counter()
        return int((end - self._start) * 1000)
