"""
kernelhub Logging — kernel-aware console output or JSON lines.

Features:
- Color formatter for dev mode (auto-detects TTY), tagging lines with the
  kernel they concern
- JSON structured formatter for log aggregation (KERNELHUB_LOG_FORMAT=json)
- Kernel context: records logged inside `kernel_log_context(...)` (including
  from tasks and executor threads started there) carry kernel_id/request_id
  without passing `extra`
- Configurable via KERNELHUB_LOG_LEVEL, KERNELHUB_LOG_COLOR, KERNELHUB_LOG_FORMAT

Structured log extra fields (pass via logger.info(..., extra={...})):
    kernel_id, mode, language, namespace, request_id, pool_key, attempt,
    duration_ms
"""

from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, TextIO

_RESET = "\033[0m"
_DIM = "\033[2m"
LEVEL_COLORS = {
    "DEBUG": "\033[36m",  # Cyan
    "INFO": "\033[32m",  # Green
    "WARNING": "\033[33m",  # Yellow
    "ERROR": "\033[31m",  # Red
    "CRITICAL": "\033[1;31m",  # Bold red
}

STRUCTURED_FIELDS = (
    "kernel_id",
    "mode",
    "language",
    "namespace",
    "request_id",
    "pool_key",
    "attempt",
    "duration_ms",
)

_kernel_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "kernelhub_log_context", default={}
)


@contextmanager
def kernel_log_context(**fields: Any) -> Iterator[None]:
    """Attach structured fields to every record logged in this context."""
    merged = {**_kernel_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _kernel_context.set(merged)
    try:
        yield
    finally:
        _kernel_context.reset(token)


class KernelContextFilter(logging.Filter):
    """Copy the active kernel context onto records that lack those fields."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _kernel_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class ColorFormatter(logging.Formatter):
    """
    Terminal formatter: `12:00:01 [kernelhub.kernel.pool] INFO: message`.

    Records about a kernel get a short `(kernel=1a2b3c4d)` tag.
    """

    def __init__(self, use_color: bool = True):
        super().__init__(datefmt="%H:%M:%S")
        self.use_color = use_color

    def _paint(self, text: str, color: str) -> str:
        return f"{color}{text}{_RESET}" if self.use_color else text

    def format(self, record: logging.LogRecord) -> str:
        level = self._paint(record.levelname, LEVEL_COLORS.get(record.levelname, ""))
        line = (
            f"{self.formatTime(record, self.datefmt)} "
            f"[{self._paint(record.name, _DIM)}] {level}: {record.getMessage()}"
        )
        kernel_id = getattr(record, "kernel_id", None)
        if kernel_id:
            line += " " + self._paint(f"(kernel={str(kernel_id)[:8]})", _DIM)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class StructuredFormatter(logging.Formatter):
    """JSON log formatter, one object per line.

    Fields from `extra={...}` or the active kernel context are lifted to
    the top level. Enable with: KERNELHUB_LOG_FORMAT=json
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }
        entry.update(
            (key, getattr(record, key)) for key in STRUCTURED_FIELDS if hasattr(record, key)
        )
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _should_use_color(stream: TextIO) -> bool:
    setting = os.getenv("KERNELHUB_LOG_COLOR", "auto").lower()
    if setting in ("true", "false"):
        return setting == "true"
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def setup_logging(stream: TextIO | None = None) -> logging.Handler:
    """Configure the root logger for a process embedding kernelhub.

    Logs go to stderr by default: stdout belongs to kernel output when the
    CLI streams it. Returns the installed handler.

    Env vars:
        KERNELHUB_LOG_LEVEL  — DEBUG / INFO / WARNING / ERROR (default: INFO)
        KERNELHUB_LOG_COLOR  — true / false / auto (default: auto, TTY detection)
        KERNELHUB_LOG_FORMAT — text / json (default: text)
    """
    stream = stream or sys.stderr
    level_name = os.getenv("KERNELHUB_LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    log_format = os.getenv("KERNELHUB_LOG_FORMAT", "text").lower()

    handler = logging.StreamHandler(stream)
    handler.setLevel(level)
    handler.addFilter(KernelContextFilter())
    handler.setFormatter(
        StructuredFormatter()
        if log_format == "json"
        else ColorFormatter(use_color=_should_use_color(stream))
    )

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    # asyncio logs every slow callback at DEBUG; kernel code is slow by nature
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logging.getLogger("kernelhub").debug(
        "Logging configured (level=%s, format=%s)", level_name, log_format
    )
    return handler
