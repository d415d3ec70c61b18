"""
Vault Indexer - Structured Logging

Production output is one JSON object per line; development output is a
colored single line. Both carry the fields bound with LogContext, so every
line written while polling one event type names that type and the cycle's
run id.

Usage:
    import logging
    from vault_indexer.core.logging import LogContext, Timer, new_run_id

    logger = logging.getLogger(__name__)

    with LogContext(run_id=new_run_id(), event_type=key), Timer() as t:
        logger.info("Polling page")
    logger.info("Page done", extra={"duration_ms": t.elapsed_ms})
"""

from __future__ import annotations

import json
import logging
import re
import sys
import time
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Mapping
from uuid import uuid4

from pydantic import BaseModel

_context: ContextVar[Mapping[str, Any]] = ContextVar("vault_indexer_log_context", default={})


def new_run_id() -> str:
    """Short correlation id for one poll cycle."""
    return uuid4().hex[:12]


def get_run_id() -> str | None:
    return _context.get().get("run_id")


@contextmanager
def LogContext(**fields: Any) -> Iterator[None]:
    """
    Bind ``fields`` to every log record emitted inside the block.

    Nested blocks inherit and may override outer fields; the outer binding is
    restored on exit, including when the block raises or is cancelled.
    """
    merged = {**_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _context.set(merged)
    try:
        yield
    finally:
        _context.reset(token)


# =============================================================================
# Redaction
# =============================================================================

_SECRET_KEY = re.compile(r"password|secret|api_?key|token|auth|credential|database_url|dsn", re.I)


def redact_sensitive(data: Any, max_depth: int = 10) -> Any:
    """Replace values under secret-looking keys with ``[REDACTED]``, recursively."""
    if max_depth <= 0:
        return "[MAX_DEPTH_EXCEEDED]"
    if isinstance(data, BaseModel):
        data = data.model_dump()
    if isinstance(data, Mapping):
        return {
            k: "[REDACTED]" if _SECRET_KEY.search(str(k)) else redact_sensitive(v, max_depth - 1)
            for k, v in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact_sensitive(v, max_depth - 1) for v in data]
    return data


# =============================================================================
# Formatters
# =============================================================================

# `extra=` keys copied onto the JSON line
EXTRA_KEYS = frozenset(
    {
        "event_type",
        "event_kind",
        "tx_digest",
        "event_seq",
        "request_id",
        "vault_id",
        "applied",
        "has_more",
        "count",
        "stage",
        "duration_ms",
        "delay_s",
        "status",
        "status_code",
        "method",
        "path",
        "error_type",
    }
)


class StructuredJsonFormatter(logging.Formatter):
    """
    One JSON object per record:

        {"timestamp": "...", "level": "INFO", "logger": "vault_indexer.indexer.coordinator",
         "message": "Cursor advanced to tx:4 after applying 5 events",
         "service": "vault-indexer", "run_id": "3f9c0a1b2d4e",
         "event_type": "0x2::bucky_bank::DepositMade", "applied": 5}
    """

    def __init__(self, service: str | None = None, redact: bool = True):
        super().__init__()
        self.service = service
        self.redact = redact

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.service:
            entry["service"] = self.service
        entry.update(_context.get())
        entry.update(
            (key, value)
            for key, value in record.__dict__.items()
            if key in EXTRA_KEYS and value is not None
        )

        if record.exc_info:
            exc_type, exc, tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc) if exc else None,
                "traceback": traceback.format_exception(exc_type, exc, tb),
            }

        if self.redact:
            entry = redact_sensitive(entry)
        return json.dumps(entry, default=str, ensure_ascii=False)


class ColoredConsoleFormatter(logging.Formatter):
    """``HH:MM:SS.mmm LEVEL logger [run=..., kind=...] message`` with ANSI level colors."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = _context.get()
        tags = []
        if context.get("run_id"):
            tags.append(f"run={str(context['run_id'])[:8]}")
        if context.get("event_kind"):
            tags.append(f"kind={context['event_kind']}")
        tag_str = f" [{', '.join(tags)}]" if tags else ""

        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        color = self.COLORS.get(record.levelname, "")
        line = (
            f"{stamp} {color}{record.levelname:<8}{self.RESET} "
            f"{record.name}{tag_str} {record.getMessage()}"
        )
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


# =============================================================================
# Handlers
# =============================================================================


class _MaxLevelFilter(logging.Filter):
    def __init__(self, max_level: int):
        super().__init__()
        self.max_level = max_level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno <= self.max_level


def split_stream_handlers(
    formatter: logging.Formatter, level: int = logging.DEBUG
) -> list[logging.Handler]:
    """DEBUG and INFO go to stdout; WARNING and above go to stderr."""
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(level)
    stdout_handler.addFilter(_MaxLevelFilter(logging.INFO))

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(max(level, logging.WARNING))

    for handler in (stdout_handler, stderr_handler):
        handler.setFormatter(formatter)
    return [stdout_handler, stderr_handler]


def configure_structured_logging(
    level: str = "INFO",
    json_output: bool = True,
    service_name: str = "vault-indexer",
) -> None:
    """Replace the root handlers with split stdout/stderr handlers."""
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    root = logging.getLogger()
    root.setLevel(numeric_level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    formatter: logging.Formatter = (
        StructuredJsonFormatter(service=service_name) if json_output else ColoredConsoleFormatter()
    )
    for handler in split_stream_handlers(formatter, numeric_level):
        root.addHandler(handler)


# =============================================================================
# Timing
# =============================================================================


class Timer:
    """Wall-clock timing for a block; ``elapsed_ms`` is live until the block exits."""

    def __init__(self) -> None:
        self._start = 0.0
        self._end: float | None = None

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        self._end = None
        return self

    def __exit__(self, *exc: Any) -> None:
        self._end = time.perf_counter()

    @property
    def elapsed_ms(self) -> float:
        end = self._end if self._end is not None else time.perf_counter()
        return round((end - self._start) * 1000, 2)

    @property
    def elapsed_seconds(self) -> float:
        return self.elapsed_ms / 1000
