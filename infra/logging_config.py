"""Centralized logging configuration.

Workers and the CLI log either human-friendly text or structured JSON. A
handler is only installed when the root logger has none, unless an override
is explicitly requested.
"""

from __future__ import annotations

import json
import logging
import sys
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from infra.config import get_settings

# Context attached to every record emitted while a pipeline cycle runs
log_ctx: ContextVar[dict[str, Any] | None] = ContextVar("log_ctx", default=None)

_STANDARD_ATTRS = frozenset(
    {
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename", "module",
        "exc_info", "exc_text", "stack_info", "lineno", "funcName", "created", "msecs",
        "relativeCreated", "thread", "threadName", "processName", "process", "taskName",
    }
)


def set_request_context(**kwargs: Any) -> None:
    """Merge values into the logging context for subsequent records."""
    current = dict(log_ctx.get() or {})
    current.update(kwargs)
    log_ctx.set(current)


def clear_request_context() -> None:
    """Reset the logging context."""
    log_ctx.set({})


def get_request_context() -> dict[str, Any]:
    """Return a copy of the current logging context."""
    ctx = log_ctx.get()
    return dict(ctx) if ctx else {}


@contextmanager
def request_context(**kwargs: Any) -> Iterator[None]:
    """Scope context values to a block, restoring the previous context on exit."""
    token = log_ctx.set({**get_request_context(), **kwargs})
    try:
        yield
    finally:
        log_ctx.reset(token)


def _utc_iso8601() -> str:
    # Example: 2026-01-24T18:03:12.123Z
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class JsonFormatter(logging.Formatter):
    """One JSON object per record, with extras and logging context merged in."""

    def __init__(self, *, extra_fields: Mapping[str, Any] | None = None) -> None:
        super().__init__()
        self._extra_fields = dict(extra_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": _utc_iso8601(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
            "process": record.process,
        }

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and key not in payload:
                payload[key] = value

        for key, value in self._extra_fields.items():
            payload.setdefault(key, value)

        for key, value in get_request_context().items():
            payload.setdefault(key, value)

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Human-friendly logs with UTC timestamps and a context suffix."""

    converter = time.gmtime

    def __init__(self) -> None:
        super().__init__("%(asctime)sZ | %(levelname)s | %(name)s | %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        ctx = get_request_context()
        if not ctx:
            return line
        suffix = " ".join(f"{k}={v}" for k, v in sorted(ctx.items()))
        head, sep, tail = line.partition("\n")
        return f"{head} [{suffix}]{sep}{tail}"


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    json_logs: bool = False
    override_root_handlers: bool = False
    extra_fields: Mapping[str, Any] | None = None


def setup_logging(
    *,
    level: str | None = None,
    json_logs: bool | None = None,
    override_root_handlers: bool | None = None,
    extra_fields: Mapping[str, Any] | None = None,
) -> None:
    """
    Configure root logging for workers and the CLI.

    Env vars:
      - LIBWATCH_LOG_LEVEL: DEBUG|INFO|WARNING|ERROR (default INFO)
      - LIBWATCH_LOG_JSON: 1/0 (default 0)
      - LIBWATCH_LOG_OVERRIDE: 1/0 (default 0)
         If 1, replaces any pre-configured root handlers.
         If 0, only configures logging if root has no handlers.
    """
    settings = get_settings(reload=True).logging

    cfg = LoggingConfig(
        level=(level or settings.level).upper(),
        json_logs=json_logs if json_logs is not None else bool(settings.json_logs),
        override_root_handlers=override_root_handlers
        if override_root_handlers is not None
        else bool(settings.override_root_handlers),
        extra_fields=extra_fields,
    )

    root = logging.getLogger()
    root.setLevel(getattr(logging, cfg.level, logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    if cfg.json_logs:
        handler.setFormatter(JsonFormatter(extra_fields=cfg.extra_fields))
    else:
        handler.setFormatter(TextFormatter())

    if cfg.override_root_handlers:
        for existing in list(root.handlers):
            root.removeHandler(existing)
        root.addHandler(handler)
    elif not root.handlers:
        root.addHandler(handler)

    logging.getLogger("duckdb").setLevel(logging.WARNING)
