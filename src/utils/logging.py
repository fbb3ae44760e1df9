"""Structured logging utilities for Stepwise MCP.

Provides:
- Human-readable text logs for development, JSON lines for production
- Context variables (session, step, operation) injected into every record
- Redaction of sensitive keys in bound extras
- Lightweight operation timing (``measure_time``) with periodic summaries
"""

from __future__ import annotations

import os
import sys
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import orjson
from loguru import logger

if TYPE_CHECKING:
    from loguru import Record

_session_id: ContextVar[str | None] = ContextVar("session_id", default=None)
_step_number: ContextVar[int | None] = ContextVar("step_number", default=None)
_operation: ContextVar[str | None] = ContextVar("operation", default=None)


class LogFormat(str, Enum):
    """Supported log output formats."""

    JSON = "json"
    TEXT = "text"


class LogLevel(str, Enum):
    """Supported log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


SENSITIVE_KEYS = frozenset(
    {
        "apikey",
        "password",
        "secret",
        "token",
        "authorization",
        "credential",
        "privatekey",
    }
)


def redact_sensitive(data: dict[str, Any], depth: int = 0) -> dict[str, Any]:
    """Recursively replace values of sensitive keys with "[REDACTED]"."""
    if depth > 10:
        return data

    result: dict[str, Any] = {}
    for key, value in data.items():
        key_lower = key.lower().replace("_", "").replace("-", "")
        if any(sensitive in key_lower for sensitive in SENSITIVE_KEYS):
            result[key] = "[REDACTED]"
        elif isinstance(value, dict):
            result[key] = redact_sensitive(value, depth + 1)
        else:
            result[key] = value
    return result


def _context_fields() -> dict[str, Any]:
    fields: dict[str, Any] = {}
    if (session_id := _session_id.get()) is not None:
        fields["session_id"] = session_id
    if (step_number := _step_number.get()) is not None:
        fields["step_number"] = step_number
    if (operation := _operation.get()) is not None:
        fields["operation"] = operation
    return fields


def json_serializer(record: Record) -> str:
    """Serialize a loguru record to a single JSON line."""
    entry: dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name,
        "message": record["message"],
        "module": record["name"],
        "function": record["function"],
        "line": record["line"],
        **_context_fields(),
    }
    if record["extra"]:
        entry["extra"] = redact_sensitive(dict(record["extra"]))
    if record["exception"]:
        exc = record["exception"]
        entry["exception"] = {
            "type": exc.type.__name__ if exc.type else None,
            "value": str(exc.value) if exc.value else None,
        }
    return orjson.dumps(entry, default=str).decode("utf-8")


def _json_sink_format(record: Record) -> str:
    record["extra"]["_json"] = json_serializer(record)
    return "{extra[_json]}\n"


def text_format(record: Record) -> str:
    """Format a record as human-readable text with a context prefix."""
    parts = []
    if (session_id := _session_id.get()) is not None:
        parts.append(f"sess={session_id[:12]}")
    if (step_number := _step_number.get()) is not None:
        parts.append(f"step={step_number}")
    context = f"[{' '.join(parts)}] " if parts else ""
    return (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
        f"{context.replace('{', '{{').replace('}', '}}').replace('<', chr(92) + '<')}"
        "<level>{message}</level>\n{exception}"
    )


def configure_logging(
    level: LogLevel | str = LogLevel.INFO,
    log_format: LogFormat | str = LogFormat.TEXT,
    log_file: str | Path | None = None,
) -> None:
    """Replace loguru's default handler with the configured sinks.

    Logs go to stderr so stdio transports keep stdout clean for protocol frames.
    """
    level = LogLevel(level.upper()) if isinstance(level, str) else level
    log_format = LogFormat(log_format.lower()) if isinstance(log_format, str) else log_format

    logger.remove()
    if log_format == LogFormat.JSON:
        logger.add(sys.stderr, format=_json_sink_format, level=level.value)
    else:
        logger.add(sys.stderr, format=text_format, level=level.value, colorize=True)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_path,
            format=_json_sink_format,
            level=level.value,
            rotation="100 MB",
            retention="7 days",
            compression="gz",
        )


def configure_from_env() -> None:
    """Configure logging from LOG_LEVEL, LOG_FORMAT and LOG_FILE."""
    configure_logging(
        level=os.getenv("LOG_LEVEL", "INFO"),
        log_format=os.getenv("LOG_FORMAT", "text"),
        log_file=os.getenv("LOG_FILE") or None,
    )


class log_context:  # noqa: N801 - used like a function
    """Scope session/step/operation context variables.

    Example:
        with log_context(session_id="abc", step_number=3):
            logger.info("Processing")  # record carries session and step

    """

    def __init__(
        self,
        session_id: str | None = None,
        step_number: int | None = None,
        operation: str | None = None,
    ) -> None:
        self._values = (
            (_session_id, session_id),
            (_step_number, step_number),
            (_operation, operation),
        )
        self._tokens: list[Any] = []

    def __enter__(self) -> log_context:
        for var, value in self._values:
            if value is not None:
                self._tokens.append(var.set(value))
        return self

    def __exit__(self, *args: Any) -> None:
        for token in reversed(self._tokens):
            token.var.reset(token)
        self._tokens.clear()


def get_session_id() -> str | None:
    """Get the session ID bound to the current context."""
    return _session_id.get()


# =============================================================================
# Operation timing
# =============================================================================


@dataclass
class TimingStats:
    """Aggregate timings for one operation name."""

    count: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0
    errors: int = 0

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "avg_ms": round(self.avg_ms, 3),
            "max_ms": round(self.max_ms, 3),
            "errors": self.errors,
        }


_timings: dict[str, TimingStats] = {}


@asynccontextmanager
async def measure_time(operation: str) -> AsyncIterator[None]:
    """Record wall-clock duration of the enclosed block under ``operation``."""
    stats = _timings.setdefault(operation, TimingStats())
    start = time.perf_counter()
    try:
        yield
    except BaseException:
        stats.errors += 1
        raise
    finally:
        elapsed_ms = (time.perf_counter() - start) * 1000
        stats.count += 1
        stats.total_ms += elapsed_ms
        stats.max_ms = max(stats.max_ms, elapsed_ms)
        logger.debug(f"{operation} took {elapsed_ms:.2f}ms")


def get_timing_stats() -> dict[str, dict[str, Any]]:
    """Snapshot of all recorded operation timings."""
    return {name: stats.to_dict() for name, stats in _timings.items()}


def log_metrics() -> None:
    """Log one summary line per timed operation."""
    for name, stats in _timings.items():
        logger.bind(**stats.to_dict()).info(
            f"metrics {name}: n={stats.count} avg={stats.avg_ms:.2f}ms max={stats.max_ms:.2f}ms"
        )


def reset_timing_stats() -> None:
    """Clear recorded timings (for testing)."""
    _timings.clear()
