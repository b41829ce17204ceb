"""
Observability Module: Structured Logging and Timing
=====================================================

Provides:
    - Structured JSON logging on top of stdlib logging
    - Context propagation of request and session ids via contextvars
    - A Timer context manager for round-trip measurements

Design Principles:
    - Context set once per task flows into every log line it emits
    - Loggers cached per name; handlers attached exactly once
    - No metrics export: log lines are the only output
"""

from __future__ import annotations

import contextvars
import logging
import sys
import time
from typing import Any

import orjson


# =============================================================================
# CONTEXT PROPAGATION
# =============================================================================
_request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "dispatch_request_id", default=None
)
_session_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "dispatch_session_id", default=None
)


def get_request_id() -> str | None:
    """Get current request ID from context."""
    return _request_id_var.get()


def set_request_id(request_id: str | None) -> contextvars.Token[str | None]:
    """Set request ID in context."""
    return _request_id_var.set(request_id)


def get_session_id() -> str | None:
    """Get current session ID from context."""
    return _session_id_var.get()


def set_session_id(session_id: str | None) -> contextvars.Token[str | None]:
    """Set session ID in context."""
    return _session_id_var.set(session_id)


# =============================================================================
# STRUCTURED LOGGING
# =============================================================================

class StructuredLogger:
    """
    Structured JSON logger with context propagation.

    Features:
        - JSON output for log aggregation
        - Automatic request / session ID inclusion
        - Level-based filtering before formatting
    """

    def __init__(
        self,
        name: str,
        level: int | None = None,
    ) -> None:
        self._name = name
        self._logger = logging.getLogger(name)
        if level is not None:
            self._logger.setLevel(level)
        if not any(getattr(h, "_dispatch_core", False) for h in self._logger.handlers):
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(logging.Formatter("%(message)s"))
            handler._dispatch_core = True  # type: ignore[attr-defined]
            self._logger.addHandler(handler)
        self._logger.propagate = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def stdlib_logger(self) -> logging.Logger:
        return self._logger

    def _format_message(
        self,
        level: str,
        message: str,
        extra: dict[str, Any] | None = None,
    ) -> str:
        """Format log entry as JSON."""
        entry: dict[str, Any] = {
            "timestamp": time.time(),
            "level": level,
            "logger": self._name,
            "message": message,
        }

        request_id = get_request_id()
        if request_id:
            entry["request_id"] = request_id

        session_id = get_session_id()
        if session_id:
            entry["session_id"] = session_id

        if extra:
            entry["extra"] = extra

        return orjson.dumps(entry, default=str).decode()

    def _log(self, level: int, message: str, extra: dict[str, Any]) -> None:
        if self._logger.isEnabledFor(level):
            self._logger.log(
                level,
                self._format_message(logging.getLevelName(level), message, extra or None),
            )

    def debug(self, message: str, **extra: Any) -> None:
        self._log(logging.DEBUG, message, extra)

    def info(self, message: str, **extra: Any) -> None:
        self._log(logging.INFO, message, extra)

    def warning(self, message: str, **extra: Any) -> None:
        self._log(logging.WARNING, message, extra)

    def error(self, message: str, **extra: Any) -> None:
        self._log(logging.ERROR, message, extra)

    def exception(self, message: str, exc: BaseException, **extra: Any) -> None:
        """Log an error with the exception type and text attached."""
        extra["exception_type"] = type(exc).__name__
        extra["exception"] = str(exc)
        self._log(logging.ERROR, message, extra)


_loggers: dict[str, StructuredLogger] = {}


def get_logger(name: str = "dispatch_core") -> StructuredLogger:
    """Get or create the structured logger for `name`."""
    logger = _loggers.get(name)
    if logger is None:
        logger = _loggers.setdefault(name, StructuredLogger(name))
    return logger


def configure_logging(level: str | int = "INFO") -> None:
    """Set the level of the package root logger."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logging.getLogger("dispatch_core").setLevel(level)


# =============================================================================
# TIMING
# =============================================================================

class Timer:
    """
    Context manager for timing code blocks.

    Usage:
        with Timer() as t:
            await do_work()
        logger.debug("done", elapsed_ms=t.elapsed_ms)
    """

    def __init__(self) -> None:
        self._start_ns: int = 0
        self._end_ns: int = 0

    def __enter__(self) -> Timer:
        self._start_ns = time.perf_counter_ns()
        return self

    def __exit__(self, *args: Any) -> None:
        self._end_ns = time.perf_counter_ns()

    @property
    def elapsed_ns(self) -> int:
        if self._end_ns > 0:
            return self._end_ns - self._start_ns
        return time.perf_counter_ns() - self._start_ns

    @property
    def elapsed_ms(self) -> float:
        return self.elapsed_ns / 1_000_000

    @property
    def elapsed_seconds(self) -> float:
        return self.elapsed_ns / 1_000_000_000
