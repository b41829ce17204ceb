"""
Error Handling Module: Result Types and Error Variants
=======================================================

Design Philosophy:
    - NO EXCEPTIONS for control flow (exceptions reserved for bugs)
    - Result[T, E] pattern for explicit error handling
    - Every error carries a category that decides retryability

Error Hierarchy:
    DispatchError (base)
    ├── APIConnectionError (transport failure or attempt timeout)
    ├── APIStatusError (non-2xx HTTP response)
    ├── RequestFailedError (server reported the operation failed)
    ├── PollTimeoutError (polling budget exhausted)
    ├── ValidationError (malformed request or response)
    ├── CancellationError (caller abandoned the operation)
    ├── SessionInvalidatedError (sequenced session can no longer send)
    └── InternalError (unexpected exception inside a background task)

Fatal:
    SequencerInvariantError is raised, never returned: it means the
    per-session ordering guarantee was broken by a bug.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Final, Generic, Mapping, TypeVar


# =============================================================================
# TYPE VARIABLES: For generic Result type
# =============================================================================
T = TypeVar("T")  # Success type
U = TypeVar("U")  # Mapped success type
E = TypeVar("E", bound="DispatchError")  # Error type
F = TypeVar("F", bound="DispatchError")  # Mapped error type

NON_USER_CLIENT_STATUSES: Final[frozenset[int]] = frozenset({408, 410, 429})


class ErrorCode(Enum):
    """
    Numeric error codes for programmatic handling.
    Ranges:
        1000-1999: Connection errors
        2000-2999: HTTP status errors
        3000-3999: Request errors (server-reported, validation)
        4000-4999: Timeouts
        5000-5999: Client-side errors (cancellation, invalid session)
        9000-9999: Internal errors
    """
    # Connection errors
    API_CONNECTION = 1001
    API_TIMEOUT = 1002

    # Status errors
    API_STATUS = 2001
    RATE_LIMITED = 2002

    # Request errors
    REQUEST_FAILED = 3001
    INVALID_RESPONSE = 3002
    VALIDATION = 3003

    # Timeouts
    POLL_TIMEOUT = 4001
    AWAIT_TIMEOUT = 4002

    # Client errors
    CANCELLED = 5001
    SESSION_INVALIDATED = 5002

    # Internal
    INTERNAL = 9001


class ErrorCategory(str, Enum):
    """
    Who is responsible for a failure.

    USER failures are never retried; SERVER and UNKNOWN are.
    """
    USER = "user"
    SERVER = "server"
    UNKNOWN = "unknown"


def _default_category_aliases() -> dict[str, ErrorCategory]:
    return {
        "user": ErrorCategory.USER,
        "user_error": ErrorCategory.USER,
        "client": ErrorCategory.USER,
        "server": ErrorCategory.SERVER,
        "server_error": ErrorCategory.SERVER,
        "internal": ErrorCategory.SERVER,
        "unknown": ErrorCategory.UNKNOWN,
    }


@dataclass(slots=True, frozen=True)
class CategoryScheme:
    """
    Maps wire category strings onto ErrorCategory.

    Matching is case-insensitive. Strings without an alias, and missing
    values, map to UNKNOWN so that unrecognised failures are retried.
    """
    aliases: dict[str, ErrorCategory] = field(
        default_factory=_default_category_aliases
    )

    def parse(self, raw: object) -> ErrorCategory:
        if isinstance(raw, ErrorCategory):
            return raw
        if not isinstance(raw, str):
            return ErrorCategory.UNKNOWN
        return self.aliases.get(raw.strip().lower(), ErrorCategory.UNKNOWN)

    def with_aliases(self, extra: Mapping[str, ErrorCategory]) -> CategoryScheme:
        merged = dict(self.aliases)
        merged.update({k.lower(): v for k, v in extra.items()})
        return CategoryScheme(aliases=merged)


def category_for_status(status_code: int | None) -> ErrorCategory:
    """4xx → USER (except 408/410/429), 5xx → SERVER, otherwise UNKNOWN."""
    if status_code is None:
        return ErrorCategory.UNKNOWN
    if 400 <= status_code < 500 and status_code not in NON_USER_CLIENT_STATUSES:
        return ErrorCategory.USER
    if status_code >= 500 or status_code in NON_USER_CLIENT_STATUSES:
        return ErrorCategory.SERVER
    return ErrorCategory.UNKNOWN


@dataclass(slots=True, frozen=True)
class DispatchError:
    """
    Base error class with immutability for safe sharing between tasks.

    Attributes:
        code: Numeric error code for programmatic handling
        message: Human-readable error description
        category: USER / SERVER / UNKNOWN
        status_code: HTTP status when the error came from a response
        retry_after_seconds: Server-provided retry hint
        timestamp_ns: Nanosecond-precision error timestamp
        request_id: Optional correlation ID (future id when polling)
        details: Optional structured error details
    """
    code: ErrorCode
    message: str
    category: ErrorCategory = ErrorCategory.UNKNOWN
    status_code: int | None = None
    retry_after_seconds: float | None = None
    timestamp_ns: int = field(default_factory=time.perf_counter_ns)
    request_id: str | None = None
    details: dict[str, object] | None = None

    @property
    def is_user_error(self) -> bool:
        """
        True when the caller must change something before retrying.

        Truth table:
            category USER                      → True
            HTTP 4xx other than 408, 410, 429  → True
            anything else                      → False
        """
        if self.category is ErrorCategory.USER:
            return True
        status = self.status_code
        return (
            status is not None
            and 400 <= status < 500
            and status not in NON_USER_CLIENT_STATUSES
        )

    @property
    def is_retryable(self) -> bool:
        """Transient failure worth another attempt."""
        if self.code in (ErrorCode.CANCELLED, ErrorCode.SESSION_INVALIDATED):
            return False
        return not self.is_user_error

    def to_dict(self) -> dict[str, object]:
        """Serialize to JSON-compatible dict."""
        return {
            "error": {
                "code": self.code.value,
                "type": self.code.name,
                "message": self.message,
                "category": self.category.value,
                "status_code": self.status_code,
                "retry_after_seconds": self.retry_after_seconds,
                "request_id": self.request_id,
                "details": self.details,
            }
        }

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"[{self.code.name} ({self.status_code})] {self.message}"
        return f"[{self.code.name}] {self.message}"


# =============================================================================
# SPECIALIZED ERROR TYPES: Using inheritance for type discrimination
# =============================================================================

@dataclass(slots=True, frozen=True)
class APIConnectionError(DispatchError):
    """
    Request never produced a response (connect failure, reset, attempt timeout).

    Retryable.
    """
    timeout_seconds: float | None = None


@dataclass(slots=True, frozen=True)
class APIStatusError(DispatchError):
    """
    Non-2xx HTTP response after transport retries were exhausted.
    """
    response_body: Any = None


@dataclass(slots=True, frozen=True)
class RequestFailedError(DispatchError):
    """
    The service accepted the request but reported the operation failed.

    Retryability follows the server-provided category.
    """
    request_type: str | None = None


@dataclass(slots=True, frozen=True)
class PollTimeoutError(DispatchError):
    """
    Overall polling deadline exceeded before the future resolved.
    """
    timeout_seconds: float | None = None
    iterations: int = 0


@dataclass(slots=True, frozen=True)
class ValidationError(DispatchError):
    """
    Malformed request or undecodable response.

    Never retryable.
    """
    field_name: str | None = None


@dataclass(slots=True, frozen=True)
class CancellationError(DispatchError):
    """
    Operation abandoned by the caller or during shutdown.

    Not retryable - intentional cancellation.
    """
    reason: str | None = None


@dataclass(slots=True, frozen=True)
class SessionInvalidatedError(DispatchError):
    """
    Sequenced session cannot accept further submissions.
    """
    session_id: str | None = None


@dataclass(slots=True, frozen=True)
class InternalError(DispatchError):
    """
    Unexpected exception escaped a background task.
    """
    exception_type: str | None = None


class SequencerInvariantError(RuntimeError):
    """Sequence ids were reserved out of order. Always a bug."""


# =============================================================================
# RESULT TYPE: Monadic error handling (Ok | Err)
# =============================================================================

@dataclass(slots=True, frozen=True)
class Ok(Generic[T]):
    """
    Success variant of Result.
    """
    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value

    def map(self, fn: Callable[[T], U]) -> Ok[U]:
        """Transform success value."""
        return Ok(fn(self.value))

    def map_err(self, fn: Callable[[E], F]) -> Ok[T]:
        return self

    def and_then(self, fn: Callable[[T], Result[U, E]]) -> Result[U, E]:
        """Chain operations that may fail."""
        return fn(self.value)


@dataclass(slots=True, frozen=True)
class Err(Generic[E]):
    """
    Failure variant of Result.
    """
    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> T:
        """
        Raises. Use pattern matching instead.
        """
        raise RuntimeError(f"Called unwrap on Err: {self.error}")

    def unwrap_or(self, default: T) -> T:
        return default

    def map(self, fn: Callable[[T], U]) -> Err[E]:
        return self

    def map_err(self, fn: Callable[[E], F]) -> Err[F]:
        """Transform error value."""
        return Err(fn(self.error))

    def and_then(self, fn: Callable[[T], Result[U, E]]) -> Err[E]:
        """Short-circuit on error."""
        return self


# Type alias for Result
Result = Ok[T] | Err[E]


# =============================================================================
# FACTORY FUNCTIONS: Create errors with proper defaults
# =============================================================================

def connection_error(
    message: str,
    *,
    timeout_seconds: float | None = None,
    request_id: str | None = None,
) -> APIConnectionError:
    """Create a transport failure; attempt timeouts get API_TIMEOUT."""
    return APIConnectionError(
        code=ErrorCode.API_TIMEOUT if timeout_seconds is not None else ErrorCode.API_CONNECTION,
        message=message,
        category=ErrorCategory.UNKNOWN,
        timeout_seconds=timeout_seconds,
        request_id=request_id,
    )


def status_error(
    message: str,
    *,
    status_code: int,
    category: ErrorCategory | None = None,
    retry_after_seconds: float | None = None,
    response_body: Any = None,
    request_id: str | None = None,
) -> APIStatusError:
    """Create an HTTP status error, deriving the category from the status if absent."""
    return APIStatusError(
        code=ErrorCode.RATE_LIMITED if status_code == 429 else ErrorCode.API_STATUS,
        message=message,
        category=category if category is not None else category_for_status(status_code),
        status_code=status_code,
        retry_after_seconds=retry_after_seconds,
        response_body=response_body,
        request_id=request_id,
    )


def request_failed(
    message: str,
    *,
    category: ErrorCategory = ErrorCategory.UNKNOWN,
    request_id: str | None = None,
    request_type: str | None = None,
    details: dict[str, object] | None = None,
) -> RequestFailedError:
    """Create a server-reported operation failure."""
    return RequestFailedError(
        code=ErrorCode.REQUEST_FAILED,
        message=message,
        category=category,
        request_id=request_id,
        request_type=request_type,
        details=details,
    )


def poll_timeout_error(
    request_id: str,
    *,
    timeout_seconds: float | None = None,
    iterations: int = 0,
) -> PollTimeoutError:
    """Create polling deadline error."""
    return PollTimeoutError(
        code=ErrorCode.POLL_TIMEOUT,
        message=f"Timed out while polling future {request_id}",
        category=ErrorCategory.SERVER,
        request_id=request_id,
        timeout_seconds=timeout_seconds,
        iterations=iterations,
    )


def await_timeout_error(
    timeout_seconds: float,
    *,
    request_id: str | None = None,
) -> PollTimeoutError:
    """Caller stopped waiting; the underlying poll keeps running."""
    return PollTimeoutError(
        code=ErrorCode.AWAIT_TIMEOUT,
        message=f"Result not available within {timeout_seconds}s",
        category=ErrorCategory.UNKNOWN,
        request_id=request_id,
        timeout_seconds=timeout_seconds,
    )


def validation_error(
    message: str,
    *,
    field_name: str | None = None,
    request_id: str | None = None,
) -> ValidationError:
    """Create validation error."""
    return ValidationError(
        code=ErrorCode.VALIDATION,
        message=message,
        category=ErrorCategory.USER,
        field_name=field_name,
        request_id=request_id,
    )


def invalid_response_error(
    message: str,
    *,
    request_id: str | None = None,
) -> ValidationError:
    """Create error for a response body that could not be understood."""
    return ValidationError(
        code=ErrorCode.INVALID_RESPONSE,
        message=message,
        category=ErrorCategory.USER,
        request_id=request_id,
    )


def cancellation_error(
    message: str = "Request cancelled",
    *,
    reason: str | None = None,
    request_id: str | None = None,
) -> CancellationError:
    """Create cancellation error."""
    return CancellationError(
        code=ErrorCode.CANCELLED,
        message=message,
        category=ErrorCategory.USER,
        reason=reason,
        request_id=request_id,
    )


def session_invalidated_error(
    session_id: str,
    reason: str | None = None,
) -> SessionInvalidatedError:
    """Create invalid session error."""
    message = f"Session {session_id} is no longer usable"
    if reason:
        message = f"{message}: {reason}"
    return SessionInvalidatedError(
        code=ErrorCode.SESSION_INVALIDATED,
        message=message,
        category=ErrorCategory.USER,
        session_id=session_id,
    )


def internal_error(
    message: str,
    *,
    exc: BaseException | None = None,
    request_id: str | None = None,
) -> InternalError:
    """Wrap an unexpected exception."""
    return InternalError(
        code=ErrorCode.INTERNAL,
        message=message,
        category=ErrorCategory.UNKNOWN,
        exception_type=type(exc).__name__ if exc is not None else None,
        request_id=request_id,
    )


# =============================================================================
# PATTERN MATCHING UTILITIES
# =============================================================================

def match_result(
    result: Result[T, E],
    *,
    on_ok: Callable[[T], U],
    on_err: Callable[[E], U],
) -> U:
    """
    Exhaustive pattern matching on Result.

    Example:
        value = match_result(
            result,
            on_ok=lambda v: f"Success: {v}",
            on_err=lambda e: f"Error: {e.message}",
        )
    """
    match result:
        case Ok(value):
            return on_ok(value)
        case Err(error):
            return on_err(error)
