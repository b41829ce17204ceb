"""
Future Module: Remote Futures and the Polling State Machine
============================================================

A mutating or sampling call returns a request id immediately; the result
is produced later by the service. The Poller drives that id to a final
state by repeatedly calling the retrieve endpoint:

    pending    → sleep min(2**n * 1s, 30s), poll again
    completed  → resolve with the (optionally parsed) result
    failed     → user category resolves failed; server/unknown retried
                 a bounded number of times
    try_again  → record queue state, notify observer on transitions,
                 push paused states into the shared RateLimiter, sleep
                 the server hint (or 1s when paused), poll again

Resolution Totality:
    Each poll runs as a background task through engine.run_to_result, so
    a crash inside the loop (including in the result parser) resolves the
    future as failed. A resolved FutureState never changes again.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Generator,
    Generic,
    Mapping,
    TypeVar,
)

from .clock import Clock
from .config import PollingConfig, TrafficClass
from .errors import (
    CategoryScheme,
    DispatchError,
    Err,
    Ok,
    Result,
    await_timeout_error,
    cancellation_error,
    invalid_response_error,
    poll_timeout_error,
    request_failed,
)
from .engine import BackgroundTaskExecutor, run_to_result
from .models import (
    FutureCompleted,
    FutureFailed,
    FuturePending,
    FutureStatus,
    QueueState,
    TryAgain,
    parse_retrieve_response,
)
from .observability import get_logger, set_request_id
from .queue_state import QueueStateObserver, notify_observer
from .rate_limiter import RateLimiter
from .retry import exponential_backoff
from .transport import Transport


logger = get_logger(__name__)

T = TypeVar("T")

RETRIEVE_PATH = "/api/v1/future/retrieve"

SleepFn = Callable[[float], Awaitable[None]]
ParseFn = Callable[[Any], Any]


# =============================================================================
# FUTURE STATE
# =============================================================================

@dataclass(slots=True)
class FutureState:
    """
    Observable progress of one remote future.

    Attributes:
        request_id: Server-assigned future id
        status: PENDING or TRY_AGAIN while in flight, then COMPLETED or
            FAILED exactly once
        result: Resolved value (COMPLETED only)
        error: Resolution error (FAILED only)
        queue_state: Last queue state reported by try_again
        iteration: Number of retrieve attempts made so far
    """
    request_id: str
    status: FutureStatus = FutureStatus.PENDING
    result: Any = None
    error: DispatchError | None = None
    queue_state: QueueState = QueueState.ACTIVE
    iteration: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in (FutureStatus.COMPLETED, FutureStatus.FAILED)

    def resolve(self, value: Any) -> None:
        if self.is_terminal:
            raise RuntimeError(f"future {self.request_id} already {self.status.value}")
        self.status = FutureStatus.COMPLETED
        self.result = value

    def fail(self, error: DispatchError) -> None:
        if self.is_terminal:
            raise RuntimeError(f"future {self.request_id} already {self.status.value}")
        self.status = FutureStatus.FAILED
        self.error = error

    def settle(self, result: Result[Any, DispatchError]) -> None:
        match result:
            case Ok(value):
                self.resolve(value)
            case Err(error):
                self.fail(error)


# =============================================================================
# REMOTE FUTURE HANDLE
# =============================================================================

class RemoteFuture(Generic[T]):
    """
    Awaitable handle over a polling (or combining) task.

    `await future` and `await future.result()` both return a Result and
    never raise for remote failures. Waiting with a timeout does not stop
    the underlying poll; cancel() does.
    """

    def __init__(
        self,
        task: asyncio.Future[Result[T, DispatchError]],
        state: FutureState | None = None,
    ) -> None:
        self._task = task
        self._state = state

    @classmethod
    def completed(cls, value: T, request_id: str | None = None) -> RemoteFuture[T]:
        """Handle for a value that is already available."""
        fut: asyncio.Future[Result[T, DispatchError]] = (
            asyncio.get_running_loop().create_future()
        )
        fut.set_result(Ok(value))
        state = None
        if request_id is not None:
            state = FutureState(request_id)
            state.resolve(value)
        return cls(fut, state)

    @classmethod
    def failed(cls, error: DispatchError) -> RemoteFuture[T]:
        fut: asyncio.Future[Result[T, DispatchError]] = (
            asyncio.get_running_loop().create_future()
        )
        fut.set_result(Err(error))
        return cls(fut)

    @property
    def request_id(self) -> str | None:
        return self._state.request_id if self._state else None

    @property
    def state(self) -> FutureState | None:
        return self._state

    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> bool:
        """Abandon polling. Waiters receive a CancellationError result."""
        if self._task.done():
            return False
        if self._state is not None and not self._state.is_terminal:
            self._state.fail(cancellation_error(
                "Polling cancelled by caller", request_id=self._state.request_id,
            ))
        return self._task.cancel()

    async def result(self, timeout: float | None = None) -> Result[T, DispatchError]:
        """
        Wait for resolution.

        Args:
            timeout: Caller-side wait limit; on expiry an AWAIT_TIMEOUT
                error is returned while polling continues
        """
        try:
            if timeout is None:
                return await asyncio.shield(self._task)
            return await asyncio.wait_for(asyncio.shield(self._task), timeout)
        except asyncio.TimeoutError:
            return Err(await_timeout_error(timeout or 0.0, request_id=self.request_id))
        except asyncio.CancelledError:
            if self._task.cancelled():
                return Err(cancellation_error(
                    "Polling cancelled", request_id=self.request_id,
                ))
            raise

    def __await__(self) -> Generator[Any, None, Result[T, DispatchError]]:
        return self.result().__await__()

    def __repr__(self) -> str:
        status = self._state.status.value if self._state else (
            "done" if self._task.done() else "pending"
        )
        return f"RemoteFuture(request_id={self.request_id!r}, status={status})"


# =============================================================================
# POLLER
# =============================================================================

class Poller:
    """
    Drives request ids to resolution on the POLLING traffic class.

    Termination:
        - completed or user-category failure
        - retryable failures beyond max_failed_polls
        - transport failures beyond max_transient_failures
        - overall timeout (last server-reported failure if any,
          otherwise a poll timeout error)
    """

    def __init__(
        self,
        transport: Transport,
        *,
        config: PollingConfig | None = None,
        rate_limiter: RateLimiter | None = None,
        observer: QueueStateObserver | None = None,
        executor: BackgroundTaskExecutor | None = None,
        category_scheme: CategoryScheme | None = None,
        clock: Clock = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._config = config or PollingConfig()
        self._rate_limiter = rate_limiter
        self._observer = observer
        self._executor = executor
        self._scheme = category_scheme or CategoryScheme()
        self._clock = clock
        self._sleep = sleep

    @property
    def config(self) -> PollingConfig:
        return self._config

    def poll(
        self,
        request_id: str,
        *,
        timeout: float | None = None,
        http_timeout: float | None = None,
        request_type: str | None = None,
        parse: ParseFn | None = None,
        metadata: Mapping[str, Any] | None = None,
        observer: QueueStateObserver | None = None,
    ) -> RemoteFuture[Any]:
        """
        Start polling `request_id` in the background.

        Args:
            timeout: Overall polling budget (defaults to config.timeout)
            http_timeout: Per-attempt HTTP timeout
            request_type: Sent as X-Request-Type for server-side routing
            parse: Applied to the completed payload; may raise
            metadata: Passed to the queue-state observer
            observer: Overrides the poller-wide observer
        """
        state = FutureState(request_id)
        coro = self._drive(
            state,
            timeout=timeout if timeout is not None else self._config.timeout,
            http_timeout=http_timeout or self._config.http_timeout,
            request_type=request_type,
            parse=parse,
            metadata=dict(metadata or {}),
            observer=observer or self._observer,
        )
        describe = f"Polling future {request_id}"
        if self._executor is not None:
            task = self._executor.spawn(
                coro, name=f"poll:{request_id}", describe=describe, request_id=request_id,
            )
        else:
            task = asyncio.create_task(
                run_to_result(coro, describe=describe, request_id=request_id),
                name=f"poll:{request_id}",
            )
        return RemoteFuture(task, state)

    async def _drive(
        self,
        state: FutureState,
        **kwargs: Any,
    ) -> Result[Any, DispatchError]:
        set_request_id(state.request_id)
        try:
            result = await run_to_result(
                self._poll_loop(state, **kwargs),
                describe=f"Polling future {state.request_id}",
                request_id=state.request_id,
            )
        except asyncio.CancelledError:
            if not state.is_terminal:
                state.fail(cancellation_error(
                    "Polling cancelled", request_id=state.request_id,
                ))
            raise
        if not state.is_terminal:
            state.settle(result)
        return result

    async def _poll_loop(
        self,
        state: FutureState,
        *,
        timeout: float | None,
        http_timeout: float | None,
        request_type: str | None,
        parse: ParseFn | None,
        metadata: dict[str, Any],
        observer: QueueStateObserver | None,
    ) -> Result[Any, DispatchError]:
        cfg = self._config
        deadline = self._clock() + timeout if timeout is not None else None
        last_failed: DispatchError | None = None
        failed_polls = 0
        transient_failures = 0

        while True:
            if deadline is not None and self._clock() >= deadline:
                logger.warning(
                    "polling timed out",
                    request_id=state.request_id,
                    iterations=state.iteration,
                )
                return Err(last_failed or poll_timeout_error(
                    state.request_id,
                    timeout_seconds=timeout,
                    iterations=state.iteration,
                ))

            iteration = state.iteration
            state.iteration += 1
            headers = {"X-Request-Iteration": str(iteration)}
            if request_type:
                headers["X-Request-Type"] = request_type

            response = await self._transport.post(
                RETRIEVE_PATH,
                {"request_id": state.request_id},
                traffic_class=TrafficClass.POLLING,
                headers=headers,
                timeout=http_timeout,
            )

            match response:
                case Err(error):
                    if error.is_user_error:
                        return Err(error)
                    transient_failures += 1
                    if transient_failures > cfg.max_transient_failures:
                        return Err(error)
                    logger.debug(
                        "retrieve failed, retrying",
                        request_id=state.request_id,
                        error=str(error),
                    )
                    delay = exponential_backoff(iteration, cfg.initial_backoff, cfg.max_backoff)

                case Ok(payload):
                    try:
                        parsed = parse_retrieve_response(payload)
                    except ValueError as exc:
                        return Err(invalid_response_error(
                            f"Malformed retrieve response for {state.request_id}: {exc}",
                            request_id=state.request_id,
                        ))

                    match parsed:
                        case FutureCompleted(result=result):
                            return Ok(parse(result) if parse is not None else result)

                        case FuturePending():
                            state.status = FutureStatus.PENDING
                            delay = exponential_backoff(
                                iteration, cfg.initial_backoff, cfg.max_backoff,
                            )

                        case FutureFailed():
                            error = self._failure_error(parsed, state.request_id, request_type)
                            if error.is_user_error:
                                return Err(error)
                            last_failed = error
                            failed_polls += 1
                            if failed_polls > cfg.max_failed_polls:
                                return Err(error)
                            delay = exponential_backoff(
                                iteration, cfg.initial_backoff, cfg.max_backoff,
                            )

                        case TryAgain():
                            delay = self._handle_try_again(
                                parsed, state, iteration, metadata, observer,
                            )

            if deadline is not None:
                delay = min(delay, max(0.0, deadline - self._clock()))
            await self._sleep(delay)

    def _failure_error(
        self,
        failed: FutureFailed,
        request_id: str,
        request_type: str | None,
    ) -> DispatchError:
        details = failed.error if isinstance(failed.error, dict) else None
        return request_failed(
            failed.message,
            category=self._scheme.parse(failed.raw_category),
            request_id=request_id,
            request_type=request_type,
            details=details,
        )

    def _handle_try_again(
        self,
        try_again: TryAgain,
        state: FutureState,
        iteration: int,
        metadata: dict[str, Any],
        observer: QueueStateObserver | None,
    ) -> float:
        """Record queue state and return the delay before the next poll."""
        cfg = self._config
        queue_state = QueueState(try_again.queue_state)
        state.status = FutureStatus.TRY_AGAIN
        if queue_state is not state.queue_state:
            state.queue_state = queue_state
            notify_observer(
                observer,
                queue_state,
                {
                    **metadata,
                    "request_id": state.request_id,
                    "queue_state_reason": try_again.queue_state_reason,
                },
                logger,
            )

        hint = try_again.retry_after_seconds
        if queue_state.is_paused and self._rate_limiter is not None:
            # Every paused response refreshes the shared backoff.
            self._rate_limiter.record_backoff(hint)

        if hint is not None:
            return hint
        if queue_state.is_paused:
            return cfg.paused_backoff
        return exponential_backoff(iteration, cfg.initial_backoff, cfg.max_backoff)
