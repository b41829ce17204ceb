"""
Engine Module: Result-Typed Background Tasks
=============================================

Every logical task spawned by the library (polls, combines, heartbeats)
runs through here so that it always finishes with a Result:

    - normal return         → whatever Result the coroutine produced
    - unexpected exception  → Err(InternalError) and an error log line
    - cancellation          → propagated as asyncio.CancelledError

A future whose polling task crashes therefore resolves as failed instead
of leaving its waiters suspended forever.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Coroutine, TypeVar

from .config import BackgroundTaskConfig
from .errors import DispatchError, Err, Result, internal_error
from .observability import get_logger


logger = get_logger(__name__)

T = TypeVar("T")


async def run_to_result(
    coro: Awaitable[Result[T, DispatchError]],
    *,
    describe: str = "Background task",
    request_id: str | None = None,
) -> Result[T, DispatchError]:
    """
    Await `coro`, converting any escaping exception into Err.
    """
    try:
        return await coro
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.exception(f"{describe} crashed", exc, request_id=request_id)
        return Err(internal_error(
            f"{describe} failed: {exc}",
            exc=exc,
            request_id=request_id,
        ))


class BackgroundTaskExecutor:
    """
    Background task executor.

    Features:
        - Semaphore-bounded concurrency
        - Tasks always resolve to a Result
        - Graceful shutdown with timeout, then cancellation

    Usage:
        executor = BackgroundTaskExecutor()
        task = executor.spawn(poll_coro, name="poll:req-1")
        result = await task
        await executor.stop()
    """

    def __init__(self, config: BackgroundTaskConfig | None = None) -> None:
        self._config = config or BackgroundTaskConfig()
        self._semaphore = asyncio.Semaphore(self._config.max_concurrent_tasks)
        self._running = True
        self._active_tasks: set[asyncio.Task[Any]] = set()

        self._spawned_count = 0
        self._failed_count = 0

    @property
    def active_count(self) -> int:
        return len(self._active_tasks)

    @property
    def running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict[str, int]:
        return {
            "spawned": self._spawned_count,
            "failed": self._failed_count,
            "active": len(self._active_tasks),
        }

    def spawn(
        self,
        coro: Coroutine[Any, Any, Result[T, DispatchError]],
        *,
        name: str | None = None,
        describe: str = "Background task",
        request_id: str | None = None,
        on_done: Callable[[Result[T, DispatchError]], None] | None = None,
    ) -> asyncio.Task[Result[T, DispatchError]]:
        """
        Schedule `coro` and return its task.

        Raises:
            RuntimeError: executor already stopped (a caller bug)
        """
        if not self._running:
            coro.close()
            raise RuntimeError("BackgroundTaskExecutor is stopped")

        self._spawned_count += 1

        async def _runner() -> Result[T, DispatchError]:
            try:
                async with self._semaphore:
                    result = await run_to_result(
                        coro, describe=describe, request_id=request_id,
                    )
            except asyncio.CancelledError:
                # Cancelled while queued on the semaphore: coro never started.
                coro.close()
                raise
            if isinstance(result, Err):
                self._failed_count += 1
            if on_done is not None:
                on_done(result)
            return result

        task = asyncio.create_task(_runner(), name=name)
        self._active_tasks.add(task)
        task.add_done_callback(self._active_tasks.discard)
        return task

    async def stop(self) -> None:
        """
        Stop executor with graceful shutdown.

        Waits up to shutdown_timeout for active tasks to complete,
        then cancels remaining tasks.
        """
        self._running = False
        if not self._active_tasks:
            return

        pending = list(self._active_tasks)
        done, still_running = await asyncio.wait(
            pending, timeout=self._config.shutdown_timeout,
        )
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning(
                "cancelled background tasks on shutdown",
                count=len(still_running),
            )
        self._active_tasks.clear()
