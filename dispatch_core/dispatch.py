"""
Dispatch Module: Admission Control for Concurrent Sends
========================================================

Layered limits applied to every BULK_CONCURRENT send (sampling):

    1. Global concurrency semaphore
    2. Throttled semaphore, only while a backoff is active or ended
       within `backoff_window` seconds
    3. Byte budget; during a recent backoff each request is charged
       `byte_penalty_multiplier` times its size

BytesSemaphore:
    The budget is allowed to go negative so that a single request larger
    than the whole budget can still run. New acquisitions wait while the
    budget is negative.
"""

from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, AsyncIterator

import orjson

from .config import DispatchConfig
from .rate_limiter import RateLimiter


class BytesSemaphore:
    """Byte-weighted semaphore whose budget may dip below zero."""

    def __init__(self, budget: int) -> None:
        assert budget >= 1, "budget must be >= 1"
        self._budget = budget
        self._available = budget
        self._condition = asyncio.Condition()

    @property
    def available(self) -> int:
        return self._available

    @property
    def budget(self) -> int:
        return self._budget

    async def acquire(self, nbytes: int) -> None:
        async with self._condition:
            await self._condition.wait_for(lambda: self._available >= 0)
            self._available -= nbytes

    async def release(self, nbytes: int) -> None:
        async with self._condition:
            self._available += nbytes
            self._condition.notify_all()

    @asynccontextmanager
    async def hold(self, nbytes: int) -> AsyncIterator[None]:
        await self.acquire(nbytes)
        try:
            yield
        finally:
            await self.release(nbytes)


def estimate_request_bytes(body: Any) -> int:
    """Serialized size of a request body."""
    return len(orjson.dumps(body))


class SamplingDispatch:
    """
    Admission control shared by every sampling send of one client.

    Usage:
        async with dispatch.limit(estimate_request_bytes(body)):
            result = await transport.post(...)
    """

    def __init__(
        self,
        config: DispatchConfig | None = None,
        *,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self._config = config or DispatchConfig()
        self._rate_limiter = rate_limiter
        self._concurrency = asyncio.Semaphore(self._config.concurrency)
        self._throttled = asyncio.Semaphore(self._config.throttled_concurrency)
        self._bytes = BytesSemaphore(self._config.byte_budget)

    @property
    def bytes_semaphore(self) -> BytesSemaphore:
        return self._bytes

    def recently_backed_off(self) -> bool:
        if self._rate_limiter is None:
            return False
        return self._rate_limiter.backoff_ended_within(self._config.backoff_window)

    @asynccontextmanager
    async def limit(self, nbytes: int) -> AsyncIterator[None]:
        throttled = self.recently_backed_off()
        cost = nbytes * self._config.byte_penalty_multiplier if throttled else nbytes
        async with AsyncExitStack() as stack:
            await stack.enter_async_context(self._concurrency)
            if throttled:
                await stack.enter_async_context(self._throttled)
            await stack.enter_async_context(self._bytes.hold(cost))
            yield
