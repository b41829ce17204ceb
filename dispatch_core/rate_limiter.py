"""
Rate Limiter Module: Shared Server-Directed Backoff
====================================================

Design Principles:
    - One limiter per (normalised base URL, credential) pair
    - Identity sharing: every dispatcher for the same pair holds the
      same instance, so a backoff observed by one is honoured by all
    - The limiter never invents pauses; it only stores what the server
      or the transport reported

Registry:
    Get-or-create uses dict.setdefault, an atomic insert-if-absent.
    Concurrent creators (tasks or threads) racing on a fresh key may each
    build a candidate instance, but exactly one is stored and every caller
    receives that one.
"""

from __future__ import annotations

import asyncio
import math
import time
from typing import Awaitable, Callable, Final

from .clock import Clock, DeadlineRegister
from .observability import get_logger
from .pool_key import limiter_key


logger = get_logger(__name__)

DEFAULT_BACKOFF_SECONDS: Final[float] = 1.0

SleepFn = Callable[[float], Awaitable[None]]


class RateLimiter:
    """
    Backoff gate shared by all dispatchers of one credential/endpoint pair.

    Usage:
        await limiter.wait_until_clear()
        result = await transport.post(...)
        if 429: limiter.record_backoff(retry_after)
    """

    def __init__(
        self,
        key: tuple[str, str] | None = None,
        *,
        clock: Clock = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
        default_backoff: float = DEFAULT_BACKOFF_SECONDS,
    ) -> None:
        assert default_backoff > 0, "default_backoff must be positive"
        self._key = key
        self._register = DeadlineRegister(clock)
        self._sleep = sleep
        self._default_backoff = default_backoff

    @property
    def key(self) -> tuple[str, str] | None:
        return self._key

    @property
    def deadline(self) -> float:
        return self._register.get()

    def should_wait(self) -> bool:
        """True while a recorded backoff has not yet elapsed."""
        return self._register.is_active()

    def remaining(self) -> float:
        return self._register.remaining()

    def record_backoff(self, duration: float | None = None) -> float:
        """
        Push the backoff deadline to now + duration.

        `duration` None (no server hint) or non-finite uses the default
        of 1 second.
        An earlier deadline never shortens an existing one.
        Returns the effective deadline.
        """
        if duration is None or not math.isfinite(duration):
            seconds = self._default_backoff
        else:
            seconds = max(0.0, duration)
        before = self._register.get()
        deadline = self._register.extend_by(seconds)
        if deadline != before:
            logger.debug(
                "backoff recorded",
                endpoint=self._key[0] if self._key else None,
                seconds=seconds,
            )
        return deadline

    def clear(self) -> None:
        self._register.reset()

    async def wait_until_clear(self) -> None:
        """
        Suspend until no backoff is active.

        Re-checks after every sleep: another task may have pushed the
        deadline further while this one was waiting.
        """
        while True:
            remaining = self._register.remaining()
            if remaining <= 0:
                return
            await self._sleep(remaining)

    def backoff_ended_within(self, window: float) -> bool:
        """
        True while a backoff is active or ended less than `window` seconds ago.
        """
        deadline = self._register.get()
        if deadline <= 0:
            return False
        return self._register.now() < deadline + window


class RateLimiterRegistry:
    """
    Race-free get-or-create table of RateLimiters.

    Constructed once by the owning ServiceClient and passed by
    reference; there is no module-level instance.
    """

    def __init__(
        self,
        *,
        clock: Clock = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
        default_backoff: float = DEFAULT_BACKOFF_SECONDS,
    ) -> None:
        self._limiters: dict[tuple[str, str], RateLimiter] = {}
        self._clock = clock
        self._sleep = sleep
        self._default_backoff = default_backoff

    def for_key(self, base_url: str, api_key: str) -> RateLimiter:
        """
        Shared limiter for this endpoint and credential.

        Raises:
            ValueError: base_url lacks a scheme or host
        """
        key = limiter_key(base_url, api_key)
        limiter = self._limiters.get(key)
        if limiter is not None:
            return limiter
        candidate = RateLimiter(
            key,
            clock=self._clock,
            sleep=self._sleep,
            default_backoff=self._default_backoff,
        )
        return self._limiters.setdefault(key, candidate)

    def __len__(self) -> int:
        return len(self._limiters)

    def __contains__(self, key: object) -> bool:
        return key in self._limiters
