"""
Retry and backoff helpers shared by the transport and the poller.
"""

from __future__ import annotations

import math
import random
from typing import Mapping

import httpx

from .config import RetryConfig
from .observability import get_logger


logger = get_logger(__name__)


def exponential_backoff(iteration: int, initial: float = 1.0, cap: float = 30.0) -> float:
    """
    Deterministic poll delay: initial * 2**iteration, capped.

    exponential_backoff(0) == 1.0, (1) == 2.0, (2) == 4.0 ... capped at 30.0
    """
    if iteration < 0:
        iteration = 0
    # Large exponents overflow float; cap them early.
    if iteration >= 64:
        return cap
    return min(initial * (2 ** iteration), cap)


def jittered_delay(
    attempt: int,
    config: RetryConfig,
    rng: random.Random | None = None,
) -> float:
    """Transport retry delay with multiplicative jitter in [1 - jitter, 1]."""
    base = exponential_backoff(attempt, config.base_delay, config.max_delay)
    factor = (rng or random).uniform(1.0 - config.jitter, 1.0)
    return base * factor


def parse_retry_after(headers: httpx.Headers | Mapping[str, str]) -> float | None:
    """
    Server retry hint in seconds.

    Prefers `retry-after-ms`, then `retry-after` (seconds). HTTP-date
    forms and unparsable values are ignored, as is anything negative or
    non-finite. Returns None when no usable hint is present.
    """
    if not isinstance(headers, httpx.Headers):
        headers = httpx.Headers(headers)

    raw_ms = headers.get("retry-after-ms")
    if raw_ms is not None:
        try:
            value = float(raw_ms)
        except ValueError:
            logger.debug("ignoring unparsable retry-after-ms", value=raw_ms)
        else:
            if math.isfinite(value) and value >= 0:
                return value / 1000.0

    raw = headers.get("retry-after")
    if raw is not None:
        try:
            value = float(raw)
        except ValueError:
            logger.debug("ignoring unparsable retry-after", value=raw)
        else:
            if math.isfinite(value) and value >= 0:
                return value

    return None


def should_retry_header(headers: httpx.Headers) -> bool | None:
    """Explicit `x-should-retry` override from the server, if any."""
    raw = headers.get("x-should-retry")
    if raw is None:
        return None
    lowered = raw.strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    return None
