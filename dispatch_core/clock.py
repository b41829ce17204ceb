"""
Deadline register: a single monotonic timestamp shared by many tasks.

The register only ever moves later. Writers compute the new deadline and
store it if it is beyond the current one under a short lock, so a
concurrent writer with an earlier deadline can never pull it back. The
lock is a threading.Lock: limiters may be shared by event loops running
in different threads.

This stands in for an atomic compare-and-swap register: Python has no
atomic float CAS, so the lock guards only the compare-and-store and
reads of the current deadline stay lock-free.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, TypeAlias


Clock: TypeAlias = Callable[[], float]


class DeadlineRegister:
    __slots__ = ("_deadline", "_clock", "_lock")

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._deadline: float = 0.0
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def clock(self) -> Clock:
        return self._clock

    def now(self) -> float:
        return self._clock()

    def get(self) -> float:
        """Current deadline (monotonic seconds); 0.0 when never set."""
        return self._deadline

    def extend(self, until: float) -> bool:
        """
        Move the deadline to `until` if that is later than the current one.

        Returns True when the register changed.
        """
        with self._lock:
            if until <= self._deadline:
                return False
            self._deadline = until
            return True

    def extend_by(self, seconds: float) -> float:
        """Extend to now + seconds; returns the resulting deadline."""
        self.extend(self._clock() + max(0.0, seconds))
        return self._deadline

    def reset(self) -> None:
        with self._lock:
            self._deadline = 0.0

    def remaining(self) -> float:
        """Seconds until the deadline, never negative."""
        return max(0.0, self._deadline - self._clock())

    def is_active(self) -> bool:
        return self._clock() < self._deadline
