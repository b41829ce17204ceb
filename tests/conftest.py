# ==============================================================================
# CONFTEST - Pytest Fixtures and Configuration
# ==============================================================================
# Fake transport, manual clock and recording sleep shared by all tests
# ==============================================================================

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

import pytest

from dispatch_core.config import (
    ClientConfig,
    DispatchCoreConfig,
    HeartbeatConfig,
    PollingConfig,
    TrafficClass,
)
from dispatch_core.errors import DispatchError, Err, Ok, Result
from dispatch_core.future import Poller


# ==============================================================================
# TIME
# ==============================================================================

class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """
    Sleep replacement: records every delay, optionally advances the
    clock by it, and yields to the event loop once.
    """

    def __init__(self, clock: ManualClock | None = None) -> None:
        self.clock = clock
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)
        await asyncio.sleep(0)


# ==============================================================================
# TRANSPORT
# ==============================================================================

@dataclass
class Call:
    path: str
    body: dict[str, Any]
    traffic_class: TrafficClass
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float | None = None
    max_retries: int | None = None


Handler = Callable[[Call], Any]


class FakeTransport:
    """
    Scripted Transport.

    Responses per path are either queued (`script`) or computed by a
    handler (`route`). Plain dicts are wrapped in Ok; DispatchErrors in Err.
    """

    def __init__(self) -> None:
        self.calls: list[Call] = []
        self._scripts: dict[str, deque[Any]] = defaultdict(deque)
        self._handlers: dict[str, Handler] = {}
        self.closed = False

    def script(self, path: str, *responses: Any) -> None:
        self._scripts[path].extend(responses)

    def route(self, path: str, handler: Handler) -> None:
        self._handlers[path] = handler

    def calls_to(self, path: str) -> list[Call]:
        return [c for c in self.calls if c.path == path]

    async def post(
        self,
        path: str,
        body: Mapping[str, Any],
        *,
        traffic_class: TrafficClass,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
    ) -> Result[dict[str, Any], DispatchError]:
        call = Call(
            path=path,
            body=dict(body),
            traffic_class=traffic_class,
            headers=dict(headers or {}),
            timeout=timeout,
            max_retries=max_retries,
        )
        self.calls.append(call)
        await asyncio.sleep(0)

        if path in self._handlers:
            response = self._handlers[path](call)
            if inspect.isawaitable(response):
                response = await response
        elif self._scripts[path]:
            response = self._scripts[path].popleft()
        else:
            raise AssertionError(f"unexpected call to {path}")

        if isinstance(response, (Ok, Err)):
            return response
        if isinstance(response, DispatchError):
            return Err(response)
        return Ok(response)

    async def close(self) -> None:
        self.closed = True


# ==============================================================================
# FIXTURES
# ==============================================================================

@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def sleep(clock: ManualClock) -> RecordingSleep:
    return RecordingSleep(clock)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def polling_config() -> PollingConfig:
    return PollingConfig()


@pytest.fixture
def poller(
    transport: FakeTransport,
    polling_config: PollingConfig,
    clock: ManualClock,
    sleep: RecordingSleep,
) -> Poller:
    return Poller(transport, config=polling_config, clock=clock, sleep=sleep)


@pytest.fixture
def core_config() -> DispatchCoreConfig:
    return DispatchCoreConfig(
        client=ClientConfig(base_url="https://api.example.test", api_key="test-key"),
        heartbeat=HeartbeatConfig(enabled=False),
    )


class RecordingObserver:
    def __init__(self) -> None:
        self.events: list[tuple[Any, dict[str, Any]]] = []

    def on_queue_state_change(self, queue_state: Any, metadata: Mapping[str, Any]) -> None:
        self.events.append((queue_state, dict(metadata)))


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()
