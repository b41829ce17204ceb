"""
Configuration Module: Type-Safe Runtime Configuration
======================================================

Design Principles:
    - Immutable frozen dataclasses, shared freely between tasks
    - Slots for compact instances and fast attribute access
    - Environment-driven configuration with validation
    - One connection pool configuration per traffic class

Boundary Invariants:
    - All numeric configs validated in __post_init__
    - Pre-conditions asserted at module boundaries
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Final

from .errors import CategoryScheme


# =============================================================================
# CONSTANTS
# =============================================================================
DEFAULT_BASE_URL: Final[str] = "http://localhost:8000"
DEFAULT_TIMEOUT_SECONDS: Final[float] = 120.0
DEFAULT_MAX_RETRIES: Final[int] = 2
DEFAULT_MAX_CHUNK_ITEMS: Final[int] = 128
DEFAULT_MAX_CHUNK_UNITS: Final[int] = 500_000
DEFAULT_BYTE_BUDGET: Final[int] = 5 * 1024 * 1024


class TrafficClass(str, Enum):
    """
    Connection pool partition for outbound calls.

    Calls of one class never wait on connections held by another, so
    long polls cannot starve session control or ordered sends.
    """
    CONTROL = "control"
    BULK_ORDERED = "bulk_ordered"
    BULK_CONCURRENT = "bulk_concurrent"
    POLLING = "polling"


@dataclass(slots=True, frozen=True)
class ClientConfig:
    """
    Service endpoint and credential configuration.

    Attributes:
        base_url: Service root URL (scheme and host are required)
        api_key: Credential sent with every call
        timeout: Per-attempt HTTP timeout in seconds
        max_retries: Transport-level retries for one logical send
        user_metadata: Opaque metadata attached to created sessions
        category_scheme: Mapping of wire category strings to categories
    """
    base_url: str = DEFAULT_BASE_URL
    api_key: str = ""
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES
    user_metadata: dict[str, str] | None = None
    category_scheme: CategoryScheme = field(default_factory=CategoryScheme)

    def __post_init__(self) -> None:
        """
        Boundary invariant validation.
        Raises AssertionError for invalid configurations.
        """
        assert self.base_url.strip(), "base_url cannot be empty"
        assert 0.0 < self.timeout <= 3600.0, (
            f"timeout must be in (0, 3600], got {self.timeout}"
        )
        assert 0 <= self.max_retries <= 10, (
            f"max_retries must be in [0, 10], got {self.max_retries}"
        )


@dataclass(slots=True, frozen=True)
class ConnectionPoolConfig:
    """
    HTTP connection pool settings for a single traffic class.
    """
    max_connections: int = 50
    max_keepalive_connections: int = 20
    keepalive_expiry: float = 30.0
    http2: bool = False

    def __post_init__(self) -> None:
        assert self.max_connections >= 1, "max_connections must be >= 1"
        assert self.max_keepalive_connections >= 0, "max_keepalive >= 0"
        assert self.max_keepalive_connections <= self.max_connections, (
            "keepalive connections cannot exceed max connections"
        )
        assert self.keepalive_expiry > 0, "keepalive_expiry must be positive"


def _default_pools() -> dict[TrafficClass, ConnectionPoolConfig]:
    return {
        TrafficClass.CONTROL: ConnectionPoolConfig(
            max_connections=10, max_keepalive_connections=5,
        ),
        TrafficClass.BULK_ORDERED: ConnectionPoolConfig(
            max_connections=20, max_keepalive_connections=10,
        ),
        TrafficClass.BULK_CONCURRENT: ConnectionPoolConfig(
            max_connections=100, max_keepalive_connections=50,
        ),
        TrafficClass.POLLING: ConnectionPoolConfig(
            max_connections=50, max_keepalive_connections=20,
        ),
    }


@dataclass(slots=True, frozen=True)
class TransportConfig:
    """
    Per traffic class connection pool layout.

    Every TrafficClass must have an entry; a missing class is a
    configuration bug rather than something to fall back from.
    """
    pools: dict[TrafficClass, ConnectionPoolConfig] = field(
        default_factory=_default_pools
    )

    def __post_init__(self) -> None:
        missing = [tc.value for tc in TrafficClass if tc not in self.pools]
        assert not missing, f"missing pool config for traffic classes: {missing}"

    def for_class(self, traffic_class: TrafficClass) -> ConnectionPoolConfig:
        return self.pools[traffic_class]


@dataclass(slots=True, frozen=True)
class RetryConfig:
    """
    Transport retry backoff.

    Delay for attempt n is min(base_delay * 2**n, max_delay), scaled by a
    random factor in [1 - jitter, 1].
    """
    base_delay: float = 0.5
    max_delay: float = 8.0
    jitter: float = 0.25

    def __post_init__(self) -> None:
        assert self.base_delay > 0, "base_delay must be positive"
        assert self.max_delay >= self.base_delay, "max_delay must be >= base_delay"
        assert 0.0 <= self.jitter < 1.0, "jitter must be in [0, 1)"


@dataclass(slots=True, frozen=True)
class PollingConfig:
    """
    Future polling configuration.

    Attributes:
        initial_backoff: First pending-poll delay (seconds)
        max_backoff: Cap on the exponential poll delay
        paused_backoff: Delay used while the server queue is paused
            and no retry hint was given
        timeout: Overall polling budget (None = unbounded)
        http_timeout: Per-attempt HTTP timeout for retrieve calls
        max_failed_polls: Retryable server-reported failures tolerated
            before the future resolves with that failure
        max_transient_failures: Transport failures tolerated before
            the future resolves with the transport error
    """
    initial_backoff: float = 1.0
    max_backoff: float = 30.0
    paused_backoff: float = 1.0
    timeout: float | None = None
    http_timeout: float | None = None
    max_failed_polls: int = 3
    max_transient_failures: int = 10

    def __post_init__(self) -> None:
        assert self.initial_backoff > 0, "initial_backoff must be positive"
        assert self.max_backoff >= self.initial_backoff, (
            "max_backoff must be >= initial_backoff"
        )
        assert self.paused_backoff > 0, "paused_backoff must be positive"
        assert self.timeout is None or self.timeout > 0, "timeout must be positive"
        assert self.http_timeout is None or self.http_timeout > 0, (
            "http_timeout must be positive"
        )
        assert self.max_failed_polls >= 0, "max_failed_polls must be >= 0"
        assert self.max_transient_failures >= 0, "max_transient_failures must be >= 0"


@dataclass(slots=True, frozen=True)
class ChunkingConfig:
    """
    Limits for splitting one logical call into ordered chunks.
    """
    max_items: int = DEFAULT_MAX_CHUNK_ITEMS
    max_units: int = DEFAULT_MAX_CHUNK_UNITS

    def __post_init__(self) -> None:
        assert self.max_items >= 1, "max_items must be >= 1"
        assert self.max_units >= 1, "max_units must be >= 1"


@dataclass(slots=True, frozen=True)
class DispatchConfig:
    """
    Admission control for concurrent-class sends.

    Backpressure Strategy:
        - Global concurrency cap
        - Reduced cap while a backoff is active or recently ended
        - Byte budget, with a multiplied cost during recent backoff
    """
    concurrency: int = 400
    throttled_concurrency: int = 10
    byte_budget: int = DEFAULT_BYTE_BUDGET
    backoff_window: float = 10.0
    byte_penalty_multiplier: int = 20

    def __post_init__(self) -> None:
        assert self.concurrency >= 1, "concurrency must be >= 1"
        assert 1 <= self.throttled_concurrency <= self.concurrency, (
            "throttled_concurrency must be in [1, concurrency]"
        )
        assert self.byte_budget >= 1, "byte_budget must be >= 1"
        assert self.backoff_window >= 0, "backoff_window must be >= 0"
        assert self.byte_penalty_multiplier >= 1, "byte_penalty_multiplier must be >= 1"


@dataclass(slots=True, frozen=True)
class BackgroundTaskConfig:
    """
    Background task executor configuration.

    Implementation:
        - asyncio.Semaphore bounds concurrently running tasks
        - Graceful shutdown waits, then cancels stragglers
    """
    max_concurrent_tasks: int = 1000
    shutdown_timeout: float = 30.0

    def __post_init__(self) -> None:
        assert self.max_concurrent_tasks >= 1, "max_concurrent_tasks must be >= 1"
        assert self.shutdown_timeout > 0, "shutdown_timeout must be positive"


@dataclass(slots=True, frozen=True)
class HeartbeatConfig:
    """Session keep-alive loop settings."""
    interval: float = 10.0
    enabled: bool = True

    def __post_init__(self) -> None:
        assert self.interval > 0, "heartbeat interval must be positive"


@dataclass(slots=True)
class DispatchCoreConfig:
    """
    Root configuration aggregating all sub-configs.

    Note: This is NOT frozen because it holds mutable references,
    but all contained configs ARE frozen.
    """
    client: ClientConfig = field(default_factory=ClientConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    background_tasks: BackgroundTaskConfig = field(
        default_factory=BackgroundTaskConfig
    )
    heartbeat: HeartbeatConfig = field(default_factory=HeartbeatConfig)
    log_level: str = "INFO"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_config_from_env() -> DispatchCoreConfig:
    """
    Load configuration from environment variables.

    Environment Variables:
        DISPATCH_BASE_URL: Service root URL
        DISPATCH_API_KEY: Credential
        DISPATCH_TIMEOUT: Per-attempt HTTP timeout seconds
        DISPATCH_MAX_RETRIES: Transport retries per send
        DISPATCH_POLL_TIMEOUT: Overall polling budget seconds (unset = unbounded)
        DISPATCH_HTTP2: Enable HTTP/2 on every pool
        DISPATCH_LOG_LEVEL: Logging level name

    Raises:
        AssertionError: If validation fails
        ValueError: If environment variable parsing fails
    """
    client = ClientConfig(
        base_url=os.getenv("DISPATCH_BASE_URL", DEFAULT_BASE_URL),
        api_key=os.getenv("DISPATCH_API_KEY", ""),
        timeout=float(os.getenv("DISPATCH_TIMEOUT", str(DEFAULT_TIMEOUT_SECONDS))),
        max_retries=int(os.getenv("DISPATCH_MAX_RETRIES", str(DEFAULT_MAX_RETRIES))),
    )

    http2 = _env_bool("DISPATCH_HTTP2", False)
    pools = {
        traffic_class: ConnectionPoolConfig(
            max_connections=pool.max_connections,
            max_keepalive_connections=pool.max_keepalive_connections,
            keepalive_expiry=pool.keepalive_expiry,
            http2=http2,
        )
        for traffic_class, pool in _default_pools().items()
    }

    poll_timeout_raw = os.getenv("DISPATCH_POLL_TIMEOUT")
    polling = PollingConfig(
        timeout=float(poll_timeout_raw) if poll_timeout_raw else None,
    )

    return DispatchCoreConfig(
        client=client,
        transport=TransportConfig(pools=pools),
        polling=polling,
        log_level=os.getenv("DISPATCH_LOG_LEVEL", "INFO").upper(),
    )


# =============================================================================
# GLOBAL CONFIG: Lazy singleton
# =============================================================================
_global_config: DispatchCoreConfig | None = None


def get_config() -> DispatchCoreConfig:
    """
    Get the global configuration singleton.
    """
    global _global_config
    if _global_config is None:
        _global_config = load_config_from_env()
    return _global_config


def set_config(config: DispatchCoreConfig | None) -> None:
    """
    Override the global configuration (for testing).
    Passing None forces a reload from the environment on next access.
    """
    global _global_config
    _global_config = config
