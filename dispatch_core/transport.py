"""
Transport Module: Pooled JSON-over-HTTP with Retries
=====================================================

Features:
    - One httpx.AsyncClient per TrafficClass (isolated connection pools)
    - Lazy client creation with double-checked locking
    - orjson request/response bodies
    - Retry on transport errors, 408, 429 and 5xx with jittered backoff
    - Server `x-should-retry` header overrides the retry decision
    - Every 429 is reported to the shared RateLimiter

Result Contract:
    post() never raises for network or HTTP failures; it returns
    Ok(decoded JSON object) or Err(DispatchError).
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, Awaitable, Callable, Mapping, Protocol

import httpx
import orjson

from .config import (
    ClientConfig,
    RetryConfig,
    TrafficClass,
    TransportConfig,
)
from .errors import (
    DispatchError,
    Err,
    ErrorCategory,
    Ok,
    Result,
    category_for_status,
    connection_error,
    invalid_response_error,
    status_error,
)
from .observability import Timer, get_logger
from .rate_limiter import RateLimiter
from .retry import jittered_delay, parse_retry_after, should_retry_header


logger = get_logger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class Transport(Protocol):
    """Collaborator that performs one logical POST, retries included."""

    async def post(
        self,
        path: str,
        body: Mapping[str, Any],
        *,
        traffic_class: TrafficClass,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
    ) -> Result[dict[str, Any], DispatchError]: ...

    async def close(self) -> None: ...


# =============================================================================
# CONNECTION POOLS
# =============================================================================

class HTTPClientPool:
    """
    Managed per-traffic-class HTTP clients.

    A slow poll can only exhaust the POLLING pool; CONTROL calls such as
    heartbeats and session creation always have their own connections.
    """

    def __init__(
        self,
        base_url: str,
        config: TransportConfig,
        *,
        headers: Mapping[str, str] | None = None,
        timeout: float = 120.0,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._config = config
        self._headers = dict(headers or {})
        self._timeout = timeout
        self._http_transport = http_transport
        self._clients: dict[TrafficClass, httpx.AsyncClient] = {}
        self._lock = asyncio.Lock()

    async def get_client(self, traffic_class: TrafficClass) -> httpx.AsyncClient:
        """
        Get or create the client for `traffic_class`.

        Uses double-checked locking.
        """
        client = self._clients.get(traffic_class)
        if client is not None:
            return client

        async with self._lock:
            client = self._clients.get(traffic_class)
            if client is not None:
                return client

            pool = self._config.for_class(traffic_class)
            kwargs: dict[str, Any] = {}
            if self._http_transport is not None:
                kwargs["transport"] = self._http_transport
            client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=self._headers,
                http2=pool.http2,
                limits=httpx.Limits(
                    max_connections=pool.max_connections,
                    max_keepalive_connections=pool.max_keepalive_connections,
                    keepalive_expiry=pool.keepalive_expiry,
                ),
                timeout=httpx.Timeout(self._timeout, connect=10.0),
                **kwargs,
            )
            self._clients[traffic_class] = client
            return client

    @property
    def open_classes(self) -> set[TrafficClass]:
        return set(self._clients)

    async def close(self) -> None:
        """Close every client and release connections."""
        async with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            await client.aclose()


# =============================================================================
# HTTP TRANSPORT
# =============================================================================

class HTTPTransport:
    """
    JSON POST transport with retry and shared rate-limit reporting.

    Retry Strategy:
        - Transport errors and attempt timeouts: jittered exponential
        - 429: wait the server hint (default 1s), record shared backoff
        - 408 and 5xx: jittered exponential (or server hint when given)
        - x-should-retry: true/false overrides the status-based decision
    """

    def __init__(
        self,
        client_config: ClientConfig,
        transport_config: TransportConfig | None = None,
        retry_config: RetryConfig | None = None,
        *,
        rate_limiter: RateLimiter | None = None,
        sleep: SleepFn = asyncio.sleep,
        http_transport: httpx.AsyncBaseTransport | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._config = client_config
        self._retry = retry_config or RetryConfig()
        self._rate_limiter = rate_limiter
        self._sleep = sleep
        self._rng = rng
        self._pool = HTTPClientPool(
            client_config.base_url,
            transport_config or TransportConfig(),
            headers={
                "content-type": "application/json",
                "x-api-key": client_config.api_key,
            },
            timeout=client_config.timeout,
            http_transport=http_transport,
        )

    @property
    def pool(self) -> HTTPClientPool:
        return self._pool

    @property
    def rate_limiter(self) -> RateLimiter | None:
        return self._rate_limiter

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
        """
        POST `body` to `path` on the pool for `traffic_class`.

        Args:
            path: Endpoint path relative to the base URL
            body: JSON-serialisable request body
            traffic_class: Connection pool to use
            headers: Extra per-call headers
            timeout: Per-attempt timeout override
            max_retries: Retry count override (0 disables retries)
        """
        client = await self._pool.get_client(traffic_class)
        retries = self._config.max_retries if max_retries is None else max_retries
        attempt_timeout = timeout if timeout is not None else self._config.timeout
        content = orjson.dumps(body)
        attempt = 0

        while True:
            try:
                with Timer() as timer:
                    response = await client.post(
                        path,
                        content=content,
                        headers=dict(headers) if headers else None,
                        timeout=attempt_timeout,
                    )
            except httpx.TimeoutException as exc:
                error: DispatchError = connection_error(
                    f"Request to {path} timed out after {attempt_timeout}s: {exc}",
                    timeout_seconds=attempt_timeout,
                )
                delay = jittered_delay(attempt, self._retry, self._rng)
            except httpx.TransportError as exc:
                error = connection_error(f"Connection error on {path}: {exc}")
                delay = jittered_delay(attempt, self._retry, self._rng)
            else:
                logger.debug(
                    "http response",
                    path=path,
                    status=response.status_code,
                    traffic_class=traffic_class.value,
                    elapsed_ms=round(timer.elapsed_ms, 2),
                )
                if response.is_success:
                    return self._decode(path, response)

                retry_after = parse_retry_after(response.headers)
                if response.status_code == 429 and self._rate_limiter is not None:
                    self._rate_limiter.record_backoff(retry_after)

                error = self._status_error(path, response, retry_after)
                override = should_retry_header(response.headers)
                retryable = (
                    override
                    if override is not None
                    else _retryable_status(response.status_code)
                )
                if not retryable:
                    return Err(error)

                if retry_after is not None:
                    delay = min(retry_after, self._retry.max_delay)
                elif response.status_code == 429:
                    delay = 1.0
                else:
                    delay = jittered_delay(attempt, self._retry, self._rng)

            if attempt >= retries:
                return Err(error)

            logger.warning(
                "retrying request",
                path=path,
                attempt=attempt + 1,
                max_retries=retries,
                delay=round(delay, 3),
                error=str(error),
            )
            await self._sleep(delay)
            attempt += 1

    def _decode(
        self,
        path: str,
        response: httpx.Response,
    ) -> Result[dict[str, Any], DispatchError]:
        if not response.content:
            return Ok({})
        try:
            data = orjson.loads(response.content)
        except orjson.JSONDecodeError as exc:
            return Err(invalid_response_error(f"Invalid JSON from {path}: {exc}"))
        if not isinstance(data, dict):
            return Err(invalid_response_error(
                f"Expected JSON object from {path}, got {type(data).__name__}"
            ))
        return Ok(data)

    def _status_error(
        self,
        path: str,
        response: httpx.Response,
        retry_after: float | None,
    ) -> DispatchError:
        status = response.status_code
        body: Any = None
        try:
            body = orjson.loads(response.content) if response.content else None
        except orjson.JSONDecodeError:
            body = response.text

        message = f"HTTP {status} from {path}"
        category = category_for_status(status)
        if isinstance(body, dict):
            detail = body.get("message") or body.get("detail") or body.get("error")
            if isinstance(detail, dict):
                detail = detail.get("message")
            if detail:
                message = f"{message}: {detail}"
            raw_category = body.get("category")
            if raw_category is not None and status != 429:
                category = self._config.category_scheme.parse(raw_category)
        elif isinstance(body, str) and body:
            message = f"{message}: {body[:200]}"

        if status == 429:
            category = ErrorCategory.SERVER

        return status_error(
            message,
            status_code=status,
            category=category,
            retry_after_seconds=retry_after,
            response_body=body,
        )

    async def close(self) -> None:
        await self._pool.close()


def _retryable_status(status_code: int) -> bool:
    return status_code in (408, 429) or status_code >= 500
