"""
Identity keys for shared per-endpoint state.

Two dispatchers talking to the same service with the same credential must
share one RateLimiter, so the endpoint part of the key is normalised: the
host is lower-cased, default ports and any path are dropped.
"""

from __future__ import annotations

from typing import Final

import httpx


DEFAULT_PORTS: Final[dict[str, int]] = {"http": 80, "https": 443}


def normalize_base_url(base_url: str) -> str:
    """
    Canonical scheme://host[:port] form of `base_url`.

    Raises:
        ValueError: the URL has no scheme or no host
    """
    try:
        url = httpx.URL(base_url.strip())
    except httpx.InvalidURL as exc:
        raise ValueError(f"invalid base_url {base_url!r}: {exc}") from exc

    scheme = url.scheme.lower()
    host = url.host.lower()
    if not scheme or not host:
        raise ValueError(f"base_url must include scheme and host: {base_url!r}")

    port = url.port
    if port is None or DEFAULT_PORTS.get(scheme) == port:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


def limiter_key(base_url: str, api_key: str) -> tuple[str, str]:
    """Key identifying one credential against one endpoint."""
    return normalize_base_url(base_url), api_key
