"""Rate limiting adapters.

This package keeps the admission store behind a small interface so the
request path never depends on how per-identity state is held.
"""

from __future__ import annotations

from cfproxy.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult
from cfproxy.adapters.rate_limit.in_memory import (
    AllowAllRateLimiter,
    InMemoryWindowRateLimiter,
)
from cfproxy.core.config import ProxySettings


def build_rate_limiter(settings: ProxySettings) -> AbstractRateLimiter:
    """Create the limiter matching the configured mode."""

    if not settings.rate_limit_active:
        return AllowAllRateLimiter()
    return InMemoryWindowRateLimiter(
        limit=settings.req_limit_per_sec,
        window_seconds=settings.rate_limit_window_seconds,
        shards=settings.rate_limit_shards,
        sweep_interval_seconds=settings.rate_limit_sweep_interval_seconds,
    )


__all__ = [
    "AbstractRateLimiter",
    "AllowAllRateLimiter",
    "InMemoryWindowRateLimiter",
    "RateLimitResult",
    "build_rate_limiter",
]
