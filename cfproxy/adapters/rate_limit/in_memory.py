"""In-memory per-identity rate limiters.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: entries are spread over shards, each guarded by its own lock,
  so checks for unrelated identities rarely contend.
- State is not persisted; a restart forgets every window.
"""

from __future__ import annotations

import math
import threading
import time
import zlib
from dataclasses import dataclass
from typing import Callable

from cfproxy.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult


@dataclass
class _WindowState:
    window_start: float
    count: int


class _Shard:
    __slots__ = ("lock", "entries", "last_sweep")

    def __init__(self, now: float) -> None:
        self.lock = threading.Lock()
        self.entries: dict[str, _WindowState] = {}
        self.last_sweep = now


class InMemoryWindowRateLimiter(AbstractRateLimiter):
    """Limit admissions per identity within a window that opens on first use.

    A window starts with the first admitted request of an identity and lasts
    ``window_seconds`` on a monotonic clock. Up to ``limit`` requests are
    admitted inside it; later ones are denied without touching the counter,
    so recovery depends on elapsed time only. The first request after the
    window has elapsed opens a fresh window.

    Entries are created lazily and kept for the process lifetime unless
    ``sweep_interval_seconds`` is set, in which case a shard drops entries
    whose window ended more than that long ago, at most once per interval.
    """

    def __init__(
        self,
        *,
        limit: int,
        window_seconds: float = 1.0,
        shards: int = 16,
        sweep_interval_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the limiter.

        Args:
            limit: Maximum number of admissions per window.
            window_seconds: Window length in seconds.
            shards: Number of independently locked partitions of the store.
            sweep_interval_seconds: Idle time after which entries are evicted;
                0 disables eviction.
            clock: Monotonic time source returning seconds.

        Raises:
            ValueError: If any argument is out of range.
        """
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        if shards < 1:
            raise ValueError("shards must be >= 1")
        if sweep_interval_seconds < 0:
            raise ValueError("sweep_interval_seconds must be >= 0")

        self._limit = limit
        self._window_seconds = window_seconds
        self._sweep_interval = sweep_interval_seconds
        self._clock = clock
        now = clock()
        self._shards = [_Shard(now) for _ in range(shards)]

    @property
    def limit(self) -> int:
        return self._limit

    def __len__(self) -> int:
        return sum(len(shard.entries) for shard in self._shards)

    def _shard_for(self, key: str) -> _Shard:
        # crc32 rather than hash() so placement is stable across processes
        return self._shards[zlib.crc32(key.encode()) % len(self._shards)]

    def _maybe_sweep(self, shard: _Shard, now: float) -> None:
        """Drop entries idle for longer than the sweep interval.

        Must be called with the shard lock held.
        """
        if not self._sweep_interval or now - shard.last_sweep < self._sweep_interval:
            return
        horizon = self._window_seconds + self._sweep_interval
        stale = [k for k, s in shard.entries.items() if now - s.window_start >= horizon]
        for key in stale:
            del shard.entries[key]
        shard.last_sweep = now

    def consume(self, key: str) -> RateLimitResult:
        """Check and record one admission for ``key``.

        Raises:
            ValueError: If key is empty.
        """
        if not key:
            raise ValueError("key must be a non-empty string")

        shard = self._shard_for(key)

        with shard.lock:
            now = self._clock()
            self._maybe_sweep(shard, now)

            state = shard.entries.get(key)
            if state is None or now - state.window_start >= self._window_seconds:
                state = _WindowState(window_start=now, count=0)
                shard.entries[key] = state

            if state.count < self._limit:
                state.count += 1
                return RateLimitResult(
                    allowed=True,
                    limit=self._limit,
                    remaining=self._limit - state.count,
                    retry_after_seconds=None,
                )

            reset_in = state.window_start + self._window_seconds - now
            return RateLimitResult(
                allowed=False,
                limit=self._limit,
                remaining=0,
                retry_after_seconds=max(1, int(math.ceil(reset_in))),
            )


class AllowAllRateLimiter(AbstractRateLimiter):
    """Limiter used when limiting is switched off: admits everything, stores nothing."""

    def consume(self, key: str) -> RateLimitResult:
        return RateLimitResult(allowed=True, limit=0, remaining=0, retry_after_seconds=None)
