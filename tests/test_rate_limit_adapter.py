"""Unit tests for in-memory rate limiter adapters."""

import threading
from unittest.mock import Mock

import pytest

from cfproxy.adapters.rate_limit import build_rate_limiter
from cfproxy.adapters.rate_limit.in_memory import (
    AllowAllRateLimiter,
    InMemoryWindowRateLimiter,
)
from cfproxy.core.config import ProxySettings


def test_allows_up_to_limit_in_same_window() -> None:
    clock = Mock(return_value=100.0)
    limiter = InMemoryWindowRateLimiter(limit=3, window_seconds=1, clock=clock)

    assert limiter.consume("k").allowed is True
    assert limiter.consume("k").allowed is True
    result = limiter.consume("k")
    assert result.allowed is True
    assert result.remaining == 0


def test_first_request_creates_entry_and_is_admitted() -> None:
    clock = Mock(return_value=100.0)
    limiter = InMemoryWindowRateLimiter(limit=6, clock=clock)

    assert len(limiter) == 0
    result = limiter.consume("1.2.3.4")

    assert result.allowed is True
    assert result.remaining == 5
    assert len(limiter) == 1


def test_seventh_request_within_window_denied_then_recovers() -> None:
    clock = Mock(return_value=0.0)
    limiter = InMemoryWindowRateLimiter(limit=6, window_seconds=1.0, clock=clock)

    decisions = []
    for i in range(7):
        clock.return_value = i * 0.15
        decisions.append(limiter.consume("1.2.3.4").allowed)

    assert decisions == [True] * 6 + [False]

    clock.return_value = 1.001
    assert limiter.consume("1.2.3.4").allowed is True


def test_blocks_when_over_limit() -> None:
    clock = Mock(return_value=100.0)
    limiter = InMemoryWindowRateLimiter(limit=2, window_seconds=1, clock=clock)

    assert limiter.consume("k").allowed is True
    assert limiter.consume("k").allowed is True

    blocked = limiter.consume("k")
    assert blocked.allowed is False
    assert blocked.remaining == 0
    assert blocked.retry_after_seconds == 1


def test_denials_do_not_delay_recovery() -> None:
    clock = Mock(return_value=100.0)
    limiter = InMemoryWindowRateLimiter(limit=1, window_seconds=1, clock=clock)

    assert limiter.consume("k").allowed is True
    clock.return_value = 100.5
    for _ in range(50):
        assert limiter.consume("k").allowed is False

    clock.return_value = 101.0
    assert limiter.consume("k").allowed is True


def test_isolated_by_key() -> None:
    clock = Mock(return_value=100.0)
    limiter = InMemoryWindowRateLimiter(limit=1, window_seconds=1, clock=clock)

    assert limiter.consume("k1").allowed is True
    assert limiter.consume("k1").allowed is False

    assert limiter.consume("k2").allowed is True


def test_concurrent_consumers_never_exceed_limit() -> None:
    clock = Mock(return_value=100.0)
    limiter = InMemoryWindowRateLimiter(limit=50, window_seconds=1, shards=4, clock=clock)
    barrier = threading.Barrier(8)
    allowed: list[bool] = []
    allowed_lock = threading.Lock()

    def worker() -> None:
        barrier.wait()
        results = [limiter.consume("shared").allowed for _ in range(20)]
        with allowed_lock:
            allowed.extend(results)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(allowed) == 160
    assert sum(allowed) == 50


def test_entries_kept_without_sweep() -> None:
    clock = Mock(return_value=0.0)
    limiter = InMemoryWindowRateLimiter(limit=1, window_seconds=1, shards=1, clock=clock)

    limiter.consume("a")
    limiter.consume("b")
    clock.return_value = 10_000.0
    limiter.consume("a")

    assert len(limiter) == 2


def test_sweep_evicts_idle_identities() -> None:
    clock = Mock(return_value=0.0)
    limiter = InMemoryWindowRateLimiter(
        limit=1,
        window_seconds=1,
        shards=1,
        sweep_interval_seconds=10,
        clock=clock,
    )

    limiter.consume("a")
    limiter.consume("b")
    clock.return_value = 20.0
    assert limiter.consume("a").allowed is True

    assert len(limiter) == 1


@pytest.mark.parametrize(
    "kwargs",
    [
        {"limit": 0},
        {"limit": 1, "window_seconds": 0},
        {"limit": 1, "shards": 0},
        {"limit": 1, "sweep_interval_seconds": -1},
    ],
)
def test_invalid_constructor_args(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        InMemoryWindowRateLimiter(**kwargs)


def test_invalid_consume_args() -> None:
    limiter = InMemoryWindowRateLimiter(limit=1)

    with pytest.raises(ValueError):
        limiter.consume("")


def test_allow_all_admits_everything() -> None:
    limiter = AllowAllRateLimiter()

    assert all(limiter.consume("k").allowed for _ in range(1000))


@pytest.mark.parametrize(
    ("overrides", "expected"),
    [
        ({}, InMemoryWindowRateLimiter),
        ({"req_limit_per_sec": 0}, AllowAllRateLimiter),
        ({"rate_limit_enabled": False}, AllowAllRateLimiter),
    ],
)
def test_build_rate_limiter_selects_mode(overrides: dict, expected: type) -> None:
    settings = ProxySettings(cf_api_key="k", **overrides)

    assert isinstance(build_rate_limiter(settings), expected)
