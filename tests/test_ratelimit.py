"""Sliding-window rate limiter."""

from __future__ import annotations

import pytest

from domainscope.config import Settings
from domainscope.errors import RateLimitExceeded
from domainscope.ratelimit import MemoryRateLimitStore, RateLimiter

from conftest import FakeClock


def test_admits_limit_then_rejects(clock: FakeClock) -> None:
    limiter = RateLimiter(limit=3, window=60, clock=clock)

    assert [limiter.check("client-a") for _ in range(3)] == [2, 1, 0]
    with pytest.raises(RateLimitExceeded) as excinfo:
        limiter.check("client-a")

    assert excinfo.value.client_id == "client-a"
    assert excinfo.value.retry_after == pytest.approx(60)


def test_clients_are_independent(clock: FakeClock) -> None:
    limiter = RateLimiter(limit=1, window=60, clock=clock)
    limiter.check("client-a")
    limiter.check("client-b")
    with pytest.raises(RateLimitExceeded):
        limiter.check("client-a")


def test_window_slides(clock: FakeClock) -> None:
    limiter = RateLimiter(limit=2, window=60, clock=clock)
    limiter.check("c")
    clock.advance(30)
    limiter.check("c")

    with pytest.raises(RateLimitExceeded) as excinfo:
        limiter.check("c")
    assert excinfo.value.retry_after == pytest.approx(30)

    clock.advance(30)
    assert limiter.check("c") == 0
    assert limiter.remaining("c") == 0

    clock.advance(61)
    assert limiter.remaining("c") == 2


def test_rejected_requests_do_not_extend_the_window(clock: FakeClock) -> None:
    limiter = RateLimiter(limit=1, window=10, clock=clock)
    limiter.check("c")
    for _ in range(5):
        clock.advance(1)
        with pytest.raises(RateLimitExceeded):
            limiter.check("c")
    clock.advance(5)
    limiter.check("c")


def test_reset_clears_client(clock: FakeClock) -> None:
    limiter = RateLimiter(limit=1, window=60, clock=clock)
    limiter.check("c")
    limiter.reset("c")
    limiter.check("c")


def test_invalid_configuration() -> None:
    with pytest.raises(ValueError):
        RateLimiter(limit=0, window=60)
    with pytest.raises(ValueError):
        RateLimiter(limit=1, window=0)


def test_from_settings_uses_memory_store_without_redis(clock: FakeClock) -> None:
    limiter = RateLimiter.from_settings(Settings(rate_limit=5, rate_window=30), clock=clock)
    assert isinstance(limiter.store, MemoryRateLimitStore)
    assert limiter.limit == 5
    assert limiter.window == 30.0
