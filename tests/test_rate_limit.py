import importlib

import pytest


@pytest.fixture
def clock(monkeypatch):
    rate_limit = importlib.import_module("filedesk.core.rate_limit")
    now = [1000.0]
    monkeypatch.setattr(rate_limit, "monotonic", lambda: now[0])
    return rate_limit, now


def test_memory_window_blocks_then_resets(clock):
    rate_limit, now = clock
    limiter = rate_limit.RateLimiter(2, window_seconds=60, redis_url="")

    assert limiter.hit("10.0.0.1")[0] is True
    assert limiter.hit("10.0.0.1")[0] is True
    allowed, retry_after = limiter.hit("10.0.0.1")
    assert allowed is False
    assert 1 <= retry_after <= 60

    now[0] += 61
    assert limiter.hit("10.0.0.1")[0] is True


def test_expired_clients_are_evicted(clock):
    rate_limit, now = clock
    limiter = rate_limit.RateLimiter(5, window_seconds=60, redis_url="")
    for host in ("10.0.0.1", "10.0.0.2", "10.0.0.3"):
        limiter.hit(host)
    assert len(limiter._clients) == 3

    now[0] += 61
    limiter.hit("10.0.0.4")

    assert set(limiter._clients) == {"10.0.0.4"}
