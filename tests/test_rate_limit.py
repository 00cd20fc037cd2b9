"""
Unit tests for the fixed-window rate limiter.
The clock is injected so window boundaries are exact.
"""

import threading

import pytest

from xr_ingest.rate_limit import RateLimiter, get_client_ip, get_rate_limit_key
from xr_ingest.settings import RateLimitConfig


class FakeClock:
    def __init__(self, now=1_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(clock=clock)


CONFIG = RateLimitConfig(max_requests=3, window_seconds=60)


class TestCheck:
    def test_first_request_opens_window(self, limiter, clock):
        result = limiter.check("upload:1.2.3.4", CONFIG)
        assert result.allowed is True
        assert result.remaining == 2
        assert result.limit == 3
        assert result.reset_time == clock.now + 60

    def test_budget_is_exhausted(self, limiter):
        results = [limiter.check("k", CONFIG) for _ in range(4)]
        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]

    def test_rejections_keep_counting_but_remaining_floors_at_zero(self, limiter):
        for _ in range(10):
            result = limiter.check("k", CONFIG)
        assert result.remaining == 0
        assert limiter.get("k").count == 10

    def test_window_end_is_still_inside_window(self, limiter, clock):
        first = limiter.check("k", CONFIG)
        for _ in range(3):
            limiter.check("k", CONFIG)
        clock.now = first.reset_time
        assert limiter.check("k", CONFIG).allowed is False

    def test_new_window_after_reset(self, limiter, clock):
        first = limiter.check("k", CONFIG)
        for _ in range(3):
            limiter.check("k", CONFIG)
        clock.now = first.reset_time + 0.001
        result = limiter.check("k", CONFIG)
        assert result.allowed is True
        assert result.remaining == 2
        assert limiter.get("k").count == 1

    def test_keys_are_independent(self, limiter):
        for _ in range(3):
            limiter.check("a", CONFIG)
        assert limiter.check("a", CONFIG).allowed is False
        assert limiter.check("b", CONFIG).allowed is True

    def test_retry_after(self, limiter, clock):
        result = limiter.check("k", CONFIG)
        assert result.retry_after(clock.now + 15) == 45
        assert result.retry_after(clock.now + 120) == 0

    def test_concurrent_checks_count_every_request(self, limiter):
        config = RateLimitConfig(max_requests=1000, window_seconds=60)
        allowed = []

        def worker():
            for _ in range(50):
                allowed.append(limiter.check("shared", config).allowed)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert limiter.get("shared").count == 400
        assert all(allowed)


class TestSweep:
    def test_sweep_drops_only_expired_records(self, limiter, clock):
        limiter.check("old", RateLimitConfig(max_requests=5, window_seconds=10))
        limiter.check("fresh", RateLimitConfig(max_requests=5, window_seconds=1000))
        clock.now += 11

        assert limiter.sweep() == 1
        assert limiter.get("old") is None
        assert limiter.get("fresh") is not None
        assert len(limiter) == 1

    def test_sweeper_thread_starts_and_stops(self, limiter):
        limiter.start_sweeper(interval=0.01)
        limiter.stop_sweeper()
        assert limiter._sweeper is None


class TestClientIdentity:
    def test_forwarded_for_first_hop(self):
        headers = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1", "X-Real-IP": "10.0.0.2"}
        assert get_client_ip(headers, "127.0.0.1") == "203.0.113.7"

    def test_real_ip_fallback(self):
        assert get_client_ip({"X-Real-IP": "198.51.100.4"}, "127.0.0.1") == "198.51.100.4"

    def test_socket_peer_fallback(self):
        assert get_client_ip({}, "127.0.0.1") == "127.0.0.1"

    def test_unknown(self):
        assert get_client_ip({}, None) == "unknown"

    def test_key_format(self):
        assert get_rate_limit_key("1.2.3.4", prefix="upload") == "upload:1.2.3.4"
        assert get_rate_limit_key("1.2.3.4") == "api:1.2.3.4"
