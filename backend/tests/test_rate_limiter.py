"""
Tests for the sliding-window rate limiter.
"""

from unittest.mock import MagicMock

import pytest

from errors import RateLimitError
from services.rate_limiter import InMemoryWindowStore, RedisWindowStore, SlidingWindowRateLimiter


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return SlidingWindowRateLimiter(InMemoryWindowStore(), {"render": 2}, window_seconds=60, clock=clock)


class TestSlidingWindow:

    def test_allows_up_to_limit(self, limiter):
        assert limiter.allow(("user-1", "render")) is True
        assert limiter.allow(("user-1", "render")) is True
        assert limiter.allow(("user-1", "render")) is False

    def test_limits_are_per_user(self, limiter):
        limiter.allow(("user-1", "render"))
        limiter.allow(("user-1", "render"))
        assert limiter.allow(("user-2", "render")) is True

    def test_unlimited_operation_always_allowed(self, limiter):
        for _ in range(10):
            assert limiter.allow(("user-1", "generate")) is True

    def test_window_slides(self, limiter, clock):
        limiter.allow(("user-1", "render"))
        clock.now += 30
        limiter.allow(("user-1", "render"))
        assert limiter.allow(("user-1", "render")) is False

        # First hit leaves the window
        clock.now += 31
        assert limiter.allow(("user-1", "render")) is True
        assert limiter.allow(("user-1", "render")) is False

    def test_check_raises_with_retry_after(self, limiter, clock):
        limiter.check("user-1", "render")
        clock.now += 10.2
        limiter.check("user-1", "render")

        with pytest.raises(RateLimitError) as exc_info:
            limiter.check("user-1", "render")

        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after == 50
        assert exc_info.value.details == {"operation": "render", "retryAfter": 50}

    def test_rejected_requests_do_not_extend_window(self, limiter, clock):
        limiter.allow(("user-1", "render"))
        limiter.allow(("user-1", "render"))
        for _ in range(5):
            limiter.allow(("user-1", "render"))

        clock.now += 60.5
        assert limiter.allow(("user-1", "render")) is True


class TestRedisWindowStore:

    def test_denies_when_window_full(self):
        client = MagicMock()
        pipe = client.pipeline.return_value
        pipe.execute.return_value = [0, 2, [("member", 990.0)]]

        store = RedisWindowStore(client)
        allowed, retry_after = store.hit("render:user-1", 1000.0, 60, 2)

        assert allowed is False
        assert retry_after == pytest.approx(50.0)
        pipe.zadd.assert_not_called()

    def test_records_hit_when_room(self):
        client = MagicMock()
        pipe = client.pipeline.return_value
        pipe.execute.return_value = [0, 0, []]

        store = RedisWindowStore(client, prefix="rl")
        allowed, _ = store.hit("render:user-1", 1000.0, 60, 2)

        assert allowed is True
        pipe.zremrangebyscore.assert_called_with("rl:render:user-1", 0, 940.0)
        pipe.expire.assert_called_with("rl:render:user-1", 60)
