"""
Sliding-window rate limiter for cost-bearing operations.

The limiter keeps a log of request timestamps per ``(user_id, operation)``
and admits a request when fewer than ``limit`` requests fall inside the
trailing window. The algorithm is shared; only the timestamp storage
differs between the in-process and Redis-backed stores.
"""

import math
import threading
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Optional, Tuple

import structlog

from config import settings
from errors import RateLimitError
from models import new_id

logger = structlog.get_logger()


class InMemoryWindowStore:
    """Process-local window store (not shared between workers)"""

    def __init__(self):
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def hit(self, key: str, now: float, window: float, limit: int) -> Tuple[bool, float]:
        """
        Record a hit if the window has room.

        Returns:
            ``(allowed, retry_after_seconds)``
        """
        with self._lock:
            hits = self._hits[key]
            while hits and hits[0] <= now - window:
                hits.popleft()

            if len(hits) >= limit:
                return False, hits[0] + window - now

            hits.append(now)
            return True, 0.0

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


class RedisWindowStore:
    """Window store backed by one Redis sorted set per key"""

    def __init__(self, client, prefix: str = "ratelimit"):
        self.client = client
        self.prefix = prefix

    def hit(self, key: str, now: float, window: float, limit: int) -> Tuple[bool, float]:
        redis_key = f"{self.prefix}:{key}"

        pipe = self.client.pipeline()
        pipe.zremrangebyscore(redis_key, 0, now - window)
        pipe.zcard(redis_key)
        pipe.zrange(redis_key, 0, 0, withscores=True)
        _, count, oldest = pipe.execute()

        if count >= limit:
            oldest_ts = oldest[0][1] if oldest else now
            return False, oldest_ts + window - now

        pipe = self.client.pipeline()
        pipe.zadd(redis_key, {f"{now}:{new_id()}": now})
        pipe.expire(redis_key, int(math.ceil(window)))
        pipe.execute()
        return True, 0.0


class SlidingWindowRateLimiter:
    """
    Per-user, per-operation sliding window guard.

    Usage:
        limiter = SlidingWindowRateLimiter(InMemoryWindowStore(), settings.rate_limits)
        limiter.check(user_id, "render")  # raises RateLimitError when exhausted
    """

    def __init__(
        self,
        store,
        limits: Dict[str, int],
        window_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.limits = dict(limits)
        self.window_seconds = window_seconds or settings.RATE_LIMIT_WINDOW_SECONDS
        self.clock = clock

    def _hit(self, user_id: str, operation: str) -> Tuple[bool, float]:
        limit = self.limits.get(operation)
        if limit is None:
            return True, 0.0
        key = f"{operation}:{user_id}"
        return self.store.hit(key, self.clock(), self.window_seconds, limit)

    def allow(self, key: Tuple[str, str]) -> bool:
        """Record a request for ``(user_id, operation)`` and report whether it fits"""
        user_id, operation = key
        allowed, _ = self._hit(user_id, operation)
        return allowed

    def check(self, user_id: str, operation: str) -> None:
        """
        Admit a request or raise.

        Raises:
            RateLimitError: with ``retry_after`` in whole seconds (at least 1)
        """
        allowed, retry_after = self._hit(user_id, operation)
        if not allowed:
            retry_after_seconds = max(1, int(math.ceil(retry_after)))
            logger.warning(
                "rate_limit_exceeded",
                user_id=user_id,
                operation=operation,
                retry_after=retry_after_seconds,
            )
            raise RateLimitError(operation, retry_after_seconds)


_rate_limiter: Optional[SlidingWindowRateLimiter] = None


def get_rate_limiter() -> SlidingWindowRateLimiter:
    """
    Get singleton rate limiter configured by ``RATE_LIMIT_BACKEND``.
    """
    global _rate_limiter
    if _rate_limiter is None:
        if settings.RATE_LIMIT_BACKEND == "redis":
            from redis_client import redis_client

            store = RedisWindowStore(redis_client.get_client())
        else:
            store = InMemoryWindowStore()
        _rate_limiter = SlidingWindowRateLimiter(store, settings.rate_limits)
        logger.info("rate_limiter_initialized", backend=settings.RATE_LIMIT_BACKEND)
    return _rate_limiter
