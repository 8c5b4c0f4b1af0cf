"""
Redis client for the render queue and shared rate-limit windows
"""

import json
import structlog
from typing import Optional, Dict, Any
from redis import Redis, ConnectionPool
from redis.exceptions import RedisError, ConnectionError
from config import settings

logger = structlog.get_logger()


class RedisClient:
    """Redis client with connection pooling and helper methods

    The connection is opened on first use so importing this module never
    requires a running Redis.
    """

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.REDIS_URL
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None

    def _connect(self):
        """Establish Redis connection with connection pool"""
        try:
            self._pool = ConnectionPool.from_url(
                self.url,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
                socket_connect_timeout=settings.REDIS_SOCKET_CONNECT_TIMEOUT,
                retry_on_timeout=settings.REDIS_RETRY_ON_TIMEOUT,
                health_check_interval=settings.REDIS_HEALTH_CHECK_INTERVAL,
                decode_responses=True
            )
            self._client = Redis(connection_pool=self._pool)

            # Test connection
            self._client.ping()
            logger.info("redis_connected", url=self.url)

        except ConnectionError as e:
            logger.error("redis_connection_failed", error=str(e))
            self._client = None
            raise

    def get_client(self) -> Redis:
        """Get Redis client instance"""
        if self._client is None:
            self._connect()
        return self._client

    def ping(self) -> bool:
        """Check if Redis is connected"""
        try:
            return bool(self.get_client().ping())
        except RedisError as e:
            logger.error("redis_ping_failed", error=str(e))
            return False

    def close(self):
        """Close Redis connection"""
        if self._client:
            self._client.close()
            self._client = None
            logger.info("redis_connection_closed")

    # ===== Render Queue Operations =====

    def enqueue_render(self, render_job_id: str, correlation_id: Optional[str] = None) -> bool:
        """
        Add a render job to the worker queue

        Args:
            render_job_id: Render job identifier
            correlation_id: Correlation id of the submitting request

        Returns:
            bool: Success status
        """
        try:
            payload = json.dumps({
                "render_job_id": render_job_id,
                "correlation_id": correlation_id,
            })
            self.get_client().rpush(settings.RENDER_QUEUE_NAME, payload)

            logger.info("render_enqueued", render_job_id=render_job_id)
            return True

        except RedisError as e:
            logger.error("render_enqueue_failed", render_job_id=render_job_id, error=str(e))
            return False

    def dequeue_render(self, timeout: int = 1) -> Optional[Dict[str, Any]]:
        """
        Get next render job from the queue

        Returns:
            Optional[Dict]: Queue payload or None if queue is empty
        """
        try:
            result = self.get_client().blpop(settings.RENDER_QUEUE_NAME, timeout=timeout)
            if result:
                _, payload = result
                return json.loads(payload)
            return None

        except RedisError as e:
            logger.error("render_dequeue_failed", error=str(e))
            return None


# Global Redis client instance
redis_client = RedisClient()
