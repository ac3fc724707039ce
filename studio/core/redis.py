"""
Redis Connection
Pooled connection shared by the RQ step scheduler, the workers and progress pub/sub.
"""

import logging
from functools import lru_cache
from typing import Optional

from redis import ConnectionPool, Redis
from redis.exceptions import ConnectionError, TimeoutError

from studio.core.config import settings

logger = logging.getLogger(__name__)


class RedisManager:
    """One connection pool per process, created on first use."""

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.REDIS_URL
        self._client: Optional[Redis] = None

    def get_connection(self) -> Redis:
        if self._client is None:
            # RQ stores pickled payloads, so responses stay bytes
            pool = ConnectionPool.from_url(
                self.url,
                max_connections=20,
                socket_connect_timeout=5,
                retry_on_timeout=True,
                decode_responses=False,
            )
            self._client = Redis(connection_pool=pool)
            logger.info(f"Created Redis connection pool for {mask_url(self.url)}")
        return self._client

    def health_check(self) -> dict:
        """Ping the server; never raises."""
        try:
            client = self.get_connection()
            client.ping()
            version = client.info("server").get("redis_version", "unknown")
        except (ConnectionError, TimeoutError) as e:
            logger.error(f"Redis health check failed: {e}")
            return {"status": "unhealthy", "connected": False, "error": str(e), "url": mask_url(self.url)}
        return {"status": "healthy", "connected": True, "redis_version": version, "url": mask_url(self.url)}


def mask_url(url: str) -> str:
    """redis://:secret@host:6379/0 -> redis://***@host:6379/0"""
    if "@" not in url:
        return url
    return f"redis://***@{url.rsplit('@', 1)[-1]}"


@lru_cache()
def get_redis_manager() -> RedisManager:
    return RedisManager()


def get_redis() -> Redis:
    return get_redis_manager().get_connection()


def redis_health_check() -> dict:
    return get_redis_manager().health_check()


class Queues:
    """RQ queue names."""
    BATCH = "batch"


__all__ = [
    "RedisManager",
    "get_redis_manager",
    "get_redis",
    "redis_health_check",
    "mask_url",
    "Queues",
]
