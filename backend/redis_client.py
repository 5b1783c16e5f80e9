"""
Redis client for the shared (multi-instance) logo cache
"""

import structlog
from typing import Optional
from redis import Redis, ConnectionPool
from redis.exceptions import RedisError, ConnectionError
from config import settings

logger = structlog.get_logger()


class RedisClient:
    """Redis client with connection pooling and byte-value helpers"""

    def __init__(self, url: Optional[str] = None):
        """Initialize Redis client with connection pool"""
        self.url = url or settings.REDIS_URL
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._connect()

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
                # Cached values are raw image bytes
                decode_responses=False
            )
            self._client = Redis(connection_pool=self._pool)

            # Test connection
            self._client.ping()
            logger.info("redis_connected", url=self.url)

        except ConnectionError as e:
            logger.error("redis_connection_failed", error=str(e))
            raise

    def close(self):
        """Close Redis connection"""
        if self._client:
            self._client.close()
            logger.info("redis_connection_closed")

    # ===== Byte values =====

    def get_bytes(self, key: str) -> Optional[bytes]:
        """
        Read a cached value

        Returns:
            Optional[bytes]: Value, or None if missing or Redis is unavailable
        """
        try:
            return self._client.get(key)
        except RedisError as e:
            logger.error("redis_get_failed", key=key, error=str(e))
            return None

    def set_bytes(self, key: str, value: bytes, ttl_seconds: int) -> bool:
        """
        Store a value with an expiry

        Returns:
            bool: Success status
        """
        try:
            self._client.setex(key, ttl_seconds, value)
            return True
        except RedisError as e:
            logger.error("redis_set_failed", key=key, error=str(e))
            return False


# Global Redis client instance, created on first use
_redis_client: Optional[RedisClient] = None


def get_redis_client() -> RedisClient:
    """Get the shared RedisClient, connecting on first call"""
    global _redis_client
    if _redis_client is None:
        _redis_client = RedisClient()
    return _redis_client


def close_redis_client():
    """Close the shared client if one was opened"""
    global _redis_client
    if _redis_client is not None:
        _redis_client.close()
        _redis_client = None
