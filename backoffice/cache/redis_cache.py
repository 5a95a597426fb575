"""
Redis Cache Client
JSON cache over a pooled Redis connection.
"""

import json
import logging
from typing import Optional, Any

import redis
from redis.connection import ConnectionPool

from ..api.config import get_settings, APISettings

logger = logging.getLogger(__name__)


class RedisCacheError(Exception):
    """Exception raised for Redis cache errors."""

    pass


class RedisCache:
    """
    Redis cache client with connection pooling.

    Values are stored as JSON. Read and write failures are logged and
    reported as cache misses so callers fall back to the source of truth.
    """

    def __init__(
        self,
        settings: Optional[APISettings] = None,
        client: Optional[redis.Redis] = None,
        prefix: str = "backoffice:",
    ):
        """
        Initialize Redis cache client.

        Args:
            settings: API settings (Redis host/port/db)
            client: Pre-built Redis client (tests inject a mock here)
            prefix: Namespace prepended to every key
        """
        self.settings = settings or get_settings()
        self.prefix = prefix
        self.client = client
        self.pool: Optional[ConnectionPool] = None

        if client is None:
            self.pool = ConnectionPool(
                host=self.settings.redis_host,
                port=self.settings.redis_port,
                db=self.settings.redis_db,
                decode_responses=True,
                max_connections=20,
                socket_timeout=5,
                socket_connect_timeout=5,
            )
            logger.info(
                f"Redis cache initialized: {self.settings.redis_host}:"
                f"{self.settings.redis_port} (db={self.settings.redis_db})"
            )

    def _get_client(self) -> redis.Redis:
        """
        Get Redis client (lazy initialization).

        Raises:
            RedisCacheError: If connection fails
        """
        if self.client is None:
            try:
                self.client = redis.Redis(connection_pool=self.pool)
                self.client.ping()
                logger.info("Redis connection established")
            except redis.ConnectionError as e:
                self.client = None
                raise RedisCacheError(f"Failed to connect to Redis: {e}")

        return self.client

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str) -> Optional[Any]:
        """
        Get value from cache.

        Returns:
            Cached value or None if not found
        """
        try:
            data = self._get_client().get(self._key(key))
        except (redis.RedisError, RedisCacheError) as e:
            logger.error(f"Redis GET error for key '{key}': {e}")
            return None

        if data is None:
            return None

        try:
            return json.loads(data)
        except (TypeError, ValueError) as e:
            logger.error(f"Error deserializing cached data for key '{key}': {e}")
            return None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """
        Set value in cache.

        Args:
            key: Cache key
            value: JSON-serializable value
            ttl: Time-to-live in seconds (None = no expiration)

        Returns:
            True if successful, False otherwise
        """
        try:
            data = json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.error(f"Error serializing data for key '{key}': {e}")
            return False

        try:
            client = self._get_client()
            if ttl is not None:
                client.setex(self._key(key), ttl, data)
            else:
                client.set(self._key(key), data)
            return True
        except (redis.RedisError, RedisCacheError) as e:
            logger.error(f"Redis SET error for key '{key}': {e}")
            return False

    def delete(self, key: str) -> bool:
        try:
            return self._get_client().delete(self._key(key)) > 0
        except (redis.RedisError, RedisCacheError) as e:
            logger.error(f"Redis DELETE error for key '{key}': {e}")
            return False

    def pull(self, key: str) -> Optional[Any]:
        """Get a value and delete it (one-time tokens such as PKCE verifiers)."""
        value = self.get(key)
        if value is not None:
            self.delete(key)
        return value

    def ping(self) -> bool:
        try:
            return bool(self._get_client().ping())
        except (redis.RedisError, RedisCacheError) as e:
            logger.error(f"Redis PING error: {e}")
            return False


# Global instance accessor
_cache_instance: Optional[RedisCache] = None


def get_redis_cache(settings: Optional[APISettings] = None) -> RedisCache:
    """Get global Redis cache instance."""
    global _cache_instance
    if _cache_instance is None:
        _cache_instance = RedisCache(settings=settings)
    return _cache_instance


def set_redis_cache(cache: Optional[RedisCache]) -> None:
    """Replace the global cache instance (tests)."""
    global _cache_instance
    _cache_instance = cache
