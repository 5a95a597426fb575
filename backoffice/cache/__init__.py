"""
Caching Module
Redis-backed JSON cache for platform metadata and OAuth handshakes.
"""

from .redis_cache import RedisCache, RedisCacheError, get_redis_cache, set_redis_cache

__all__ = [
    "RedisCache",
    "RedisCacheError",
    "get_redis_cache",
    "set_redis_cache",
]
