"""Redis connection management."""

from .redis_client import RedisClient, close_redis, get_redis, init_redis

__all__ = ["RedisClient", "close_redis", "get_redis", "init_redis"]
