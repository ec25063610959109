"""Pooled async Redis connection for durable workflow and protocol state."""

from __future__ import annotations

from functools import lru_cache
from typing import Any
from urllib.parse import urlsplit

import redis.asyncio as redis
import structlog

from ensemble.config import CacheSettings, get_cache_settings

logger = structlog.get_logger()


class RedisClient:
    """Owns one connection pool and the client bound to it.

    The wrapper is created disconnected. ``connect`` is idempotent and
    ``close`` returns it to the disconnected state so it can be reopened.

    Example:
        >>> async with RedisClient("redis://localhost:6379/0") as conn:
        ...     store = RedisStateStore(conn)
    """

    def __init__(self, redis_url: str, max_connections: int = 20) -> None:
        self.redis_url = redis_url
        self.max_connections = max_connections
        self._pool: redis.ConnectionPool | None = None
        self._client: redis.Redis | None = None

    @classmethod
    def from_settings(cls, settings: CacheSettings) -> RedisClient:
        return cls(settings.redis_url, max_connections=settings.redis_max_connections)

    @property
    def client(self) -> redis.Redis:
        """Connected client.

        Raises:
            RuntimeError: If ``connect`` has not been awaited
        """
        if self._client is None:
            raise RuntimeError("Redis not connected. Call connect() first.")
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Build the pool and ping the server once."""
        if self.is_connected:
            return

        pool = redis.ConnectionPool.from_url(
            self.redis_url,
            decode_responses=True,
            max_connections=self.max_connections,
        )
        conn = redis.Redis(connection_pool=pool)
        await conn.ping()

        self._pool, self._client = pool, conn
        logger.info(
            "redis_connected",
            url=self._mask_url(self.redis_url),
            max_connections=self.max_connections,
        )

    async def health_check(self) -> bool:
        """Ping the server; False when disconnected or unreachable."""
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except redis.RedisError as e:
            logger.warning("redis_health_check_failed", error=str(e))
            return False

    async def close(self) -> None:
        """Release the client, then the pool."""
        conn, pool = self._client, self._pool
        self._client = None
        self._pool = None
        if conn is not None:
            await conn.aclose()
        if pool is not None:
            await pool.disconnect()
        logger.info("redis_disconnected")

    async def __aenter__(self) -> RedisClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @staticmethod
    def _mask_url(url: str) -> str:
        """Hide userinfo so URLs can be logged."""
        parts = urlsplit(url)
        if "@" not in parts.netloc:
            return url
        host = parts.netloc.rsplit("@", 1)[1]
        return url.replace(parts.netloc, f"***@{host}", 1)


@lru_cache(maxsize=1)
def _create_redis_client() -> RedisClient:
    return RedisClient.from_settings(get_cache_settings())


def get_redis() -> RedisClient:
    """Process-wide client built from ``CacheSettings`` (not connected yet)."""
    return _create_redis_client()


async def init_redis() -> RedisClient:
    """Connect and return the process-wide client."""
    conn = get_redis()
    await conn.connect()
    return conn


async def close_redis() -> None:
    """Close the process-wide client; the next ``get_redis`` builds a new one."""
    await get_redis().close()
    _create_redis_client.cache_clear()
