from __future__ import annotations

import json
from typing import Any, Dict, Optional

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff

from marketplace.core.config import settings
from marketplace.core.exceptions import ServiceUnavailableError
from marketplace.core.logging import get_structlog_logger

logger = get_structlog_logger(__name__)

# Global Redis connection pool
_redis_pool: Optional[ConnectionPool] = None
_redis_client: Optional[redis.Redis] = None


async def init_redis_pool() -> None:
    """Initialize Redis connection pool."""
    global _redis_pool, _redis_client

    if _redis_pool is not None:
        return

    try:
        retry = Retry(backoff=ExponentialBackoff(cap=10, base=1), retries=3)

        _redis_pool = ConnectionPool.from_url(
            settings.redis_url,
            max_connections=settings.redis_max_connections,
            socket_timeout=settings.redis_socket_timeout,
            socket_connect_timeout=settings.redis_socket_connect_timeout,
            retry=retry,
            retry_on_error=[redis.ConnectionError, redis.TimeoutError],
            health_check_interval=30,
            decode_responses=True,
            encoding="utf-8",
        )
        _redis_client = redis.Redis(connection_pool=_redis_pool)

        await _redis_client.ping()

        logger.info(
            "redis.connected",
            url=settings.redis_url,
            max_connections=settings.redis_max_connections,
        )

    except (redis.ConnectionError, redis.TimeoutError, OSError) as e:
        _redis_pool = None
        _redis_client = None
        logger.error("redis.connection_failed", error=str(e))
        raise ServiceUnavailableError(
            message="Redis connection failed",
            details={"error": str(e)},
        ) from e


async def get_redis_client() -> redis.Redis:
    """Get Redis client instance."""
    if _redis_client is None:
        await init_redis_pool()
    return _redis_client


async def close_redis_pool() -> None:
    """Close Redis connection pool."""
    global _redis_pool, _redis_client

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
    if _redis_pool is not None:
        await _redis_pool.disconnect()
        _redis_pool = None
    logger.info("redis.connection_closed")


async def health_check() -> Dict[str, Any]:
    """Check Redis health."""
    try:
        client = await get_redis_client()
        await client.ping()
        info = await client.info("server")
        return {"status": "healthy", "version": info.get("redis_version", "unknown")}
    except (ServiceUnavailableError, redis.RedisError) as e:
        return {"status": "unhealthy", "error": str(e)}


class RedisCache:
    """JSON values under a key prefix. Cache errors are logged and treated as misses."""

    def __init__(self, redis_client: redis.Redis, prefix: str = "cache"):
        self.redis = redis_client
        self.prefix = prefix

    def _make_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def get(self, key: str, default: Any = None) -> Any:
        try:
            value = await self.redis.get(self._make_key(key))
        except redis.RedisError as e:
            logger.error("cache.get_error", key=key, error=str(e))
            return default

        if value is None:
            return default
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value

    async def set(self, key: str, value: Any, expire: Optional[int] = None) -> bool:
        try:
            payload = json.dumps(value)
            if expire:
                await self.redis.setex(self._make_key(key), expire, payload)
            else:
                await self.redis.set(self._make_key(key), payload)
            return True
        except redis.RedisError as e:
            logger.error("cache.set_error", key=key, error=str(e))
            return False
