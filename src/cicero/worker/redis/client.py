"""Process-wide async Redis client used by the run lock."""

import redis.asyncio as aioredis

from cicero.main.config import get_settings
from cicero.redis.connection import build_redis_pool_kwargs, build_redis_url

_redis_client: aioredis.Redis | None = None


def get_redis() -> aioredis.Redis:
    global _redis_client
    if _redis_client is None:
        settings = get_settings()
        pool = aioredis.ConnectionPool.from_url(
            build_redis_url(settings), **build_redis_pool_kwargs(settings)
        )
        _redis_client = aioredis.Redis(connection_pool=pool)
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
