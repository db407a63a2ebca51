"""Redis connection options shared by the arq worker and the run lock client."""

from typing import Any

from arq.connections import RedisSettings

from cicero.main.config import Settings, get_settings


def build_arq_redis_settings(settings: Settings | None = None) -> RedisSettings:
    """arq's own connection: job queue, results and cron bookkeeping."""
    settings = settings or get_settings()
    return RedisSettings(
        host=settings.redis_host,
        port=settings.redis_port,
        database=settings.redis_db or 0,
        conn_timeout=settings.redis_conn_timeout,
        conn_retries=settings.redis_conn_retries,
        conn_retry_delay=settings.redis_conn_retry_delay,
        retry_on_timeout=settings.redis_retry_on_timeout,
        max_connections=settings.redis_max_connections,
    )


def build_redis_url(settings: Settings | None = None) -> str:
    settings = settings or get_settings()
    return f"redis://{settings.redis_host}:{settings.redis_port}/{settings.redis_db or 0}"


def build_redis_pool_kwargs(settings: Settings | None = None, **overrides: Any) -> dict[str, Any]:
    """Keyword arguments for ``redis.asyncio.ConnectionPool.from_url``.

    Lock tokens are compared as text, so responses are decoded unless overridden.
    """
    settings = settings or get_settings()
    kwargs: dict[str, Any] = {
        "decode_responses": True,
        "socket_connect_timeout": settings.redis_conn_timeout,
        "retry_on_timeout": settings.redis_retry_on_timeout,
        "socket_keepalive": settings.redis_socket_keepalive,
        "health_check_interval": settings.redis_health_check_interval,
    }
    if settings.redis_max_connections is not None:
        kwargs["max_connections"] = settings.redis_max_connections
    kwargs.update(overrides)
    return kwargs
