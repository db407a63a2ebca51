from __future__ import annotations

from functools import wraps
from zoneinfo import ZoneInfo

from arq.cron import cron

from cicero.database.database import sessionmanager
from cicero.main.config import get_settings
from cicero.main.container import Container, build_container
from cicero.main.logging import get_logger
from cicero.redis.connection import build_arq_redis_settings
from cicero.worker.redis.client import close_redis

logger = get_logger(__name__)


class Worker:
    """
    Collects arq functions and cron jobs and owns the process lifecycle.

    Attributes:
        functions (list): Registered on-demand functions.
        cron_jobs (list): Registered cron jobs.
        redis_settings (RedisSettings): Redis settings for arq itself.
        timezone (ZoneInfo): Zone cron expressions are evaluated in.
        job_timeout (int): Upper bound for one job in seconds.

    Methods:
        startup(ctx):
            Initialises the database and the process container.

        shutdown(ctx):
            Disposes the database engine and the shared Redis client.

        function():
            Decorator to register an on-demand function.

        cron_job(**decorator_kwargs):
            Decorator to register a cron job. May be stacked to register the
            same function under several schedules, each with its own ``name``.

        include_subworker(sub_worker: Worker):
            Includes functions and cron jobs from a sub-worker.
    """

    def __init__(self):
        settings = get_settings()
        self.functions = []
        self.cron_jobs = []
        self.redis_settings = build_arq_redis_settings(settings)
        self.on_startup = self.startup
        self.on_shutdown = self.shutdown
        self.retry_jobs = False
        # The run lock outlives the budget by the same margin
        self.job_timeout = settings.fetch_lock_ttl_seconds
        self.max_jobs = 10
        self.timezone = ZoneInfo(settings.timezone)
        self.health_check_interval = 60
        self.job_completion_wait = 60

    async def startup(self, ctx):
        settings = get_settings()
        sessionmanager.init(settings.database_url)
        ctx["container"] = build_container(settings)
        logger.info(
            "Worker started",
            extra={
                "timezone": settings.timezone,
                "fetch_cron_enabled": settings.fetch_cron_enabled,
                "outbox_worker_enabled": settings.outbox_worker_enabled,
            },
        )

    async def shutdown(self, ctx):
        ctx.pop("container", None)
        await sessionmanager.close()
        await close_redis()
        logger.info("Worker stopped")

    @staticmethod
    def _get_container(ctx: dict) -> Container:
        container = ctx.get("container")
        if container is None:
            container = build_container()
            ctx["container"] = container
        return container

    def function(self):
        def decorator(func):
            @wraps(func)
            async def wrapper(ctx, *args, **kwargs):
                logger.debug(f"Executing {func.__name__}")
                return await func(*args, container=self._get_container(ctx), **kwargs)

            self.functions.append(wrapper)
            return func

        return decorator

    def cron_job(self, **decorator_kwargs):
        def decorator(func):
            @wraps(func)
            async def wrapper(ctx):
                logger.debug(f"Executing {func.__name__}")
                return await func(container=self._get_container(ctx))

            self.cron_jobs.append(cron(wrapper, **decorator_kwargs))
            return func

        return decorator

    def include_subworker(self, sub_worker: Worker):
        self.functions.extend(sub_worker.functions)
        self.cron_jobs.extend(sub_worker.cron_jobs)

        logger.debug(
            "Including functions from subworker: %s",
            [func.__name__ for func in sub_worker.functions],
        )
        logger.debug(
            "Including cron jobs from subworker: %s",
            sub_worker.cron_jobs,
        )
