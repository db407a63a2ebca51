from cicero.main.container import Container
from cicero.main.logging import get_logger
from cicero.worker.worker import Worker

logger = get_logger(__name__)

worker = Worker()

FETCH_HOURS = set(range(6, 22))


async def _run_fetch(container: Container, force_engagement_only: bool = False):
    settings = container.settings()
    if not settings.fetch_cron_enabled:
        logger.info("Social media fetch cron disabled, skipping")
        return None

    orchestrator = container.run_orchestrator()
    summary = await orchestrator.run(force_engagement_only=force_engagement_only)
    return summary.model_dump(mode="json")


@worker.cron_job(name="fetch_social_media", hour=FETCH_HOURS, minute={0, 30})
@worker.cron_job(name="fetch_social_media_last", hour=22, minute=0)
async def fetch_social_media(container: Container):
    """Every 30 minutes from 06:00 through 22:00 local time."""
    return await _run_fetch(container)


@worker.function()
async def fetch_social_media_now(container: Container, force_engagement_only: bool = False):
    """On-demand run, e.g. an engagement-only refresh outside the schedule."""
    return await _run_fetch(container, force_engagement_only=force_engagement_only)


@worker.cron_job(name="dispatch_notification_outbox")
async def dispatch_notification_outbox(container: Container):
    """Every minute: deliver due outbox rows."""
    settings = container.settings()
    if not settings.outbox_worker_enabled:
        logger.debug("Notification outbox worker disabled, skipping")
        return None

    outbox_worker = container.outbox_worker()
    result = await outbox_worker.process_batch()
    return result.model_dump()
