"""Scheduled social media fetch run.

One ``RunOrchestrator`` lives per worker process. A run walks through
``LOCK_WAIT -> LOADING -> FANOUT -> DRAINING -> RELEASED``:

1. Take the distributed run lock (skip the run when someone else holds it).
2. Load active clients and their scheduler state in bulk.
3. Admit clients into a bounded pool until the run budget is nearly spent.
4. Per client: fetch, count, detect changes, decide, enqueue, persist state.
5. Wait for every admitted client, then release the lock. The lock TTL is
   extended in the background for as long as the run holds it.

A failing client never aborts the run. Clients that were not admitted are
simply picked up by the next scheduled run.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncContextManager, Callable, Optional
from uuid import uuid4

from pydantic import BaseModel

from cicero.harvest.clients import ClientRef, ContentDeltas, LinkChange
from cicero.harvest.collaborators import (
    AlertSink,
    ClientRegistry,
    ContentDeltaSource,
    PlatformCountSource,
    PlatformFetcher,
)
from cicero.main.config import Settings, get_settings
from cicero.main.exceptions import ClientProcessingError, SchedulerStateUnavailableError
from cicero.main.logging import get_logger
from cicero.main.request_context import log_context
from cicero.notifications.payload_builder import NotificationPayloadBuilder
from cicero.outbox.outbox_models import EnqueueResult
from cicero.scheduler.change_detector import (
    ChangeDescriptor,
    build_change_summary,
    detect_changes,
)
from cicero.scheduler.notify_policy import (
    NotifyDecision,
    decide_notification,
    slot_label,
    to_local,
)
from cicero.scheduler.scheduler_models import SchedulerState, SchedulerStateUpsert
from cicero.scheduler.scheduler_state_repo import (
    SchedulerStateRepository,
    scheduler_state_transaction,
)
from cicero.worker.lock.distributed_lock import DistributedLock, LockHandle

logger = get_logger(__name__)

StateTransactionFactory = Callable[[], AsyncContextManager[SchedulerStateRepository]]


class RunPhase(str, Enum):
    IDLE = "idle"
    LOCK_WAIT = "lock_wait"
    LOADING = "loading"
    FANOUT = "fanout"
    DRAINING = "draining"
    RELEASED = "released"


class RunStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED_IN_FLIGHT = "skipped_in_flight"
    SKIPPED_LOCK_HELD = "skipped_lock_held"
    SKIPPED_LOCK_ERROR = "skipped_lock_error"
    NO_CLIENTS = "no_clients"
    CLIENT_LOAD_FAILED = "client_load_failed"


class RunSummary(BaseModel):
    run_id: str
    status: RunStatus = RunStatus.COMPLETED
    force_engagement_only: bool = False
    state_available: bool = True
    total_clients: int = 0
    admitted_clients: int = 0
    not_admitted_clients: int = 0
    succeeded_clients: int = 0
    failed_clients: int = 0
    notified_clients: int = 0
    inserted_events: int = 0
    duplicated_events: int = 0
    elapsed_seconds: float = 0.0


@dataclass
class ClientOutcome:
    client_id: str
    succeeded: bool
    changes: Optional[ChangeDescriptor] = None
    decision: Optional[NotifyDecision] = None
    enqueue_result: Optional[EnqueueResult] = None
    failed_step: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunOrchestrator:
    def __init__(
        self,
        lock: DistributedLock,
        client_registry: ClientRegistry,
        platform_fetcher: PlatformFetcher,
        count_source: PlatformCountSource,
        content_source: ContentDeltaSource,
        payload_builder: NotificationPayloadBuilder,
        alert_sink: AlertSink,
        state_transaction_factory: StateTransactionFactory = scheduler_state_transaction,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.lock = lock
        self.client_registry = client_registry
        self.platform_fetcher = platform_fetcher
        self.count_source = count_source
        self.content_source = content_source
        self.payload_builder = payload_builder
        self.alert_sink = alert_sink
        self.state_transaction_factory = state_transaction_factory
        self.settings = settings or get_settings()
        self._clock = clock
        self._monotonic = monotonic

        self.phase = RunPhase.IDLE
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def run(self, force_engagement_only: bool = False) -> RunSummary:
        summary = RunSummary(run_id=uuid4().hex[:12], force_engagement_only=force_engagement_only)

        if self._in_flight:
            logger.info("Fetch run already in flight in this process, skipping")
            summary.status = RunStatus.SKIPPED_IN_FLIGHT
            return summary

        self._in_flight = True
        started = self._monotonic()
        try:
            with log_context(run_id=summary.run_id):
                await self._run_locked(summary, started)
        finally:
            self._in_flight = False
            summary.elapsed_seconds = round(self._monotonic() - started, 3)

        logger.info("Fetch run finished", extra=summary.model_dump(mode="json"))
        return summary

    async def _run_locked(self, summary: RunSummary, started: float) -> None:
        self.phase = RunPhase.LOCK_WAIT
        handle = await self.lock.acquire(
            self.settings.fetch_lock_key, self.settings.fetch_lock_ttl_seconds
        )

        if not handle.acquired:
            summary.status = (
                RunStatus.SKIPPED_LOCK_ERROR
                if handle.reason == "lock_error"
                else RunStatus.SKIPPED_LOCK_HELD
            )
            self.phase = RunPhase.IDLE
            return

        keepalive = asyncio.create_task(self._keep_lock_alive(handle))
        try:
            self.phase = RunPhase.LOADING
            try:
                clients = await self.client_registry.load_active_clients()
            except Exception as exc:
                logger.exception("Failed to load active clients")
                await self.alert_sink.alert_on_error("load_active_clients", exc)
                summary.status = RunStatus.CLIENT_LOAD_FAILED
                return

            if not clients:
                logger.info("No active clients with Instagram or TikTok")
                summary.status = RunStatus.NO_CLIENTS
                return

            summary.total_clients = len(clients)
            states, state_available = await self._load_states(clients)
            summary.state_available = state_available

            self.phase = RunPhase.FANOUT
            outcomes = await self._fan_out(
                clients,
                states,
                state_available,
                summary.force_engagement_only,
                started,
            )

            summary.admitted_clients = len(outcomes)
            summary.not_admitted_clients = len(clients) - len(outcomes)
            for outcome in outcomes:
                if not outcome.succeeded:
                    summary.failed_clients += 1
                    continue
                summary.succeeded_clients += 1
                if outcome.enqueue_result is not None:
                    summary.inserted_events += outcome.enqueue_result.inserted_count
                    summary.duplicated_events += outcome.enqueue_result.duplicated_count
                if outcome.decision is not None and outcome.decision.notify:
                    summary.notified_clients += 1
        finally:
            self.phase = RunPhase.RELEASED
            if not keepalive.done():
                keepalive.cancel()
            try:
                await keepalive
            except asyncio.CancelledError:
                pass
            await handle.release()

    async def _keep_lock_alive(self, handle: LockHandle) -> None:
        """Extend the run lock while the run is still draining clients."""
        interval = self.settings.fetch_lock_refresh_interval_seconds
        while True:
            await asyncio.sleep(interval)
            if await handle.refresh():
                logger.debug("Fetch run lock extended", extra={"lock_key": handle.key})
            else:
                logger.warning(
                    "Could not extend the fetch run lock, another run may start",
                    extra={"lock_key": handle.key},
                )

    async def _load_states(
        self, clients: list[ClientRef]
    ) -> tuple[dict[str, SchedulerState], bool]:
        try:
            async with self.state_transaction_factory() as repo:
                states = await repo.get_state_map_by_client_ids(
                    [client.client_id for client in clients]
                )
        except Exception as exc:
            error = SchedulerStateUnavailableError(str(exc))
            logger.warning(
                "Scheduler state unavailable, running without hourly notifications",
                exc_info=error,
                extra={"error": str(exc)},
            )
            return {}, False

        return states, True

    async def _fan_out(
        self,
        clients: list[ClientRef],
        states: dict[str, SchedulerState],
        state_available: bool,
        force_engagement_only: bool,
        started: float,
    ) -> list[ClientOutcome]:
        semaphore = asyncio.Semaphore(self.settings.fetch_concurrency)
        deadline = started + self.settings.fetch_run_budget_seconds
        intake_buffer = self.settings.fetch_intake_buffer_seconds
        tasks: list[asyncio.Task] = []

        async def _run_admitted(client: ClientRef) -> ClientOutcome:
            try:
                return await self.process_client(
                    client,
                    states.get(client.client_id),
                    state_available=state_available,
                    force_engagement_only=force_engagement_only,
                )
            finally:
                semaphore.release()

        try:
            for client in clients:
                await semaphore.acquire()

                remaining = deadline - self._monotonic()
                if remaining < intake_buffer:
                    semaphore.release()
                    logger.warning(
                        "Run budget nearly spent, no longer admitting clients",
                        extra={
                            "remaining_seconds": round(remaining, 3),
                            "not_admitted": len(clients) - len(tasks),
                        },
                    )
                    break

                tasks.append(asyncio.create_task(_run_admitted(client)))
        finally:
            self.phase = RunPhase.DRAINING
            results = await asyncio.gather(*tasks, return_exceptions=True)

        outcomes: list[ClientOutcome] = []
        for task_client, result in zip(clients, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Client task ended abnormally",
                    exc_info=result,
                    extra={"client_id": task_client.client_id},
                )
                outcomes.append(ClientOutcome(client_id=task_client.client_id, succeeded=False))
            else:
                outcomes.append(result)
        return outcomes

    def should_fetch_posts_for_client(self, client: ClientRef, now: datetime) -> bool:
        """Posts are fetched only before the local cutoff hour.

        Some clients keep fetching later in the evening.
        """
        cutoff = self.settings.post_fetch_cutoff_hour
        if client.client_id in self.settings.extended_post_fetch_client_ids:
            cutoff = self.settings.extended_post_fetch_cutoff_hour
        return to_local(now, self.settings.timezone).hour < cutoff

    async def process_client(
        self,
        client: ClientRef,
        previous_state: Optional[SchedulerState],
        *,
        state_available: bool = True,
        force_engagement_only: bool = False,
    ) -> ClientOutcome:
        with log_context(client_id=client.client_id):
            step = "fetch_platforms"
            try:
                await self._fetch_platforms(client, force_engagement_only)

                step = "fetch_counts"
                current = await self.count_source.fetch_platform_counts(client.client_id)

                # Unknown previous counts are never read as zero
                if state_available and previous_state is not None:
                    previous = previous_state.counts
                    last_notified_at = previous_state.last_notified_at
                else:
                    previous = current
                    last_notified_at = None

                step = "detect_changes"
                fetched_at = self._clock()
                deltas = ContentDeltas()
                if previous != current:
                    deltas = await self.content_source.fetch_platform_content_deltas(
                        client.client_id, previous=previous, current=current
                    )

                link_changes = await self._fetch_link_changes(
                    client, previous_state if state_available else None
                )

                changes = detect_changes(
                    previous,
                    current,
                    ig_added_items=deltas.instagram_added,
                    tiktok_added_items=deltas.tiktok_added,
                    ig_missing_ids=deltas.instagram_missing_ids,
                    tiktok_missing_ids=deltas.tiktok_missing_ids,
                    link_changes=link_changes,
                    absolute_threshold=self.settings.deletion_absolute_threshold,
                    ratio_threshold=self.settings.deletion_ratio_threshold,
                )

                now = self._clock()
                decision = decide_notification(
                    changes,
                    now=now,
                    last_notified_at=last_notified_at,
                    state_available=state_available,
                    timezone=self.settings.timezone,
                    window_start_hour=self.settings.notify_window_start_hour,
                    window_end_hour=self.settings.notify_window_end_hour,
                    interval_seconds=self.settings.notify_interval_seconds,
                )

                self._log_changes(client, changes, decision)

                step = "enqueue_notifications"
                enqueue_result = EnqueueResult()
                if decision.notify:
                    enqueue_result = await self.payload_builder.enqueue(
                        client, changes, decision, now
                    )
            except Exception as exc:
                error = ClientProcessingError(client.client_id, step, exc)
                logger.exception(
                    "Client processing failed",
                    extra={"step": step, "error": str(exc)},
                )
                await self.alert_sink.alert_on_error(
                    "process_client", error, {"client_id": client.client_id, "step": step}
                )
                return ClientOutcome(
                    client_id=client.client_id, succeeded=False, failed_step=step
                )

            if state_available:
                notified = decision.notify and enqueue_result.enqueued_count > 0
                await self._persist_state(
                    SchedulerStateUpsert(
                        client_id=client.client_id,
                        last_ig_count=current.instagram,
                        last_tiktok_count=current.tiktok,
                        last_notified_at=now if notified else None,
                        last_notified_slot=(
                            slot_label(now, self.settings.timezone) if notified else None
                        ),
                        last_fetched_at=fetched_at,
                    )
                )

            return ClientOutcome(
                client_id=client.client_id,
                succeeded=True,
                changes=changes,
                decision=decision,
                enqueue_result=enqueue_result,
            )

    async def _fetch_link_changes(
        self, client: ClientRef, previous_state: Optional[SchedulerState]
    ) -> list[LinkChange]:
        # Without a stored fetch clock there is no window to read reports from
        if previous_state is None or previous_state.last_fetched_at is None:
            return []
        return await self.content_source.fetch_link_changes(
            client.client_id, since=previous_state.last_fetched_at
        )

    async def _fetch_platforms(self, client: ClientRef, force_engagement_only: bool) -> None:
        skip_reason = None
        if force_engagement_only:
            skip_reason = "force_engagement_only"
        elif not self.should_fetch_posts_for_client(client, self._clock()):
            skip_reason = "after_post_fetch_cutoff"

        if client.instagram_enabled and skip_reason is None:
            await self.platform_fetcher.fetch_instagram_posts(client)
        else:
            logger.debug(
                "Skipping Instagram post fetch",
                extra={"reason": skip_reason or "instagram_disabled"},
            )

        if client.tiktok_enabled and skip_reason is None:
            await self.platform_fetcher.fetch_tiktok_posts(client)
        else:
            logger.debug(
                "Skipping TikTok post fetch",
                extra={"reason": skip_reason or "tiktok_disabled"},
            )

        if client.instagram_enabled:
            await self.platform_fetcher.refresh_instagram_likes(client)
        else:
            logger.debug("Skipping Instagram likes refresh", extra={"reason": "instagram_disabled"})

        if client.tiktok_enabled:
            await self.platform_fetcher.refresh_tiktok_comments(client)
        else:
            logger.debug("Skipping TikTok comment refresh", extra={"reason": "tiktok_disabled"})

    async def _persist_state(self, state: SchedulerStateUpsert) -> None:
        try:
            async with self.state_transaction_factory() as repo:
                await repo.upsert_state(state)
        except Exception as exc:
            # Next run recomputes from whatever state is stored
            logger.error(
                "Failed to persist scheduler state",
                exc_info=exc,
                extra={"error": str(exc)},
            )

    def _log_changes(
        self, client: ClientRef, changes: ChangeDescriptor, decision: NotifyDecision
    ) -> None:
        logger.info(
            "Client fetch completed",
            extra={
                "ig_before": changes.previous_counts.instagram,
                "ig_after": changes.current_counts.instagram,
                "tiktok_before": changes.previous_counts.tiktok,
                "tiktok_after": changes.current_counts.tiktok,
                "summary": build_change_summary(changes),
                "ig_deletion": changes.instagram.classification.value,
                "tiktok_deletion": changes.tiktok.classification.value,
                "link_changes": len(changes.link_changes),
                "notify": decision.notify,
                "notify_reason": decision.reason,
            },
        )
