"""Delivers claimed outbox rows through the message transport.

One ``process_batch`` call is one worker tick: release rows stuck in
``processing`` (or dead-letter them when no attempts are left), claim a batch,
attempt each send and record the outcome. Each row's attempt clock is stamped
right before its own send, so a slow batch is never judged stale by its claim
time.
Every row gets its own short transaction for the outcome so one failed
status write cannot roll back the others.
"""

from datetime import datetime, timedelta, timezone
from typing import AsyncContextManager, Callable

from cicero.harvest.collaborators import MessageTransport
from cicero.main.config import Settings, get_settings
from cicero.main.exceptions import DeliveryError
from cicero.main.logging import get_logger
from cicero.main.request_context import log_context
from cicero.outbox.outbox_models import OutboxBatchResult, OutboxEvent
from cicero.outbox.outbox_repo import OutboxRepository, outbox_transaction

logger = get_logger(__name__)

OutboxTransactionFactory = Callable[[], AsyncContextManager[OutboxRepository]]


def compute_backoff_seconds(
    attempt_count: int, base_delay: int = 30, max_backoff: int = 3600
) -> int:
    """``min(base_delay * 2^(n-1), max_backoff)`` for the n-th failed attempt."""
    exponent = max(attempt_count, 1) - 1
    # Past this exponent the cap always wins
    if exponent >= 32:
        return max_backoff
    return min(base_delay * (2**exponent), max_backoff)


def build_error_message(error: BaseException, max_length: int = 800) -> str:
    message = f"{type(error).__name__}: {error}"
    return message[:max_length]


class OutboxWorker:
    def __init__(
        self,
        transport: MessageTransport,
        transaction_factory: OutboxTransactionFactory = outbox_transaction,
        settings: Settings | None = None,
    ):
        self.transport = transport
        self.transaction_factory = transaction_factory
        self.settings = settings or get_settings()

    async def process_batch(self, limit: int | None = None) -> OutboxBatchResult:
        batch_size = limit or self.settings.outbox_batch_size
        result = OutboxBatchResult()

        stale_seconds = self.settings.outbox_processing_stale_seconds
        async with self.transaction_factory() as repo:
            result.stale_dead_letter_count = await repo.dead_letter_stale_processing(
                stale_seconds
            )
            result.released_stale_count = await repo.release_stale_processing(stale_seconds)

        if result.stale_dead_letter_count:
            logger.error(
                "Dead-lettered stale outbox rows with no attempts left",
                extra={"dead_letter_count": result.stale_dead_letter_count},
            )

        if result.released_stale_count:
            logger.warning(
                "Released stale outbox rows stuck in processing",
                extra={"released_count": result.released_stale_count},
            )

        async with self.transaction_factory() as repo:
            events = await repo.claim_batch(batch_size)

        result.claimed_count = len(events)

        for event in events:
            with log_context(outbox_id=event.id, client_id=event.client_id):
                outcome = await self._deliver(event)

            if outcome == "sent":
                result.sent_count += 1
            elif outcome == "retrying":
                result.retried_count += 1
            elif outcome == "dead_letter":
                result.dead_letter_count += 1

        if result.claimed_count:
            logger.info("Outbox batch processed", extra=result.model_dump())

        return result

    async def _deliver(self, event: OutboxEvent) -> str | None:
        try:
            async with self.transaction_factory() as repo:
                owned = await repo.mark_attempt_started(event.id, event.attempt_count)
        except Exception:
            logger.exception("Failed to stamp outbox attempt, skipping send")
            return None

        if not owned:
            logger.warning("Outbox row no longer held by this claim, skipping send")
            return None

        try:
            delivered = await self.transport.send_message(event.destination, event.message)
            if not delivered:
                raise DeliveryError("send_message returned a falsy result")
        except Exception as exc:
            return await self._record_failure(event, exc)

        try:
            async with self.transaction_factory() as repo:
                await repo.mark_sent(event.id)
        except Exception:
            # Row stays in processing and is re-sent after the stale window
            logger.exception("Failed to mark outbox row as sent")
            return None

        logger.debug("Outbox message sent", extra={"destination": event.destination})
        return "sent"

    async def _record_failure(self, event: OutboxEvent, error: Exception) -> str | None:
        error_message = build_error_message(error, self.settings.outbox_error_max_length)

        try:
            async with self.transaction_factory() as repo:
                if event.attempt_count >= event.max_attempts:
                    await repo.mark_dead_letter(event.id, error_message)
                    outcome = "dead_letter"
                else:
                    delay = compute_backoff_seconds(
                        event.attempt_count,
                        self.settings.outbox_base_delay_seconds,
                        self.settings.outbox_max_backoff_seconds,
                    )
                    next_attempt_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
                    await repo.mark_retry(event.id, error_message, next_attempt_at)
                    outcome = "retrying"
        except Exception:
            logger.exception("Failed to record outbox delivery failure")
            return None

        if outcome == "dead_letter":
            logger.error(
                "Outbox message dead-lettered",
                extra={
                    "attempt_count": event.attempt_count,
                    "max_attempts": event.max_attempts,
                    "error": error_message,
                },
            )
        else:
            logger.warning(
                "Outbox message delivery failed, will retry",
                extra={
                    "attempt_count": event.attempt_count,
                    "max_attempts": event.max_attempts,
                    "error": error_message,
                },
            )
        return outcome
