import contextlib
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from cicero.database.database import sessionmanager
from cicero.database.tables.notification_outbox_table import NotificationOutbox
from cicero.main.logging import get_logger
from cicero.outbox.outbox_models import (
    CLAIMABLE_STATUSES,
    EnqueueResult,
    OutboxEvent,
    OutboxEventCreate,
    OutboxStatus,
)

logger = get_logger(__name__)

STALE_EXHAUSTED_ERROR = "StaleProcessing: worker stopped mid-delivery with no attempts left"


class OutboxRepository:
    """Durable notification queue.

    Note:
        Methods do NOT commit. Claim and the status transitions must run inside
        a transaction opened by the caller, see ``outbox_transaction``.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def enqueue(self, events: Sequence[OutboxEventCreate]) -> EnqueueResult:
        """Insert events, ignoring any whose idempotency key already exists.

        Duplicates within the same batch count as duplicates too.
        """
        result = EnqueueResult()
        seen_keys: set[str] = set()

        for event in events:
            if event.idempotency_key in seen_keys:
                result.duplicated_count += 1
                continue
            seen_keys.add(event.idempotency_key)

            stmt = (
                insert(NotificationOutbox)
                .values(
                    client_id=event.client_id,
                    destination=event.destination,
                    message=event.message,
                    idempotency_key=event.idempotency_key,
                    status=OutboxStatus.PENDING.value,
                    attempt_count=0,
                    max_attempts=event.max_attempts,
                    next_attempt_at=sa.func.now(),
                )
                .on_conflict_do_nothing(index_elements=["idempotency_key"])
                .returning(NotificationOutbox.id)
            )
            inserted_id = await self.session.scalar(stmt)

            if inserted_id is None:
                result.duplicated_count += 1
            else:
                result.inserted_count += 1

        return result

    async def claim_batch(self, limit: int = 20) -> list[OutboxEvent]:
        """Atomically move up to ``limit`` due rows to ``processing``.

        Rows locked by a concurrent claimer are skipped, so two claimers never
        receive the same row.
        """
        due = (
            sa.select(NotificationOutbox.id)
            .where(
                NotificationOutbox.status.in_([s.value for s in CLAIMABLE_STATUSES]),
                NotificationOutbox.next_attempt_at <= sa.func.now(),
            )
            .order_by(NotificationOutbox.created_at, NotificationOutbox.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
            .cte("due")
        )

        stmt = (
            sa.update(NotificationOutbox)
            .where(NotificationOutbox.id.in_(sa.select(due.c.id)))
            .values(
                status=OutboxStatus.PROCESSING.value,
                attempt_count=NotificationOutbox.attempt_count + 1,
                last_attempt_at=sa.func.now(),
                updated_at=sa.func.now(),
            )
            .returning(NotificationOutbox)
            .execution_options(synchronize_session=False)
        )

        rows = (await self.session.scalars(stmt)).all()
        events = [OutboxEvent.model_validate(row) for row in rows]
        events.sort(key=lambda event: (event.created_at, event.id))
        return events

    async def mark_sent(self, outbox_id: int) -> None:
        stmt = (
            sa.update(NotificationOutbox)
            .where(NotificationOutbox.id == outbox_id)
            .values(
                status=OutboxStatus.SENT.value,
                sent_at=sa.func.now(),
                error_message=None,
                updated_at=sa.func.now(),
            )
        )
        await self.session.execute(stmt)

    async def mark_retry(
        self, outbox_id: int, error_message: str, next_attempt_at: datetime
    ) -> None:
        stmt = (
            sa.update(NotificationOutbox)
            .where(NotificationOutbox.id == outbox_id)
            .values(
                status=OutboxStatus.RETRYING.value,
                error_message=error_message,
                next_attempt_at=next_attempt_at,
                updated_at=sa.func.now(),
            )
        )
        await self.session.execute(stmt)

    async def mark_dead_letter(self, outbox_id: int, error_message: str) -> None:
        stmt = (
            sa.update(NotificationOutbox)
            .where(NotificationOutbox.id == outbox_id)
            .values(
                status=OutboxStatus.DEAD_LETTER.value,
                error_message=error_message,
                next_attempt_at=sa.func.now(),
                updated_at=sa.func.now(),
            )
        )
        await self.session.execute(stmt)

    async def mark_attempt_started(self, outbox_id: int, attempt_count: int) -> bool:
        """Stamp the attempt clock right before a send.

        Returns:
            False when the row is no longer this claim's (released and claimed
            again elsewhere), in which case the caller must not send.
        """
        stmt = (
            sa.update(NotificationOutbox)
            .where(
                NotificationOutbox.id == outbox_id,
                NotificationOutbox.status == OutboxStatus.PROCESSING.value,
                NotificationOutbox.attempt_count == attempt_count,
            )
            .values(last_attempt_at=sa.func.now(), updated_at=sa.func.now())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return (result.rowcount or 0) > 0

    def _stale_processing(self, stale_seconds: int) -> list[sa.ColumnElement[bool]]:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=stale_seconds)
        last_activity = sa.func.coalesce(
            NotificationOutbox.last_attempt_at,
            NotificationOutbox.updated_at,
            NotificationOutbox.created_at,
        )
        return [
            NotificationOutbox.status == OutboxStatus.PROCESSING.value,
            last_activity <= cutoff,
        ]

    async def release_stale_processing(self, stale_seconds: int = 300) -> int:
        """Reset rows stuck in ``processing`` back to ``retrying``.

        A row is stale when its last activity is older than ``stale_seconds``,
        which means the worker that claimed it died before recording an outcome.
        Rows that already used every attempt are left for
        ``dead_letter_stale_processing``.

        Returns:
            Number of rows released.
        """
        stmt = (
            sa.update(NotificationOutbox)
            .where(
                *self._stale_processing(stale_seconds),
                NotificationOutbox.attempt_count < NotificationOutbox.max_attempts,
            )
            .values(
                status=OutboxStatus.RETRYING.value,
                next_attempt_at=sa.func.now(),
                updated_at=sa.func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def dead_letter_stale_processing(
        self, stale_seconds: int = 300, error_message: str = STALE_EXHAUSTED_ERROR
    ) -> int:
        """Dead-letter stale ``processing`` rows that have no attempts left.

        Returns:
            Number of rows dead-lettered.
        """
        stmt = (
            sa.update(NotificationOutbox)
            .where(
                *self._stale_processing(stale_seconds),
                NotificationOutbox.attempt_count >= NotificationOutbox.max_attempts,
            )
            .values(
                status=OutboxStatus.DEAD_LETTER.value,
                error_message=error_message,
                next_attempt_at=sa.func.now(),
                updated_at=sa.func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def list_dead_letters(self, limit: int = 50) -> list[OutboxEvent]:
        stmt = (
            sa.select(NotificationOutbox)
            .where(NotificationOutbox.status == OutboxStatus.DEAD_LETTER.value)
            .order_by(NotificationOutbox.updated_at.desc(), NotificationOutbox.id.desc())
            .limit(limit)
        )
        rows = await self.session.scalars(stmt)
        return [OutboxEvent.model_validate(row) for row in rows.all()]


@contextlib.asynccontextmanager
async def outbox_transaction() -> AsyncIterator[OutboxRepository]:
    async with sessionmanager.transaction() as session:
        yield OutboxRepository(session)
