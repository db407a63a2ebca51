from datetime import datetime, timedelta, timezone

import pytest
import sqlalchemy as sa

from cicero.database.database import sessionmanager
from cicero.database.tables.notification_outbox_table import NotificationOutbox
from cicero.outbox.outbox_models import OutboxEventCreate, OutboxStatus
from cicero.outbox.outbox_repo import OutboxRepository, outbox_transaction

pytestmark = pytest.mark.integration


def _event(key: str, client_id: str = "POLRES_A") -> OutboxEventCreate:
    return OutboxEventCreate(
        client_id=client_id,
        destination="120363025@g.us",
        message=f"message {key}",
        idempotency_key=key,
        max_attempts=3,
    )


async def _status_of(outbox_id: int) -> str:
    async with sessionmanager.transaction() as session:
        return await session.scalar(
            sa.select(NotificationOutbox.status).where(NotificationOutbox.id == outbox_id)
        )


async def test_enqueue_is_idempotent_across_calls():
    async with outbox_transaction() as repo:
        first = await repo.enqueue([_event("key-1")])

    async with outbox_transaction() as repo:
        second = await repo.enqueue([_event("key-1"), _event("key-2")])

    assert (first.inserted_count, first.duplicated_count) == (1, 0)
    assert (second.inserted_count, second.duplicated_count) == (1, 1)

    async with sessionmanager.transaction() as session:
        count = await session.scalar(sa.select(sa.func.count()).select_from(NotificationOutbox))
    assert count == 2


async def test_claim_moves_rows_to_processing():
    async with outbox_transaction() as repo:
        await repo.enqueue([_event("key-1"), _event("key-2")])

    async with outbox_transaction() as repo:
        claimed = await repo.claim_batch(limit=10)

    assert [event.idempotency_key for event in claimed] == ["key-1", "key-2"]
    assert all(event.status == OutboxStatus.PROCESSING for event in claimed)
    assert all(event.attempt_count == 1 for event in claimed)
    assert all(event.last_attempt_at is not None for event in claimed)

    async with outbox_transaction() as repo:
        assert await repo.claim_batch(limit=10) == []


async def test_concurrent_claimers_never_share_rows():
    async with outbox_transaction() as repo:
        await repo.enqueue([_event(f"key-{i}") for i in range(4)])

    async with sessionmanager.session() as first, sessionmanager.session() as second:
        async with first.begin():
            first_claim = await OutboxRepository(first).claim_batch(limit=2)

            # Rows locked by the open transaction are skipped
            async with second.begin():
                second_claim = await OutboxRepository(second).claim_batch(limit=10)

    first_ids = {event.id for event in first_claim}
    second_ids = {event.id for event in second_claim}
    assert len(first_ids) == 2
    assert len(second_ids) == 2
    assert first_ids.isdisjoint(second_ids)


async def test_rows_not_yet_due_are_not_claimed():
    async with outbox_transaction() as repo:
        await repo.enqueue([_event("key-1")])
        [claimed] = await repo.claim_batch()
        await repo.mark_retry(
            claimed.id, "RuntimeError: down", datetime.now(timezone.utc) + timedelta(minutes=5)
        )

    async with outbox_transaction() as repo:
        assert await repo.claim_batch() == []

    assert await _status_of(claimed.id) == OutboxStatus.RETRYING.value


async def test_terminal_transitions():
    async with outbox_transaction() as repo:
        await repo.enqueue([_event("key-1"), _event("key-2")])
        sent, dead = await repo.claim_batch()
        await repo.mark_sent(sent.id)
        await repo.mark_dead_letter(dead.id, "RuntimeError: gone")

    async with outbox_transaction() as repo:
        dead_letters = await repo.list_dead_letters()

    assert await _status_of(sent.id) == OutboxStatus.SENT.value
    assert [event.id for event in dead_letters] == [dead.id]
    assert dead_letters[0].error_message == "RuntimeError: gone"


async def test_stale_processing_rows_are_released():
    async with outbox_transaction() as repo:
        await repo.enqueue([_event("stale"), _event("fresh")])
        stale, fresh = await repo.claim_batch()

    async with sessionmanager.transaction() as session:
        await session.execute(
            sa.update(NotificationOutbox)
            .where(NotificationOutbox.id == stale.id)
            .values(last_attempt_at=datetime.now(timezone.utc) - timedelta(minutes=10))
        )

    async with outbox_transaction() as repo:
        released = await repo.release_stale_processing(stale_seconds=300)

    assert released == 1
    assert await _status_of(stale.id) == OutboxStatus.RETRYING.value
    assert await _status_of(fresh.id) == OutboxStatus.PROCESSING.value

    async with outbox_transaction() as repo:
        [reclaimed] = await repo.claim_batch()

    assert reclaimed.id == stale.id
    assert reclaimed.attempt_count == 2


async def _age_processing_row(outbox_id: int, minutes: int = 10) -> None:
    async with sessionmanager.transaction() as session:
        await session.execute(
            sa.update(NotificationOutbox)
            .where(NotificationOutbox.id == outbox_id)
            .values(last_attempt_at=datetime.now(timezone.utc) - timedelta(minutes=minutes))
        )


async def test_stale_rows_without_attempts_left_are_dead_lettered():
    async with outbox_transaction() as repo:
        await repo.enqueue([_event("exhausted"), _event("retryable")])
        exhausted, retryable = await repo.claim_batch()

    async with sessionmanager.transaction() as session:
        await session.execute(
            sa.update(NotificationOutbox)
            .where(NotificationOutbox.id == exhausted.id)
            .values(attempt_count=3)
        )
    await _age_processing_row(exhausted.id)
    await _age_processing_row(retryable.id)

    async with outbox_transaction() as repo:
        dead = await repo.dead_letter_stale_processing(stale_seconds=300)
        released = await repo.release_stale_processing(stale_seconds=300)

    assert (dead, released) == (1, 1)
    assert await _status_of(exhausted.id) == OutboxStatus.DEAD_LETTER.value
    assert await _status_of(retryable.id) == OutboxStatus.RETRYING.value

    async with outbox_transaction() as repo:
        [dead_letter] = await repo.list_dead_letters()
    assert dead_letter.error_message.startswith("StaleProcessing:")


async def test_attempt_stamp_refreshes_staleness_and_checks_ownership():
    async with outbox_transaction() as repo:
        await repo.enqueue([_event("key-1")])
        [claimed] = await repo.claim_batch()

    await _age_processing_row(claimed.id)

    async with outbox_transaction() as repo:
        assert await repo.mark_attempt_started(claimed.id, claimed.attempt_count) is True
        # A later claim would carry a higher attempt count
        assert await repo.mark_attempt_started(claimed.id, claimed.attempt_count + 1) is False

    async with outbox_transaction() as repo:
        assert await repo.release_stale_processing(stale_seconds=300) == 0

    assert await _status_of(claimed.id) == OutboxStatus.PROCESSING.value
