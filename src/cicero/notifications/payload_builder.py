import hashlib
from datetime import datetime
from typing import AsyncContextManager, Callable

from cicero.harvest.clients import ClientRef
from cicero.main.config import Settings, get_settings
from cicero.main.logging import get_logger
from cicero.notifications import messages
from cicero.notifications.destinations import parse_destinations
from cicero.outbox.outbox_models import EnqueueResult, OutboxEventCreate
from cicero.outbox.outbox_repo import OutboxRepository, outbox_transaction
from cicero.scheduler.change_detector import ChangeDescriptor
from cicero.scheduler.notify_policy import NotifyDecision, slot_label, to_local

logger = get_logger(__name__)

OutboxTransactionFactory = Callable[[], AsyncContextManager[OutboxRepository]]


def build_idempotency_key(client_id: str, destination: str, discriminator: str) -> str:
    """Content hash of ``client_id|destination|discriminator``.

    Change messages use their exact text as discriminator (the text carries the
    before and after counts, the affected ids and the local date); the scheduled
    recap uses ``scheduled:<slot>`` so at most one recap per hour slot is queued.
    """
    raw = "|".join((client_id, destination, discriminator))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class NotificationPayloadBuilder:
    """Turns a notify decision into outbox events and enqueues them."""

    def __init__(
        self,
        transaction_factory: OutboxTransactionFactory = outbox_transaction,
        settings: Settings | None = None,
    ):
        self.transaction_factory = transaction_factory
        self.settings = settings or get_settings()

    def build_change_messages(
        self, client: ClientRef, changes: ChangeDescriptor, now: datetime
    ) -> list[str]:
        preview_limit = self.settings.added_items_preview_limit
        name = client.display_name
        seen_at_local = to_local(now, self.settings.timezone)

        candidates = [
            messages.format_instagram_additions(
                name,
                changes.instagram,
                changes.instagram.added_items[:preview_limit],
                seen_at_local,
            ),
            messages.format_tiktok_additions(
                name,
                changes.tiktok,
                changes.tiktok.added_items[:preview_limit],
                seen_at_local,
            ),
            messages.format_deletions(name, changes.instagram, changes.tiktok, seen_at_local),
            messages.format_link_changes(name, changes.link_changes),
        ]
        return [text for text in candidates if text]

    def build_events(
        self,
        client: ClientRef,
        changes: ChangeDescriptor,
        decision: NotifyDecision,
        now: datetime,
    ) -> list[OutboxEventCreate]:
        if not decision.notify:
            return []

        destinations = parse_destinations(client.group_destinations)
        if not destinations:
            logger.info("No group destinations configured, nothing to enqueue")
            return []

        # (message, idempotency discriminator)
        keyed_messages: list[tuple[str, str]] = []

        if decision.has_changes:
            for text in self.build_change_messages(client, changes, now):
                keyed_messages.append((text, text))

        if decision.hourly_due:
            recap = messages.format_scheduled_recap(
                client.display_name,
                changes.current_counts,
                changes,
                to_local(now, self.settings.timezone),
            )
            slot = slot_label(now, self.settings.timezone)
            keyed_messages.append((recap, f"scheduled:{slot}"))

        return [
            OutboxEventCreate(
                client_id=client.client_id,
                destination=destination,
                message=text,
                idempotency_key=build_idempotency_key(
                    client.client_id, destination, discriminator
                ),
                max_attempts=self.settings.notification_max_attempts,
            )
            for destination in destinations
            for text, discriminator in keyed_messages
        ]

    async def enqueue(
        self,
        client: ClientRef,
        changes: ChangeDescriptor,
        decision: NotifyDecision,
        now: datetime,
    ) -> EnqueueResult:
        events = self.build_events(client, changes, decision, now)
        if not events:
            return EnqueueResult()

        async with self.transaction_factory() as repo:
            result = await repo.enqueue(events)

        logger.info(
            "Enqueued notifications",
            extra={
                "inserted_count": result.inserted_count,
                "duplicated_count": result.duplicated_count,
                "reason": decision.reason,
            },
        )
        return result
