import contextlib
from typing import AsyncIterator, Iterable

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from cicero.database.database import sessionmanager
from cicero.database.tables.scheduler_state_table import SchedulerStates
from cicero.main.logging import get_logger
from cicero.scheduler.scheduler_models import (
    SchedulerState,
    SchedulerStateUpsert,
    normalize_client_id,
)

logger = get_logger(__name__)


class SchedulerStateRepository:
    """Per-client last-seen counts and last-notified markers.

    Note:
        Methods do NOT commit. The caller owns the transaction.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_state_map_by_client_ids(
        self, client_ids: Iterable[str]
    ) -> dict[str, SchedulerState]:
        """Bulk load states for exactly the given clients.

        Clients without a row are absent from the map; callers must treat
        them as unknown rather than as zero counts.
        """
        normalized = sorted({normalize_client_id(c) for c in client_ids if c})
        if not normalized:
            return {}

        stmt = sa.select(SchedulerStates).where(SchedulerStates.client_id.in_(normalized))
        result = await self.session.scalars(stmt)

        return {
            row.client_id: SchedulerState.model_validate(row) for row in result.all()
        }

    async def upsert_state(self, state: SchedulerStateUpsert) -> None:
        client_id = normalize_client_id(state.client_id)

        values = {
            "client_id": client_id,
            "last_ig_count": state.last_ig_count,
            "last_tiktok_count": state.last_tiktok_count,
            "last_fetched_at": state.last_fetched_at,
        }
        update_values = {
            "last_ig_count": state.last_ig_count,
            "last_tiktok_count": state.last_tiktok_count,
            "last_fetched_at": state.last_fetched_at,
            "updated_at": sa.func.now(),
        }

        # Omitted markers keep whatever the previous run stored
        if state.last_notified_at is not None:
            values["last_notified_at"] = state.last_notified_at
            update_values["last_notified_at"] = state.last_notified_at
        if state.last_notified_slot is not None:
            values["last_notified_slot"] = state.last_notified_slot
            update_values["last_notified_slot"] = state.last_notified_slot

        stmt = insert(SchedulerStates).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["client_id"],
            set_=update_values,
        )

        await self.session.execute(stmt)

        logger.debug(
            "Upserted scheduler state",
            extra={"client_id": client_id, "notified": state.last_notified_at is not None},
        )


@contextlib.asynccontextmanager
async def scheduler_state_transaction() -> AsyncIterator[SchedulerStateRepository]:
    async with sessionmanager.transaction() as session:
        yield SchedulerStateRepository(session)
