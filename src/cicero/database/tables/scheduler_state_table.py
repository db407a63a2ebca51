from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column

from cicero.database.tables.base_class import Base, TimestampMixin


class SchedulerStates(TimestampMixin, Base):
    """Last observed post counts and last notification per client."""

    __tablename__ = "scheduler_state"

    client_id: Mapped[str] = mapped_column(Text, primary_key=True)
    last_ig_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_tiktok_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_notified_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_notified_slot: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Clock of the run that last stored counts; link reports are read from here on
    last_fetched_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
