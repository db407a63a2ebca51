from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def normalize_client_id(client_id: str) -> str:
    return str(client_id).strip().upper()


class PlatformCounts(BaseModel):
    model_config = ConfigDict(frozen=True)

    instagram: int = Field(default=0, ge=0)
    tiktok: int = Field(default=0, ge=0)


class SchedulerState(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    client_id: str
    last_ig_count: int = Field(default=0, ge=0)
    last_tiktok_count: int = Field(default=0, ge=0)
    last_notified_at: Optional[datetime] = None
    last_notified_slot: Optional[str] = None
    last_fetched_at: Optional[datetime] = None

    @property
    def counts(self) -> PlatformCounts:
        return PlatformCounts(instagram=self.last_ig_count, tiktok=self.last_tiktok_count)


class SchedulerStateUpsert(BaseModel):
    """New counts for a client, plus notification markers when one was sent.

    ``last_fetched_at`` is the clock of the run that produced the counts.

    ``last_notified_at``/``last_notified_slot`` left as None keep the stored values.
    """

    client_id: str
    last_ig_count: int = Field(ge=0)
    last_tiktok_count: int = Field(ge=0)
    last_notified_at: Optional[datetime] = None
    last_notified_slot: Optional[str] = None
    last_fetched_at: Optional[datetime] = None
