from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class OutboxStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    RETRYING = "retrying"
    SENT = "sent"
    DEAD_LETTER = "dead_letter"


CLAIMABLE_STATUSES = (OutboxStatus.PENDING, OutboxStatus.RETRYING)


class OutboxEventCreate(BaseModel):
    client_id: str
    destination: str
    message: str
    idempotency_key: str
    max_attempts: int = Field(default=5, ge=1)


class OutboxEvent(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    client_id: str
    destination: str
    message: str
    idempotency_key: str
    status: OutboxStatus
    attempt_count: int
    max_attempts: int
    next_attempt_at: datetime
    created_at: datetime
    updated_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None


class EnqueueResult(BaseModel):
    inserted_count: int = 0
    duplicated_count: int = 0

    @property
    def enqueued_count(self) -> int:
        return self.inserted_count + self.duplicated_count


class OutboxBatchResult(BaseModel):
    released_stale_count: int = 0
    stale_dead_letter_count: int = 0
    claimed_count: int = 0
    sent_count: int = 0
    retried_count: int = 0
    dead_letter_count: int = 0
