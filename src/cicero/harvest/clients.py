from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cicero.scheduler.scheduler_models import normalize_client_id


class ClientRef(BaseModel):
    """A tenant as seen by one fetch run. Owned by the client registry."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    name: Optional[str] = None
    client_type: Optional[str] = None
    instagram_enabled: bool = True
    tiktok_enabled: bool = True
    # Raw chat group field, may hold several ids separated by "," or ";"
    group_destinations: Optional[str] = None

    @field_validator("client_id", mode="before")
    @classmethod
    def normalize_id(cls, value: str) -> str:
        return normalize_client_id(value)

    @property
    def display_name(self) -> str:
        return self.name or self.client_id


class ContentItem(BaseModel):
    content_id: str
    url: Optional[str] = None
    caption: Optional[str] = None
    posted_at: Optional[datetime] = None


class ContentDeltas(BaseModel):
    """Newest items and missing-id shortlists backing a count change."""

    instagram_added: list[ContentItem] = Field(default_factory=list)
    tiktok_added: list[ContentItem] = Field(default_factory=list)
    instagram_missing_ids: list[str] = Field(default_factory=list)
    tiktok_missing_ids: list[str] = Field(default_factory=list)


class LinkChange(BaseModel):
    """An amplification link report filed by a member against one of the client's posts."""

    content_id: str
    reporter_name: Optional[str] = None
    # Short platform label ("IG", "FB", "X", "TT", "YT") to the reported URL
    links: dict[str, str] = Field(default_factory=dict)
    reported_at: Optional[datetime] = None
