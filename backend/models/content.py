from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, field_validator

from backend.models.common import ensure_utc


class ContentItem(BaseModel):
    """Private upload owned by the content subsystem. Only lock fields change here."""

    model_config = ConfigDict(frozen=True)

    id: str
    owner_id: str
    collection: str = "reels"
    title: Optional[str] = None
    is_private: bool = True
    file_size_bytes: int = 0
    is_locked: bool = False
    locked_at: Optional[datetime] = None
    lock_reason: Optional[str] = None
    created_at: datetime

    @field_validator("locked_at", "created_at")
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)

    @classmethod
    def from_row(cls, row) -> "ContentItem":
        return cls(**dict(row._mapping))
