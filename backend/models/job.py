from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    REFRESH_ENTITLEMENTS = "refresh_entitlements"
    PROCESS_SUBSCRIPTION_END = "process_subscription_end"
    LOCK_EXCESS_CONTENT = "lock_excess_content"
    UNLOCK_USER_CONTENT = "unlock_user_content"
    SEND_NOTIFICATION = "send_notification"
    PROCESS_SCHEDULED_DOWNGRADE = "process_scheduled_downgrade"


class BackgroundJob(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    job_type: str
    payload: Dict[str, Any]
    status: str
    attempts: int = 0
    last_error: Optional[str] = None
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "BackgroundJob":
        data = dict(row._mapping)
        return cls(**{k: v for k, v in data.items() if k in cls.model_fields})
