"""
backend/models/subscription.py

Subscription record and lifecycle status vocabulary.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from backend.models.common import ensure_utc


class SubscriptionStatus(str, Enum):
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    GRACE_PERIOD = "grace_period"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    UPGRADED = "upgraded"
    DOWNGRADED = "downgraded"
    COMPLETED = "completed"


TERMINAL_STATUSES = frozenset({
    SubscriptionStatus.EXPIRED,
    SubscriptionStatus.CANCELLED,
    SubscriptionStatus.UPGRADED,
    SubscriptionStatus.DOWNGRADED,
    SubscriptionStatus.COMPLETED,
})

# Statuses that count toward entitlements. past_due is still inside the paid cycle.
ENTITLED_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.PAST_DUE.value,
    SubscriptionStatus.GRACE_PERIOD.value,
)

# Statuses a user-facing "current subscription" lookup considers
CURRENT_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.PAST_DUE.value,
    SubscriptionStatus.GRACE_PERIOD.value,
)


class ScheduledChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str  # upgrade | downgrade | cancellation
    new_plan_id: Optional[str] = None
    new_plan_name: Optional[str] = None
    billing_cycle: Optional[str] = None
    effective_date: Optional[datetime] = None
    scheduled_at: Optional[datetime] = None

    @field_validator("effective_date", "scheduled_at")
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class Subscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    plan_id: str
    plan_type: str
    plan_tier: int = 0
    plan_name: Optional[str] = None
    plan_display_name: Optional[str] = None
    plan_snapshot: Optional[Dict[str, Any]] = None
    price_paid: Optional[float] = None
    billing_cycle: str = "monthly"
    status: str
    start_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    grace_period_end_date: Optional[datetime] = None
    auto_renew: bool = True
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    scheduled_change: Optional[ScheduledChange] = None
    previous_subscription_id: Optional[str] = None
    upgrade_credit: Optional[float] = None
    last_payment_id: Optional[str] = None
    charge_count: int = 0
    reminders_sent: List[str] = Field(default_factory=list)
    cancellation_type: Optional[str] = None
    granted_by: Optional[str] = None
    grant_note: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("start_date", "expiry_date", "grace_period_end_date", "created_at", "updated_at")
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)

    @property
    def is_terminal(self) -> bool:
        return self.status in {s.value for s in TERMINAL_STATUSES}

    @property
    def cycle_days(self) -> int:
        snapshot = self.plan_snapshot or {}
        if snapshot.get("duration_days"):
            return int(snapshot["duration_days"])
        return 365 if self.billing_cycle == "yearly" else 30

    def entitled_until(self) -> Optional[datetime]:
        """Grace rows are entitled until grace end; everything else until expiry."""
        if self.status == SubscriptionStatus.GRACE_PERIOD.value:
            return self.grace_period_end_date or self.expiry_date
        return self.expiry_date

    @classmethod
    def from_row(cls, row) -> "Subscription":
        data = dict(row._mapping)
        if data.get("scheduled_change"):
            data["scheduled_change"] = ScheduledChange(**data["scheduled_change"])
        data["reminders_sent"] = list(data.get("reminders_sent") or [])
        return cls(**{k: v for k, v in data.items() if k in cls.model_fields})
