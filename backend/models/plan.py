"""
backend/models/plan.py

Plan catalog model.

A plan is either a tiered subscription (tier decides feature flags) or a
storage addon that only contributes storage and stacks without bound.
"""

from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field

PLAN_TYPE_SUBSCRIPTION = "subscription"
PLAN_TYPE_STORAGE_ADDON = "storage_addon"
PLAN_TYPES = (PLAN_TYPE_SUBSCRIPTION, PLAN_TYPE_STORAGE_ADDON)

BILLING_CYCLES = ("monthly", "yearly")


class PlanFeatures(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    blue_tick: bool = False
    gold_tick: bool = False
    no_ads: bool = False
    engagement_boost: float = 1.0
    bio_links_limit: int = 0
    caption_links_limit: int = 0
    custom_theme: bool = False


class Plan(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    display_name: str
    tier: int = 0
    type: str = PLAN_TYPE_SUBSCRIPTION
    billing_cycle: str = "monthly"
    price: float
    price_yearly: Optional[float] = None
    duration_days: int = 30
    duration_days_yearly: int = 365
    storage_gb: int = 0
    features: PlanFeatures = Field(default_factory=PlanFeatures)
    sort_order: int = 99
    is_best_value: bool = False
    provider_plan_id: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None

    @property
    def is_addon(self) -> bool:
        return self.type == PLAN_TYPE_STORAGE_ADDON

    def price_for(self, billing_cycle: str) -> float:
        if billing_cycle == "yearly" and self.price_yearly:
            return self.price_yearly
        return self.price

    def duration_for(self, billing_cycle: str) -> int:
        if billing_cycle == "yearly":
            return self.duration_days_yearly or 365
        return self.duration_days or 30

    def snapshot(self, billing_cycle: str) -> Dict[str, Any]:
        """Terms frozen into a subscription at purchase time."""
        return {
            "plan_id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "tier": self.tier,
            "type": self.type,
            "storage_gb": self.storage_gb,
            "features": self.features.model_dump(),
            "price": self.price_for(billing_cycle),
            "duration_days": self.duration_for(billing_cycle),
            "billing_cycle": billing_cycle,
        }

    @classmethod
    def from_row(cls, row) -> "Plan":
        data = dict(row._mapping)
        data["features"] = PlanFeatures(**(data.get("features") or {}))
        return cls(**{k: v for k, v in data.items() if k in cls.model_fields})
