"""
backend/models/entitlement.py

Resolved capability set for a user. Derived and cacheable, never authoritative.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

GIB = 1024 ** 3


class ActiveSubscriptionRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    subscription_id: str
    plan_id: str
    plan_type: str
    plan_name: Optional[str] = None
    tier: int = 0
    storage_gb: int = 0
    status: str
    expiry_date: Optional[datetime] = None


class Entitlements(BaseModel):
    model_config = ConfigDict(frozen=True)

    subscription_tier: int = 0
    subscription_name: str = "Free"
    storage_gb: float = 15
    blue_tick: bool = False
    gold_tick: bool = False
    no_ads: bool = False
    engagement_boost: float = 1.0
    bio_links_limit: int = 0
    caption_links_limit: int = 0
    custom_theme: bool = False
    active_subscriptions: List[ActiveSubscriptionRef] = Field(default_factory=list)
    expiry_date: Optional[datetime] = None

    @property
    def storage_limit_bytes(self) -> int:
        return int(self.storage_gb * GIB)

    @property
    def verification_type(self) -> str:
        if self.subscription_tier >= 2:
            return "gold"
        if self.subscription_tier == 1:
            return "blue"
        return "none"

    def to_cache(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
