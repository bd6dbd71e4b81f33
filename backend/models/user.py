import hashlib
from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    created_at: datetime
    display_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    provider_customer_id: Optional[str] = None
    subscription_tier: int = 0
    subscription_name: Optional[str] = None
    storage_limit_gb: Optional[float] = None
    verification_type: str = "none"
    entitlement_cache: Optional[Dict[str, Any]] = None
    last_entitlement_update: Optional[datetime] = None

    @staticmethod
    def normalized_display_name(user_id: str, display_name: Optional[str] = None) -> str:
        if display_name and display_name.strip():
            return display_name.strip()
        # Deterministic fallback handle
        h = hashlib.sha1(user_id.encode("utf-8")).hexdigest()
        return f"@u_{h[-6:]}"

    @classmethod
    def from_row(cls, row) -> "User":
        return cls(**dict(row._mapping))
