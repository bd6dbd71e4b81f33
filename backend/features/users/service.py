"""
User record service.
- get_user(user_id) / ensure_user(user_id)
- provider customer id cache (set / clear when stale)
- denormalized entitlement cache (advisory, last-write-wins)
"""

import logging
from typing import Optional
from sqlalchemy import insert, select, update

from backend.core.database import use_session, users as app_users
from backend.core.errors import NotFoundError
from backend.models.common import utc_now
from backend.models.entitlement import Entitlements
from backend.models.user import User

logger = logging.getLogger("subengine.users")


def normalize_display_name(user_id: str, display_name: Optional[str]) -> str:
    return User.normalized_display_name(user_id, display_name)


def get_user(user_id: str, session=None) -> Optional[User]:
    with use_session(session) as s:
        row = s.execute(select(app_users).where(app_users.c.user_id == user_id)).first()
        return User.from_row(row) if row else None


def require_user(user_id: str, session=None) -> User:
    user = get_user(user_id, session=session)
    if not user:
        raise NotFoundError(f"User not found: {user_id}")
    return user


def ensure_user(
    user_id: str,
    display_name: Optional[str] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    session=None,
) -> User:
    """Return the user row, creating it on first sight."""
    with use_session(session) as s:
        existing = get_user(user_id, session=s)
        if existing:
            return existing
        s.execute(
            insert(app_users).values(
                user_id=user_id,
                display_name=normalize_display_name(user_id, display_name),
                email=email,
                phone=phone,
                subscription_tier=0,
                verification_type="none",
                created_at=utc_now(),
            )
        )
        return get_user(user_id, session=s)


def set_provider_customer_id(user_id: str, customer_id: str, session=None) -> None:
    with use_session(session) as s:
        s.execute(
            update(app_users)
            .where(app_users.c.user_id == user_id)
            .values(provider_customer_id=customer_id, provider_customer_updated_at=utc_now())
        )


def clear_provider_customer_id(user_id: str, session=None) -> None:
    with use_session(session) as s:
        s.execute(
            update(app_users)
            .where(app_users.c.user_id == user_id)
            .values(provider_customer_id=None, provider_customer_updated_at=utc_now())
        )
    logger.warning("[users] cleared stale provider customer id", extra={"user_id": user_id})


def update_entitlement_cache(user_id: str, entitlements: Entitlements, session=None) -> None:
    """Write the denormalized snapshot. Readers must treat it as advisory."""
    with use_session(session) as s:
        ensure_user(user_id, session=s)
        s.execute(
            update(app_users)
            .where(app_users.c.user_id == user_id)
            .values(
                subscription_tier=entitlements.subscription_tier,
                subscription_name=entitlements.subscription_name,
                storage_limit_gb=entitlements.storage_gb,
                verification_type=entitlements.verification_type,
                entitlement_cache=entitlements.to_cache(),
                last_entitlement_update=utc_now(),
            )
        )
