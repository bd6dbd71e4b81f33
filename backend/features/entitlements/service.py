"""
backend/features/entitlements/service.py

Entitlement resolution.

Handles:
- Active-set lookup with a time re-check (status can lag until the sweep runs)
- Pure fold of subscription + plan terms into an Entitlements value
- Verification badge mapping
- Refreshing the denormalized cache on the user record

Plan terms come from the snapshot frozen into each subscription at purchase
time; the live catalog row is only a fallback for records created without one.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional
from sqlalchemy import select

from backend.core.config import settings
from backend.core.database import use_session, user_subscriptions
from backend.features.plans.service import get_plans_by_ids
from backend.features.users.service import update_entitlement_cache
from backend.models.common import ensure_utc, normalize_now
from backend.models.entitlement import ActiveSubscriptionRef, Entitlements
from backend.models.plan import PLAN_TYPE_STORAGE_ADDON, Plan, PlanFeatures
from backend.models.subscription import ENTITLED_STATUSES, Subscription

logger = logging.getLogger("subengine.entitlements")


def get_verification_type(tier: int) -> str:
    if tier >= 2:
        return "gold"
    if tier == 1:
        return "blue"
    return "none"


def is_currently_entitled(subscription: Subscription, now: Optional[datetime] = None) -> bool:
    if subscription.status not in ENTITLED_STATUSES:
        return False
    until = subscription.entitled_until()
    if until is None:
        return False
    return ensure_utc(until) > normalize_now(now)


def get_active_subscriptions(user_id: str, now: Optional[datetime] = None, session=None) -> List[Subscription]:
    """Rows in active, past_due or grace_period whose entitlement window has not passed."""
    now = normalize_now(now)
    with use_session(session) as s:
        rows = s.execute(
            select(user_subscriptions).where(
                user_subscriptions.c.user_id == user_id,
                user_subscriptions.c.status.in_(ENTITLED_STATUSES),
            )
        ).fetchall()
    subs = [Subscription.from_row(r) for r in rows]
    return [sub for sub in subs if is_currently_entitled(sub, now)]


def _plan_terms(subscription: Subscription, plans: Mapping[str, Plan]) -> Optional[Dict]:
    if subscription.plan_snapshot:
        return subscription.plan_snapshot
    plan = plans.get(subscription.plan_id)
    if plan is None:
        return None
    return plan.snapshot(subscription.billing_cycle)


def fold_entitlements(
    subscriptions: Iterable[Subscription],
    plans: Optional[Mapping[str, Plan]] = None,
    free_storage_gb: Optional[float] = None,
) -> Entitlements:
    """
    Fold a user's entitled subscriptions into one capability set.

    Free baseline + storage of the single highest-tier subscription plan +
    storage of every addon. Only the highest-tier plan decides feature flags.
    Records whose plan terms cannot be found are skipped.

    Deterministic: the input order does not matter.
    """
    plans = plans or {}
    baseline = settings.FREE_STORAGE_GB if free_storage_gb is None else free_storage_gb

    addon_storage = 0
    best = None  # ((tier, expiry, id), subscription, terms)
    refs: List[ActiveSubscriptionRef] = []

    for sub in sorted(subscriptions, key=lambda x: x.id):
        terms = _plan_terms(sub, plans)
        if terms is None:
            logger.warning(
                "[entitlements] plan missing, skipping subscription",
                extra={"subscription_id": sub.id, "user_id": sub.user_id},
            )
            continue

        storage = int(terms.get("storage_gb") or 0)
        tier = int(terms.get("tier") or 0)
        refs.append(ActiveSubscriptionRef(
            subscription_id=sub.id,
            plan_id=sub.plan_id,
            plan_type=terms.get("type") or sub.plan_type,
            plan_name=terms.get("display_name") or sub.plan_display_name,
            tier=tier,
            storage_gb=storage,
            status=sub.status,
            expiry_date=sub.expiry_date,
        ))

        if (terms.get("type") or sub.plan_type) == PLAN_TYPE_STORAGE_ADDON:
            addon_storage += storage
            continue

        expiry_key = sub.expiry_date.timestamp() if sub.expiry_date else 0
        candidate = (tier, expiry_key, sub.id)
        if best is None or candidate > best[0]:
            best = (candidate, sub, terms)

    if best is None:
        return Entitlements(
            storage_gb=baseline + addon_storage,
            active_subscriptions=refs,
        )

    _, top, terms = best
    features = PlanFeatures(**(terms.get("features") or {}))
    return Entitlements(
        subscription_tier=int(terms.get("tier") or 0),
        subscription_name=terms.get("display_name") or top.plan_display_name or "Free",
        storage_gb=baseline + int(terms.get("storage_gb") or 0) + addon_storage,
        blue_tick=features.blue_tick,
        gold_tick=features.gold_tick,
        no_ads=features.no_ads,
        engagement_boost=features.engagement_boost,
        bio_links_limit=features.bio_links_limit,
        caption_links_limit=features.caption_links_limit,
        custom_theme=features.custom_theme,
        active_subscriptions=refs,
        expiry_date=top.expiry_date,
    )


def resolve_entitlements(user_id: str, now: Optional[datetime] = None, session=None) -> Entitlements:
    """Read-only. Safe to call any number of times."""
    with use_session(session) as s:
        subs = get_active_subscriptions(user_id, now=now, session=s)
        missing_snapshot = [sub.plan_id for sub in subs if not sub.plan_snapshot]
        plans = get_plans_by_ids(missing_snapshot, session=s)
    return fold_entitlements(subs, plans)


def refresh_entitlement_cache(user_id: str, now: Optional[datetime] = None, session=None) -> Entitlements:
    with use_session(session) as s:
        entitlements = resolve_entitlements(user_id, now=now, session=s)
        update_entitlement_cache(user_id, entitlements, session=s)
    logger.info(
        "[entitlements] cache refreshed",
        extra={"user_id": user_id, "status": entitlements.subscription_name},
    )
    return entitlements
