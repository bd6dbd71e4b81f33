"""
backend/features/plans/service.py

Plan catalog service.

Handles:
- Default catalog seeding (Basic, Premium, Ultra, storage addons)
- Plan CRUD for admins
- Grouped public listing with monthly/yearly pricing
- Cached provider plan ids (lazily created, cleared when stale)
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4
from sqlalchemy import func, insert, select, update

from backend.core.config import settings
from backend.core.database import subscription_plans, use_session, user_subscriptions
from backend.core.errors import NotFoundError, ValidationError
from backend.models.common import utc_now
from backend.models.plan import (
    BILLING_CYCLES,
    PLAN_TYPE_STORAGE_ADDON,
    PLAN_TYPE_SUBSCRIPTION,
    PLAN_TYPES,
    Plan,
    PlanFeatures,
)
from backend.models.subscription import CURRENT_STATUSES

logger = logging.getLogger("subengine.plans")


DEFAULT_PLANS: List[Dict[str, Any]] = [
    {
        "id": "basic",
        "name": "basic",
        "display_name": "Basic",
        "tier": 1,
        "type": PLAN_TYPE_SUBSCRIPTION,
        "price": 99,
        "price_yearly": 999,
        "storage_gb": 50,
        "sort_order": 1,
        "features": {
            "blue_tick": True,
            "engagement_boost": 1.2,
            "bio_links_limit": 3,
            "caption_links_limit": 1,
        },
    },
    {
        "id": "premium",
        "name": "premium",
        "display_name": "Premium",
        "tier": 2,
        "type": PLAN_TYPE_SUBSCRIPTION,
        "price": 199,
        "price_yearly": 1999,
        "storage_gb": 101,
        "sort_order": 2,
        "is_best_value": True,
        "features": {
            "gold_tick": True,
            "no_ads": True,
            "engagement_boost": 1.5,
            "bio_links_limit": 5,
            "caption_links_limit": 3,
            "custom_theme": True,
        },
    },
    {
        "id": "ultra",
        "name": "ultra",
        "display_name": "Ultra",
        "tier": 3,
        "type": PLAN_TYPE_SUBSCRIPTION,
        "price": 399,
        "price_yearly": 3999,
        "storage_gb": 251,
        "sort_order": 3,
        "features": {
            "gold_tick": True,
            "no_ads": True,
            "engagement_boost": 2.0,
            "bio_links_limit": 10,
            "caption_links_limit": 5,
            "custom_theme": True,
        },
    },
    {
        "id": "storage_50",
        "name": "storage_50",
        "display_name": "+50 GB Storage",
        "tier": 0,
        "type": PLAN_TYPE_STORAGE_ADDON,
        "price": 49,
        "price_yearly": 499,
        "storage_gb": 50,
        "sort_order": 10,
    },
    {
        "id": "storage_200",
        "name": "storage_200",
        "display_name": "+200 GB Storage",
        "tier": 0,
        "type": PLAN_TYPE_STORAGE_ADDON,
        "price": 149,
        "price_yearly": 1499,
        "storage_gb": 200,
        "sort_order": 11,
    },
]

_EDITABLE_FIELDS = {
    "display_name",
    "tier",
    "price",
    "price_yearly",
    "duration_days",
    "duration_days_yearly",
    "storage_gb",
    "features",
    "sort_order",
    "is_best_value",
    "is_active",
}


def _validate_plan_fields(data: Dict[str, Any]) -> None:
    if "type" in data and data["type"] not in PLAN_TYPES:
        raise ValidationError(f"Invalid plan type: {data['type']}")
    if "billing_cycle" in data and data["billing_cycle"] not in BILLING_CYCLES:
        raise ValidationError(f"Invalid billing cycle: {data['billing_cycle']}")
    for key in ("price", "price_yearly", "storage_gb", "tier"):
        value = data.get(key)
        if value is not None and value < 0:
            raise ValidationError(f"{key} must be non-negative")
    for key in ("duration_days", "duration_days_yearly"):
        value = data.get(key)
        if value is not None and value <= 0:
            raise ValidationError(f"{key} must be positive")
    if data.get("type") == PLAN_TYPE_STORAGE_ADDON and data.get("tier"):
        raise ValidationError("Storage addons cannot carry a tier")
    if "features" in data and data["features"] is not None:
        # Reject unknown flags early
        try:
            PlanFeatures(**data["features"])
        except Exception as exc:
            raise ValidationError(f"Invalid plan features: {exc}") from exc


def get_plan(plan_id: str, session=None) -> Optional[Plan]:
    with use_session(session) as s:
        row = s.execute(select(subscription_plans).where(subscription_plans.c.id == plan_id)).first()
        return Plan.from_row(row) if row else None


def require_plan(plan_id: str, session=None) -> Plan:
    plan = get_plan(plan_id, session=session)
    if not plan:
        raise NotFoundError(f"Plan not found: {plan_id}")
    return plan


def find_plan(name: str, billing_cycle: str = "monthly", session=None) -> Optional[Plan]:
    """Look up an active plan by (name, billing_cycle), falling back to name only."""
    with use_session(session) as s:
        base = select(subscription_plans).where(
            subscription_plans.c.name == name,
            subscription_plans.c.is_active.is_(True),
        )
        row = s.execute(base.where(subscription_plans.c.billing_cycle == billing_cycle)).first()
        if not row:
            row = s.execute(base.order_by(subscription_plans.c.sort_order)).first()
        return Plan.from_row(row) if row else None


def list_plans(include_inactive: bool = False, plan_type: Optional[str] = None, session=None) -> List[Plan]:
    with use_session(session) as s:
        query = select(subscription_plans)
        if not include_inactive:
            query = query.where(subscription_plans.c.is_active.is_(True))
        if plan_type:
            query = query.where(subscription_plans.c.type == plan_type)
        rows = s.execute(query.order_by(subscription_plans.c.sort_order, subscription_plans.c.id)).fetchall()
        return [Plan.from_row(r) for r in rows]


def get_plans_by_ids(plan_ids, session=None) -> Dict[str, Plan]:
    ids = list(set(plan_ids))
    if not ids:
        return {}
    with use_session(session) as s:
        rows = s.execute(select(subscription_plans).where(subscription_plans.c.id.in_(ids))).fetchall()
        return {r.id: Plan.from_row(r) for r in rows}


def get_grouped_plans(session=None) -> Dict[str, Any]:
    """
    Public catalog: subscription plans grouped by name with both cycle prices,
    storage addons listed separately.
    """
    grouped: Dict[str, Dict[str, Any]] = {}
    addons: List[Dict[str, Any]] = []

    for plan in list_plans(session=session):
        if plan.is_addon:
            addons.append({
                "id": plan.id,
                "name": plan.name,
                "display_name": plan.display_name,
                "storage_gb": plan.storage_gb,
                "pricing": {"monthly": plan.price, "yearly": plan.price_yearly},
            })
            continue

        entry = grouped.setdefault(plan.name, {
            "name": plan.name,
            "display_name": plan.display_name,
            "tier": plan.tier,
            "storage_gb": plan.storage_gb,
            "features": plan.features.model_dump(),
            "is_best_value": plan.is_best_value,
            "plan_ids": {},
            "pricing": {},
        })
        entry["plan_ids"][plan.billing_cycle] = plan.id
        entry["pricing"][plan.billing_cycle] = plan.price
        if plan.price_yearly is not None:
            entry["pricing"].setdefault("yearly", plan.price_yearly)
            entry["plan_ids"].setdefault("yearly", plan.id)

    return {
        "plans": sorted(grouped.values(), key=lambda p: p["tier"]),
        "addons": addons,
        "free_storage_gb": settings.FREE_STORAGE_GB,
        "currency": settings.BILLING_CURRENCY,
    }


def create_plan(data: Dict[str, Any], session=None) -> Plan:
    if not data.get("name") or not data.get("display_name"):
        raise ValidationError("Plan name and display_name are required")
    if data.get("price") is None:
        raise ValidationError("Plan price is required")
    _validate_plan_fields(data)

    now = utc_now()
    plan_id = data.get("id") or f"plan_{uuid4().hex[:12]}"
    values = {
        "id": plan_id,
        "name": data["name"],
        "display_name": data["display_name"],
        "tier": data.get("tier", 0),
        "type": data.get("type", PLAN_TYPE_SUBSCRIPTION),
        "billing_cycle": data.get("billing_cycle", "monthly"),
        "price": data["price"],
        "price_yearly": data.get("price_yearly"),
        "duration_days": data.get("duration_days", 30),
        "duration_days_yearly": data.get("duration_days_yearly", 365),
        "storage_gb": data.get("storage_gb", 0),
        "features": PlanFeatures(**(data.get("features") or {})).model_dump(),
        "sort_order": data.get("sort_order", 99),
        "is_best_value": bool(data.get("is_best_value", False)),
        "is_active": bool(data.get("is_active", True)),
        "created_at": now,
        "updated_at": now,
    }
    with use_session(session) as s:
        if s.execute(select(subscription_plans.c.id).where(subscription_plans.c.id == plan_id)).first():
            raise ValidationError(f"Plan already exists: {plan_id}")
        s.execute(insert(subscription_plans).values(**values))
    logger.info("[plans] created", extra={"plan_id": plan_id})
    return require_plan(plan_id, session=session)


def update_plan(plan_id: str, changes: Dict[str, Any], session=None) -> Plan:
    unknown = set(changes) - _EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Fields not editable: {', '.join(sorted(unknown))}")
    _validate_plan_fields(changes)
    values = dict(changes)
    if "features" in values:
        values["features"] = PlanFeatures(**(values["features"] or {})).model_dump()

    with use_session(session) as s:
        current = get_plan(plan_id, session=s)
        if not current:
            raise NotFoundError(f"Plan not found: {plan_id}")
        if current.is_addon and values.get("tier"):
            raise ValidationError("Storage addons cannot carry a tier")
        # Price changes invalidate the provider-side plan
        if "price" in values or "price_yearly" in values:
            values["provider_plan_id"] = None
        values["updated_at"] = utc_now()
        s.execute(update(subscription_plans).where(subscription_plans.c.id == plan_id).values(**values))
        return require_plan(plan_id, session=s)


def count_active_subscribers(plan_id: str, session=None) -> int:
    with use_session(session) as s:
        return s.execute(
            select(func.count()).select_from(user_subscriptions).where(
                user_subscriptions.c.plan_id == plan_id,
                user_subscriptions.c.status.in_(CURRENT_STATUSES),
            )
        ).scalar_one()


def deactivate_plan(plan_id: str, session=None) -> Plan:
    """Hide a plan from new purchases. Refused while anyone is subscribed to it."""
    with use_session(session) as s:
        require_plan(plan_id, session=s)
        subscribers = count_active_subscribers(plan_id, session=s)
        if subscribers:
            raise ValidationError(
                f"Plan has {subscribers} active subscribers",
                details={"active_subscribers": subscribers},
            )
        s.execute(
            update(subscription_plans)
            .where(subscription_plans.c.id == plan_id)
            .values(is_active=False, updated_at=utc_now())
        )
        return require_plan(plan_id, session=s)


def set_provider_plan_id(plan_id: str, provider_plan_id: str, session=None) -> None:
    with use_session(session) as s:
        s.execute(
            update(subscription_plans)
            .where(subscription_plans.c.id == plan_id)
            .values(provider_plan_id=provider_plan_id, provider_plan_created_at=utc_now())
        )


def clear_provider_plan_id(plan_id: str, session=None) -> None:
    with use_session(session) as s:
        s.execute(
            update(subscription_plans)
            .where(subscription_plans.c.id == plan_id)
            .values(provider_plan_id=None, provider_plan_created_at=None)
        )
    logger.warning("[plans] cleared stale provider plan id", extra={"plan_id": plan_id})


def seed_default_plans(session=None) -> int:
    """
    Seed the default catalog (idempotent).

    Returns:
        Number of plans inserted
    """
    created = 0
    now: datetime = utc_now()
    with use_session(session) as s:
        for config in DEFAULT_PLANS:
            existing = s.execute(
                select(subscription_plans.c.id).where(subscription_plans.c.id == config["id"])
            ).first()
            if existing:
                continue
            s.execute(
                insert(subscription_plans).values(
                    id=config["id"],
                    name=config["name"],
                    display_name=config["display_name"],
                    tier=config["tier"],
                    type=config["type"],
                    billing_cycle="monthly",
                    price=config["price"],
                    price_yearly=config.get("price_yearly"),
                    duration_days=30,
                    duration_days_yearly=365,
                    storage_gb=config["storage_gb"],
                    features=PlanFeatures(**config.get("features", {})).model_dump(),
                    sort_order=config["sort_order"],
                    is_best_value=config.get("is_best_value", False),
                    is_active=True,
                    created_at=now,
                    updated_at=now,
                )
            )
            created += 1
    if created:
        logger.info(f"[plans] seeded {created} default plans")
    return created
