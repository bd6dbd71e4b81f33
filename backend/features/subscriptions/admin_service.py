"""
Admin subscription operations.

Handles:
- Grant / extend / cancel on behalf of a user
- Subscriber listing and aggregate stats
- Audit logging (every mutating admin action writes one admin_audit row)
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, insert, select

from backend.core.database import admin_audit, subscription_transactions, use_session, user_subscriptions
from backend.core.errors import AdminAuditWriteError, ValidationError
from backend.features.billing import service as billing_service
from backend.features.subscriptions import lifecycle
from backend.features.subscriptions.service import serialize_subscription
from backend.models.common import utc_now
from backend.models.plan import PLAN_TYPE_SUBSCRIPTION
from backend.models.subscription import Subscription

logger = logging.getLogger("subengine.admin")


def record_admin_audit(
    actor: str,
    action: str,
    target_user_id: Optional[str] = None,
    target_resource: Optional[str] = None,
    payload: Optional[dict] = None,
    session=None,
) -> None:
    """
    Record an admin action in the audit log.

    Args:
        actor: Admin identity (e.g. "admin:<hash>" or "system_job")
        action: Action name (e.g. "grant_subscription")
        target_user_id: User affected by action (optional)
        target_resource: Subscription or plan id affected (optional)
        payload: Additional context as dict (JSON-serialized)
    """
    try:
        with use_session(session) as s:
            s.execute(
                insert(admin_audit).values(
                    actor=actor,
                    action=action,
                    target_user_id=target_user_id,
                    target_resource=target_resource,
                    payload_json=json.dumps(payload, default=str) if payload else None,
                    created_at=utc_now(),
                )
            )
    except Exception as exc:
        logger.error(f"[admin] audit write failed for {action}", exc_info=True)
        raise AdminAuditWriteError(f"Failed to record admin action: {action}") from exc


def list_admin_audit(limit: int = 50, action: Optional[str] = None) -> List[Dict[str, Any]]:
    with use_session() as s:
        query = select(admin_audit)
        if action:
            query = query.where(admin_audit.c.action == action)
        rows = s.execute(query.order_by(admin_audit.c.id.desc()).limit(min(limit, 500))).fetchall()
    return [
        {
            "id": r.id,
            "actor": r.actor,
            "action": r.action,
            "target_user_id": r.target_user_id,
            "target_resource": r.target_resource,
            "payload": json.loads(r.payload_json) if r.payload_json else None,
            "created_at": r.created_at.isoformat() if r.created_at else None,
        }
        for r in rows
    ]


def _require_applied(result: lifecycle.TransitionResult, action: str) -> None:
    if not result.applied:
        raise ValidationError(
            f"{action} not applied ({result.reason})",
            details={"subscription_id": result.subscription_id, "reason": result.reason},
        )


def _stop_superseded(result: lifecycle.TransitionResult) -> None:
    for subscription_id in result.superseded:
        old = lifecycle.get_subscription(subscription_id)
        if old:
            billing_service.stop_mandate(old.provider_subscription_id)


def grant_subscription(
    actor: str,
    user_id: str,
    plan_id: str,
    billing_cycle: str = "monthly",
    duration_days: Optional[int] = None,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    with use_session() as s:
        result = lifecycle.grant(
            user_id,
            plan_id,
            billing_cycle=billing_cycle,
            duration_days=duration_days,
            granted_by=actor,
            note=note,
            now=now,
            session=s,
        )
        record_admin_audit(
            actor,
            "grant_subscription",
            target_user_id=user_id,
            target_resource=result.new_subscription_id,
            payload={"plan_id": plan_id, "billing_cycle": billing_cycle, "duration_days": duration_days, "note": note},
            session=s,
        )
    _stop_superseded(result)
    return result.to_dict()


def extend_subscription(actor: str, subscription_id: str, days: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    with use_session() as s:
        sub = lifecycle.require_subscription(subscription_id, session=s)
        result = lifecycle.extend(subscription_id, days, now=now, session=s)
        _require_applied(result, "Extension")
        record_admin_audit(
            actor, "extend_subscription", target_user_id=sub.user_id,
            target_resource=subscription_id, payload={"days": days}, session=s,
        )
    return result.to_dict()


def cancel_subscription(
    actor: str,
    subscription_id: str,
    immediate: bool = True,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    with use_session() as s:
        sub = lifecycle.require_subscription(subscription_id, session=s)
        result = lifecycle.cancel(
            subscription_id, immediate=immediate, reason=reason or "admin",
            now=now, source="admin", session=s,
        )
        _require_applied(result, "Cancellation")
        record_admin_audit(
            actor, "cancel_subscription", target_user_id=sub.user_id,
            target_resource=subscription_id, payload={"immediate": immediate, "reason": reason}, session=s,
        )
    billing_service.stop_mandate(sub.provider_subscription_id, at_cycle_end=not immediate)
    return result.to_dict()


def list_subscribers(
    plan_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    with use_session() as s:
        query = select(user_subscriptions)
        if plan_id:
            query = query.where(user_subscriptions.c.plan_id == plan_id)
        if status:
            query = query.where(user_subscriptions.c.status == status)
        rows = s.execute(
            query.order_by(user_subscriptions.c.created_at.desc(), user_subscriptions.c.id)
            .limit(min(limit, 500))
            .offset(offset)
        ).fetchall()
    return [serialize_subscription(Subscription.from_row(r)) for r in rows]


def get_subscription_stats() -> Dict[str, Any]:
    with use_session() as s:
        by_status = dict(
            s.execute(
                select(user_subscriptions.c.status, func.count())
                .group_by(user_subscriptions.c.status)
            ).fetchall()
        )
        by_plan = s.execute(
            select(user_subscriptions.c.plan_id, user_subscriptions.c.plan_tier, func.count())
            .where(user_subscriptions.c.plan_type == PLAN_TYPE_SUBSCRIPTION)
            .where(user_subscriptions.c.status.in_((lifecycle.ACTIVE, lifecycle.GRACE_PERIOD, lifecycle.PAST_DUE)))
            .group_by(user_subscriptions.c.plan_id, user_subscriptions.c.plan_tier)
        ).fetchall()
        revenue = s.execute(
            select(func.coalesce(func.sum(subscription_transactions.c.amount), 0))
            .where(subscription_transactions.c.status == "success")
        ).scalar()

    return {
        "active": by_status.get(lifecycle.ACTIVE, 0),
        "past_due": by_status.get(lifecycle.PAST_DUE, 0),
        "grace_period": by_status.get(lifecycle.GRACE_PERIOD, 0),
        "by_status": by_status,
        "by_plan": [
            {"plan_id": plan_id, "tier": tier, "subscribers": count}
            for plan_id, tier, count in sorted(by_plan, key=lambda r: (r[1], r[0]))
        ],
        "total_revenue": float(revenue or 0),
    }
