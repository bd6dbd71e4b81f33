"""
backend/features/subscriptions/lifecycle.py

Subscription lifecycle state machine.

Every status change goes through one of the named transitions below, whether
the caller is the webhook dispatcher, the reconciliation sweep, the job
worker or an admin endpoint. Each transition owns its side effects: it
enqueues the follow-up jobs (entitlement refresh, lock/unlock, notification)
in the same transaction as the status write.

Status writes are compare-and-set: UPDATE ... WHERE id = :id AND status = :seen.
A write that loses a race changes nothing and comes back with
applied=False and reason="stale_status".

States:
    non-terminal: authenticated, active, past_due, grace_period
    terminal:     expired, cancelled, completed, upgraded, downgraded

Transitions that can shrink entitlements enqueue process_subscription_end
(recheck and lock); transitions that can grow them enqueue
unlock_user_content.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import insert, select, update

from backend.core.config import settings
from backend.core.database import subscription_transactions, use_session, user_subscriptions
from backend.core.errors import NotFoundError, ValidationError
from backend.core.metrics import subscription_transitions_total
from backend.features.jobs.queue import enqueue_job
from backend.features.plans.service import get_plan, require_plan
from backend.features.users.service import ensure_user
from backend.models.common import normalize_now
from backend.models.job import JobType
from backend.models.plan import PLAN_TYPE_STORAGE_ADDON, PLAN_TYPE_SUBSCRIPTION, Plan
from backend.models.subscription import (
    CURRENT_STATUSES,
    ScheduledChange,
    Subscription,
    SubscriptionStatus,
)

logger = logging.getLogger("subengine.lifecycle")

AUTHENTICATED = SubscriptionStatus.AUTHENTICATED.value
ACTIVE = SubscriptionStatus.ACTIVE.value
PAST_DUE = SubscriptionStatus.PAST_DUE.value
GRACE_PERIOD = SubscriptionStatus.GRACE_PERIOD.value
EXPIRED = SubscriptionStatus.EXPIRED.value
CANCELLED = SubscriptionStatus.CANCELLED.value
COMPLETED = SubscriptionStatus.COMPLETED.value
UPGRADED = SubscriptionStatus.UPGRADED.value
DOWNGRADED = SubscriptionStatus.DOWNGRADED.value

_ENDINGS = {EXPIRED, CANCELLED, COMPLETED, UPGRADED, DOWNGRADED}

# Self-loops are in-place updates (renewal, extension, scheduling a change)
ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    AUTHENTICATED: frozenset({ACTIVE} | _ENDINGS),
    ACTIVE: frozenset({ACTIVE, PAST_DUE, GRACE_PERIOD} | _ENDINGS),
    PAST_DUE: frozenset({ACTIVE, PAST_DUE, GRACE_PERIOD} | _ENDINGS),
    GRACE_PERIOD: frozenset({ACTIVE, GRACE_PERIOD} | _ENDINGS),
    EXPIRED: frozenset(),
    CANCELLED: frozenset(),
    COMPLETED: frozenset(),
    UPGRADED: frozenset(),
    DOWNGRADED: frozenset(),
}

OPEN_STATUSES = (AUTHENTICATED, ACTIVE, PAST_DUE, GRACE_PERIOD)


@dataclass(frozen=True)
class TransitionResult:
    applied: bool
    subscription_id: Optional[str]
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    reason: Optional[str] = None
    # Records replaced by this transition whose provider mandates should stop
    superseded: Tuple[str, ...] = ()
    new_subscription_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "applied": self.applied,
            "subscription_id": self.subscription_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "reason": self.reason,
            "superseded": list(self.superseded),
            "new_subscription_id": self.new_subscription_id,
        }


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def _grace_days() -> timedelta:
    return timedelta(days=settings.GRACE_PERIOD_DAYS)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def get_subscription(subscription_id: str, session=None) -> Optional[Subscription]:
    with use_session(session) as s:
        row = s.execute(select(user_subscriptions).where(user_subscriptions.c.id == subscription_id)).first()
        return Subscription.from_row(row) if row else None


def require_subscription(subscription_id: str, session=None) -> Subscription:
    sub = get_subscription(subscription_id, session=session)
    if not sub:
        raise NotFoundError(f"Subscription not found: {subscription_id}")
    return sub


def get_by_provider_id(provider_subscription_id: str, session=None) -> Optional[Subscription]:
    if not provider_subscription_id:
        return None
    with use_session(session) as s:
        row = s.execute(
            select(user_subscriptions).where(
                user_subscriptions.c.provider_subscription_id == provider_subscription_id
            )
        ).first()
        return Subscription.from_row(row) if row else None


def list_user_subscriptions(user_id: str, session=None) -> List[Subscription]:
    with use_session(session) as s:
        rows = s.execute(
            select(user_subscriptions)
            .where(user_subscriptions.c.user_id == user_id)
            .order_by(user_subscriptions.c.created_at.desc())
        ).fetchall()
        return [Subscription.from_row(r) for r in rows]


def get_current_subscription(user_id: str, session=None) -> Optional[Subscription]:
    """The user's subscription-type record in active/past_due/grace_period, highest tier first."""
    with use_session(session) as s:
        row = s.execute(
            select(user_subscriptions)
            .where(user_subscriptions.c.user_id == user_id)
            .where(user_subscriptions.c.plan_type == PLAN_TYPE_SUBSCRIPTION)
            .where(user_subscriptions.c.status.in_(CURRENT_STATUSES))
            .order_by(user_subscriptions.c.plan_tier.desc(), user_subscriptions.c.expiry_date.desc())
        ).first()
        return Subscription.from_row(row) if row else None


def _open_subscription_records(session, user_id: str, exclude_id: str) -> List[Subscription]:
    rows = session.execute(
        select(user_subscriptions)
        .where(user_subscriptions.c.user_id == user_id)
        .where(user_subscriptions.c.plan_type == PLAN_TYPE_SUBSCRIPTION)
        .where(user_subscriptions.c.status.in_(OPEN_STATUSES))
        .where(user_subscriptions.c.id != exclude_id)
    ).fetchall()
    return [Subscription.from_row(r) for r in rows]


def payment_already_applied(provider_payment_id: str, session=None) -> bool:
    with use_session(session) as s:
        return s.execute(
            select(subscription_transactions.c.id).where(
                subscription_transactions.c.provider_payment_id == provider_payment_id
            )
        ).first() is not None


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------

def _apply(
    session,
    sub: Subscription,
    to_status: str,
    *,
    now: datetime,
    source: str,
    values: Optional[Dict[str, Any]] = None,
) -> TransitionResult:
    if not can_transition(sub.status, to_status):
        logger.info(
            f"[lifecycle] rejected {sub.status} -> {to_status}",
            extra={"subscription_id": sub.id, "user_id": sub.user_id, "status": sub.status},
        )
        return TransitionResult(False, sub.id, sub.status, to_status, "invalid_transition")

    payload = dict(values or {})
    payload["status"] = to_status
    payload["updated_at"] = now
    if to_status != sub.status:
        payload["status_changed_at"] = now

    result = session.execute(
        update(user_subscriptions)
        .where(user_subscriptions.c.id == sub.id)
        .where(user_subscriptions.c.status == sub.status)
        .values(**payload)
    )
    if result.rowcount != 1:
        logger.warning(
            "[lifecycle] status changed concurrently, write skipped",
            extra={"subscription_id": sub.id, "user_id": sub.user_id, "status": sub.status},
        )
        return TransitionResult(False, sub.id, sub.status, to_status, "stale_status")

    subscription_transitions_total.inc(labels={"from_status": sub.status, "to_status": to_status, "source": source})
    logger.info(
        f"[lifecycle] {sub.status} -> {to_status} ({source})",
        extra={"subscription_id": sub.id, "user_id": sub.user_id, "status": to_status},
    )
    return TransitionResult(True, sub.id, sub.status, to_status)


def _notify(session, sub: Subscription, notification_type: str, **data) -> None:
    payload = {"plan_name": sub.plan_display_name or sub.plan_name, "subscription_id": sub.id}
    payload.update(data)
    enqueue_job(
        JobType.SEND_NOTIFICATION.value,
        {"user_id": sub.user_id, "type": notification_type, "data": payload},
        session=session,
    )


def _entitlements_grew(session, user_id: str) -> None:
    enqueue_job(JobType.REFRESH_ENTITLEMENTS.value, {"user_id": user_id}, session=session)
    enqueue_job(JobType.UNLOCK_USER_CONTENT.value, {"user_id": user_id}, session=session)


def _entitlements_shrank(session, user_id: str, subscription_id: str, reason: str) -> None:
    enqueue_job(
        JobType.PROCESS_SUBSCRIPTION_END.value,
        {"user_id": user_id, "subscription_id": subscription_id, "reason": reason},
        session=session,
    )


def create_subscription_record(
    session,
    *,
    user_id: str,
    plan: Plan,
    billing_cycle: str,
    status: str,
    now: datetime,
    duration_days: Optional[int] = None,
    price_paid: Optional[float] = None,
    auto_renew: bool = True,
    provider_subscription_id: Optional[str] = None,
    provider_customer_id: Optional[str] = None,
    previous_subscription_id: Optional[str] = None,
    upgrade_credit: Optional[float] = None,
    last_payment_id: Optional[str] = None,
    granted_by: Optional[str] = None,
    grant_note: Optional[str] = None,
) -> Subscription:
    """Insert a subscription with the plan terms frozen into it."""
    if billing_cycle not in ("monthly", "yearly"):
        raise ValidationError(f"Invalid billing cycle: {billing_cycle}")
    days = duration_days or plan.duration_for(billing_cycle)
    snapshot = plan.snapshot(billing_cycle)
    snapshot["duration_days"] = days
    expiry = now + timedelta(days=days)
    sub_id = f"sub_{uuid4().hex[:16]}"
    session.execute(
        insert(user_subscriptions).values(
            id=sub_id,
            user_id=user_id,
            plan_id=plan.id,
            plan_type=plan.type,
            plan_tier=plan.tier,
            plan_name=plan.name,
            plan_display_name=plan.display_name,
            plan_snapshot=snapshot,
            price_paid=plan.price_for(billing_cycle) if price_paid is None else price_paid,
            billing_cycle=billing_cycle,
            status=status,
            start_date=now,
            expiry_date=expiry,
            grace_period_end_date=expiry + _grace_days(),
            auto_renew=auto_renew,
            provider_subscription_id=provider_subscription_id,
            provider_customer_id=provider_customer_id,
            previous_subscription_id=previous_subscription_id,
            upgrade_credit=upgrade_credit,
            last_payment_id=last_payment_id,
            charge_count=1 if last_payment_id else 0,
            reminders_sent=[],
            granted_by=granted_by,
            grant_note=grant_note,
            status_changed_at=now,
            created_at=now,
            updated_at=now,
        )
    )
    subscription_transitions_total.inc(labels={"from_status": "none", "to_status": status, "source": "create"})
    logger.info(
        f"[lifecycle] created {status} subscription",
        extra={"subscription_id": sub_id, "user_id": user_id, "status": status},
    )
    return require_subscription(sub_id, session=session)


def _supersede_others(session, new_sub: Subscription, *, now: datetime, source: str) -> Tuple[Tuple[str, ...], bool]:
    """
    Retire every other open subscription-type record of the user.

    Returns (ids with provider mandates to stop, whether any retired record had a
    higher tier than the new one).
    """
    if new_sub.plan_type == PLAN_TYPE_STORAGE_ADDON:
        return (), False
    mandates: List[str] = []
    lost_tier = False
    for other in _open_subscription_records(session, new_sub.user_id, exclude_id=new_sub.id):
        to_status = UPGRADED if new_sub.plan_tier >= other.plan_tier else DOWNGRADED
        result = _apply(session, other, to_status, now=now, source=source, values={"auto_renew": False})
        if not result.applied:
            continue
        if to_status == DOWNGRADED:
            lost_tier = True
        if other.provider_subscription_id:
            mandates.append(other.id)
    return tuple(mandates), lost_tier


def _after_replacement(session, sub: Subscription, lost_tier: bool) -> None:
    if lost_tier:
        _entitlements_shrank(session, sub.user_id, sub.id, "replaced_by_lower_plan")
        enqueue_job(JobType.REFRESH_ENTITLEMENTS.value, {"user_id": sub.user_id}, session=session)
    else:
        _entitlements_grew(session, sub.user_id)


# ---------------------------------------------------------------------------
# Webhook-driven transitions
# ---------------------------------------------------------------------------

def create_authenticated(
    provider_subscription_id: str,
    notes: Dict[str, Any],
    *,
    provider_customer_id: Optional[str] = None,
    now: Optional[datetime] = None,
    session=None,
) -> TransitionResult:
    """
    Record a mandate the customer has authorised. Not yet counted as active.

    notes carry userId/planId/billingCycle, or localSubscriptionId when the
    mandate renews a record that already exists (post-upgrade or post-downgrade).
    """
    now = normalize_now(now)
    notes = notes or {}
    with use_session(session) as s:
        existing = get_by_provider_id(provider_subscription_id, session=s)
        if existing:
            return TransitionResult(False, existing.id, existing.status, existing.status, "duplicate")

        local_id = notes.get("localSubscriptionId")
        if local_id:
            sub = require_subscription(local_id, session=s)
            result = s.execute(
                update(user_subscriptions)
                .where(user_subscriptions.c.id == sub.id)
                .where(user_subscriptions.c.provider_subscription_id.is_(None))
                .values(
                    provider_subscription_id=provider_subscription_id,
                    provider_customer_id=provider_customer_id or sub.provider_customer_id,
                    auto_renew=True,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                return TransitionResult(False, sub.id, sub.status, sub.status, "already_linked")
            logger.info(
                "[lifecycle] mandate linked to existing subscription",
                extra={"subscription_id": sub.id, "user_id": sub.user_id},
            )
            return TransitionResult(True, sub.id, sub.status, sub.status, "linked")

        user_id = notes.get("userId")
        plan_id = notes.get("planId")
        if not user_id or not plan_id:
            raise ValidationError("Subscription notes must include userId and planId")
        plan = require_plan(plan_id, session=s)
        ensure_user(user_id, session=s)
        credit = notes.get("upgradeCredit")
        sub = create_subscription_record(
            s,
            user_id=user_id,
            plan=plan,
            billing_cycle=notes.get("billingCycle") or "monthly",
            status=AUTHENTICATED,
            now=now,
            provider_subscription_id=provider_subscription_id,
            provider_customer_id=provider_customer_id,
            previous_subscription_id=notes.get("previousSubscriptionId"),
            upgrade_credit=float(credit) if credit not in (None, "") else None,
        )
        return TransitionResult(True, sub.id, None, AUTHENTICATED)


def activate(
    subscription_id: str,
    *,
    now: Optional[datetime] = None,
    source: str = "webhook",
    session=None,
) -> TransitionResult:
    """authenticated -> active. Retires any other open subscription-type record."""
    now = normalize_now(now)
    with use_session(session) as s:
        sub = require_subscription(subscription_id, session=s)
        if sub.status == ACTIVE:
            return TransitionResult(False, sub.id, ACTIVE, ACTIVE, "already_active")
        expiry = now + timedelta(days=sub.cycle_days)
        result = _apply(
            s, sub, ACTIVE, now=now, source=source,
            values={
                "start_date": now,
                "expiry_date": expiry,
                "grace_period_end_date": expiry + _grace_days(),
                "reminders_sent": [],
            },
        )
        if not result.applied:
            return result
        mandates, lost_tier = _supersede_others(s, sub, now=now, source=source)
        _after_replacement(s, sub, lost_tier)
        _notify(s, sub, "subscription_activated")
    return TransitionResult(True, sub.id, result.from_status, ACTIVE, superseded=mandates)


def renew(
    subscription_id: str,
    *,
    payment_id: Optional[str],
    amount: float = 0,
    now: Optional[datetime] = None,
    source: str = "webhook",
    session=None,
) -> TransitionResult:
    """
    A cycle was charged: expiry = now + one cycle, grace end follows.

    Deduplicated by provider payment id. A concurrent duplicate that slips past
    the check trips the unique constraint and the whole transaction rolls back.
    """
    now = normalize_now(now)
    with use_session(session) as s:
        sub = require_subscription(subscription_id, session=s)
        if payment_id and payment_already_applied(payment_id, session=s):
            return TransitionResult(False, sub.id, sub.status, sub.status, "duplicate")
        if sub.status not in OPEN_STATUSES:
            return TransitionResult(False, sub.id, sub.status, ACTIVE, "invalid_transition")

        superseded: Tuple[str, ...] = ()
        if sub.status == AUTHENTICATED:
            activated = activate(sub.id, now=now, source=source, session=s)
            if not activated.applied:
                return activated
            superseded = activated.superseded
            sub = require_subscription(sub.id, session=s)

        prior = sub.status
        expiry = now + timedelta(days=sub.cycle_days)
        result = _apply(
            s, sub, ACTIVE, now=now, source=source,
            values={
                "expiry_date": expiry,
                "grace_period_end_date": expiry + _grace_days(),
                "last_payment_id": payment_id or sub.last_payment_id,
                "charge_count": sub.charge_count + 1,
                "reminders_sent": [],
            },
        )
        if not result.applied:
            return result

        if payment_id:
            s.execute(
                insert(subscription_transactions).values(
                    user_id=sub.user_id,
                    subscription_id=sub.id,
                    provider_subscription_id=sub.provider_subscription_id,
                    provider_payment_id=payment_id,
                    type="renewal",
                    amount=amount or 0,
                    status="success",
                    created_at=now,
                )
            )
        else:
            logger.warning("[lifecycle] charge without payment id, not deduplicated", extra={"subscription_id": sub.id})

        if prior in (PAST_DUE, GRACE_PERIOD):
            _entitlements_grew(s, sub.user_id)
        else:
            enqueue_job(JobType.REFRESH_ENTITLEMENTS.value, {"user_id": sub.user_id}, session=s)
        _notify(s, sub, "subscription_renewed", expiry_date=expiry.isoformat())
    return TransitionResult(True, sub.id, prior, ACTIVE, superseded=superseded)


def mark_past_due(
    subscription_id: str, *, now: Optional[datetime] = None, source: str = "webhook", session=None
) -> TransitionResult:
    """Charge pending. Entitlement unchanged; still inside the paid cycle."""
    now = normalize_now(now)
    with use_session(session) as s:
        sub = require_subscription(subscription_id, session=s)
        if sub.status == PAST_DUE:
            return TransitionResult(False, sub.id, PAST_DUE, PAST_DUE, "duplicate")
        result = _apply(s, sub, PAST_DUE, now=now, source=source)
        if result.applied:
            _notify(s, sub, "payment_pending")
    return result


def enter_grace_period(
    subscription_id: str, *, now: Optional[datetime] = None, source: str = "webhook", session=None
) -> TransitionResult:
    """Provider gave up retrying. Grace window starts now; entitlement still counted."""
    now = normalize_now(now)
    with use_session(session) as s:
        sub = require_subscription(subscription_id, session=s)
        if sub.status == GRACE_PERIOD:
            return TransitionResult(False, sub.id, GRACE_PERIOD, GRACE_PERIOD, "duplicate")
        result = _apply(
            s, sub, GRACE_PERIOD, now=now, source=source,
            values={"grace_period_end_date": now + _grace_days(), "auto_renew": False},
        )
        if result.applied:
            _notify(s, sub, "payment_failed", grace_days=settings.GRACE_PERIOD_DAYS)
    return result


def cancel(
    subscription_id: str,
    *,
    immediate: bool = True,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
    source: str = "webhook",
    session=None,
) -> TransitionResult:
    """
    immediate: status -> cancelled now, then recheck quota.
    otherwise: record a scheduled cancellation effective at expiry and stop
    auto-renewal; the sweep applies it once the cycle is over.
    """
    now = normalize_now(now)
    with use_session(session) as s:
        sub = require_subscription(subscription_id, session=s)
        if sub.status == CANCELLED:
            return TransitionResult(False, sub.id, CANCELLED, CANCELLED, "duplicate")

        if not immediate:
            change = ScheduledChange(type="cancellation", effective_date=sub.expiry_date, scheduled_at=now)
            return _apply(
                s, sub, sub.status, now=now, source=source,
                values={
                    "scheduled_change": change.to_json(),
                    "auto_renew": False,
                    "cancellation_type": "at_period_end",
                },
            )

        result = _apply(
            s, sub, CANCELLED, now=now, source=source,
            values={
                "auto_renew": False,
                "cancellation_type": reason or "immediate",
                "scheduled_change": None,
            },
        )
        if result.applied:
            _entitlements_shrank(s, sub.user_id, sub.id, "cancelled")
            _notify(s, sub, "subscription_cancelled")
    return result


def complete(
    subscription_id: str, *, now: Optional[datetime] = None, source: str = "webhook", session=None
) -> TransitionResult:
    """Fixed-term mandate ran out. Same end-of-subscription path as cancellation."""
    now = normalize_now(now)
    with use_session(session) as s:
        sub = require_subscription(subscription_id, session=s)
        if sub.status == COMPLETED:
            return TransitionResult(False, sub.id, COMPLETED, COMPLETED, "duplicate")
        result = _apply(s, sub, COMPLETED, now=now, source=source, values={"auto_renew": False})
        if result.applied:
            _entitlements_shrank(s, sub.user_id, sub.id, "completed")
    return result


# ---------------------------------------------------------------------------
# Date-driven transitions (reconciliation sweep)
# ---------------------------------------------------------------------------

def move_to_grace_period(
    subscription_id: str, *, now: Optional[datetime] = None, source: str = "cron", session=None
) -> TransitionResult:
    """Expiry passed without a renewal: grace runs from the old expiry."""
    now = normalize_now(now)
    with use_session(session) as s:
        sub = require_subscription(subscription_id, session=s)
        if sub.status == GRACE_PERIOD:
            return TransitionResult(False, sub.id, GRACE_PERIOD, GRACE_PERIOD, "duplicate")
        base = sub.expiry_date or now
        result = _apply(
            s, sub, GRACE_PERIOD, now=now, source=source,
            values={"grace_period_end_date": base + _grace_days()},
        )
        if result.applied:
            _notify(s, sub, "payment_failed", grace_days=settings.GRACE_PERIOD_DAYS)
    return result


def expire(
    subscription_id: str, *, now: Optional[datetime] = None, source: str = "cron", session=None
) -> TransitionResult:
    now = normalize_now(now)
    with use_session(session) as s:
        sub = require_subscription(subscription_id, session=s)
        if sub.status == EXPIRED:
            return TransitionResult(False, sub.id, EXPIRED, EXPIRED, "duplicate")
        result = _apply(s, sub, EXPIRED, now=now, source=source, values={"auto_renew": False})
        if result.applied:
            _entitlements_shrank(s, sub.user_id, sub.id, "expired")
            _notify(s, sub, "subscription_expired")
    return result


# ---------------------------------------------------------------------------
# Plan changes and admin transitions
# ---------------------------------------------------------------------------

def schedule_downgrade(
    subscription_id: str,
    new_plan: Plan,
    *,
    billing_cycle: Optional[str] = None,
    now: Optional[datetime] = None,
    source: str = "user",
    session=None,
) -> TransitionResult:
    """Record a downgrade effective at the current expiry. Nothing is charged or credited."""
    now = normalize_now(now)
    with use_session(session) as s:
        sub = require_subscription(subscription_id, session=s)
        if sub.status != ACTIVE:
            raise ValidationError(f"Only active subscriptions can be downgraded (status={sub.status})")
        if new_plan.is_addon or new_plan.tier >= sub.plan_tier:
            raise ValidationError("Downgrade target must be a lower-tier subscription plan")
        change = ScheduledChange(
            type="downgrade",
            new_plan_id=new_plan.id,
            new_plan_name=new_plan.display_name,
            billing_cycle=billing_cycle or sub.billing_cycle,
            effective_date=sub.expiry_date,
            scheduled_at=now,
        )
        return _apply(
            s, sub, ACTIVE, now=now, source=source,
            values={"scheduled_change": change.to_json(), "auto_renew": False},
        )


def execute_scheduled_downgrade(
    subscription_id: str, *, now: Optional[datetime] = None, source: str = "cron", session=None
) -> TransitionResult:
    """
    Apply a scheduled downgrade: the old record becomes downgraded and a
    lower-plan record starts for one cycle without auto-renewal. The
    end-of-subscription job then locks whatever no longer fits.
    """
    now = normalize_now(now)
    with use_session(session) as s:
        sub = require_subscription(subscription_id, session=s)
        change = sub.scheduled_change
        if sub.status == DOWNGRADED:
            return TransitionResult(False, sub.id, DOWNGRADED, DOWNGRADED, "duplicate")
        if not change or change.type != "downgrade":
            return TransitionResult(False, sub.id, sub.status, DOWNGRADED, "no_scheduled_change")
        new_plan = get_plan(change.new_plan_id, session=s)
        if new_plan is None:
            raise NotFoundError(f"Downgrade target plan not found: {change.new_plan_id}")

        result = _apply(s, sub, DOWNGRADED, now=now, source=source, values={"auto_renew": False})
        if not result.applied:
            return result
        new_sub = create_subscription_record(
            s,
            user_id=sub.user_id,
            plan=new_plan,
            billing_cycle=change.billing_cycle or sub.billing_cycle,
            status=ACTIVE,
            now=now,
            price_paid=0,
            auto_renew=False,
            provider_customer_id=sub.provider_customer_id,
            previous_subscription_id=sub.id,
        )
        mandates, _ = _supersede_others(s, new_sub, now=now, source=source)
        _entitlements_shrank(s, sub.user_id, new_sub.id, "downgrade")
        enqueue_job(JobType.REFRESH_ENTITLEMENTS.value, {"user_id": sub.user_id}, session=s)
        _notify(s, new_sub, "subscription_downgraded")
    return TransitionResult(
        True, sub.id, result.from_status, DOWNGRADED,
        superseded=mandates, new_subscription_id=new_sub.id,
    )


def apply_upgrade(
    user_id: str,
    new_plan: Plan,
    *,
    billing_cycle: str,
    previous_subscription_id: Optional[str],
    credit: float,
    amount_paid: float,
    payment_id: str,
    now: Optional[datetime] = None,
    source: str = "user",
    session=None,
) -> TransitionResult:
    """
    Second phase of an upgrade, once the one-off order is paid: the old record
    becomes upgraded and the new one starts active, in one transaction, so the
    user is never left without a plan in between.
    """
    now = normalize_now(now)
    with use_session(session) as s:
        if payment_already_applied(payment_id, session=s):
            return TransitionResult(False, previous_subscription_id, None, None, "duplicate")
        new_sub = create_subscription_record(
            s,
            user_id=user_id,
            plan=new_plan,
            billing_cycle=billing_cycle,
            status=ACTIVE,
            now=now,
            price_paid=new_plan.price_for(billing_cycle),
            auto_renew=False,
            previous_subscription_id=previous_subscription_id,
            upgrade_credit=credit,
            last_payment_id=payment_id,
        )
        s.execute(
            insert(subscription_transactions).values(
                user_id=user_id,
                subscription_id=new_sub.id,
                provider_payment_id=payment_id,
                type="upgrade_order",
                amount=amount_paid,
                status="success",
                created_at=now,
            )
        )
        mandates, lost_tier = _supersede_others(s, new_sub, now=now, source=source)
        _after_replacement(s, new_sub, lost_tier)
        _notify(s, new_sub, "subscription_activated")
    return TransitionResult(True, new_sub.id, None, ACTIVE, superseded=mandates, new_subscription_id=new_sub.id)


def grant(
    user_id: str,
    plan_id: str,
    *,
    billing_cycle: str = "monthly",
    duration_days: Optional[int] = None,
    granted_by: Optional[str] = None,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
    session=None,
) -> TransitionResult:
    """Admin grant: an active, non-renewing record that replaces any current plan."""
    if duration_days is not None and duration_days <= 0:
        raise ValidationError("duration_days must be positive")
    now = normalize_now(now)
    with use_session(session) as s:
        plan = require_plan(plan_id, session=s)
        ensure_user(user_id, session=s)
        new_sub = create_subscription_record(
            s,
            user_id=user_id,
            plan=plan,
            billing_cycle=billing_cycle,
            status=ACTIVE,
            now=now,
            duration_days=duration_days,
            price_paid=0,
            auto_renew=False,
            granted_by=granted_by,
            grant_note=note,
        )
        mandates, lost_tier = _supersede_others(s, new_sub, now=now, source="admin")
        _after_replacement(s, new_sub, lost_tier)
        _notify(s, new_sub, "subscription_granted", days=new_sub.cycle_days)
    return TransitionResult(True, new_sub.id, None, ACTIVE, superseded=mandates, new_subscription_id=new_sub.id)


def extend(
    subscription_id: str,
    days: int,
    *,
    now: Optional[datetime] = None,
    source: str = "admin",
    session=None,
) -> TransitionResult:
    """Push expiry out by ``days`` from max(expiry, now). The record becomes active."""
    if days <= 0:
        raise ValidationError("days must be positive")
    now = normalize_now(now)
    with use_session(session) as s:
        sub = require_subscription(subscription_id, session=s)
        if sub.status not in (ACTIVE, PAST_DUE, GRACE_PERIOD):
            raise ValidationError(f"Cannot extend a subscription in status {sub.status}")
        base = max(sub.expiry_date or now, now)
        new_expiry = base + timedelta(days=days)
        result = _apply(
            s, sub, ACTIVE, now=now, source=source,
            values={
                "expiry_date": new_expiry,
                "grace_period_end_date": new_expiry + _grace_days(),
                "reminders_sent": [],
            },
        )
        if result.applied:
            _entitlements_grew(s, sub.user_id)
            _notify(s, sub, "subscription_extended", days=days)
    return result
