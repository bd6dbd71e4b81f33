"""
backend/features/subscriptions/service.py

User-facing subscription operations.

Handles:
- Recurring subscription creation (provider plan/customer created lazily)
- Upgrade, two-phase: quote + one-off order, then confirmation applies it
- Downgrade scheduled at cycle end, with a storage impact preview
- Cancellation (now or at period end)
- "My subscription" summary

Status changes themselves live in lifecycle.py.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import insert, select, update

from backend.core.config import settings
from backend.core.database import subscription_payments, use_session
from backend.core.errors import NotFoundError, SignatureError, StaleProviderReferenceError, ValidationError
from backend.features.billing import service as billing_service
from backend.features.entitlements.service import resolve_entitlements
from backend.features.plans.service import require_plan
from backend.features.proration.service import quote_upgrade
from backend.features.storage.service import format_storage_size, get_storage_summary, get_used_bytes
from backend.features.subscriptions import lifecycle
from backend.models.common import normalize_now, utc_now
from backend.models.entitlement import GIB
from backend.models.plan import BILLING_CYCLES, Plan
from backend.models.subscription import Subscription

logger = logging.getLogger("subengine.subscriptions")


def _check_cycle(billing_cycle: str) -> None:
    if billing_cycle not in BILLING_CYCLES:
        raise ValidationError(f"Invalid billing cycle: {billing_cycle}")


def _purchasable(plan_id: str) -> Plan:
    plan = require_plan(plan_id)
    if not plan.is_active:
        raise ValidationError(f"Plan is not available: {plan_id}")
    return plan


def serialize_subscription(sub: Optional[Subscription]) -> Optional[Dict[str, Any]]:
    if sub is None:
        return None
    return sub.model_dump(mode="json", exclude={"plan_snapshot"})


def get_my_subscription(user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    current = lifecycle.get_current_subscription(user_id)
    entitlements = resolve_entitlements(user_id, now=now)
    return {
        "current": serialize_subscription(current),
        "entitlements": entitlements.model_dump(mode="json"),
        "verification_type": entitlements.verification_type,
        "storage": get_storage_summary(user_id, now=now),
        "subscriptions": [serialize_subscription(s) for s in lifecycle.list_user_subscriptions(user_id)],
    }


# ---------------------------------------------------------------------------
# Recurring purchase
# ---------------------------------------------------------------------------

def _provider_plan_id(plan: Plan, billing_cycle: str) -> str:
    # The catalog caches one provider plan per row, for the row's own cycle
    if billing_cycle == plan.billing_cycle:
        return billing_service.ensure_provider_plan(plan, billing_cycle)
    return billing_service.get_provider().create_plan(
        plan.display_name,
        plan.price_for(billing_cycle),
        billing_cycle,
        notes={"planId": plan.id, "planName": plan.name, "billingCycle": billing_cycle},
    )


def _create_mandate(
    user_id: str,
    plan: Plan,
    billing_cycle: str,
    notes: Dict[str, Any],
    start_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    try:
        customer_id = billing_service.ensure_provider_customer(user_id)
        provider_plan_id = _provider_plan_id(plan, billing_cycle)
        mandate = billing_service.get_provider().create_subscription(
            provider_plan_id, customer_id, billing_cycle, notes=notes, start_at=start_at
        )
    except StaleProviderReferenceError as exc:
        billing_service.clear_stale_reference(exc, user_id=user_id, plan_id=plan.id)
        logger.warning(
            f"[subscriptions] stale provider {exc.resource}, caller should retry",
            extra={"user_id": user_id, "error_code": exc.code},
        )
        return {"retry": True, "reason": f"stale_{exc.resource}"}

    logger.info("[subscriptions] mandate created", extra={"user_id": user_id, "status": mandate.status})
    return {
        "retry": False,
        "provider_subscription_id": mandate.id,
        "short_url": mandate.short_url,
        "status": mandate.status,
        "plan_id": plan.id,
        "billing_cycle": billing_cycle,
        "amount": plan.price_for(billing_cycle),
        "currency": settings.BILLING_CURRENCY,
        "key_id": settings.RAZORPAY_KEY_ID,
    }


def create_recurring_subscription(user_id: str, plan_id: str, billing_cycle: str = "monthly") -> Dict[str, Any]:
    """
    Start a recurring mandate. The local record is created when the provider
    reports the mandate as authenticated.

    A non-renewing record on the same plan (granted, or left by a downgrade)
    gets a renewal mandate that starts at its expiry and links to it.
    """
    _check_cycle(billing_cycle)
    plan = _purchasable(plan_id)
    notes: Dict[str, Any] = {
        "userId": user_id,
        "planId": plan.id,
        "planName": plan.name,
        "billingCycle": billing_cycle,
    }
    start_at = None

    if not plan.is_addon:
        current = lifecycle.get_current_subscription(user_id)
        if current is not None:
            renewable = (
                current.plan_id == plan.id
                and current.status == lifecycle.ACTIVE
                and not current.auto_renew
                and not current.provider_subscription_id
            )
            if not renewable:
                raise ValidationError(
                    "You already have an active subscription. Use upgrade or downgrade instead.",
                    details={"current_plan_id": current.plan_id, "status": current.status},
                )
            notes["localSubscriptionId"] = current.id
            start_at = current.expiry_date

    return _create_mandate(user_id, plan, billing_cycle, notes, start_at=start_at)


# ---------------------------------------------------------------------------
# Upgrade
# ---------------------------------------------------------------------------

def _upgrade_target(user_id: str, plan_id: str, billing_cycle: str):
    _check_cycle(billing_cycle)
    current = lifecycle.get_current_subscription(user_id)
    if current is None:
        raise ValidationError("No active subscription to upgrade")
    new_plan = _purchasable(plan_id)
    if new_plan.is_addon or new_plan.tier <= current.plan_tier:
        raise ValidationError("Upgrade target must be a higher-tier subscription plan")
    return current, new_plan


def preview_upgrade(user_id: str, plan_id: str, billing_cycle: str = "monthly", now: Optional[datetime] = None) -> Dict[str, Any]:
    current, new_plan = _upgrade_target(user_id, plan_id, billing_cycle)
    return quote_upgrade(current, new_plan, billing_cycle, now=now).to_dict()


def start_upgrade(user_id: str, plan_id: str, billing_cycle: str = "monthly", now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Phase one: price the upgrade and open a one-off order for the difference.

    When the credit covers the whole price there is nothing to charge and the
    upgrade is applied straight away.
    """
    now = normalize_now(now)
    current, new_plan = _upgrade_target(user_id, plan_id, billing_cycle)
    quote = quote_upgrade(current, new_plan, billing_cycle, now=now)

    if quote.amount_to_charge <= 0:
        result = lifecycle.apply_upgrade(
            user_id,
            new_plan,
            billing_cycle=billing_cycle,
            previous_subscription_id=current.id,
            credit=quote.credit,
            amount_paid=0,
            payment_id=f"credit_{uuid4().hex[:16]}",
            now=now,
        )
        _after_upgrade(result)
        return {"completed": True, "quote": quote.to_dict(), "subscription_id": result.new_subscription_id}

    order = billing_service.get_provider().create_order(
        quote.amount_to_charge,
        receipt=f"upg_{uuid4().hex[:12]}",
        notes={"userId": user_id, "planId": new_plan.id, "previousSubscriptionId": current.id},
    )
    with use_session() as s:
        s.execute(
            insert(subscription_payments).values(
                provider_order_id=order.id,
                user_id=user_id,
                plan_id=new_plan.id,
                billing_cycle=billing_cycle,
                purpose="upgrade",
                amount=quote.amount_to_charge,
                credit_applied=quote.credit,
                previous_subscription_id=current.id,
                status="CREATED",
                created_at=now,
                updated_at=now,
            )
        )
    logger.info("[subscriptions] upgrade order created", extra={"user_id": user_id, "subscription_id": current.id})
    return {
        "completed": False,
        "order_id": order.id,
        "amount": quote.amount_to_charge,
        "currency": order.currency,
        "key_id": settings.RAZORPAY_KEY_ID,
        "quote": quote.to_dict(),
    }


def _after_upgrade(result: lifecycle.TransitionResult) -> None:
    for subscription_id in result.superseded:
        old = lifecycle.get_subscription(subscription_id)
        if old:
            billing_service.stop_mandate(old.provider_subscription_id)


def confirm_upgrade_payment(
    user_id: str,
    order_id: str,
    payment_id: str,
    signature: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Phase two: verify the payment signature, then retire the old record and
    start the new one in a single transaction. Confirming twice is harmless.
    """
    now = normalize_now(now)
    with use_session() as s:
        row = s.execute(
            select(subscription_payments).where(subscription_payments.c.provider_order_id == order_id)
        ).first()
    if not row or row.user_id != user_id:
        raise NotFoundError(f"Order not found: {order_id}")
    if row.status == "SUCCESS":
        current = lifecycle.get_current_subscription(user_id)
        return {"already_confirmed": True, "subscription": serialize_subscription(current)}

    provider = billing_service.get_provider()
    if not provider.verify_payment_signature(order_id, payment_id, signature):
        with use_session() as s:
            s.execute(
                update(subscription_payments)
                .where(subscription_payments.c.provider_order_id == order_id)
                .where(subscription_payments.c.status == "CREATED")
                .values(status="FAILED", provider_payment_id=payment_id, updated_at=utc_now())
            )
        raise SignatureError("Payment signature verification failed")

    new_plan = require_plan(row.plan_id)
    with use_session() as s:
        claimed = s.execute(
            update(subscription_payments)
            .where(subscription_payments.c.provider_order_id == order_id)
            .where(subscription_payments.c.status.in_(("CREATED", "FAILED")))
            .values(status="SUCCESS", provider_payment_id=payment_id, updated_at=now)
        )
        if claimed.rowcount != 1:
            return {"already_confirmed": True, "subscription": None}
        result = lifecycle.apply_upgrade(
            user_id,
            new_plan,
            billing_cycle=row.billing_cycle,
            previous_subscription_id=row.previous_subscription_id,
            credit=row.credit_applied,
            amount_paid=row.amount,
            payment_id=payment_id,
            now=now,
            session=s,
        )

    _after_upgrade(result)
    new_sub = lifecycle.get_subscription(result.new_subscription_id) if result.new_subscription_id else None

    # The recurring mandate only starts once the one-off payment is in
    mandate = None
    if new_sub is not None:
        try:
            mandate = _create_mandate(
                user_id,
                new_plan,
                new_sub.billing_cycle,
                notes={"userId": user_id, "planId": new_plan.id, "localSubscriptionId": new_sub.id,
                       "billingCycle": new_sub.billing_cycle},
                start_at=new_sub.expiry_date,
            )
        except Exception as exc:
            # The upgrade itself is done; the user can set up renewal later
            logger.warning(f"[subscriptions] renewal mandate not created: {exc}", extra={"user_id": user_id})
    return {"already_confirmed": False, "subscription": serialize_subscription(new_sub), "mandate": mandate}


# ---------------------------------------------------------------------------
# Downgrade / cancel
# ---------------------------------------------------------------------------

def downgrade_storage_impact(user_id: str, current: Subscription, new_plan: Plan, now: Optional[datetime] = None) -> Dict[str, Any]:
    entitlements = resolve_entitlements(user_id, now=now)
    current_storage = int((current.plan_snapshot or {}).get("storage_gb") or 0)
    new_limit_gb = entitlements.storage_gb - current_storage + new_plan.storage_gb
    used = get_used_bytes(user_id)
    excess = max(0, used - int(new_limit_gb * GIB))
    result = {
        "current_limit_gb": entitlements.storage_gb,
        "new_limit_gb": new_limit_gb,
        "used": format_storage_size(used),
        "used_gb": round(used / GIB, 2),
        "will_exceed_limit": excess > 0,
        "excess_gb": round(excess / GIB, 2),
        "warning": None,
    }
    if excess:
        result["warning"] = (
            f"You are using {format_storage_size(used)}, which is more than the "
            f"{new_limit_gb:g} GB included with {new_plan.display_name}. "
            f"When the downgrade takes effect, your newest private content "
            f"({format_storage_size(excess)}) will be locked until you free up space or upgrade."
        )
    return result


def schedule_downgrade(user_id: str, plan_id: str, billing_cycle: Optional[str] = None,
                       now: Optional[datetime] = None) -> Dict[str, Any]:
    current = lifecycle.get_current_subscription(user_id)
    if current is None:
        raise ValidationError("No active subscription to downgrade")
    new_plan = _purchasable(plan_id)
    cycle = billing_cycle or current.billing_cycle
    _check_cycle(cycle)
    impact = downgrade_storage_impact(user_id, current, new_plan, now=now)

    result = lifecycle.schedule_downgrade(current.id, new_plan, billing_cycle=cycle, now=now)
    if not result.applied:
        raise ValidationError(f"Downgrade could not be scheduled ({result.reason})")
    billing_service.stop_mandate(current.provider_subscription_id, at_cycle_end=True)
    return {
        "subscription_id": current.id,
        "new_plan_id": new_plan.id,
        "effective_date": current.expiry_date.isoformat() if current.expiry_date else None,
        "storage_impact": impact,
    }


def cancel_my_subscription(user_id: str, immediate: bool = False, now: Optional[datetime] = None) -> Dict[str, Any]:
    current = lifecycle.get_current_subscription(user_id)
    if current is None:
        raise NotFoundError("No active subscription to cancel")
    billing_service.stop_mandate(current.provider_subscription_id, at_cycle_end=not immediate)
    result = lifecycle.cancel(current.id, immediate=immediate, reason="user_request" if immediate else None,
                              now=now, source="user")
    if not result.applied:
        raise ValidationError(f"Subscription could not be cancelled ({result.reason})")
    return {
        "subscription_id": current.id,
        "immediate": immediate,
        "effective_date": None if immediate else (current.expiry_date.isoformat() if current.expiry_date else None),
    }
