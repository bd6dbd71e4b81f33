"""
Subscription API routes.

- GET  /api/subscriptions/plans: Public plan catalog
- GET  /api/subscriptions/me: Current subscription, entitlements, storage
- POST /api/subscriptions/create: Start a recurring mandate
- GET  /api/subscriptions/proration-preview: Price an upgrade
- POST /api/subscriptions/upgrade: Open the one-off upgrade order
- POST /api/subscriptions/upgrade/confirm: Confirm the paid order
- GET  /api/subscriptions/downgrade-impact: Storage effect of a downgrade
- POST /api/subscriptions/downgrade: Schedule a downgrade at cycle end
- POST /api/subscriptions/cancel: Cancel now or at period end
- GET  /api/subscriptions/notifications: Inbox
"""
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from backend.core.auth import get_current_user_id
from backend.core.errors import NotFoundError, ValidationError
from backend.features.notifications.service import list_notifications, mark_read
from backend.features.plans.service import get_grouped_plans, require_plan
from backend.features.subscriptions import lifecycle
from backend.features.subscriptions import service as subscription_service

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])

BillingCycle = Literal["monthly", "yearly"]


class CreateSubscriptionRequest(BaseModel):
    plan_id: str
    billing_cycle: BillingCycle = "monthly"


class UpgradeRequest(BaseModel):
    plan_id: str
    billing_cycle: BillingCycle = "monthly"


class ConfirmUpgradeRequest(BaseModel):
    order_id: str
    payment_id: str
    signature: str


class DowngradeRequest(BaseModel):
    plan_id: str
    billing_cycle: Optional[BillingCycle] = None


class CancelRequest(BaseModel):
    immediate: bool = False


@router.get("/plans")
def get_plans():
    return get_grouped_plans()


@router.get("/me")
def get_my_subscription(user_id: str = Depends(get_current_user_id)):
    return subscription_service.get_my_subscription(user_id)


@router.post("/create")
def create_subscription(body: CreateSubscriptionRequest, user_id: str = Depends(get_current_user_id)):
    """
    Returns the checkout short URL, or {"retry": true} when a cached provider
    id had gone stale and was cleared. The client simply calls again.
    """
    return subscription_service.create_recurring_subscription(user_id, body.plan_id, body.billing_cycle)


@router.get("/proration-preview")
def proration_preview(
    plan_id: str = Query(...),
    billing_cycle: BillingCycle = Query("monthly"),
    user_id: str = Depends(get_current_user_id),
):
    return subscription_service.preview_upgrade(user_id, plan_id, billing_cycle)


@router.post("/upgrade")
def start_upgrade(body: UpgradeRequest, user_id: str = Depends(get_current_user_id)):
    return subscription_service.start_upgrade(user_id, body.plan_id, body.billing_cycle)


@router.post("/upgrade/confirm")
def confirm_upgrade(body: ConfirmUpgradeRequest, user_id: str = Depends(get_current_user_id)):
    return subscription_service.confirm_upgrade_payment(user_id, body.order_id, body.payment_id, body.signature)


@router.get("/downgrade-impact")
def downgrade_impact(plan_id: str = Query(...), user_id: str = Depends(get_current_user_id)):
    current = lifecycle.get_current_subscription(user_id)
    if current is None:
        raise ValidationError("No active subscription to downgrade")
    return subscription_service.downgrade_storage_impact(user_id, current, require_plan(plan_id))


@router.post("/downgrade")
def schedule_downgrade(body: DowngradeRequest, user_id: str = Depends(get_current_user_id)):
    return subscription_service.schedule_downgrade(user_id, body.plan_id, body.billing_cycle)


@router.post("/cancel")
def cancel_subscription(body: CancelRequest, user_id: str = Depends(get_current_user_id)):
    return subscription_service.cancel_my_subscription(user_id, immediate=body.immediate)


@router.get("/notifications")
def get_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
):
    return {"notifications": list_notifications(user_id, unread_only=unread_only, limit=limit)}


@router.post("/notifications/{notification_id}/read")
def read_notification(notification_id: int, user_id: str = Depends(get_current_user_id)):
    if not mark_read(user_id, notification_id):
        raise NotFoundError(f"Notification not found: {notification_id}")
    return {"ok": True}
