"""
Job handlers, keyed by job type.

Each handler receives the job payload and either returns or raises. Raising
hands the job back to the queue for retry. Handlers must tolerate running
more than once for the same payload.
"""

import logging
from typing import Any, Callable, Dict

from backend.core.database import use_session
from backend.core.errors import ValidationError
from backend.features.entitlements.service import refresh_entitlement_cache
from backend.features.jobs.queue import enqueue_job
from backend.features.notifications.service import send_notification
from backend.features.storage.service import plan_locking, recheck_and_lock, unlock_all
from backend.features.subscriptions import lifecycle
from backend.models.job import JobType

logger = logging.getLogger("subengine.jobs")


def _user_id(payload: Dict[str, Any]) -> str:
    user_id = payload.get("user_id")
    if not user_id:
        raise ValidationError("Job payload missing user_id")
    return user_id


def handle_refresh_entitlements(payload: Dict[str, Any]) -> None:
    refresh_entitlement_cache(_user_id(payload))


def handle_subscription_end(payload: Dict[str, Any]) -> None:
    """Refresh the cache against the reduced entitlements and queue a lock pass if over quota."""
    user_id = _user_id(payload)
    with use_session() as s:
        entitlements = refresh_entitlement_cache(user_id, session=s)
        lock_plan = plan_locking(user_id, entitlements.storage_gb, session=s)
        if lock_plan.to_lock:
            enqueue_job(
                JobType.LOCK_EXCESS_CONTENT.value,
                {"user_id": user_id, "reason": payload.get("reason") or "subscription_ended"},
                session=s,
            )
    logger.info(
        "[jobs] subscription end processed",
        extra={
            "user_id": user_id,
            "subscription_id": payload.get("subscription_id"),
            "status": "over_quota" if lock_plan.to_lock else "within_quota",
        },
    )


def handle_lock_excess_content(payload: Dict[str, Any]) -> None:
    user_id = _user_id(payload)
    with use_session() as s:
        result = recheck_and_lock(user_id, session=s)
        if result.locked_count:
            enqueue_job(
                JobType.SEND_NOTIFICATION.value,
                {
                    "user_id": user_id,
                    "type": "content_locked",
                    "data": {"count": result.locked_count, "reason": payload.get("reason")},
                },
                session=s,
            )


def handle_unlock_user_content(payload: Dict[str, Any]) -> None:
    """
    Unlock everything, then relock whatever still does not fit, in one
    transaction so readers never see the intermediate state.
    """
    user_id = _user_id(payload)
    with use_session() as s:
        unlocked = unlock_all(user_id, session=s)
        relocked = recheck_and_lock(user_id, session=s).locked_count
        refresh_entitlement_cache(user_id, session=s)
        net = unlocked - relocked
        if net > 0:
            enqueue_job(
                JobType.SEND_NOTIFICATION.value,
                {"user_id": user_id, "type": "content_unlocked", "data": {"count": net}},
                session=s,
            )


def handle_send_notification(payload: Dict[str, Any]) -> None:
    notification_type = payload.get("type")
    if not notification_type:
        raise ValidationError("Notification job missing type")
    send_notification(_user_id(payload), notification_type, payload.get("data") or {})


def handle_scheduled_downgrade(payload: Dict[str, Any]) -> None:
    subscription_id = payload.get("subscription_id")
    if not subscription_id:
        raise ValidationError("Downgrade job missing subscription_id")
    result = lifecycle.execute_scheduled_downgrade(subscription_id, source="job")
    if not result.applied and result.reason == "stale_status":
        # Someone else moved the record; let the retry look again
        raise RuntimeError(f"Subscription {subscription_id} changed during downgrade")


JOB_HANDLERS: Dict[str, Callable[[Dict[str, Any]], Any]] = {
    JobType.REFRESH_ENTITLEMENTS.value: handle_refresh_entitlements,
    JobType.PROCESS_SUBSCRIPTION_END.value: handle_subscription_end,
    JobType.LOCK_EXCESS_CONTENT.value: handle_lock_excess_content,
    JobType.UNLOCK_USER_CONTENT.value: handle_unlock_user_content,
    JobType.SEND_NOTIFICATION.value: handle_send_notification,
    JobType.PROCESS_SCHEDULED_DOWNGRADE.value: handle_scheduled_downgrade,
}
