"""
User notifications.

An inbox row is always written. When NOTIFY_PUSH_URL is configured the
message is also relayed over HTTP; relay failures are logged and never
raised, so a dead push service cannot fail a job or a transition.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy import insert, select, update

from backend.core.config import settings
from backend.core.database import notifications, use_session
from backend.models.common import utc_now

logger = logging.getLogger("subengine.notifications")

PUSH_TIMEOUT_SECONDS = 5.0

TEMPLATES: Dict[str, Dict[str, str]] = {
    "subscription_activated": {
        "title": "Subscription Activated",
        "body": "Your {plan_name} subscription is now active.",
    },
    "subscription_renewed": {
        "title": "Subscription Renewed",
        "body": "Your {plan_name} subscription has been renewed.",
    },
    "payment_pending": {
        "title": "Payment Pending",
        "body": "We could not collect your {plan_name} payment yet. We'll retry automatically.",
    },
    "payment_failed": {
        "title": "Payment Failed",
        "body": "Your {plan_name} payment failed. Update your payment method within {grace_days} days to keep your benefits.",
    },
    "subscription_cancelled": {
        "title": "Subscription Cancelled",
        "body": "Your {plan_name} subscription has been cancelled.",
    },
    "subscription_expired": {
        "title": "Subscription Expired",
        "body": "Your {plan_name} subscription has expired.",
    },
    "subscription_downgraded": {
        "title": "Plan Changed",
        "body": "Your plan has changed to {plan_name}.",
    },
    "subscription_granted": {
        "title": "Subscription Granted",
        "body": "You've been given {plan_name} for {days} days.",
    },
    "subscription_extended": {
        "title": "Subscription Extended",
        "body": "Your {plan_name} subscription was extended by {days} days.",
    },
    "expiry_reminder": {
        "title": "Subscription Expiring Soon",
        "body": "Your {plan_name} subscription ends in {days} day(s).",
    },
    "renewal_reminder": {
        "title": "Upcoming Renewal",
        "body": "Your {plan_name} subscription renews in {days} day(s).",
    },
    "content_locked": {
        "title": "Content Locked",
        "body": "{count} item(s) were locked because your storage exceeds your plan limit. Upgrade to unlock them.",
    },
    "content_unlocked": {
        "title": "Content Unlocked",
        "body": "{count} item(s) are available again.",
    },
}


class _Defaults(dict):
    def __missing__(self, key):
        return ""


def render(notification_type: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
    template = TEMPLATES.get(notification_type)
    values = _Defaults(data or {})
    if template is None:
        return {"title": values.get("title") or "Notification", "body": values.get("body") or ""}
    return {
        "title": template["title"].format_map(values),
        "body": template["body"].format_map(values),
    }


def _push(user_id: str, notification_type: str, message: Dict[str, str], data: Dict[str, Any]) -> bool:
    if not settings.NOTIFY_PUSH_URL:
        return False
    try:
        response = httpx.post(
            settings.NOTIFY_PUSH_URL,
            json={"user_id": user_id, "type": notification_type, **message, "data": data},
            timeout=PUSH_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        return True
    except httpx.HTTPError as exc:
        logger.warning(
            f"[notifications] push relay failed: {exc}",
            extra={"user_id": user_id, "event_type": notification_type},
        )
        return False


def send_notification(
    user_id: str,
    notification_type: str,
    data: Optional[Dict[str, Any]] = None,
    session=None,
) -> int:
    """Write the inbox row and attempt the push relay. Returns the inbox row id."""
    data = data or {}
    message = render(notification_type, data)
    with use_session(session) as s:
        result = s.execute(
            insert(notifications).values(
                user_id=user_id,
                type=notification_type,
                title=message["title"],
                body=message["body"],
                data=data,
                is_read=False,
                created_at=utc_now(),
            )
        )
        notification_id = result.inserted_primary_key[0]
    _push(user_id, notification_type, message, data)
    logger.info(
        f"[notifications] {notification_type}",
        extra={"user_id": user_id, "event_type": notification_type},
    )
    return notification_id


def list_notifications(user_id: str, unread_only: bool = False, limit: int = 50) -> List[Dict[str, Any]]:
    with use_session() as s:
        query = select(notifications).where(notifications.c.user_id == user_id)
        if unread_only:
            query = query.where(notifications.c.is_read.is_(False))
        rows = s.execute(query.order_by(notifications.c.id.desc()).limit(limit)).fetchall()
    return [
        {
            "id": r.id,
            "type": r.type,
            "title": r.title,
            "body": r.body,
            "data": r.data,
            "is_read": r.is_read,
            "created_at": r.created_at.isoformat() if r.created_at else None,
        }
        for r in rows
    ]


def mark_read(user_id: str, notification_id: int) -> bool:
    with use_session() as s:
        result = s.execute(
            update(notifications)
            .where(notifications.c.id == notification_id, notifications.c.user_id == user_id)
            .values(is_read=True)
        )
    return result.rowcount == 1
