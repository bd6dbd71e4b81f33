"""
backend/features/storage/service.py

Storage quota and content locking.

Usage is always summed live from content rows, never kept as a counter.
When usage exceeds the limit, the newest private uploads are locked first
(LIFO) until the locked bytes cover the excess. Lock and unlock are single
UPDATE statements inside one transaction, so a failure leaves nothing half
locked.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, select, update

from backend.core.database import content_items, use_session
from backend.core.errors import NotFoundError, QuotaExceededError, ValidationError
from backend.core.metrics import content_locked_total, content_unlocked_total
from backend.features.entitlements.service import resolve_entitlements
from backend.models.common import normalize_now
from backend.models.content import ContentItem
from backend.models.entitlement import GIB

logger = logging.getLogger("subengine.storage")

LOCK_REASON_STORAGE = "storage_limit_exceeded"

_SIZE_UNITS = ["B", "KB", "MB", "GB", "TB", "PB"]


def format_storage_size(num_bytes: Optional[int]) -> str:
    """Human readable size, e.g. 1610612736 -> "1.5 GB"."""
    if not num_bytes or num_bytes <= 0:
        return "0 B"
    value = float(num_bytes)
    unit = 0
    while value >= 1024 and unit < len(_SIZE_UNITS) - 1:
        value /= 1024
        unit += 1
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{text} {_SIZE_UNITS[unit]}"


def get_used_bytes(user_id: str, session=None) -> int:
    """Live sum over every private item the user owns, locked or not."""
    with use_session(session) as s:
        total = s.execute(
            select(func.coalesce(func.sum(content_items.c.file_size_bytes), 0)).where(
                content_items.c.owner_id == user_id,
                content_items.c.is_private.is_(True),
            )
        ).scalar_one()
    return int(total or 0)


@dataclass(frozen=True)
class QuotaCheck:
    allowed: bool
    current_bytes: int
    incoming_bytes: int
    limit_bytes: int
    remaining_bytes: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "current": self.current_bytes,
            "incoming": self.incoming_bytes,
            "limit": self.limit_bytes,
            "remaining": self.remaining_bytes,
            "current_formatted": format_storage_size(self.current_bytes),
            "limit_formatted": format_storage_size(self.limit_bytes),
            "remaining_formatted": format_storage_size(self.remaining_bytes),
        }


def check_quota(user_id: str, incoming_bytes: int = 0, now: Optional[datetime] = None, session=None) -> QuotaCheck:
    """Allowed iff used + incoming <= limit."""
    if incoming_bytes < 0:
        raise ValidationError("incoming_bytes must be non-negative")
    with use_session(session) as s:
        used = get_used_bytes(user_id, session=s)
        entitlements = resolve_entitlements(user_id, now=now, session=s)
    limit = entitlements.storage_limit_bytes
    return QuotaCheck(
        allowed=used + incoming_bytes <= limit,
        current_bytes=used,
        incoming_bytes=incoming_bytes,
        limit_bytes=limit,
        remaining_bytes=max(0, limit - used),
    )


def ensure_upload_allowed(user_id: str, incoming_bytes: int, session=None) -> QuotaCheck:
    """Raise QuotaExceededError with usage details when the upload does not fit."""
    result = check_quota(user_id, incoming_bytes, session=session)
    if not result.allowed:
        logger.info(
            "[storage] upload rejected, quota exceeded",
            extra={"user_id": user_id, "error_code": QuotaExceededError.code},
        )
        raise QuotaExceededError(
            f"Storage limit exceeded. You have {format_storage_size(result.remaining_bytes)} remaining.",
            details=result.to_dict(),
        )
    return result


def select_items_to_lock(items: Sequence[ContentItem], excess_bytes: int) -> List[ContentItem]:
    """
    Newest first, accumulate until the selected bytes cover the excess.

    Ties on created_at are broken by id so the selection is stable.
    """
    if excess_bytes <= 0:
        return []
    ordered = sorted(items, key=lambda item: (item.created_at, item.id), reverse=True)
    selected: List[ContentItem] = []
    covered = 0
    for item in ordered:
        if covered >= excess_bytes:
            break
        selected.append(item)
        covered += item.file_size_bytes
    return selected


@dataclass(frozen=True)
class LockPlan:
    user_id: str
    used_bytes: int
    limit_bytes: int
    excess_bytes: int
    selected: List[ContentItem] = field(default_factory=list)

    @property
    def to_lock(self) -> List[ContentItem]:
        return [item for item in self.selected if not item.is_locked]

    @property
    def selected_bytes(self) -> int:
        return sum(item.file_size_bytes for item in self.selected)


def _private_items(user_id: str, session) -> List[ContentItem]:
    rows = session.execute(
        select(content_items).where(
            content_items.c.owner_id == user_id,
            content_items.c.is_private.is_(True),
        )
    ).fetchall()
    return [ContentItem.from_row(r) for r in rows]


def plan_locking(user_id: str, new_limit_gb: float, session=None) -> LockPlan:
    """
    Work out which items must be locked to fit ``new_limit_gb``.

    The plan is computed over all private content, locked or not, so running
    it again after the lock has been applied selects the same items.
    """
    limit = int(new_limit_gb * GIB)
    with use_session(session) as s:
        used = get_used_bytes(user_id, session=s)
        if used <= limit:
            return LockPlan(user_id=user_id, used_bytes=used, limit_bytes=limit, excess_bytes=0)
        items = _private_items(user_id, s)
    excess = used - limit
    return LockPlan(
        user_id=user_id,
        used_bytes=used,
        limit_bytes=limit,
        excess_bytes=excess,
        selected=select_items_to_lock(items, excess),
    )


def apply_locking(
    user_id: str,
    item_ids: Sequence[str],
    reason: str = LOCK_REASON_STORAGE,
    now: Optional[datetime] = None,
    session=None,
) -> int:
    """Lock the given items in one statement. Already-locked items keep their lock time."""
    ids = list(item_ids)
    if not ids:
        return 0
    now = normalize_now(now)
    with use_session(session) as s:
        result = s.execute(
            update(content_items)
            .where(
                content_items.c.owner_id == user_id,
                content_items.c.id.in_(ids),
                content_items.c.is_locked.is_(False),
            )
            .values(is_locked=True, locked_at=now, lock_reason=reason)
        )
        count = result.rowcount or 0
    if count:
        content_locked_total.inc(labels={"reason": reason}, amount=count)
        logger.info(f"[storage] locked {count} items", extra={"user_id": user_id})
    return count


def unlock_all(user_id: str, session=None) -> int:
    """Clear the lock on every locked item the user owns. Returns the count."""
    with use_session(session) as s:
        result = s.execute(
            update(content_items)
            .where(
                content_items.c.owner_id == user_id,
                content_items.c.is_locked.is_(True),
            )
            .values(is_locked=False, locked_at=None, lock_reason=None)
        )
        count = result.rowcount or 0
    if count:
        content_unlocked_total.inc(amount=count)
        logger.info(f"[storage] unlocked {count} items", extra={"user_id": user_id})
    return count


@dataclass(frozen=True)
class LockResult:
    user_id: str
    limit_gb: float
    used_bytes: int
    excess_bytes: int
    locked_count: int
    locked_bytes: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "limit_gb": self.limit_gb,
            "used": format_storage_size(self.used_bytes),
            "excess": format_storage_size(self.excess_bytes),
            "locked_count": self.locked_count,
            "locked_bytes": self.locked_bytes,
        }


def recheck_and_lock(
    user_id: str,
    reason: str = LOCK_REASON_STORAGE,
    now: Optional[datetime] = None,
    session=None,
) -> LockResult:
    """Resolve the current limit and lock whatever no longer fits."""
    with use_session(session) as s:
        entitlements = resolve_entitlements(user_id, now=now, session=s)
        lock_plan = plan_locking(user_id, entitlements.storage_gb, session=s)
        to_lock = lock_plan.to_lock
        locked = apply_locking(user_id, [item.id for item in to_lock], reason=reason, now=now, session=s)
    return LockResult(
        user_id=user_id,
        limit_gb=entitlements.storage_gb,
        used_bytes=lock_plan.used_bytes,
        excess_bytes=lock_plan.excess_bytes,
        locked_count=locked,
        locked_bytes=sum(item.file_size_bytes for item in to_lock) if locked else 0,
    )


def get_locked_content(user_id: str, session=None) -> Dict[str, Any]:
    with use_session(session) as s:
        rows = s.execute(
            select(content_items)
            .where(content_items.c.owner_id == user_id, content_items.c.is_locked.is_(True))
            .order_by(content_items.c.created_at.desc())
        ).fetchall()
    items = [ContentItem.from_row(r) for r in rows]
    total = sum(item.file_size_bytes for item in items)
    return {
        "items": [item.model_dump(mode="json") for item in items],
        "count": len(items),
        "total_bytes": total,
        "total_formatted": format_storage_size(total),
    }


def check_content_locked(content_id: str, viewer_id: Optional[str] = None, session=None) -> Dict[str, Any]:
    with use_session(session) as s:
        row = s.execute(select(content_items).where(content_items.c.id == content_id)).first()
    if not row:
        raise NotFoundError(f"Content not found: {content_id}")
    item = ContentItem.from_row(row)
    if not item.is_locked:
        return {"locked": False}
    if viewer_id and viewer_id == item.owner_id:
        message = "This content is locked because your storage exceeds your plan limit. Upgrade to unlock it."
    else:
        message = "This content is currently unavailable."
    return {
        "locked": True,
        "reason": item.lock_reason,
        "locked_at": item.locked_at.isoformat() if item.locked_at else None,
        "message": message,
    }


def get_storage_summary(user_id: str, now: Optional[datetime] = None, session=None) -> Dict[str, Any]:
    with use_session(session) as s:
        used = get_used_bytes(user_id, session=s)
        entitlements = resolve_entitlements(user_id, now=now, session=s)
        locked = s.execute(
            select(func.count()).select_from(content_items).where(
                content_items.c.owner_id == user_id,
                content_items.c.is_locked.is_(True),
            )
        ).scalar_one()
    limit = entitlements.storage_limit_bytes
    return {
        "used": used,
        "limit": limit,
        "remaining": max(0, limit - used),
        "used_formatted": format_storage_size(used),
        "limit_formatted": format_storage_size(limit),
        "remaining_formatted": format_storage_size(max(0, limit - used)),
        "percent_used": round(used / limit * 100, 2) if limit else 0,
        "storage_gb": entitlements.storage_gb,
        "locked_items": locked,
    }
