"""
Scheduled reconciliation sweeps.

Date-driven transitions the provider never tells us about:
1. active/past_due past expiry -> grace_period (or the scheduled change, if any)
2. grace_period past grace end -> expired (+ quota recheck via the job queue)
3. Reminders at REMINDER_DAYS before expiry, at most once per threshold

Each sweep is idempotent: a row is only touched while it still matches the
sweep's query, and every status write is compare-and-set. Each run writes a
job_runs row with its counts.
"""
import json
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import insert, select, update

from backend.core.config import settings
from backend.core.database import job_runs, use_session, user_subscriptions
from backend.core.logging import bind_request_id
from backend.core.metrics import cron_transitions_total, reminders_sent_total
from backend.features.jobs.queue import enqueue_job
from backend.features.subscriptions import lifecycle
from backend.models.common import normalize_now, utc_now
from backend.models.job import JobType
from backend.models.subscription import Subscription

logger = logging.getLogger("subengine.cron")

SWEEP_EXPIRED_ACTIVE = "cron.expired_active"
SWEEP_GRACE_ENDED = "cron.grace_ended"
SWEEP_REMINDERS = "cron.reminders"


def _record_run(job_name: str, started_at: datetime, status: str, stats: Dict[str, Any]) -> None:
    with use_session() as s:
        s.execute(
            insert(job_runs).values(
                job_name=job_name,
                started_at=started_at,
                finished_at=utc_now(),
                status=status,
                stats_json=json.dumps(stats, default=str),
            )
        )


def _run(job_name: str, body: Callable[[datetime], Dict[str, Any]], now: Optional[datetime]) -> Dict[str, Any]:
    now = normalize_now(now)
    started = utc_now()
    with bind_request_id(f"{job_name}-{uuid4().hex[:8]}"):
        try:
            stats = body(now)
        except Exception as exc:
            _record_run(job_name, started, "failed", {"error": f"{type(exc).__name__}: {exc}"})
            logger.error(f"[cron] {job_name} failed", exc_info=True)
            raise
        _record_run(job_name, started, "success", stats)
        logger.info(f"[cron] {job_name} done: {stats}")
    return stats


def _due(status_values, date_column, now: datetime) -> List[Subscription]:
    with use_session() as s:
        rows = s.execute(
            select(user_subscriptions)
            .where(user_subscriptions.c.status.in_(status_values))
            .where(date_column.isnot(None))
            .where(date_column < now)
            .order_by(date_column)
        ).fetchall()
    return [Subscription.from_row(r) for r in rows]


def _expired_active(now: datetime) -> Dict[str, Any]:
    stats = {"checked": 0, "grace_period": 0, "cancelled": 0, "downgrades_queued": 0, "skipped": 0}
    subs = _due((lifecycle.ACTIVE, lifecycle.PAST_DUE), user_subscriptions.c.expiry_date, now)
    for sub in subs:
        stats["checked"] += 1
        change = sub.scheduled_change
        if change and change.type == "downgrade":
            enqueue_job(
                JobType.PROCESS_SCHEDULED_DOWNGRADE.value,
                {"subscription_id": sub.id, "user_id": sub.user_id},
                now=now,
            )
            stats["downgrades_queued"] += 1
            continue
        if change and change.type == "cancellation":
            result = lifecycle.cancel(sub.id, immediate=True, reason="at_period_end", now=now, source="cron")
            key = "cancelled"
        else:
            result = lifecycle.move_to_grace_period(sub.id, now=now)
            key = "grace_period"
        if result.applied:
            stats[key] += 1
            cron_transitions_total.inc(labels={"sweep": key})
        else:
            stats["skipped"] += 1
    return stats


def _grace_ended(now: datetime) -> Dict[str, Any]:
    stats = {"checked": 0, "expired": 0, "skipped": 0}
    for sub in _due((lifecycle.GRACE_PERIOD,), user_subscriptions.c.grace_period_end_date, now):
        stats["checked"] += 1
        result = lifecycle.expire(sub.id, now=now)
        if result.applied:
            stats["expired"] += 1
            cron_transitions_total.inc(labels={"sweep": "expired"})
        else:
            stats["skipped"] += 1
    return stats


def reminder_key(days: int) -> str:
    return f"{days}d"


def days_until(expiry: datetime, now: datetime) -> int:
    return math.ceil((expiry - now).total_seconds() / 86400)


def due_reminders(sub: Subscription, now: datetime, thresholds: List[int]) -> List[int]:
    """Thresholds the subscription is inside of, smallest first."""
    if not sub.expiry_date or sub.expiry_date <= now:
        return []
    remaining = days_until(sub.expiry_date, now)
    return sorted(t for t in thresholds if remaining <= t)


def _reminders(now: datetime) -> Dict[str, Any]:
    """
    Only the nearest threshold is sent. Wider thresholds that were skipped
    (say the sweep was down for a few days) are marked too, so a reminder for
    7 days never arrives after the one for 3.
    """
    thresholds = settings.reminder_days()
    horizon = now + timedelta(days=max(thresholds))
    stats = {"checked": 0, "sent": 0, "skipped": 0}

    with use_session() as s:
        rows = s.execute(
            select(user_subscriptions)
            .where(user_subscriptions.c.status.in_((lifecycle.ACTIVE, lifecycle.PAST_DUE)))
            .where(user_subscriptions.c.expiry_date > now)
            .where(user_subscriptions.c.expiry_date <= horizon)
        ).fetchall()

    for row in rows:
        sub = Subscription.from_row(row)
        stats["checked"] += 1
        applicable = due_reminders(sub, now, thresholds)
        if not applicable:
            continue
        nearest = applicable[0]
        keys = [reminder_key(t) for t in applicable]
        if all(k in sub.reminders_sent for k in keys):
            continue

        marked = sorted(set(sub.reminders_sent) | set(keys))
        send = reminder_key(nearest) not in sub.reminders_sent
        with use_session() as s:
            # updated_at as read: a renewal in between resets the markers, so don't overwrite it
            result = s.execute(
                update(user_subscriptions)
                .where(user_subscriptions.c.id == sub.id)
                .where(user_subscriptions.c.status == sub.status)
                .where(user_subscriptions.c.updated_at == row.updated_at)
                .values(reminders_sent=marked, updated_at=now)
            )
            if result.rowcount != 1:
                stats["skipped"] += 1
                continue
            if send:
                enqueue_job(
                    JobType.SEND_NOTIFICATION.value,
                    {
                        "user_id": sub.user_id,
                        "type": "renewal_reminder" if sub.auto_renew else "expiry_reminder",
                        "data": {
                            "plan_name": sub.plan_display_name or sub.plan_name,
                            "subscription_id": sub.id,
                            "days": days_until(sub.expiry_date, now),
                            "expiry_date": sub.expiry_date.isoformat(),
                        },
                    },
                    now=now,
                    session=s,
                )
        if send:
            stats["sent"] += 1
            reminders_sent_total.inc(labels={"days": str(nearest)})
            logger.info(
                f"[cron] {reminder_key(nearest)} reminder queued",
                extra={"subscription_id": sub.id, "user_id": sub.user_id},
            )
    return stats


def sweep_expired_active(now: Optional[datetime] = None) -> Dict[str, Any]:
    return _run(SWEEP_EXPIRED_ACTIVE, _expired_active, now)


def sweep_grace_ended(now: Optional[datetime] = None) -> Dict[str, Any]:
    return _run(SWEEP_GRACE_ENDED, _grace_ended, now)


def send_expiry_reminders(now: Optional[datetime] = None) -> Dict[str, Any]:
    return _run(SWEEP_REMINDERS, _reminders, now)


SWEEPS: Dict[str, Callable[[Optional[datetime]], Dict[str, Any]]] = {
    "expired_active": sweep_expired_active,
    "grace_ended": sweep_grace_ended,
    "reminders": send_expiry_reminders,
}


def run_all_sweeps(now: Optional[datetime] = None) -> Dict[str, Any]:
    """Run every sweep in order. One failing sweep does not stop the others."""
    now = normalize_now(now)
    results: Dict[str, Any] = {}
    for name, sweep in SWEEPS.items():
        try:
            results[name] = sweep(now)
        except Exception as exc:
            # Already recorded in job_runs by _run
            results[name] = {"error": f"{type(exc).__name__}: {exc}"}
    return results


def list_job_runs(limit: int = 20, job_name: Optional[str] = None) -> List[Dict[str, Any]]:
    with use_session() as s:
        query = select(job_runs)
        if job_name:
            query = query.where(job_runs.c.job_name == job_name)
        rows = s.execute(query.order_by(job_runs.c.id.desc()).limit(limit)).fetchall()
    return [
        {
            "id": r.id,
            "job_name": r.job_name,
            "started_at": r.started_at.isoformat() if r.started_at else None,
            "finished_at": r.finished_at.isoformat() if r.finished_at else None,
            "status": r.status,
            "stats": json.loads(r.stats_json) if r.stats_json else None,
        }
        for r in rows
    ]
