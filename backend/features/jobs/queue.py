"""
Durable background job queue.

At-least-once execution of side effects (entitlement refresh, locking,
unlocking, notifications). Jobs are claimed with a lease: a conditional
update from pending to processing that records the worker id and a lease
expiry in one write, so several workers can poll the same table. A worker
that dies mid-job leaves an expired lease, which the next poll reclaims.

Errors increment attempts and requeue the job as pending until
JOB_MAX_ATTEMPTS, after which it is parked as failed (dead-lettered).
"""
from __future__ import annotations

import logging
import socket
import threading
import os
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import func, insert, select, update

from backend.core.config import settings
from backend.core.database import background_jobs, use_session
from backend.core.errors import NotFoundError, ValidationError
from backend.core.logging import bind_request_id
from backend.core.metrics import jobs_pending, jobs_processed_total
from backend.models.common import normalize_now
from backend.models.job import BackgroundJob, JobStatus, JobType

logger = logging.getLogger("subengine.jobs")

JOB_TYPES = {t.value for t in JobType}

# Guards overlapping polls inside one process; leases cover multiple processes
_poll_lock = threading.Lock()


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:6]}"


def enqueue_job(job_type: str, payload: Dict[str, Any], *, now: Optional[datetime] = None, session=None) -> int:
    """Insert a pending job. Joins the caller's transaction when ``session`` is given."""
    if job_type not in JOB_TYPES:
        raise ValidationError(f"Unknown job type: {job_type}")
    ts = normalize_now(now)
    with use_session(session) as s:
        result = s.execute(
            insert(background_jobs).values(
                job_type=job_type,
                payload=payload,
                status=JobStatus.PENDING.value,
                attempts=0,
                created_at=ts,
                updated_at=ts,
            )
        )
        job_id = result.inserted_primary_key[0]
    logger.debug(f"[jobs] enqueued {job_type}", extra={"job_id": job_id, "job_type": job_type})
    return job_id


def get_job(job_id: int, session=None) -> Optional[BackgroundJob]:
    with use_session(session) as s:
        row = s.execute(select(background_jobs).where(background_jobs.c.id == job_id)).first()
        return BackgroundJob.from_row(row) if row else None


def list_jobs(status: Optional[str] = None, job_type: Optional[str] = None, limit: int = 50) -> List[BackgroundJob]:
    with use_session() as s:
        query = select(background_jobs)
        if status:
            query = query.where(background_jobs.c.status == status)
        if job_type:
            query = query.where(background_jobs.c.job_type == job_type)
        rows = s.execute(query.order_by(background_jobs.c.id.desc()).limit(limit)).fetchall()
        return [BackgroundJob.from_row(r) for r in rows]


def count_by_status() -> Dict[str, int]:
    with use_session() as s:
        rows = s.execute(
            select(background_jobs.c.status, func.count()).group_by(background_jobs.c.status)
        ).fetchall()
    return {status: count for status, count in rows}


def reclaim_expired_leases(now: Optional[datetime] = None, max_attempts: Optional[int] = None) -> int:
    """
    Return jobs whose lease ran out to pending (or failed once out of attempts).

    The abandoned run counts as an attempt.
    """
    ts = normalize_now(now)
    ceiling = max_attempts or settings.JOB_MAX_ATTEMPTS
    reclaimed = 0
    with use_session() as s:
        rows = s.execute(
            select(background_jobs.c.id, background_jobs.c.attempts, background_jobs.c.lease_owner)
            .where(background_jobs.c.status == JobStatus.PROCESSING.value)
            .where(background_jobs.c.lease_expires_at < ts)
        ).fetchall()
        for r in rows:
            attempts = int(r.attempts or 0) + 1
            exhausted = attempts >= ceiling
            values = {
                "status": JobStatus.FAILED.value if exhausted else JobStatus.PENDING.value,
                "attempts": attempts,
                "last_error": f"lease expired (owner={r.lease_owner})",
                "lease_owner": None,
                "lease_expires_at": None,
                "updated_at": ts,
            }
            if exhausted:
                values["failed_at"] = ts
            result = s.execute(
                update(background_jobs)
                .where(background_jobs.c.id == r.id)
                .where(background_jobs.c.status == JobStatus.PROCESSING.value)
                .where(background_jobs.c.lease_owner == r.lease_owner)
                .values(**values)
            )
            reclaimed += result.rowcount or 0
    if reclaimed:
        logger.warning(f"[jobs] reclaimed {reclaimed} expired leases")
    return reclaimed


def claim_jobs(worker_id: str, limit: int, now: Optional[datetime] = None) -> List[BackgroundJob]:
    """
    Claim up to ``limit`` pending jobs, oldest first.

    Each claim is a conditional update keyed on status='pending'; a row another
    worker got to first simply is not returned.
    """
    ts = normalize_now(now)
    lease_until = ts + timedelta(seconds=settings.JOB_LEASE_SECONDS)
    claimed: List[BackgroundJob] = []
    with use_session() as s:
        candidates = s.execute(
            select(background_jobs.c.id)
            .where(background_jobs.c.status == JobStatus.PENDING.value)
            .order_by(background_jobs.c.created_at.asc(), background_jobs.c.id.asc())
            .limit(limit)
        ).scalars().all()
        for job_id in candidates:
            result = s.execute(
                update(background_jobs)
                .where(background_jobs.c.id == job_id)
                .where(background_jobs.c.status == JobStatus.PENDING.value)
                .values(
                    status=JobStatus.PROCESSING.value,
                    lease_owner=worker_id,
                    lease_expires_at=lease_until,
                    started_at=ts,
                    updated_at=ts,
                )
            )
            if result.rowcount == 1:
                claimed.append(get_job(job_id, session=s))
    return claimed


def complete_job(job_id: int, worker_id: str, now: Optional[datetime] = None) -> bool:
    ts = normalize_now(now)
    with use_session() as s:
        result = s.execute(
            update(background_jobs)
            .where(background_jobs.c.id == job_id)
            .where(background_jobs.c.status == JobStatus.PROCESSING.value)
            .where(background_jobs.c.lease_owner == worker_id)
            .values(
                status=JobStatus.COMPLETED.value,
                completed_at=ts,
                updated_at=ts,
                lease_owner=None,
                lease_expires_at=None,
                last_error=None,
            )
        )
    return result.rowcount == 1


def fail_job(
    job_id: int,
    worker_id: str,
    error: str,
    now: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
) -> Optional[str]:
    """
    Record a failed attempt. Returns the new status (pending or failed), or
    None if the lease was lost to another worker.
    """
    ts = normalize_now(now)
    ceiling = max_attempts or settings.JOB_MAX_ATTEMPTS
    with use_session() as s:
        row = s.execute(
            select(background_jobs.c.attempts)
            .where(background_jobs.c.id == job_id)
            .where(background_jobs.c.lease_owner == worker_id)
        ).first()
        if not row:
            return None
        attempts = int(row.attempts or 0) + 1
        status = JobStatus.FAILED.value if attempts >= ceiling else JobStatus.PENDING.value
        values = {
            "status": status,
            "attempts": attempts,
            "last_error": error[:2000],
            "lease_owner": None,
            "lease_expires_at": None,
            "updated_at": ts,
        }
        if status == JobStatus.FAILED.value:
            values["failed_at"] = ts
        result = s.execute(
            update(background_jobs)
            .where(background_jobs.c.id == job_id)
            .where(background_jobs.c.status == JobStatus.PROCESSING.value)
            .where(background_jobs.c.lease_owner == worker_id)
            .values(**values)
        )
        if result.rowcount != 1:
            return None
    return status


def retry_failed_job(job_id: int, now: Optional[datetime] = None) -> BackgroundJob:
    """Manually requeue a dead-lettered job with a fresh attempt budget."""
    ts = normalize_now(now)
    with use_session() as s:
        job = get_job(job_id, session=s)
        if not job:
            raise NotFoundError(f"Job not found: {job_id}")
        if job.status != JobStatus.FAILED.value:
            raise ValidationError(f"Only failed jobs can be retried (status={job.status})")
        s.execute(
            update(background_jobs)
            .where(background_jobs.c.id == job_id)
            .where(background_jobs.c.status == JobStatus.FAILED.value)
            .values(status=JobStatus.PENDING.value, attempts=0, failed_at=None, updated_at=ts)
        )
        return get_job(job_id, session=s)


def _run_one(job: BackgroundJob, worker_id: str, handlers: Dict[str, Callable[[Dict[str, Any]], Any]]) -> str:
    handler = handlers.get(job.job_type)
    try:
        if handler is None:
            raise ValueError(f"No handler for job type {job.job_type}")
        handler(job.payload or {})
    except Exception as exc:
        status = fail_job(job.id, worker_id, f"{type(exc).__name__}: {exc}")
        outcome = "dead_letter" if status == JobStatus.FAILED.value else "retry"
        logger.warning(
            f"[jobs] {job.job_type} failed ({outcome})",
            exc_info=True,
            extra={"job_id": job.id, "job_type": job.job_type, "status": status},
        )
        jobs_processed_total.inc(labels={"job_type": job.job_type, "outcome": outcome})
        return outcome

    if complete_job(job.id, worker_id):
        jobs_processed_total.inc(labels={"job_type": job.job_type, "outcome": "completed"})
        logger.info(f"[jobs] {job.job_type} completed", extra={"job_id": job.id, "job_type": job.job_type})
        return "completed"
    logger.warning("[jobs] lease lost before completion", extra={"job_id": job.id, "job_type": job.job_type})
    return "lease_lost"


def process_queue(
    limit: Optional[int] = None,
    worker_id: Optional[str] = None,
    handlers: Optional[Dict[str, Callable[[Dict[str, Any]], Any]]] = None,
) -> Dict[str, Any]:
    """
    One poll: reclaim expired leases, claim a batch, run each job.

    Returns counts per outcome. A poll that overlaps another one in the same
    process returns immediately with skipped=True.
    """
    if not _poll_lock.acquire(blocking=False):
        logger.info("[jobs] previous poll still running, skipping")
        return {"skipped": True, "claimed": 0}

    try:
        if handlers is None:
            from backend.features.jobs.handlers import JOB_HANDLERS
            handlers = JOB_HANDLERS

        worker = worker_id or default_worker_id()
        reclaimed = reclaim_expired_leases()
        jobs = claim_jobs(worker, limit or settings.JOB_BATCH_LIMIT)

        stats: Dict[str, Any] = {
            "skipped": False,
            "claimed": len(jobs),
            "reclaimed": reclaimed,
            "completed": 0,
            "retry": 0,
            "dead_letter": 0,
            "lease_lost": 0,
        }
        for job in jobs:
            with bind_request_id(f"job-{job.id}-a{job.attempts + 1}"):
                outcome = _run_one(job, worker, handlers)
            stats[outcome] += 1

        jobs_pending.set(count_by_status().get(JobStatus.PENDING.value, 0))
        return stats
    finally:
        _poll_lock.release()
