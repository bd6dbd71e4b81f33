from datetime import timedelta

import pytest

from backend.core.errors import ValidationError
from backend.core.logging import get_request_id
from backend.features.jobs import queue
from backend.features.jobs.handlers import handle_refresh_entitlements
from backend.features.jobs.queue import (
    claim_jobs,
    complete_job,
    enqueue_job,
    fail_job,
    get_job,
    process_queue,
    reclaim_expired_leases,
    retry_failed_job,
)
from backend.features.notifications.service import list_notifications
from backend.features.storage.service import get_locked_content
from backend.features.subscriptions import lifecycle
from backend.models.common import utc_now
from backend.tests.mocks import add_content_series


def _drain(max_polls=10):
    for _ in range(max_polls):
        stats = process_queue(worker_id="test-worker")
        if stats["claimed"] == 0:
            return
    raise AssertionError("queue did not drain")


def test_unknown_job_type_rejected():
    with pytest.raises(ValidationError):
        enqueue_job("reticulate_splines", {})


def test_claim_is_exclusive_and_complete_needs_the_lease():
    first = enqueue_job("refresh_entitlements", {"user_id": "u1"})
    second = enqueue_job("refresh_entitlements", {"user_id": "u2"})

    claimed = claim_jobs("w1", 10)
    assert [job.id for job in claimed] == [first, second]
    assert all(job.status == "processing" and job.lease_owner == "w1" for job in claimed)
    assert claim_jobs("w2", 10) == []

    assert complete_job(first, "w2") is False
    assert complete_job(first, "w1") is True
    assert get_job(first).status == "completed"


def test_expired_lease_is_reclaimed():
    job_id = enqueue_job("refresh_entitlements", {"user_id": "u1"})
    claim_jobs("dead-worker", 1, now=utc_now() - timedelta(hours=1))

    assert reclaim_expired_leases() == 1
    job = get_job(job_id)
    assert job.status == "pending"
    assert job.attempts == 1
    assert "dead-worker" in job.last_error

    # The abandoned worker can no longer complete it
    assert complete_job(job_id, "dead-worker") is False


def test_failures_retry_then_dead_letter():
    def boom(payload):
        raise RuntimeError("relay down")

    job_id = enqueue_job("send_notification", {"user_id": "u1", "type": "payment_failed"})
    handlers = {"send_notification": boom}

    outcomes = []
    for _ in range(3):
        stats = process_queue(worker_id="w1", handlers=handlers)
        outcomes.append("dead_letter" if stats["dead_letter"] else "retry")
    assert outcomes == ["retry", "retry", "dead_letter"]

    job = get_job(job_id)
    assert job.status == "failed"
    assert job.attempts == 3
    assert job.last_error == "RuntimeError: relay down"

    requeued = retry_failed_job(job_id)
    assert requeued.status == "pending"
    assert requeued.attempts == 0
    with pytest.raises(ValidationError):
        retry_failed_job(job_id)


def test_fail_without_lease_is_ignored():
    job_id = enqueue_job("refresh_entitlements", {"user_id": "u1"})
    claim_jobs("w1", 1)
    assert fail_job(job_id, "w2", "nope") is None
    assert get_job(job_id).status == "processing"


def test_overlapping_poll_is_skipped():
    enqueue_job("refresh_entitlements", {"user_id": "u1"})
    assert queue._poll_lock.acquire(blocking=False)
    try:
        assert process_queue(worker_id="w1") == {"skipped": True, "claimed": 0}
    finally:
        queue._poll_lock.release()
    assert process_queue(worker_id="w1")["completed"] == 1


def test_each_job_runs_under_its_own_correlation_id():
    seen = []
    first = enqueue_job("refresh_entitlements", {"user_id": "u1"})
    second = enqueue_job("refresh_entitlements", {"user_id": "u2"})

    process_queue(worker_id="w1", handlers={"refresh_entitlements": lambda payload: seen.append(get_request_id())})
    assert seen == [f"job-{first}-a1", f"job-{second}-a1"]
    assert get_request_id() is None


def test_handlers_reject_payload_without_user():
    with pytest.raises(ValidationError):
        handle_refresh_entitlements({})


def test_cancellation_locks_excess_then_upgrade_unlocks():
    add_content_series("u1", [10, 10, 10, 10])
    sub_id = lifecycle.grant("u1", "premium").new_subscription_id
    _drain()
    assert get_locked_content("u1")["count"] == 0

    lifecycle.cancel(sub_id, immediate=True)
    _drain()
    # 40 GB against the 15 GB free tier: the three newest items go
    assert get_locked_content("u1")["count"] == 3
    types = [n["type"] for n in list_notifications("u1")]
    assert "content_locked" in types

    lifecycle.grant("u1", "ultra")
    _drain()
    assert get_locked_content("u1")["count"] == 0
    assert "content_unlocked" in [n["type"] for n in list_notifications("u1")]
