from datetime import timedelta

import pytest

from backend.core.logging import get_request_id
from backend.core.metrics import reminders_sent_total
from backend.features.jobs.queue import list_jobs
from backend.features.plans.service import require_plan
from backend.features.reconciliation import sweeps
from backend.features.reconciliation.sweeps import (
    SWEEP_EXPIRED_ACTIVE,
    SWEEP_GRACE_ENDED,
    days_until,
    due_reminders,
    list_job_runs,
    run_all_sweeps,
    send_expiry_reminders,
    sweep_expired_active,
    sweep_grace_ended,
)
from backend.features.subscriptions import lifecycle


def _reminder_jobs():
    return [
        job for job in list_jobs(job_type="send_notification", limit=200)
        if job.payload["type"] in ("renewal_reminder", "expiry_reminder")
    ]


def test_lapsed_subscription_goes_to_grace_then_expires(now):
    sub_id = lifecycle.grant("u1", "basic", now=now).new_subscription_id

    assert sweep_expired_active(now + timedelta(days=29))["checked"] == 0

    stats = sweep_expired_active(now + timedelta(days=31))
    assert stats["grace_period"] == 1
    sub = lifecycle.require_subscription(sub_id)
    assert sub.status == "grace_period"
    assert sub.grace_period_end_date == now + timedelta(days=33)

    assert sweep_grace_ended(now + timedelta(days=32))["expired"] == 0
    assert sweep_grace_ended(now + timedelta(days=34))["expired"] == 1
    assert lifecycle.require_subscription(sub_id).status == "expired"
    assert any(job.job_type == "process_subscription_end" for job in list_jobs())

    # Nothing left to do on a second pass
    assert sweep_grace_ended(now + timedelta(days=35))["checked"] == 0


def test_scheduled_cancellation_applies_at_expiry(now):
    sub_id = lifecycle.grant("u1", "premium", now=now).new_subscription_id
    lifecycle.cancel(sub_id, immediate=False, now=now)

    stats = sweep_expired_active(now + timedelta(days=31))
    assert stats["cancelled"] == 1
    sub = lifecycle.require_subscription(sub_id)
    assert sub.status == "cancelled"
    assert sub.cancellation_type == "at_period_end"


def test_scheduled_downgrade_is_queued_not_graced(now):
    sub_id = lifecycle.grant("u1", "ultra", now=now).new_subscription_id
    lifecycle.schedule_downgrade(sub_id, require_plan("basic"), now=now)

    stats = sweep_expired_active(now + timedelta(days=31))
    assert stats["downgrades_queued"] == 1
    assert lifecycle.require_subscription(sub_id).status == "active"
    assert len(list_jobs(job_type="process_scheduled_downgrade")) == 1


def test_days_until_rounds_up(now):
    assert days_until(now + timedelta(days=6, hours=23), now) == 7
    assert days_until(now + timedelta(days=7), now) == 7


def test_due_reminders_smallest_first(now):
    sub_id = lifecycle.grant("u1", "basic", now=now).new_subscription_id
    sub = lifecycle.require_subscription(sub_id)
    assert due_reminders(sub, now, [7, 3, 1]) == []
    assert due_reminders(sub, now + timedelta(days=28), [7, 3, 1]) == [3, 7]
    assert due_reminders(sub, now + timedelta(days=31), [7, 3, 1]) == []


def test_each_reminder_sent_at_most_once(now):
    lifecycle.grant("u1", "premium", now=now)

    seven_days_out = now + timedelta(days=23, hours=1)
    assert send_expiry_reminders(seven_days_out)["sent"] == 1
    assert send_expiry_reminders(seven_days_out)["sent"] == 0

    three_days_out = now + timedelta(days=27, hours=12)
    assert send_expiry_reminders(three_days_out)["sent"] == 1

    jobs = _reminder_jobs()
    assert len(jobs) == 2
    # granted plans do not renew
    assert {job.payload["type"] for job in jobs} == {"expiry_reminder"}
    assert sorted(job.payload["data"]["days"] for job in jobs) == [3, 7]


def test_past_due_subscription_still_gets_reminders(now):
    sub_id = lifecycle.grant("u1", "premium", now=now).new_subscription_id
    lifecycle.mark_past_due(sub_id, now=now + timedelta(days=20))

    assert send_expiry_reminders(now + timedelta(days=23, hours=1))["sent"] == 1
    sub = lifecycle.require_subscription(sub_id)
    assert sub.status == "past_due"
    assert sub.reminders_sent == ["7d"]
    assert [job.payload["data"]["subscription_id"] for job in _reminder_jobs()] == [sub_id]


def test_missed_thresholds_are_not_sent_late(now):
    sub_id = lifecycle.grant("u1", "premium", now=now).new_subscription_id

    one_day_out = now + timedelta(days=29, hours=12)
    assert send_expiry_reminders(one_day_out)["sent"] == 1
    assert sorted(lifecycle.require_subscription(sub_id).reminders_sent) == ["1d", "3d", "7d"]
    assert reminders_sent_total.value({"days": "1"}) == 1
    assert reminders_sent_total.value({"days": "7"}) == 0

    assert send_expiry_reminders(one_day_out + timedelta(hours=1))["sent"] == 0


def test_extension_resets_reminders(now):
    sub_id = lifecycle.grant("u1", "premium", now=now).new_subscription_id
    send_expiry_reminders(now + timedelta(days=23, hours=1))
    lifecycle.extend(sub_id, 30, now=now + timedelta(days=24))

    assert lifecycle.require_subscription(sub_id).reminders_sent == []
    assert send_expiry_reminders(now + timedelta(days=53, hours=1))["sent"] == 1


def test_runs_are_recorded(now):
    lifecycle.grant("u1", "basic", now=now)
    sweep_expired_active(now + timedelta(days=31))

    runs = list_job_runs(job_name=SWEEP_EXPIRED_ACTIVE)
    assert len(runs) == 1
    assert runs[0]["status"] == "success"
    assert runs[0]["stats"]["grace_period"] == 1


def test_failing_sweep_does_not_stop_the_others(now, monkeypatch):
    def broken(_now):
        raise RuntimeError("db hiccup")

    monkeypatch.setattr(sweeps, "_grace_ended", broken)
    results = run_all_sweeps(now)

    assert results["grace_ended"] == {"error": "RuntimeError: db hiccup"}
    assert "checked" in results["expired_active"]
    assert "checked" in results["reminders"]
    assert list_job_runs(job_name=SWEEP_GRACE_ENDED)[0]["status"] == "failed"


def test_single_sweep_raises_after_recording(now, monkeypatch):
    def broken(_now):
        raise RuntimeError("boom")

    monkeypatch.setattr(sweeps, "_expired_active", broken)
    with pytest.raises(RuntimeError):
        sweep_expired_active(now)
    assert list_job_runs(job_name=SWEEP_EXPIRED_ACTIVE)[0]["stats"] == {"error": "RuntimeError: boom"}


def test_sweep_runs_under_a_cron_correlation_id(now, monkeypatch):
    seen = []

    def capture(_now):
        seen.append(get_request_id())
        return {"sent": 0}

    monkeypatch.setattr(sweeps, "_reminders", capture)
    send_expiry_reminders(now)
    assert seen[0].startswith("cron.reminders-")
