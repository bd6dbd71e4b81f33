from datetime import timedelta

from backend.features.jobs.queue import enqueue_job, get_job
from backend.features.reconciliation.sweeps import list_job_runs
from backend.features.subscriptions import lifecycle
from backend.models.common import utc_now
from backend import start_backend
from backend.workers import job_worker, subscription_cron


def test_job_worker_once(capsys):
    job_id = enqueue_job("refresh_entitlements", {"user_id": "u1"})
    job_worker.main(["--once", "--worker-id", "cli-worker"])

    assert get_job(job_id).status == "completed"
    assert "[job-worker]" in capsys.readouterr().out


def test_cron_once_runs_every_sweep(capsys):
    sub_id = lifecycle.grant("u1", "basic", now=utc_now() - timedelta(days=31)).new_subscription_id
    subscription_cron.main(["--once"])

    assert lifecycle.require_subscription(sub_id).status == "grace_period"
    assert len(list_job_runs()) == 3
    assert "[cron]" in capsys.readouterr().out


def test_cron_single_sweep():
    result = subscription_cron.run_once("reminders")
    assert list(result) == ["reminders"]
    assert result["reminders"]["sent"] == 0


def test_server_entrypoint_passes_options(monkeypatch):
    calls = []
    monkeypatch.setattr(start_backend.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    start_backend.main(["--port", "9100"])

    assert calls[0][0] == "backend.main:app"
    assert calls[0][1]["port"] == 9100
    assert calls[0][1]["reload"] is False
