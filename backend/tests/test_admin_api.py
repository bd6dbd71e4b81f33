"""
Admin subscription endpoints: key auth, plan catalog management,
grant/extend/cancel with audit rows, stats, job and cron controls.
"""
import hashlib

from fastapi.testclient import TestClient

from backend.core.config import settings
from backend.features.jobs.queue import enqueue_job, get_job
from backend.features.subscriptions import lifecycle
from backend.main import app
from backend.tests.mocks import add_content_series

client = TestClient(app)

BASE = "/api/admin/subscriptions"


def _expected_actor():
    return "admin:" + hashlib.sha256(settings.ADMIN_KEY.encode()).hexdigest()[:16]


def test_missing_or_wrong_key_is_401():
    assert client.get(f"{BASE}/stats").status_code == 401
    response = client.get(f"{BASE}/stats", headers={"X-Admin-Key": "wrong"})
    assert response.status_code == 401
    assert response.json()["error"]["message"]["code"] == "admin_unauthorized"


def test_unconfigured_key_is_503(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_KEY", None)
    monkeypatch.delenv("ADMIN_API_KEY", raising=False)
    response = client.get(f"{BASE}/stats", headers={"X-Admin-Key": "anything"})
    assert response.status_code == 503


def test_grant_is_audited(admin_headers):
    response = client.post(
        f"{BASE}/grant",
        json={"user_id": "u1", "plan_id": "ultra", "duration_days": 14, "note": "creator program"},
        headers=admin_headers,
    )
    assert response.status_code == 200
    sub_id = response.json()["new_subscription_id"]

    sub = lifecycle.require_subscription(sub_id)
    assert sub.status == "active"
    assert sub.granted_by == _expected_actor()
    assert sub.grant_note == "creator program"
    assert (sub.expiry_date - sub.start_date).days == 14

    entries = client.get(f"{BASE}/audit", headers=admin_headers).json()["entries"]
    assert entries[0]["action"] == "grant_subscription"
    assert entries[0]["actor"] == _expected_actor()
    assert entries[0]["target_user_id"] == "u1"
    assert entries[0]["target_resource"] == sub_id
    assert settings.ADMIN_KEY not in str(entries)


def test_grant_unknown_plan_writes_nothing(admin_headers):
    response = client.post(f"{BASE}/grant", json={"user_id": "u1", "plan_id": "mega"}, headers=admin_headers)
    assert response.status_code == 404
    assert lifecycle.list_user_subscriptions("u1") == []
    assert client.get(f"{BASE}/audit", headers=admin_headers).json()["entries"] == []


def test_extend_and_cancel(admin_headers, fake_provider):
    sub_id = lifecycle.grant("u1", "premium").new_subscription_id
    before = lifecycle.require_subscription(sub_id).expiry_date

    response = client.post(f"{BASE}/{sub_id}/extend", json={"days": 10}, headers=admin_headers)
    assert response.status_code == 200
    assert (lifecycle.require_subscription(sub_id).expiry_date - before).days == 10

    assert client.post(f"{BASE}/{sub_id}/extend", json={"days": 0}, headers=admin_headers).status_code == 422

    response = client.post(f"{BASE}/{sub_id}/cancel", json={"reason": "fraud"}, headers=admin_headers)
    assert response.status_code == 200
    sub = lifecycle.require_subscription(sub_id)
    assert sub.status == "cancelled"
    assert sub.cancellation_type == "fraud"

    # Already cancelled: reported, not silently accepted
    again = client.post(f"{BASE}/{sub_id}/cancel", json={}, headers=admin_headers)
    assert again.status_code == 400
    assert again.json()["error"]["details"]["reason"] == "duplicate"

    actions = [e["action"] for e in client.get(f"{BASE}/audit", headers=admin_headers).json()["entries"]]
    assert actions == ["cancel_subscription", "extend_subscription"]


def test_extend_terminal_subscription_is_rejected(admin_headers):
    sub_id = lifecycle.grant("u1", "basic").new_subscription_id
    lifecycle.cancel(sub_id)
    response = client.post(f"{BASE}/{sub_id}/extend", json={"days": 5}, headers=admin_headers)
    assert response.status_code == 400


def test_subscription_lookup(admin_headers):
    sub_id = lifecycle.grant("u1", "basic").new_subscription_id
    assert client.get(f"{BASE}/{sub_id}", headers=admin_headers).json()["plan_id"] == "basic"
    assert client.get(f"{BASE}/sub_missing", headers=admin_headers).status_code == 404


def test_list_and_stats(admin_headers):
    lifecycle.grant("u1", "basic")
    lifecycle.grant("u2", "premium")
    lifecycle.grant("u3", "premium")
    lifecycle.grant("u3", "storage_50")
    lifecycle.renew(lifecycle.grant("u4", "ultra").new_subscription_id, payment_id="pay_1", amount=399)

    listed = client.get(BASE, params={"plan_id": "premium"}, headers=admin_headers).json()
    assert listed["count"] == 2

    stats = client.get(f"{BASE}/stats", headers=admin_headers).json()
    assert stats["active"] == 5
    assert stats["by_plan"] == [
        {"plan_id": "basic", "tier": 1, "subscribers": 1},
        {"plan_id": "premium", "tier": 2, "subscribers": 2},
        {"plan_id": "ultra", "tier": 3, "subscribers": 1},
    ]
    assert stats["total_revenue"] == 399


def test_plan_catalog_management(admin_headers):
    created = client.post(
        f"{BASE}/plans",
        json={"id": "storage_1t", "name": "storage_1t", "display_name": "1 TB", "type": "storage_addon",
              "price": 499, "storage_gb": 1024},
        headers=admin_headers,
    )
    assert created.status_code == 200
    assert created.json()["storage_gb"] == 1024

    duplicate = client.post(
        f"{BASE}/plans",
        json={"id": "storage_1t", "name": "storage_1t", "display_name": "1 TB", "price": 499},
        headers=admin_headers,
    )
    assert duplicate.status_code == 400

    updated = client.patch(f"{BASE}/plans/storage_1t", json={"price": 599}, headers=admin_headers)
    assert updated.json()["price"] == 599

    assert client.delete(f"{BASE}/plans/storage_1t", headers=admin_headers).json()["is_active"] is False
    public = client.get("/api/subscriptions/plans").json()
    assert "storage_1t" not in {a["id"] for a in public["addons"]}


def test_plan_with_subscribers_cannot_be_deactivated(admin_headers):
    lifecycle.grant("u1", "basic")
    response = client.delete(f"{BASE}/plans/basic", headers=admin_headers)
    assert response.status_code == 400
    assert response.json()["error"]["details"] == {"active_subscribers": 1}

    plans = client.get(f"{BASE}/plans", headers=admin_headers).json()["plans"]
    assert {p["id"]: p["active_subscribers"] for p in plans}["basic"] == 1


def test_seed_is_idempotent(admin_headers):
    assert client.post(f"{BASE}/plans/seed", headers=admin_headers).json() == {"created": 0}


def test_user_detail_and_refresh(admin_headers):
    lifecycle.grant("u1", "premium")
    add_content_series("u1", [1])

    detail = client.get(f"{BASE}/users/u1", headers=admin_headers).json()
    assert len(detail["subscriptions"]) == 1
    assert detail["storage"]["storage_gb"] == 116

    refreshed = client.post(f"{BASE}/users/u1/refresh-entitlements", headers=admin_headers).json()
    assert refreshed["subscription_tier"] == 2

    locked = client.get(f"{BASE}/users/u1/locked-content", headers=admin_headers).json()
    assert locked["count"] == 0


def test_job_controls(admin_headers):
    job_id = enqueue_job("refresh_entitlements", {"user_id": "u1"})
    processed = client.post(f"{BASE}/jobs/process", headers=admin_headers).json()
    assert processed["completed"] == 1
    assert get_job(job_id).status == "completed"

    # Only dead-lettered jobs can be retried
    assert client.post(f"{BASE}/jobs/{job_id}/retry", headers=admin_headers).status_code == 400

    listing = client.get(f"{BASE}/jobs", params={"status": "completed"}, headers=admin_headers).json()
    assert listing["counts"] == {"completed": 1}
    assert listing["jobs"][0]["id"] == job_id


def test_webhook_logs_listing(admin_headers):
    client.post("/api/webhooks/test", json={"event": "payment.captured", "payload": {}})
    logs = client.get(f"{BASE}/webhook-logs", headers=admin_headers).json()["logs"]
    assert [log["event"] for log in logs] == ["payment.captured"]


def test_cron_endpoints(admin_headers):
    assert client.post("/api/admin/cron/run", headers=admin_headers).status_code == 200
    single = client.post("/api/admin/cron/reminders", headers=admin_headers)
    assert single.status_code == 200
    assert "sent" in single.json()

    assert client.post("/api/admin/cron/nope", headers=admin_headers).status_code == 404

    runs = client.get("/api/admin/cron/runs", headers=admin_headers).json()["runs"]
    assert len(runs) == 4
    assert {r["status"] for r in runs} == {"success"}
