"""
Provider webhook ingestion: signature gate, routing into the lifecycle,
idempotent charges and the webhook log.
"""
import json

from fastapi.testclient import TestClient

from backend.features.billing.provider import compute_signature
from backend.features.billing.webhooks import SIGNATURE_HEADER, list_webhook_logs
from backend.features.entitlements.service import resolve_entitlements
from backend.features.jobs.queue import list_jobs
from backend.features.plans.service import require_plan
from backend.features.storage.service import check_quota
from backend.features.subscriptions import lifecycle
from backend.main import app
from backend.models.entitlement import GIB
from backend.tests.mocks import WEBHOOK_SECRET, add_content_series, signed_body, subscription_payload

client = TestClient(app)

NOTES = {"userId": "u1", "planId": "premium", "billingCycle": "monthly"}


def _deliver(event, payload):
    body, signature = signed_body(event, payload)
    return client.post(
        "/api/webhooks/razorpay",
        content=body,
        headers={SIGNATURE_HEADER: signature, "Content-Type": "application/json"},
    )


def _activate(provider_id="sub_rzp1", notes=NOTES):
    assert _deliver("subscription.authenticated", subscription_payload(provider_id, notes)).status_code == 200
    assert _deliver("subscription.activated", subscription_payload(provider_id)).status_code == 200
    return lifecycle.get_by_provider_id(provider_id)


def test_missing_signature_is_rejected():
    body, _ = signed_body("subscription.activated", subscription_payload("sub_rzp1"))
    response = client.post("/api/webhooks/razorpay", content=body)
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "invalid_signature"
    assert list_webhook_logs() == []


def test_wrong_secret_is_rejected():
    body, signature = signed_body("subscription.activated", subscription_payload("sub_rzp1"), secret="other")
    response = client.post("/api/webhooks/razorpay", content=body, headers={SIGNATURE_HEADER: signature})
    assert response.status_code == 401


def test_malformed_body_is_rejected_after_signature():
    body = b"{not json"
    response = client.post(
        "/api/webhooks/razorpay",
        content=body,
        headers={SIGNATURE_HEADER: compute_signature(WEBHOOK_SECRET, body)},
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_error"


def test_authenticated_then_activated():
    response = _deliver("subscription.authenticated", subscription_payload("sub_rzp1", NOTES))
    assert response.status_code == 200
    assert response.json() == {"received": True}

    sub = lifecycle.get_by_provider_id("sub_rzp1")
    assert sub.status == "authenticated"
    assert sub.user_id == "u1"
    assert sub.provider_customer_id == "cust_webhook"

    _deliver("subscription.activated", subscription_payload("sub_rzp1"))
    assert lifecycle.get_by_provider_id("sub_rzp1").status == "active"

    logs = list_webhook_logs()
    assert [log["status"] for log in logs] == ["processed", "processed"]
    assert logs[0]["provider_subscription_id"] == "sub_rzp1"


def test_charge_is_applied_once_per_payment():
    sub = _activate()
    payload = subscription_payload("sub_rzp1", payment_id="pay_1", amount=199)

    _deliver("subscription.charged", payload)
    _deliver("subscription.charged", payload)

    after = lifecycle.require_subscription(sub.id)
    assert after.charge_count == 1
    assert after.last_payment_id == "pay_1"

    latest = list_webhook_logs(event="subscription.charged")
    assert [log["status"] for log in latest] == ["ignored", "processed"]
    assert latest[0]["error"] == "duplicate"


def test_unknown_subscription_creates_nothing():
    for event in ("subscription.activated", "subscription.charged", "subscription.halted"):
        _deliver(event, subscription_payload("sub_ghost", payment_id="pay_9", amount=99))

    assert lifecycle.get_by_provider_id("sub_ghost") is None
    assert lifecycle.list_user_subscriptions("u1") == []
    logs = list_webhook_logs()
    assert {log["status"] for log in logs} == {"ignored"}
    assert {log["error"] for log in logs} == {"unknown_subscription"}


def test_pending_halted_and_cancelled():
    sub = _activate()

    _deliver("subscription.pending", subscription_payload("sub_rzp1"))
    assert lifecycle.require_subscription(sub.id).status == "past_due"

    _deliver("subscription.halted", subscription_payload("sub_rzp1"))
    assert lifecycle.require_subscription(sub.id).status == "grace_period"

    _deliver("subscription.cancelled", subscription_payload("sub_rzp1"))
    assert lifecycle.require_subscription(sub.id).status == "cancelled"
    assert any(job.job_type == "process_subscription_end" for job in list_jobs())


def test_pending_charge_keeps_plan_entitlements():
    sub = _activate()
    add_content_series("u1", [20])

    _deliver("subscription.pending", subscription_payload("sub_rzp1"))
    assert lifecycle.require_subscription(sub.id).status == "past_due"

    entitlements = resolve_entitlements("u1")
    assert entitlements.subscription_tier == 2
    assert entitlements.storage_gb == 116
    assert entitlements.gold_tick
    assert [ref.status for ref in entitlements.active_subscriptions] == ["past_due"]

    # 20 GB used is over the free allowance but well inside Premium
    quota = check_quota("u1", GIB)
    assert quota.allowed
    assert quota.limit_bytes == 116 * GIB


def test_cancelled_with_scheduled_downgrade_queues_the_downgrade():
    sub = _activate()
    lifecycle.schedule_downgrade(sub.id, require_plan("basic"))

    _deliver("subscription.cancelled", subscription_payload("sub_rzp1"))

    assert lifecycle.require_subscription(sub.id).status == "active"
    jobs = list_jobs(job_type="process_scheduled_downgrade")
    assert len(jobs) == 1
    assert jobs[0].payload["subscription_id"] == sub.id


def test_activation_stops_superseded_mandate(fake_provider):
    old = _activate("sub_old", {"userId": "u1", "planId": "basic"})
    new = _activate("sub_new", NOTES)

    assert lifecycle.require_subscription(old.id).status == "upgraded"
    assert lifecycle.require_subscription(new.id).status == "active"
    assert ("cancel_subscription", "sub_old", False) in fake_provider.calls


def test_renewal_mandate_links_to_existing_record():
    granted = lifecycle.grant("u1", "premium").new_subscription_id
    _deliver(
        "subscription.authenticated",
        subscription_payload("sub_renew", {"localSubscriptionId": granted}),
    )

    sub = lifecycle.require_subscription(granted)
    assert sub.provider_subscription_id == "sub_renew"
    assert sub.auto_renew is True
    assert len(lifecycle.list_user_subscriptions("u1")) == 1


def test_unhandled_event_is_logged_as_ignored():
    _deliver("payment.captured", {"payment": {"entity": {"id": "pay_x"}}})
    logs = list_webhook_logs()
    assert len(logs) == 1
    assert logs[0]["event"] == "payment.captured"
    assert logs[0]["status"] == "ignored"


def test_test_endpoint_processes_synchronously():
    body = json.dumps({"event": "subscription.authenticated", "payload": subscription_payload("sub_t1", NOTES)})
    response = client.post("/api/webhooks/test", content=body)
    assert response.status_code == 200
    assert response.json() == {"received": True, "event": "subscription.authenticated", "status": "processed"}


def test_test_endpoint_hidden_in_prod(monkeypatch):
    from backend.core.config import settings

    monkeypatch.setattr(settings, "ENVIRONMENT", "prod")
    body = json.dumps({"event": "subscription.authenticated", "payload": subscription_payload("sub_t1", NOTES)})
    response = client.post("/api/webhooks/test", content=body)
    assert response.status_code == 404
    assert lifecycle.get_by_provider_id("sub_t1") is None
