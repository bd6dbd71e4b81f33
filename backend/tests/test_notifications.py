import httpx

from backend.core.config import settings
from backend.features.notifications import service as notifications
from backend.features.notifications.service import list_notifications, mark_read, render, send_notification


def test_render_fills_known_fields_and_blanks_missing():
    message = render("subscription_granted", {"plan_name": "Premium", "days": 30})
    assert message == {"title": "Subscription Granted", "body": "You've been given Premium for 30 days."}

    partial = render("expiry_reminder", {"days": 3})
    assert partial["body"] == "Your  subscription ends in 3 day(s)."


def test_unknown_type_uses_caller_text():
    assert render("custom", {"title": "Hi", "body": "there"}) == {"title": "Hi", "body": "there"}
    assert render("custom")["title"] == "Notification"


def test_inbox_row_written_without_push(monkeypatch):
    monkeypatch.setattr(settings, "NOTIFY_PUSH_URL", None)
    nid = send_notification("u1", "payment_failed", {"plan_name": "Basic", "grace_days": 3})
    inbox = list_notifications("u1")
    assert inbox[0]["id"] == nid
    assert "within 3 days" in inbox[0]["body"]
    assert inbox[0]["data"] == {"plan_name": "Basic", "grace_days": 3}


def test_push_relay_payload(monkeypatch):
    sent = []

    def fake_post(url, json, timeout):
        sent.append((url, json))
        return httpx.Response(202, request=httpx.Request("POST", url))

    monkeypatch.setattr(settings, "NOTIFY_PUSH_URL", "https://push.example/relay")
    monkeypatch.setattr(notifications.httpx, "post", fake_post)
    send_notification("u1", "content_unlocked", {"count": 2})

    assert sent == [(
        "https://push.example/relay",
        {"user_id": "u1", "type": "content_unlocked", "title": "Content Unlocked",
         "body": "2 item(s) are available again.", "data": {"count": 2}},
    )]


def test_push_failure_keeps_inbox_row(monkeypatch, caplog):
    def failing_post(url, json, timeout):
        raise httpx.ConnectError("relay down")

    monkeypatch.setattr(settings, "NOTIFY_PUSH_URL", "https://push.example/relay")
    monkeypatch.setattr(notifications.httpx, "post", failing_post)
    send_notification("u1", "subscription_expired", {"plan_name": "Ultra"})

    assert len(list_notifications("u1")) == 1
    assert any("push relay failed" in r.getMessage() for r in caplog.records)


def test_mark_read_is_scoped_to_owner():
    nid = send_notification("u1", "subscription_cancelled", {"plan_name": "Basic"})
    assert mark_read("u2", nid) is False
    assert mark_read("u1", nid) is True
    assert list_notifications("u1", unread_only=True) == []
