"""
Provider webhook ingestion.

1. Verify the HMAC-SHA256 signature over the raw body (caller, synchronously)
2. Respond to the provider
3. Route the event into the lifecycle state machine (background)
4. Append a webhook_logs row: processed, ignored or failed

Events that need an existing record are looked up by provider subscription
id. An unknown id is logged and ignored: providers redeliver and reorder,
and nothing here may create a phantom record from such an event.
"""
import json
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError

from backend.core.config import settings
from backend.core.database import use_session, webhook_logs
from backend.core.errors import SignatureError, ValidationError
from backend.core.metrics import webhook_events_total
from backend.features.billing import service as billing_service
from backend.features.billing.provider import compute_signature, from_minor_units, signatures_match
from backend.features.jobs.queue import enqueue_job
from backend.features.subscriptions import lifecycle
from backend.features.subscriptions.lifecycle import TransitionResult
from backend.models.common import utc_now
from backend.models.job import JobType
from backend.models.subscription import Subscription

logger = logging.getLogger("subengine.webhooks")

SIGNATURE_HEADER = "X-Razorpay-Signature"


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str] = None) -> None:
    """Raise SignatureError unless ``signature`` is the HMAC-SHA256 of ``body``."""
    secret = secret or settings.webhook_secret()
    if not secret:
        raise SignatureError("Webhook secret not configured")
    if not signatures_match(compute_signature(secret, body), signature):
        raise SignatureError("Invalid webhook signature")


def parse_event(body: bytes) -> Tuple[str, Dict[str, Any]]:
    try:
        data = json.loads(body or b"")
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValidationError("Malformed webhook body") from exc
    if not isinstance(data, dict):
        raise ValidationError("Webhook body must be an object")
    event = data.get("event")
    payload = data.get("payload")
    if not isinstance(event, str) or not event or not isinstance(payload, dict):
        raise ValidationError("Webhook body requires 'event' and 'payload'")
    return event, payload


def _entity(payload: Dict[str, Any], key: str) -> Dict[str, Any]:
    block = payload.get(key) or {}
    if not isinstance(block, dict):
        return {}
    entity = block.get("entity", block)
    return entity if isinstance(entity, dict) else {}


def _subscription_entity(payload: Dict[str, Any]) -> Dict[str, Any]:
    entity = _entity(payload, "subscription")
    if not entity.get("id"):
        raise ValidationError("Webhook payload missing subscription id")
    return entity


def _known(entity: Dict[str, Any], event: str) -> Optional[Subscription]:
    sub = lifecycle.get_by_provider_id(entity["id"])
    if sub is None:
        logger.info(
            f"[webhooks] {event} for unknown subscription, ignoring",
            extra={"event_type": event},
        )
    return sub


def _stop_superseded(result: TransitionResult) -> None:
    for subscription_id in result.superseded:
        old = lifecycle.get_subscription(subscription_id)
        if old:
            billing_service.stop_mandate(old.provider_subscription_id)


def _has_scheduled_downgrade(sub: Subscription) -> bool:
    return bool(sub.scheduled_change and sub.scheduled_change.type == "downgrade")


def _queue_downgrade(sub: Subscription) -> TransitionResult:
    enqueue_job(JobType.PROCESS_SCHEDULED_DOWNGRADE.value, {"subscription_id": sub.id, "user_id": sub.user_id})
    return TransitionResult(True, sub.id, sub.status, "downgraded", "queued")


def on_authenticated(payload: Dict[str, Any]) -> Optional[TransitionResult]:
    entity = _subscription_entity(payload)
    return lifecycle.create_authenticated(
        entity["id"],
        entity.get("notes") or {},
        provider_customer_id=entity.get("customer_id"),
    )


def on_activated(payload: Dict[str, Any]) -> Optional[TransitionResult]:
    entity = _subscription_entity(payload)
    sub = _known(entity, "subscription.activated")
    if sub is None:
        return None
    result = lifecycle.activate(sub.id)
    _stop_superseded(result)
    return result


def on_charged(payload: Dict[str, Any]) -> Optional[TransitionResult]:
    entity = _subscription_entity(payload)
    sub = _known(entity, "subscription.charged")
    if sub is None:
        return None
    payment = _entity(payload, "payment")
    result = lifecycle.renew(
        sub.id,
        payment_id=payment.get("id"),
        amount=from_minor_units(payment.get("amount")),
    )
    _stop_superseded(result)
    return result


def on_pending(payload: Dict[str, Any]) -> Optional[TransitionResult]:
    sub = _known(_subscription_entity(payload), "subscription.pending")
    return lifecycle.mark_past_due(sub.id) if sub else None


def on_halted(payload: Dict[str, Any]) -> Optional[TransitionResult]:
    sub = _known(_subscription_entity(payload), "subscription.halted")
    return lifecycle.enter_grace_period(sub.id) if sub else None


def on_cancelled(payload: Dict[str, Any]) -> Optional[TransitionResult]:
    sub = _known(_subscription_entity(payload), "subscription.cancelled")
    if sub is None:
        return None
    if _has_scheduled_downgrade(sub):
        return _queue_downgrade(sub)
    return lifecycle.cancel(sub.id, immediate=True)


def on_completed(payload: Dict[str, Any]) -> Optional[TransitionResult]:
    sub = _known(_subscription_entity(payload), "subscription.completed")
    if sub is None:
        return None
    if _has_scheduled_downgrade(sub):
        return _queue_downgrade(sub)
    return lifecycle.complete(sub.id)


EVENT_HANDLERS: Dict[str, Callable[[Dict[str, Any]], Optional[TransitionResult]]] = {
    "subscription.authenticated": on_authenticated,
    "subscription.activated": on_activated,
    "subscription.charged": on_charged,
    "subscription.pending": on_pending,
    "subscription.halted": on_halted,
    "subscription.cancelled": on_cancelled,
    "subscription.completed": on_completed,
}


def _provider_subscription_id(payload: Dict[str, Any]) -> Optional[str]:
    return _entity(payload, "subscription").get("id")


def record_webhook_log(
    event: str,
    payload: Dict[str, Any],
    status: str,
    error: Optional[str] = None,
) -> None:
    with use_session() as s:
        s.execute(
            insert(webhook_logs).values(
                event=event,
                provider_subscription_id=_provider_subscription_id(payload),
                payload=payload,
                status=status,
                error=error[:2000] if error else None,
                processed_at=utc_now(),
            )
        )


def process_webhook(event: str, payload: Dict[str, Any]) -> str:
    """
    Route one verified event. Returns the log status.

    Every call writes exactly one webhook_logs row. Errors are logged as
    failed and re-raised for the caller to decide what to surface.
    """
    handler = EVENT_HANDLERS.get(event)
    if handler is None:
        record_webhook_log(event, payload, "ignored")
        webhook_events_total.inc(labels={"event": event, "outcome": "ignored"})
        logger.info(f"[webhooks] unhandled event {event}", extra={"event_type": event})
        return "ignored"

    try:
        result = handler(payload)
    except IntegrityError:
        # A concurrent delivery of the same charge won the unique payment id
        record_webhook_log(event, payload, "ignored", error="duplicate payment")
        webhook_events_total.inc(labels={"event": event, "outcome": "duplicate"})
        logger.info(f"[webhooks] {event} duplicate payment, ignored", extra={"event_type": event})
        return "ignored"
    except Exception as exc:
        record_webhook_log(event, payload, "failed", error=f"{type(exc).__name__}: {exc}")
        webhook_events_total.inc(labels={"event": event, "outcome": "failed"})
        logger.error(f"[webhooks] {event} failed", exc_info=True, extra={"event_type": event})
        raise

    if result is None:
        status, outcome = "ignored", "unknown_subscription"
    elif result.applied:
        status, outcome = "processed", "applied"
    else:
        status, outcome = "ignored", result.reason or "noop"
    record_webhook_log(event, payload, status, error=None if status == "processed" else outcome)
    webhook_events_total.inc(labels={"event": event, "outcome": outcome})
    logger.info(
        f"[webhooks] {event} {outcome}",
        extra={
            "event_type": event,
            "subscription_id": result.subscription_id if result else None,
            "status": status,
        },
    )
    return status


def process_webhook_safely(event: str, payload: Dict[str, Any]) -> str:
    """Background entry point: the provider already has its 200, so never raise."""
    try:
        return process_webhook(event, payload)
    except Exception:
        # Already written to webhook_logs by process_webhook
        return "failed"


def list_webhook_logs(limit: int = 50, status: Optional[str] = None, event: Optional[str] = None):
    with use_session() as s:
        query = select(webhook_logs)
        if status:
            query = query.where(webhook_logs.c.status == status)
        if event:
            query = query.where(webhook_logs.c.event == event)
        rows = s.execute(query.order_by(webhook_logs.c.id.desc()).limit(limit)).fetchall()
    return [
        {
            "id": r.id,
            "event": r.event,
            "provider_subscription_id": r.provider_subscription_id,
            "status": r.status,
            "error": r.error,
            "processed_at": r.processed_at.isoformat() if r.processed_at else None,
        }
        for r in rows
    ]
