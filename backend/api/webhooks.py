"""
Provider webhook routes.

- POST /api/webhooks/razorpay: Signed provider deliveries
- POST /api/webhooks/test: Unsigned, synchronous (not available in prod)

The signature is checked against the raw body before anything else; the
provider gets its 200 immediately and the event is processed in the
background.
"""
import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request

from backend.core.config import settings
from backend.core.errors import SignatureError
from backend.core.logging import log_event
from backend.core.metrics import webhook_events_total
from backend.features.billing.webhooks import (
    SIGNATURE_HEADER,
    parse_event,
    process_webhook,
    process_webhook_safely,
    verify_signature,
)

logger = logging.getLogger("subengine.webhooks")

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/razorpay")
async def razorpay_webhook(request: Request, background_tasks: BackgroundTasks):
    """
    Returns:
        {"received": true}

    Errors:
        401: Missing or invalid signature
        400: Malformed body
    """
    body = await request.body()
    try:
        verify_signature(body, request.headers.get(SIGNATURE_HEADER))
    except SignatureError as exc:
        webhook_events_total.inc(labels={"event": "unknown", "outcome": "bad_signature"})
        log_event("warning", "[webhooks] signature rejected", error_code=exc.code)
        raise

    event, payload = parse_event(body)
    background_tasks.add_task(process_webhook_safely, event, payload)
    logger.info(f"[webhooks] {event} accepted", extra={"event_type": event})
    return {"received": True}


@router.post("/test")
async def test_webhook(request: Request):
    """Process an unsigned event synchronously. Dev and test environments only."""
    if settings.ENVIRONMENT.lower() == "prod":
        raise HTTPException(status_code=404, detail="Not found")
    event, payload = parse_event(await request.body())
    status = process_webhook(event, payload)
    return {"received": True, "event": event, "status": status}
