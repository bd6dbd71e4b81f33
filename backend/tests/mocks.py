import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import insert

from backend.core.database import content_items, get_db_session
from backend.features.billing.provider import (
    ProviderOrder,
    ProviderSubscription,
    compute_signature,
    signatures_match,
    to_minor_units,
)
from backend.models.entitlement import GIB

FAKE_KEY_SECRET = "fake_key_secret"
WEBHOOK_SECRET = "whsec_test"


class FakeProvider:
    """In-memory BillingProvider. Set ``fail_next[method] = exc`` to raise once."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.fail_next: Dict[str, Exception] = {}
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_fake{self._counter}"

    def _maybe_fail(self, method: str) -> None:
        exc = self.fail_next.pop(method, None)
        if exc is not None:
            raise exc

    def calls_to(self, method: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == method]

    def create_customer(self, user_id, name=None, email=None, phone=None):
        self.calls.append(("create_customer", user_id))
        self._maybe_fail("create_customer")
        return self._next_id("cust")

    def create_plan(self, name, amount, billing_cycle, notes=None):
        self.calls.append(("create_plan", name, amount, billing_cycle))
        self._maybe_fail("create_plan")
        return self._next_id("plan")

    def create_subscription(self, provider_plan_id, customer_id, billing_cycle, notes=None, start_at=None):
        self.calls.append(("create_subscription", provider_plan_id, customer_id, billing_cycle, notes, start_at))
        self._maybe_fail("create_subscription")
        sub_id = self._next_id("sub")
        return ProviderSubscription(
            id=sub_id,
            status="created",
            plan_id=provider_plan_id,
            customer_id=customer_id,
            short_url=f"https://rzp.example/{sub_id}",
            notes=notes or {},
        )

    def cancel_subscription(self, provider_subscription_id, at_cycle_end=False):
        self.calls.append(("cancel_subscription", provider_subscription_id, at_cycle_end))
        self._maybe_fail("cancel_subscription")
        return ProviderSubscription(id=provider_subscription_id, status="cancelled")

    def fetch_subscription(self, provider_subscription_id):
        self.calls.append(("fetch_subscription", provider_subscription_id))
        return ProviderSubscription(id=provider_subscription_id, status="active")

    def create_order(self, amount, receipt, notes=None):
        self.calls.append(("create_order", amount, receipt, notes))
        self._maybe_fail("create_order")
        return ProviderOrder(id=self._next_id("order"), amount=to_minor_units(amount), currency="INR",
                             receipt=receipt, notes=notes or {})

    def verify_webhook_signature(self, body, signature, secret):
        return signatures_match(compute_signature(secret, body), signature)

    def verify_payment_signature(self, order_id, payment_id, signature):
        return signatures_match(payment_signature(order_id, payment_id), signature)


def payment_signature(order_id: str, payment_id: str) -> str:
    return compute_signature(FAKE_KEY_SECRET, f"{order_id}|{payment_id}".encode())


def signed_body(event: str, payload: Dict[str, Any], secret: str = WEBHOOK_SECRET):
    body = json.dumps({"event": event, "payload": payload}).encode()
    return body, compute_signature(secret, body)


def subscription_payload(
    provider_subscription_id: str,
    notes: Optional[Dict[str, Any]] = None,
    payment_id: Optional[str] = None,
    amount: float = 0,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "subscription": {
            "entity": {
                "id": provider_subscription_id,
                "customer_id": "cust_webhook",
                "status": "active",
                "notes": notes or {},
            }
        }
    }
    if payment_id:
        payload["payment"] = {"entity": {"id": payment_id, "amount": to_minor_units(amount)}}
    return payload


def add_content(
    owner_id: str,
    size_gb: float,
    created_at: datetime,
    *,
    is_private: bool = True,
    content_id: Optional[str] = None,
    collection: str = "reels",
) -> str:
    content_id = content_id or f"c_{uuid4().hex[:10]}"
    with get_db_session() as s:
        s.execute(
            insert(content_items).values(
                id=content_id,
                owner_id=owner_id,
                collection=collection,
                title=content_id,
                is_private=is_private,
                file_size_bytes=int(size_gb * GIB),
                is_locked=False,
                created_at=created_at,
            )
        )
    return content_id


def add_content_series(owner_id: str, sizes_gb: List[float], start: Optional[datetime] = None) -> List[str]:
    """One item per size, each a day newer than the last."""
    start = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
    return [
        add_content(owner_id, size, start + timedelta(days=i))
        for i, size in enumerate(sizes_gb)
    ]
