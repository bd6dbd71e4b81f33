"""
Razorpay billing provider.

Implements BillingProvider against the Razorpay REST API with httpx
(basic auth with key id / key secret). Amounts cross the wire in paise.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from backend.core.config import settings
from backend.core.errors import ProviderError, StaleProviderReferenceError
from backend.features.billing.provider import (
    ProviderOrder,
    ProviderSubscription,
    compute_signature,
    signatures_match,
    to_minor_units,
)

logger = logging.getLogger("subengine.billing")

# Total charges a mandate may collect before it completes
TOTAL_COUNT = {"monthly": 120, "yearly": 10}
PERIOD = {"monthly": "monthly", "yearly": "yearly"}

_STALE_MARKERS = ("does not exist", "not found", "invalid id")


def _to_datetime(epoch: Optional[int]) -> Optional[datetime]:
    if not epoch:
        return None
    return datetime.fromtimestamp(int(epoch), tz=timezone.utc)


def _subscription_from_json(data: Dict[str, Any]) -> ProviderSubscription:
    return ProviderSubscription(
        id=data["id"],
        status=data.get("status", "created"),
        plan_id=data.get("plan_id"),
        customer_id=data.get("customer_id"),
        short_url=data.get("short_url"),
        current_end=_to_datetime(data.get("current_end")),
        notes=data.get("notes") or {},
    )


class RazorpayProvider:
    """Razorpay implementation of BillingProvider protocol."""

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Args:
            key_id: Razorpay key id (defaults to RAZORPAY_KEY_ID)
            key_secret: Razorpay key secret (defaults to RAZORPAY_KEY_SECRET)
            base_url: API base (defaults to RAZORPAY_API_BASE)
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.key_id = key_id or settings.RAZORPAY_KEY_ID
        self.key_secret = key_secret or settings.RAZORPAY_KEY_SECRET
        if not self.key_id or not self.key_secret:
            raise ProviderError("Razorpay credentials not configured", code="provider_unconfigured", status_code=503)
        self.currency = settings.BILLING_CURRENCY
        self._client = httpx.Client(
            base_url=base_url or settings.RAZORPAY_API_BASE,
            auth=(self.key_id, self.key_secret),
            timeout=timeout or settings.RAZORPAY_TIMEOUT_SECONDS,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        resource: str,
        resource_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, json=json)
        except httpx.HTTPError as exc:
            logger.error(f"[razorpay] {method} {path} transport error: {exc}")
            raise ProviderError(f"Razorpay request failed: {exc}") from exc

        if response.status_code < 400:
            return response.json()

        try:
            error = response.json().get("error", {})
        except ValueError:
            error = {}
        description = error.get("description") or response.text[:200]
        logger.warning(
            f"[razorpay] {method} {path} -> {response.status_code}: {description}",
            extra={"error_code": error.get("code")},
        )
        lowered = description.lower()
        if response.status_code in (400, 404) and any(marker in lowered for marker in _STALE_MARKERS):
            stale = resource
            field = (error.get("field") or "").lower()
            if "customer" in field or "customer" in lowered:
                stale = "customer"
            elif "plan" in field or "plan" in lowered:
                stale = "plan"
            raise StaleProviderReferenceError(
                f"Razorpay {stale} reference no longer exists",
                resource=stale,
                resource_id=resource_id,
            )
        raise ProviderError(
            f"Razorpay error: {description}",
            details={"status": response.status_code, "provider_code": error.get("code")},
        )

    def create_customer(self, user_id: str, name: Optional[str] = None, email: Optional[str] = None,
                        phone: Optional[str] = None) -> str:
        body: Dict[str, Any] = {"notes": {"userId": user_id}, "fail_existing": "0"}
        if name:
            body["name"] = name
        if email:
            body["email"] = email
        if phone:
            body["contact"] = phone
        data = self._request("POST", "/customers", json=body, resource="customer")
        return data["id"]

    def create_plan(self, name: str, amount: float, billing_cycle: str, notes: Optional[Dict[str, Any]] = None) -> str:
        body = {
            "period": PERIOD.get(billing_cycle, "monthly"),
            "interval": 1,
            "item": {
                "name": name,
                "amount": to_minor_units(amount),
                "currency": self.currency,
            },
            "notes": notes or {},
        }
        data = self._request("POST", "/plans", json=body, resource="plan")
        return data["id"]

    def create_subscription(
        self,
        provider_plan_id: str,
        customer_id: str,
        billing_cycle: str,
        notes: Optional[Dict[str, Any]] = None,
        start_at: Optional[datetime] = None,
    ) -> ProviderSubscription:
        body: Dict[str, Any] = {
            "plan_id": provider_plan_id,
            "customer_id": customer_id,
            "total_count": TOTAL_COUNT.get(billing_cycle, 120),
            "quantity": 1,
            "customer_notify": 1,
            "notes": notes or {},
        }
        if start_at is not None:
            body["start_at"] = int(start_at.timestamp())
        data = self._request("POST", "/subscriptions", json=body, resource="plan", resource_id=provider_plan_id)
        return _subscription_from_json(data)

    def cancel_subscription(self, provider_subscription_id: str, at_cycle_end: bool = False) -> ProviderSubscription:
        data = self._request(
            "POST",
            f"/subscriptions/{provider_subscription_id}/cancel",
            json={"cancel_at_cycle_end": 1 if at_cycle_end else 0},
            resource="subscription",
            resource_id=provider_subscription_id,
        )
        return _subscription_from_json(data)

    def fetch_subscription(self, provider_subscription_id: str) -> ProviderSubscription:
        data = self._request(
            "GET",
            f"/subscriptions/{provider_subscription_id}",
            resource="subscription",
            resource_id=provider_subscription_id,
        )
        return _subscription_from_json(data)

    def create_order(self, amount: float, receipt: str, notes: Optional[Dict[str, Any]] = None) -> ProviderOrder:
        body = {
            "amount": to_minor_units(amount),
            "currency": self.currency,
            "receipt": receipt[:40],
            "notes": notes or {},
        }
        data = self._request("POST", "/orders", json=body, resource="order")
        return ProviderOrder(
            id=data["id"],
            amount=data.get("amount", body["amount"]),
            currency=data.get("currency", self.currency),
            receipt=data.get("receipt"),
            status=data.get("status", "created"),
            notes=data.get("notes") or {},
        )

    def verify_webhook_signature(self, body: bytes, signature: str, secret: str) -> bool:
        if not secret:
            return False
        return signatures_match(compute_signature(secret, body), signature)

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        expected = compute_signature(self.key_secret, f"{order_id}|{payment_id}".encode())
        return signatures_match(expected, signature)
