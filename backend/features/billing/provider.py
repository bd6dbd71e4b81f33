"""
Recurring-billing provider protocol.

The engine depends only on this surface. The production implementation is
RazorpayProvider; tests pass an in-memory fake.
"""
import hashlib
import hmac
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Protocol


@dataclass(frozen=True)
class ProviderSubscription:
    """A recurring mandate as the provider reports it."""
    id: str
    status: str  # created, authenticated, active, pending, halted, cancelled, completed
    plan_id: Optional[str] = None
    customer_id: Optional[str] = None
    short_url: Optional[str] = None
    current_end: Optional[datetime] = None
    notes: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderOrder:
    """A one-off charge order. ``amount`` is in minor units (paise)."""
    id: str
    amount: int
    currency: str
    receipt: Optional[str] = None
    status: str = "created"
    notes: Dict[str, Any] = field(default_factory=dict)


class BillingProvider(Protocol):
    """
    Protocol for recurring-billing providers.

    Implementations raise ProviderError on upstream failures and
    StaleProviderReferenceError when a referenced plan/customer/subscription
    id no longer exists on the provider side.
    """

    def create_customer(self, user_id: str, name: Optional[str] = None, email: Optional[str] = None,
                        phone: Optional[str] = None) -> str:
        """
        Create a billing customer.

        Args:
            user_id: Internal user ID (stored in notes)
            name: Display name (optional)
            email: Email (optional)
            phone: Contact number (optional)

        Returns:
            Provider customer ID
        """
        ...

    def create_plan(self, name: str, amount: float, billing_cycle: str, notes: Optional[Dict[str, Any]] = None) -> str:
        """
        Create a provider-side plan for one catalog plan and cycle.

        Args:
            name: Plan display name
            amount: Price in major units
            billing_cycle: "monthly" or "yearly"
            notes: Metadata to attach

        Returns:
            Provider plan ID
        """
        ...

    def create_subscription(
        self,
        provider_plan_id: str,
        customer_id: str,
        billing_cycle: str,
        notes: Optional[Dict[str, Any]] = None,
        start_at: Optional[datetime] = None,
    ) -> ProviderSubscription:
        """
        Create a recurring mandate.

        Args:
            provider_plan_id: Provider plan ID
            customer_id: Provider customer ID
            billing_cycle: Decides the total number of charges
            notes: Echoed back on every webhook for this mandate
            start_at: First charge time (defaults to now)

        Returns:
            The created mandate, including the checkout short URL

        Raises:
            StaleProviderReferenceError: If the plan or customer no longer exists
        """
        ...

    def cancel_subscription(self, provider_subscription_id: str, at_cycle_end: bool = False) -> ProviderSubscription:
        """Stop a mandate now, or let the current cycle finish without renewal."""
        ...

    def fetch_subscription(self, provider_subscription_id: str) -> ProviderSubscription:
        ...

    def create_order(self, amount: float, receipt: str, notes: Optional[Dict[str, Any]] = None) -> ProviderOrder:
        """Create a one-off charge order. ``amount`` is in major units."""
        ...

    def verify_webhook_signature(self, body: bytes, signature: str, secret: str) -> bool:
        ...

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        ...


def compute_signature(secret: str, message: bytes) -> str:
    """HMAC-SHA256 hex digest."""
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def signatures_match(expected: str, provided: Optional[str]) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(expected, provided.strip())


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def from_minor_units(amount: Optional[int]) -> float:
    return (amount or 0) / 100
