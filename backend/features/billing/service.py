"""
Billing service orchestrator.

Coordinates the provider with local state:
- Provider selection (Razorpay when configured; tests inject a fake)
- Lazily created provider customer / plan ids, cached locally
- Stale id recovery: clear the cached id and tell the caller to retry

All Razorpay-specific code is in razorpay_provider.py.
"""
import logging
from typing import Optional

from backend.core.config import settings
from backend.core.errors import ProviderError, StaleProviderReferenceError
from backend.features.billing.provider import BillingProvider
from backend.features.billing.razorpay_provider import RazorpayProvider
from backend.features.plans.service import clear_provider_plan_id, set_provider_plan_id
from backend.features.users.service import (
    clear_provider_customer_id,
    ensure_user,
    set_provider_customer_id,
)
from backend.models.plan import Plan

logger = logging.getLogger("subengine.billing")

_provider: Optional[BillingProvider] = None


def billing_enabled() -> bool:
    """Check if billing is enabled (Razorpay configured or a provider injected)."""
    return _provider is not None or bool(settings.RAZORPAY_KEY_ID and settings.RAZORPAY_KEY_SECRET)


def get_provider() -> BillingProvider:
    global _provider
    if _provider is None:
        if not billing_enabled():
            raise ProviderError("Billing is not configured", code="billing_disabled", status_code=503)
        _provider = RazorpayProvider()
    return _provider


def set_provider(provider: Optional[BillingProvider]) -> None:
    """Swap the provider (tests) or reset it with None."""
    global _provider
    _provider = provider


def ensure_provider_customer(user_id: str) -> str:
    user = ensure_user(user_id)
    if user.provider_customer_id:
        return user.provider_customer_id
    customer_id = get_provider().create_customer(user_id, name=user.display_name, email=user.email, phone=user.phone)
    set_provider_customer_id(user_id, customer_id)
    logger.info("[billing] provider customer created", extra={"user_id": user_id})
    return customer_id


def ensure_provider_plan(plan: Plan, billing_cycle: str) -> str:
    if plan.provider_plan_id:
        return plan.provider_plan_id
    provider_plan_id = get_provider().create_plan(
        plan.display_name,
        plan.price_for(billing_cycle),
        billing_cycle,
        notes={"planId": plan.id, "planName": plan.name, "billingCycle": billing_cycle},
    )
    set_provider_plan_id(plan.id, provider_plan_id)
    logger.info(f"[billing] provider plan created for {plan.id}")
    return provider_plan_id


def clear_stale_reference(exc: StaleProviderReferenceError, *, user_id: str, plan_id: str) -> None:
    """Drop whichever cached id the provider no longer recognises."""
    if exc.resource == "customer":
        clear_provider_customer_id(user_id)
    elif exc.resource == "plan":
        clear_provider_plan_id(plan_id)
    else:
        logger.warning(f"[billing] stale {exc.resource} reference, nothing cached to clear")


def stop_mandate(provider_subscription_id: Optional[str], at_cycle_end: bool = False) -> bool:
    """
    Best-effort provider cancellation. Failures are logged; local state is
    already authoritative and the reconciliation sweep covers the rest.
    """
    if not provider_subscription_id or not billing_enabled():
        return False
    try:
        get_provider().cancel_subscription(provider_subscription_id, at_cycle_end=at_cycle_end)
        return True
    except ProviderError as exc:
        logger.warning(
            f"[billing] mandate cancellation failed: {exc.message}",
            extra={"error_code": exc.code},
        )
        return False
