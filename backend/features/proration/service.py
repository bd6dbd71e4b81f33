"""
backend/features/proration/service.py

Proration math for mid-cycle upgrades. Pure functions, no I/O.
"""

import math
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, Optional

from backend.models.common import ensure_utc, normalize_now
from backend.models.plan import Plan
from backend.models.subscription import Subscription

SECONDS_PER_DAY = 86400


def calculate_credit(
    price_paid: Optional[float],
    start_date: Optional[datetime],
    expiry_date: Optional[datetime],
    now: Optional[datetime] = None,
) -> int:
    """
    Remaining paid value of a cycle, floored to whole currency units.

    credit = floor(price_paid * (expiry - now) / (expiry - start)), clamped at 0.

    Returns 0 when any input is missing, the cycle has no length, or the cycle
    is already over.
    """
    if not price_paid or start_date is None or expiry_date is None:
        return 0
    now = normalize_now(now)
    start = ensure_utc(start_date)
    expiry = ensure_utc(expiry_date)

    total = (expiry - start).total_seconds()
    if total <= 0:
        return 0
    remaining = (expiry - now).total_seconds()
    if remaining <= 0:
        return 0
    fraction = min(1.0, remaining / total)
    return int(math.floor(price_paid * fraction))


def credit_for_subscription(subscription: Optional[Subscription], now: Optional[datetime] = None) -> int:
    if subscription is None:
        return 0
    return calculate_credit(
        subscription.price_paid,
        subscription.start_date,
        subscription.expiry_date,
        now=now,
    )


def remaining_days(expiry_date: Optional[datetime], now: Optional[datetime] = None) -> int:
    if expiry_date is None:
        return 0
    seconds = (ensure_utc(expiry_date) - normalize_now(now)).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / SECONDS_PER_DAY)


@dataclass(frozen=True)
class UpgradeQuote:
    current_plan_id: Optional[str]
    current_plan_name: Optional[str]
    new_plan_id: str
    new_plan_name: str
    billing_cycle: str
    new_price: float
    credit: int
    amount_to_charge: float
    remaining_days: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def quote_upgrade(
    current: Optional[Subscription],
    new_plan: Plan,
    billing_cycle: str = "monthly",
    now: Optional[datetime] = None,
) -> UpgradeQuote:
    """
    Price an upgrade: the new cycle price minus the credit left on the
    current subscription, never below zero.
    """
    new_price = new_plan.price_for(billing_cycle)
    credit = credit_for_subscription(current, now=now)
    return UpgradeQuote(
        current_plan_id=current.plan_id if current else None,
        current_plan_name=current.plan_display_name if current else None,
        new_plan_id=new_plan.id,
        new_plan_name=new_plan.display_name,
        billing_cycle=billing_cycle,
        new_price=new_price,
        credit=credit,
        amount_to_charge=max(0, new_price - credit),
        remaining_days=remaining_days(current.expiry_date, now=now) if current else 0,
    )
