"""Subscription state machine transitions and their queued side effects."""

from datetime import timedelta

import pytest

from backend.core.database import get_db_session
from backend.core.errors import ValidationError
from backend.features.entitlements.service import resolve_entitlements
from backend.features.jobs.queue import list_jobs
from backend.features.plans.service import require_plan
from backend.features.subscriptions import lifecycle
from backend.features.subscriptions.lifecycle import (
    ACTIVE,
    AUTHENTICATED,
    CANCELLED,
    DOWNGRADED,
    EXPIRED,
    GRACE_PERIOD,
    PAST_DUE,
    UPGRADED,
    can_transition,
)


def _authenticated(user_id="u1", plan_id="premium", provider_id="sub_rzp1", now=None):
    result = lifecycle.create_authenticated(
        provider_id,
        {"userId": user_id, "planId": plan_id, "billingCycle": "monthly"},
        provider_customer_id="cust_1",
        now=now,
    )
    assert result.applied
    return result.subscription_id


def _job_types():
    return [job.job_type for job in list_jobs(limit=200)]


def test_transition_table():
    assert can_transition(AUTHENTICATED, ACTIVE)
    assert can_transition(ACTIVE, PAST_DUE)
    assert can_transition(GRACE_PERIOD, ACTIVE)
    assert not can_transition(AUTHENTICATED, PAST_DUE)
    assert not can_transition(GRACE_PERIOD, PAST_DUE)
    for terminal in (EXPIRED, CANCELLED, UPGRADED, DOWNGRADED):
        assert not can_transition(terminal, ACTIVE)


def test_authenticated_mandate_is_not_entitled_until_active(now):
    sub_id = _authenticated(now=now)
    sub = lifecycle.require_subscription(sub_id)
    assert sub.status == AUTHENTICATED
    assert sub.plan_snapshot["storage_gb"] == 101

    duplicate = lifecycle.create_authenticated("sub_rzp1", {"userId": "u1", "planId": "premium"}, now=now)
    assert duplicate.applied is False
    assert duplicate.reason == "duplicate"


def test_authenticated_requires_user_and_plan_notes(now):
    with pytest.raises(ValidationError):
        lifecycle.create_authenticated("sub_rzp9", {"planId": "basic"}, now=now)


def test_activate_supersedes_current_plan(now):
    basic = lifecycle.grant("u1", "basic", now=now).new_subscription_id
    sub_id = _authenticated(now=now)

    result = lifecycle.activate(sub_id, now=now)
    assert result.applied
    assert lifecycle.require_subscription(sub_id).status == ACTIVE
    assert lifecycle.require_subscription(basic).status == UPGRADED
    assert "unlock_user_content" in _job_types()

    again = lifecycle.activate(sub_id, now=now)
    assert again.reason == "already_active"


def test_addon_does_not_supersede_plan(now):
    basic = lifecycle.grant("u1", "basic", now=now).new_subscription_id
    lifecycle.grant("u1", "storage_50", now=now)
    assert lifecycle.require_subscription(basic).status == ACTIVE


def test_charge_renews_once_per_payment(now):
    sub_id = _authenticated(now=now)
    first = lifecycle.renew(sub_id, payment_id="pay_1", amount=199, now=now)
    assert first.applied

    sub = lifecycle.require_subscription(sub_id)
    assert sub.status == ACTIVE
    assert sub.charge_count == 1
    assert sub.expiry_date == now + timedelta(days=30)
    assert sub.grace_period_end_date == now + timedelta(days=33)

    later = now + timedelta(days=1)
    duplicate = lifecycle.renew(sub_id, payment_id="pay_1", amount=199, now=later)
    assert duplicate.applied is False
    assert duplicate.reason == "duplicate"
    assert lifecycle.require_subscription(sub_id).expiry_date == now + timedelta(days=30)
    assert lifecycle.payment_already_applied("pay_1")


def test_past_due_then_recovered_by_charge(now):
    sub_id = _authenticated(now=now)
    lifecycle.activate(sub_id, now=now)

    assert lifecycle.mark_past_due(sub_id, now=now).applied
    assert lifecycle.mark_past_due(sub_id, now=now).reason == "duplicate"
    assert lifecycle.require_subscription(sub_id).status == PAST_DUE

    result = lifecycle.renew(sub_id, payment_id="pay_2", now=now + timedelta(days=1))
    assert result.from_status == PAST_DUE
    assert lifecycle.require_subscription(sub_id).status == ACTIVE


def test_past_due_keeps_entitlements_inside_the_cycle(now):
    sub_id = _authenticated(now=now)
    lifecycle.activate(sub_id, now=now)
    lifecycle.mark_past_due(sub_id, now=now + timedelta(days=1))

    during = resolve_entitlements("u1", now=now + timedelta(days=1))
    assert during.subscription_tier == 2
    assert during.storage_gb == 116
    assert during.verification_type == "gold"

    # no grace row yet, so the window still ends at expiry
    after = resolve_entitlements("u1", now=now + timedelta(days=31))
    assert after.subscription_tier == 0
    assert after.storage_gb == 15


def test_halted_mandate_enters_grace(now):
    sub_id = _authenticated(now=now)
    lifecycle.activate(sub_id, now=now)
    later = now + timedelta(days=30)

    assert lifecycle.enter_grace_period(sub_id, now=later).applied
    sub = lifecycle.require_subscription(sub_id)
    assert sub.status == GRACE_PERIOD
    assert sub.auto_renew is False
    assert sub.grace_period_end_date == later + timedelta(days=3)


def test_cancel_immediately_queues_quota_recheck(now):
    sub_id = lifecycle.grant("u1", "premium", now=now).new_subscription_id
    result = lifecycle.cancel(sub_id, immediate=True, now=now)
    assert result.applied
    assert result.to_status == CANCELLED
    assert "process_subscription_end" in _job_types()

    assert lifecycle.cancel(sub_id, now=now).reason == "duplicate"


def test_cancel_at_period_end_keeps_access(now):
    sub_id = lifecycle.grant("u1", "premium", now=now).new_subscription_id
    result = lifecycle.cancel(sub_id, immediate=False, now=now)
    assert result.applied

    sub = lifecycle.require_subscription(sub_id)
    assert sub.status == ACTIVE
    assert sub.auto_renew is False
    assert sub.cancellation_type == "at_period_end"
    assert sub.scheduled_change.type == "cancellation"
    assert sub.scheduled_change.effective_date == sub.expiry_date


def test_terminal_records_reject_transitions(now):
    sub_id = lifecycle.grant("u1", "basic", now=now).new_subscription_id
    lifecycle.cancel(sub_id, now=now)
    result = lifecycle.expire(sub_id, now=now)
    assert result.applied is False
    assert result.reason == "invalid_transition"


def test_stale_write_changes_nothing(now):
    sub_id = lifecycle.grant("u1", "basic", now=now).new_subscription_id
    seen = lifecycle.require_subscription(sub_id)
    lifecycle.move_to_grace_period(sub_id, now=now + timedelta(days=31))

    with get_db_session() as s:
        result = lifecycle._apply(s, seen, EXPIRED, now=now, source="test")
    assert result.applied is False
    assert result.reason == "stale_status"
    assert lifecycle.require_subscription(sub_id).status == GRACE_PERIOD


def test_grant_and_extend(now):
    result = lifecycle.grant("u1", "ultra", duration_days=10, granted_by="admin:abc", note="promo", now=now)
    sub = lifecycle.require_subscription(result.new_subscription_id)
    assert sub.expiry_date == now + timedelta(days=10)
    assert sub.price_paid == 0
    assert sub.auto_renew is False
    assert sub.granted_by == "admin:abc"

    lifecycle.extend(sub.id, 5, now=now)
    assert lifecycle.require_subscription(sub.id).expiry_date == now + timedelta(days=15)


def test_extend_lapsed_record_counts_from_now(now):
    sub_id = lifecycle.grant("u1", "basic", duration_days=10, now=now).new_subscription_id
    later = now + timedelta(days=12)
    lifecycle.move_to_grace_period(sub_id, now=later)

    lifecycle.extend(sub_id, 7, now=later)
    sub = lifecycle.require_subscription(sub_id)
    assert sub.status == ACTIVE
    assert sub.expiry_date == later + timedelta(days=7)


def test_grant_and_extend_reject_non_positive_days(now):
    with pytest.raises(ValidationError):
        lifecycle.grant("u1", "basic", duration_days=0, now=now)
    sub_id = lifecycle.grant("u1", "basic", now=now).new_subscription_id
    with pytest.raises(ValidationError):
        lifecycle.extend(sub_id, 0, now=now)


def test_schedule_and_execute_downgrade(now):
    sub_id = lifecycle.grant("u1", "ultra", now=now).new_subscription_id
    with pytest.raises(ValidationError):
        lifecycle.schedule_downgrade(sub_id, require_plan("ultra"), now=now)

    assert lifecycle.schedule_downgrade(sub_id, require_plan("basic"), now=now).applied
    sub = lifecycle.require_subscription(sub_id)
    assert sub.status == ACTIVE
    assert sub.scheduled_change.new_plan_id == "basic"
    assert sub.auto_renew is False

    at_expiry = now + timedelta(days=30)
    result = lifecycle.execute_scheduled_downgrade(sub_id, now=at_expiry)
    assert result.applied
    assert lifecycle.require_subscription(sub_id).status == DOWNGRADED

    new_sub = lifecycle.require_subscription(result.new_subscription_id)
    assert new_sub.plan_id == "basic"
    assert new_sub.status == ACTIVE
    assert new_sub.price_paid == 0
    assert new_sub.previous_subscription_id == sub_id
    assert new_sub.expiry_date == at_expiry + timedelta(days=30)
    assert "process_subscription_end" in _job_types()

    assert lifecycle.execute_scheduled_downgrade(sub_id, now=at_expiry).reason == "duplicate"


def test_apply_upgrade_swaps_records_atomically(now):
    basic = lifecycle.grant("u1", "basic", now=now).new_subscription_id
    result = lifecycle.apply_upgrade(
        "u1",
        require_plan("premium"),
        billing_cycle="monthly",
        previous_subscription_id=basic,
        credit=49,
        amount_paid=150,
        payment_id="pay_up1",
        now=now,
    )
    assert result.applied
    assert lifecycle.require_subscription(basic).status == UPGRADED

    premium = lifecycle.require_subscription(result.new_subscription_id)
    assert premium.status == ACTIVE
    assert premium.upgrade_credit == 49
    assert premium.last_payment_id == "pay_up1"
    assert lifecycle.get_current_subscription("u1").id == premium.id

    replay = lifecycle.apply_upgrade(
        "u1",
        require_plan("premium"),
        billing_cycle="monthly",
        previous_subscription_id=basic,
        credit=49,
        amount_paid=150,
        payment_id="pay_up1",
        now=now,
    )
    assert replay.reason == "duplicate"
