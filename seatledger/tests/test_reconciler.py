"""Subscription state machine and reconciler operations."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from seatledger.app.billing import (
    BillingInterval,
    DuplicateSubscription,
    InvalidTransition,
    PlanTier,
    ReconcileOutcome,
    SeatBelowUsage,
    SeatCeilingExceeded,
    SubscriptionNotFound,
    SubscriptionStatus,
    can_transition,
)

S = SubscriptionStatus
PERIOD_START = datetime(2024, 12, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _active_team(components, organization_id: str = "org-1", external_id: str = "sub_ext_1"):
    return components.reconciler.create(
        organization_id,
        components.catalog.resolve(PlanTier.TEAM),
        external_id,
        status=S.ACTIVE,
        period_start=PERIOD_START,
        period_end=PERIOD_END,
    )


def test_create_paid_plan_starts_trialing_with_plan_seats(components) -> None:
    subscription = components.reconciler.create("org-1", components.catalog.resolve("team", "monthly"), "sub_ext_1")

    assert subscription.status == S.TRIALING
    assert subscription.seats == 5
    assert subscription.used_seats == 0
    assert subscription.plan_id == "plan_team"
    assert subscription.current_period_start == components.clock.now
    assert subscription.current_period_end == datetime(2025, 1, 1, tzinfo=timezone.utc)
    assert subscription.grace_period_end is None


def test_create_free_plan_is_active_immediately(components) -> None:
    subscription = components.reconciler.create("org-1", components.catalog.resolve(PlanTier.FREE))

    assert subscription.status == S.ACTIVE
    assert subscription.seats == 1
    assert subscription.external_id is None


def test_create_yearly_plan_spans_twelve_months(components) -> None:
    subscription = components.reconciler.create("org-1", components.catalog.resolve("team", "annual"))

    assert subscription.billing_interval == BillingInterval.YEARLY
    assert subscription.current_period_end == datetime(2025, 12, 1, tzinfo=timezone.utc)


def test_second_subscription_for_organization_is_rejected(components) -> None:
    _active_team(components)

    with pytest.raises(DuplicateSubscription):
        components.reconciler.create("org-1", components.catalog.resolve(PlanTier.PRO), "sub_ext_2")

    assert len(components.repository.subscriptions) == 1


def test_create_rejects_seats_above_plan_ceiling(components) -> None:
    with pytest.raises(SeatCeilingExceeded):
        components.reconciler.create("org-1", components.catalog.resolve(PlanTier.TEAM), seats=6)


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        (S.INCOMPLETE, S.ACTIVE, True),
        (S.INCOMPLETE, S.DELETED, False),
        (S.TRIALING, S.PAST_DUE, True),
        (S.ACTIVE, S.TRIALING, False),
        (S.PAST_DUE, S.UNPAID, True),
        (S.UNPAID, S.PAST_DUE, False),
        (S.DELETED, S.ACTIVE, False),
        (S.INCOMPLETE_EXPIRED, S.ACTIVE, False),
    ],
)
def test_transition_table(current, target, allowed) -> None:
    assert can_transition(current, target) is allowed


def test_apply_status_is_idempotent(components) -> None:
    subscription = components.reconciler.create("org-1", components.catalog.resolve(PlanTier.TEAM), "sub_ext_1")

    first = components.reconciler.apply_external_status(subscription.subscription_id, S.ACTIVE)
    second = components.reconciler.apply_external_status(subscription.subscription_id, S.ACTIVE)

    assert first.outcome == ReconcileOutcome.APPLIED
    assert first.subscription.status == S.ACTIVE
    assert second.outcome == ReconcileOutcome.NOOP
    assert second.subscription == first.subscription


def test_entering_past_due_sets_grace_from_period_end(components) -> None:
    subscription = _active_team(components)

    result = components.reconciler.apply_external_status(subscription.subscription_id, S.PAST_DUE)

    assert result.outcome == ReconcileOutcome.APPLIED
    assert result.subscription.grace_period_end == PERIOD_END + timedelta(days=7)


def test_repeated_past_due_keeps_original_grace_deadline(components) -> None:
    subscription = _active_team(components)
    components.reconciler.apply_external_status(subscription.subscription_id, S.PAST_DUE)

    components.clock.advance(days=3)
    again = components.reconciler.apply_external_status(subscription.subscription_id, S.PAST_DUE)

    assert again.outcome == ReconcileOutcome.NOOP
    assert again.subscription.grace_period_end == PERIOD_END + timedelta(days=7)


def test_leaving_past_due_clears_grace(components) -> None:
    subscription = _active_team(components)
    components.reconciler.apply_external_status(subscription.subscription_id, S.PAST_DUE)

    result = components.reconciler.apply_external_status(subscription.subscription_id, S.ACTIVE)

    assert result.subscription.status == S.ACTIVE
    assert result.subscription.grace_period_end is None


def test_stale_period_is_not_applied(components) -> None:
    subscription = _active_team(components)

    result = components.reconciler.apply_external_status(
        subscription.subscription_id,
        S.PAST_DUE,
        period_start=PERIOD_START - timedelta(days=31),
        period_end=PERIOD_START,
    )

    assert result.outcome == ReconcileOutcome.STALE
    stored = components.subscription_for("org-1")
    assert stored.status == S.ACTIVE
    assert stored.current_period_end == PERIOD_END


def test_locally_computed_window_is_replaced_by_first_processor_window(components) -> None:
    components.clock.advance(minutes=1)
    subscription = components.reconciler.create("org-1", components.catalog.resolve(PlanTier.TEAM), "sub_ext_1")

    first = components.reconciler.apply_external_status(
        subscription.subscription_id, S.ACTIVE, period_start=PERIOD_START, period_end=PERIOD_END
    )
    second = components.reconciler.apply_external_status(
        subscription.subscription_id,
        S.PAST_DUE,
        period_start=PERIOD_START - timedelta(days=30),
        period_end=PERIOD_START,
    )

    assert subscription.period_confirmed is False
    assert subscription.current_period_end == PERIOD_END + timedelta(minutes=1)
    assert first.outcome == ReconcileOutcome.APPLIED
    assert first.subscription.current_period_end == PERIOD_END
    assert first.subscription.period_confirmed is True
    assert second.outcome == ReconcileOutcome.STALE


def test_newer_period_advances_window(components) -> None:
    subscription = _active_team(components)
    next_end = datetime(2025, 2, 1, tzinfo=timezone.utc)

    result = components.reconciler.apply_external_status(
        subscription.subscription_id,
        S.ACTIVE,
        period_start=PERIOD_END,
        period_end=next_end,
    )

    assert result.outcome == ReconcileOutcome.APPLIED
    assert result.subscription.current_period_start == PERIOD_END
    assert result.subscription.current_period_end == next_end


def test_disallowed_transition_is_rejected_without_change(components) -> None:
    subscription = _active_team(components)

    result = components.reconciler.apply_external_status(subscription.subscription_id, S.TRIALING)

    assert result.outcome == ReconcileOutcome.REJECTED
    assert components.subscription_for("org-1").status == S.ACTIVE


def test_deleted_is_terminal(components) -> None:
    subscription = _active_team(components)

    deleted = components.reconciler.apply_external_status(subscription.subscription_id, S.DELETED)
    revived = components.reconciler.apply_external_status(
        subscription.subscription_id,
        S.ACTIVE,
        period_end=PERIOD_END,
    )

    assert deleted.outcome == ReconcileOutcome.APPLIED
    assert deleted.subscription.canceled_at == components.clock.now
    assert revived.outcome == ReconcileOutcome.REJECTED
    assert components.subscription_for("org-1").status == S.DELETED


def test_incomplete_subscription_cannot_be_deleted(components) -> None:
    subscription = components.reconciler.create(
        "org-1",
        components.catalog.resolve(PlanTier.TEAM),
        "sub_ext_1",
        status=S.INCOMPLETE,
    )

    result = components.reconciler.apply_external_status(subscription.subscription_id, S.DELETED)

    assert result.outcome == ReconcileOutcome.REJECTED
    with pytest.raises(InvalidTransition):
        components.reconciler.cancel(subscription.subscription_id, immediate=True)


def test_unknown_subscription_raises(components) -> None:
    with pytest.raises(SubscriptionNotFound):
        components.reconciler.apply_external_status("sub_missing", S.ACTIVE)


def test_cancel_at_period_end_keeps_status(components) -> None:
    subscription = _active_team(components)

    canceled = components.reconciler.cancel(subscription.subscription_id, immediate=False)
    components.clock.advance(hours=1)
    repeated = components.reconciler.cancel(subscription.subscription_id, immediate=False)

    assert canceled.status == S.ACTIVE
    assert canceled.cancel_at_period_end is True
    assert canceled.canceled_at == datetime(2024, 12, 1, tzinfo=timezone.utc)
    assert repeated.canceled_at == canceled.canceled_at


def test_immediate_cancel_deletes_subscription(components) -> None:
    subscription = _active_team(components)
    components.reconciler.apply_external_status(subscription.subscription_id, S.PAST_DUE)

    canceled = components.reconciler.cancel(subscription.subscription_id, immediate=True)

    assert canceled.status == S.DELETED
    assert canceled.grace_period_end is None
    assert components.reconciler.cancel(subscription.subscription_id, immediate=True) == canceled


def test_change_plan_adopts_new_seat_ceiling(components) -> None:
    subscription = _active_team(components)

    upgraded = components.reconciler.change_plan(subscription.subscription_id, PlanTier.EXECUTIVE)

    assert upgraded.plan_id == "plan_executive"
    assert upgraded.seats == 20
    assert upgraded.current_period_end == PERIOD_END


def test_change_plan_below_usage_is_rejected(components) -> None:
    subscription = _active_team(components)
    components.seats.assign(subscription.subscription_id, "user-1")
    components.seats.assign(subscription.subscription_id, "user-2")

    with pytest.raises(SeatBelowUsage):
        components.reconciler.change_plan(subscription.subscription_id, PlanTier.PRO)

    stored = components.subscription_for("org-1")
    assert stored.plan_id == "plan_team"
    assert stored.used_seats == 2


def test_expire_grace_period_moves_to_unpaid_after_deadline(components) -> None:
    subscription = _active_team(components)
    components.reconciler.apply_external_status(subscription.subscription_id, S.PAST_DUE)

    early = components.reconciler.expire_grace_period(
        subscription.subscription_id, datetime(2025, 1, 7, tzinfo=timezone.utc)
    )
    expired = components.reconciler.expire_grace_period(
        subscription.subscription_id, datetime(2025, 1, 8, tzinfo=timezone.utc)
    )

    assert early.outcome == ReconcileOutcome.NOOP
    assert expired.outcome == ReconcileOutcome.APPLIED
    assert expired.subscription.status == S.UNPAID
    assert expired.subscription.grace_period_end is None
