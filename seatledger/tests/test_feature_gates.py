from __future__ import annotations

from datetime import datetime, timezone

import pytest

from seatledger.app.billing import PlanTier, SubscriptionStatus
from seatledger.app.feature_gates import FeatureGateError


def _subscribe(components, tier=PlanTier.TEAM, status=SubscriptionStatus.ACTIVE):
    return components.reconciler.create(
        "org-1",
        components.catalog.resolve(tier),
        "sub_ext_1",
        status=status,
        period_start=datetime(2024, 12, 1, tzinfo=timezone.utc),
        period_end=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )


def test_organization_without_subscription_is_denied(components) -> None:
    decision = components.features.check("org-1", "athena_access")

    assert decision.allowed is False
    assert decision.reason == "no_subscription"


def test_plan_flag_decides_feature(components) -> None:
    _subscribe(components, tier=PlanTier.PRO)

    assert components.features.check("org-1", "athena_access").allowed is True
    denied = components.features.check("org-1", "sso_support")
    assert denied.allowed is False
    assert denied.reason == "feature_not_in_plan"
    assert components.features.check("org-1", "made_up_feature").allowed is False


def test_trialing_subscription_is_entitled(components) -> None:
    _subscribe(components, status=SubscriptionStatus.TRIALING)

    assert components.features.has_feature("org-1", "arcana_access") is True


def test_expired_grace_reports_reason(components) -> None:
    subscription = _subscribe(components)
    components.reconciler.apply_external_status(subscription.subscription_id, SubscriptionStatus.PAST_DUE)
    components.clock.set(datetime(2025, 1, 8, tzinfo=timezone.utc))

    decision = components.features.check("org-1", "athena_access")

    assert decision.allowed is False
    assert decision.reason == "grace_period_expired"


@pytest.mark.parametrize("status", [SubscriptionStatus.UNPAID, SubscriptionStatus.INCOMPLETE])
def test_inactive_statuses_are_denied(components, status) -> None:
    _subscribe(components, status=status)

    assert components.features.check("org-1", "athena_access").reason == "subscription_inactive"


def test_deleted_subscription_loses_access(components) -> None:
    subscription = _subscribe(components)
    components.reconciler.cancel(subscription.subscription_id, immediate=True)

    assert components.features.has_feature("org-1", "sentinel_access") is False


def test_require_feature_raises_forbidden(components) -> None:
    _subscribe(components, tier=PlanTier.PRO)

    components.features.require_feature("org-1", "api_access")
    with pytest.raises(FeatureGateError) as excinfo:
        components.features.require_feature("org-1", "sso_support")

    error = excinfo.value
    assert error.code == "feature_not_in_plan"
    http_error = error.to_http_exception()
    assert http_error.status_code == 403
    assert http_error.detail["feature"] == "sso_support"


def test_has_feature_denies_when_lookup_fails(components, monkeypatch) -> None:
    _subscribe(components)

    def unavailable():
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(components.repository, "transaction", unavailable)

    assert components.features.has_feature("org-1", "athena_access") is False


def test_require_available_seat(components) -> None:
    subscription = _subscribe(components)
    components.seats.assign(subscription.subscription_id, "user-1")

    components.features.require_available_seat("org-1", "user-1")
    with pytest.raises(FeatureGateError) as excinfo:
        components.features.require_available_seat("org-1", "user-2")

    assert excinfo.value.code == "seat_required"
    assert excinfo.value.detail == {"user_id": "user-2"}


def test_require_available_seat_without_subscription(components) -> None:
    with pytest.raises(FeatureGateError) as excinfo:
        components.features.require_available_seat("org-2", "user-1")

    assert excinfo.value.code == "no_subscription"
