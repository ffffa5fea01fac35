"""Feature and seat gating derived from an organization's subscription."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..billing.models import SubscriptionPlan, Subscription
from ..billing.repository import BillingRepository
from ..billing.timeutils import Clock, current_time
from .exceptions import FeatureGateError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureDecision:
    allowed: bool
    reason: str


def evaluate_feature(
    subscription: Optional[Subscription],
    plan: Optional[SubscriptionPlan],
    feature: str,
    now: datetime,
) -> FeatureDecision:
    """Pure access rule: an entitled status (or live grace period) and an enabled plan flag."""

    if subscription is None:
        return FeatureDecision(False, "no_subscription")
    if not subscription.grants_access(now):
        if subscription.grace_period_end is not None:
            return FeatureDecision(False, "grace_period_expired")
        return FeatureDecision(False, "subscription_inactive")
    if plan is None or not plan.enables(feature):
        return FeatureDecision(False, "feature_not_in_plan")
    return FeatureDecision(True, "granted")


@dataclass
class FeatureAccess:
    repository: BillingRepository
    clock: Optional[Clock] = None

    def check(self, organization_id: str, feature: str) -> FeatureDecision:
        with self.repository.transaction() as uow:
            subscription = uow.find_subscription_by_organization(organization_id)
            plan = uow.get_plan(subscription.plan_id) if subscription else None
        return evaluate_feature(subscription, plan, feature, current_time(self.clock))

    def has_feature(self, organization_id: str, feature: str) -> bool:
        """Never raises; lookup failures deny access."""

        try:
            return self.check(organization_id, feature).allowed
        except Exception:
            logger.exception(
                "Feature check failed for organization %s",
                organization_id,
                extra={"organization_id": organization_id, "feature": feature},
            )
            return False

    def require_feature(self, organization_id: str, feature: str) -> None:
        decision = self.check(organization_id, feature)
        if not decision.allowed:
            raise FeatureGateError(
                decision.reason,
                f"Feature '{feature}' is not available for this organization.",
                detail={"feature": feature, "organization_id": organization_id},
            )

    def require_available_seat(self, organization_id: str, user_id: str) -> None:
        """Deny users who do not hold a seat on an entitled subscription."""

        now = current_time(self.clock)
        with self.repository.transaction() as uow:
            subscription = uow.find_subscription_by_organization(organization_id)
            user = uow.get_user(user_id)
        if subscription is None:
            raise FeatureGateError("no_subscription", "Organization has no subscription.")
        if not subscription.grants_access(now):
            raise FeatureGateError("subscription_inactive", "Subscription is not active.")
        if user is None or not user.holds_seat_in(organization_id):
            raise FeatureGateError(
                "seat_required",
                "No seat is assigned to this user.",
                detail={"user_id": user_id},
            )
