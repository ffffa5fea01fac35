"""Static catalog definitions for plan tiers and billing intervals."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

from .errors import UnknownPlanTier
from .models import BillingInterval, PlanTier, SubscriptionPlan


@dataclass(frozen=True)
class PlanDefinition:
    """Describes a purchasable plan and the features it unlocks."""

    key: str
    tier: PlanTier
    billing_interval: BillingInterval
    display_name: str
    price: int
    features: Mapping[str, bool] = field(default_factory=dict)
    max_seats: Optional[int] = None
    trial_days: int = 0


FREE_FEATURES: Dict[str, bool] = {
    "sentinel_access": True,
    "phantom_access": False,
    "athena_access": False,
    "arcana_access": False,
    "obelisk_access": False,
    "custom_branding": False,
    "priority_support": False,
    "dedicated_account": False,
    "advanced_analytics": False,
    "api_access": False,
    "sso_support": False,
}

PRO_FEATURES: Dict[str, bool] = {
    **FREE_FEATURES,
    "phantom_access": True,
    "athena_access": True,
    "api_access": True,
}

TEAM_FEATURES: Dict[str, bool] = {
    **PRO_FEATURES,
    "arcana_access": True,
    "custom_branding": True,
    "priority_support": True,
    "advanced_analytics": True,
    "sso_support": True,
}

EXECUTIVE_FEATURES: Dict[str, bool] = {feature: True for feature in TEAM_FEATURES}

_TIER_FEATURES: Dict[PlanTier, Dict[str, bool]] = {
    PlanTier.FREE: FREE_FEATURES,
    PlanTier.PRO: PRO_FEATURES,
    PlanTier.TEAM: TEAM_FEATURES,
    PlanTier.EXECUTIVE: EXECUTIVE_FEATURES,
}


def _paid_plan(
    tier: PlanTier,
    interval: BillingInterval,
    display_name: str,
    price: int,
    max_seats: int,
) -> PlanDefinition:
    return PlanDefinition(
        key=f"{tier.value}_{interval.value}",
        tier=tier,
        billing_interval=interval,
        display_name=display_name,
        price=price,
        features=_TIER_FEATURES[tier],
        max_seats=max_seats,
        trial_days=14,
    )


PLAN_CATALOG: Dict[Tuple[PlanTier, BillingInterval], PlanDefinition] = {
    (PlanTier.FREE, BillingInterval.MONTHLY): PlanDefinition(
        key="free",
        tier=PlanTier.FREE,
        billing_interval=BillingInterval.MONTHLY,
        display_name="Free",
        price=0,
        features=FREE_FEATURES,
        max_seats=1,
    ),
    (PlanTier.PRO, BillingInterval.MONTHLY): _paid_plan(PlanTier.PRO, BillingInterval.MONTHLY, "Pro", 1999, 1),
    (PlanTier.PRO, BillingInterval.YEARLY): _paid_plan(PlanTier.PRO, BillingInterval.YEARLY, "Pro", 19999, 1),
    (PlanTier.TEAM, BillingInterval.MONTHLY): _paid_plan(PlanTier.TEAM, BillingInterval.MONTHLY, "Team", 4999, 5),
    (PlanTier.TEAM, BillingInterval.YEARLY): _paid_plan(PlanTier.TEAM, BillingInterval.YEARLY, "Team", 49999, 5),
    (PlanTier.EXECUTIVE, BillingInterval.MONTHLY): _paid_plan(
        PlanTier.EXECUTIVE, BillingInterval.MONTHLY, "Executive", 19999, 20
    ),
    (PlanTier.EXECUTIVE, BillingInterval.YEARLY): _paid_plan(
        PlanTier.EXECUTIVE, BillingInterval.YEARLY, "Executive", 199999, 20
    ),
}


def _coerce_tier(tier: object) -> PlanTier:
    if isinstance(tier, PlanTier):
        return tier
    try:
        return PlanTier(str(tier).strip().lower())
    except ValueError as exc:
        raise UnknownPlanTier(f"Unknown plan tier: {tier}", detail={"tier": str(tier)}) from exc


def _coerce_interval(interval: object) -> BillingInterval:
    if isinstance(interval, BillingInterval):
        return interval
    normalized = str(interval).strip().lower()
    if normalized in {"year", "annual", "annually"}:
        normalized = BillingInterval.YEARLY.value
    elif normalized == "month":
        normalized = BillingInterval.MONTHLY.value
    try:
        return BillingInterval(normalized)
    except ValueError as exc:
        raise UnknownPlanTier(
            f"Unknown billing interval: {interval}", detail={"billing_interval": str(interval)}
        ) from exc


class PlanCatalog:
    """Resolves plan definitions by tier and interval or by processor price id."""

    def __init__(
        self,
        price_ids: Optional[Mapping[str, str]] = None,
        plans: Optional[Mapping[Tuple[PlanTier, BillingInterval], PlanDefinition]] = None,
    ) -> None:
        self._plans = dict(plans or PLAN_CATALOG)
        # price_ids maps plan keys ("team_monthly") to processor price ids.
        self._by_price_id: Dict[str, PlanDefinition] = {}
        by_key = {definition.key: definition for definition in self._plans.values()}
        for key, price_id in (price_ids or {}).items():
            definition = by_key.get(key)
            if definition is not None and price_id:
                self._by_price_id[price_id] = definition

    def resolve(self, tier: object, interval: object = BillingInterval.MONTHLY) -> PlanDefinition:
        key = (_coerce_tier(tier), _coerce_interval(interval))
        try:
            return self._plans[key]
        except KeyError as exc:
            raise UnknownPlanTier(
                f"Plan {key[0].value} is not offered with {key[1].value} billing",
                detail={"tier": key[0].value, "billing_interval": key[1].value},
            ) from exc

    def resolve_price(self, price_id: str) -> PlanDefinition:
        try:
            return self._by_price_id[price_id]
        except KeyError as exc:
            raise UnknownPlanTier(f"No plan configured for price {price_id}", detail={"price_id": price_id}) from exc

    def plan_record(self, definition: PlanDefinition, *, plan_id: str) -> SubscriptionPlan:
        """Build the persisted per-tier plan record for ``definition``."""

        monthly = self._plans.get((definition.tier, BillingInterval.MONTHLY))
        yearly = self._plans.get((definition.tier, BillingInterval.YEARLY))
        return SubscriptionPlan(
            plan_id=plan_id,
            tier=definition.tier,
            name=definition.display_name,
            features=dict(definition.features),
            max_seats=definition.max_seats,
            monthly_price=monthly.price if monthly else 0,
            yearly_price=yearly.price if yearly else None,
            trial_days=definition.trial_days,
        )
