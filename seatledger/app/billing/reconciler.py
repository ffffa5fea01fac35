"""Subscription lifecycle state machine."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, Optional
from uuid import uuid4

from .catalog import PlanCatalog, PlanDefinition
from .errors import DuplicateSubscription, InvalidTransition, SeatBelowUsage, SeatCeilingExceeded, SubscriptionNotFound
from .grace import grace_period_end
from .models import (
    BillingInterval,
    PlanTier,
    ReconcileOutcome,
    ReconcileResult,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
)
from .repository import BillingRepository, BillingUnitOfWork
from .timeutils import Clock, as_utc, current_time, period_end_for

logger = logging.getLogger(__name__)

S = SubscriptionStatus

ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    S.INCOMPLETE: frozenset({S.TRIALING, S.ACTIVE, S.INCOMPLETE_EXPIRED}),
    S.TRIALING: frozenset({S.ACTIVE, S.PAST_DUE, S.DELETED}),
    S.ACTIVE: frozenset({S.PAST_DUE, S.DELETED}),
    S.PAST_DUE: frozenset({S.ACTIVE, S.UNPAID, S.DELETED}),
    S.UNPAID: frozenset({S.ACTIVE, S.DELETED}),
    S.INCOMPLETE_EXPIRED: frozenset(),
    S.DELETED: frozenset(),
}


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def ensure_plan(uow: BillingUnitOfWork, catalog: PlanCatalog, definition: PlanDefinition) -> SubscriptionPlan:
    """Return the stored plan for the definition's tier, creating it on first use."""

    existing = uow.get_plan_by_tier(definition.tier)
    if existing is not None:
        return existing
    return uow.insert_plan(catalog.plan_record(definition, plan_id=f"plan_{definition.tier.value}"))


@dataclass
class SubscriptionReconciler:
    """Validates and applies subscription status changes."""

    repository: BillingRepository
    catalog: PlanCatalog
    grace_period_days: int = 7
    clock: Optional[Clock] = None

    def _now(self) -> datetime:
        return current_time(self.clock)

    def create(
        self,
        organization_id: str,
        plan: PlanDefinition,
        external_id: Optional[str] = None,
        *,
        seats: Optional[int] = None,
        status: Optional[SubscriptionStatus] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> Subscription:
        """Create the organization's subscription on ``plan``.

        Raises :class:`DuplicateSubscription` when the organization already
        has one; concurrent creators are serialized by the store's unique
        constraints and the loser receives the same error.
        """

        now = self._now()
        capacity = seats if seats is not None else (plan.max_seats or 1)
        if capacity < 1:
            capacity = 1
        if plan.max_seats is not None and capacity > plan.max_seats:
            raise SeatCeilingExceeded(
                f"Plan {plan.tier.value} allows at most {plan.max_seats} seats",
                detail={"requested": capacity, "max_seats": plan.max_seats},
            )
        start = as_utc(period_start) if period_start else now
        end = as_utc(period_end) if period_end else period_end_for(start, plan.billing_interval)
        initial = status or (S.TRIALING if plan.trial_days > 0 else S.ACTIVE)

        with self.repository.transaction() as uow:
            if uow.find_subscription_by_organization(organization_id) is not None:
                raise DuplicateSubscription(
                    "Organization already has a subscription",
                    detail={"organization_id": organization_id},
                )
            stored_plan = ensure_plan(uow, self.catalog, plan)
            subscription = Subscription(
                subscription_id=f"sub_{uuid4().hex}",
                organization_id=organization_id,
                plan_id=stored_plan.plan_id,
                billing_interval=plan.billing_interval,
                status=initial,
                current_period_start=start,
                current_period_end=end,
                period_confirmed=period_end is not None,
                external_id=external_id,
                seats=capacity,
                used_seats=0,
                grace_period_end=grace_period_end(end, self.grace_period_days) if initial == S.PAST_DUE else None,
                billing_cycle_anchor=now,
                created_at=now,
                updated_at=now,
            )
            created = uow.insert_subscription(subscription)
        logger.info(
            "Created subscription %s for organization %s on %s",
            created.subscription_id,
            organization_id,
            plan.key,
            extra={"subscription_id": created.subscription_id, "organization_id": organization_id},
        )
        return created

    def apply_external_status(
        self,
        subscription_id: str,
        new_status: SubscriptionStatus,
        *,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        cancel_at_period_end: Optional[bool] = None,
        canceled_at: Optional[datetime] = None,
    ) -> ReconcileResult:
        """Merge a processor-reported status and billing window into the stored subscription."""

        with self.repository.transaction() as uow:
            current = uow.get_subscription(subscription_id, for_update=True)
            if current is None:
                raise SubscriptionNotFound(
                    f"Subscription {subscription_id} not found",
                    detail={"subscription_id": subscription_id},
                )
            if current.status == S.DELETED:
                logger.info(
                    "Ignoring %s for deleted subscription %s",
                    new_status.value,
                    subscription_id,
                    extra={"subscription_id": subscription_id},
                )
                return ReconcileResult(
                    outcome=ReconcileOutcome.REJECTED,
                    subscription=current,
                    detail="subscription is deleted",
                )

            # A locally computed window is replaced by the first processor window.
            if new_status != S.DELETED and period_end is not None and current.period_confirmed:
                if as_utc(period_end) < current.current_period_end:
                    logger.info(
                        "Skipping stale %s for subscription %s (event period end %s < stored %s)",
                        new_status.value,
                        subscription_id,
                        period_end.isoformat(),
                        current.current_period_end.isoformat(),
                        extra={"subscription_id": subscription_id},
                    )
                    return ReconcileResult(
                        outcome=ReconcileOutcome.STALE,
                        subscription=current,
                        detail="event period precedes stored period",
                    )

            if new_status != current.status and not can_transition(current.status, new_status):
                logger.warning(
                    "Rejected transition %s -> %s for subscription %s",
                    current.status.value,
                    new_status.value,
                    subscription_id,
                    extra={"subscription_id": subscription_id},
                )
                return ReconcileResult(
                    outcome=ReconcileOutcome.REJECTED,
                    subscription=current,
                    detail=f"transition {current.status.value} -> {new_status.value} not allowed",
                )

            updated = self._merge(
                current,
                new_status,
                period_start=period_start,
                period_end=period_end,
                cancel_at_period_end=cancel_at_period_end,
                canceled_at=canceled_at,
            )
            if updated == current:
                return ReconcileResult(outcome=ReconcileOutcome.NOOP, subscription=current)
            stored = uow.save_subscription(updated)

        if stored.status != current.status:
            logger.info(
                "Subscription %s moved %s -> %s",
                subscription_id,
                current.status.value,
                stored.status.value,
                extra={"subscription_id": subscription_id, "organization_id": stored.organization_id},
            )
        return ReconcileResult(outcome=ReconcileOutcome.APPLIED, subscription=stored)

    def _merge(
        self,
        current: Subscription,
        new_status: SubscriptionStatus,
        *,
        period_start: Optional[datetime],
        period_end: Optional[datetime],
        cancel_at_period_end: Optional[bool],
        canceled_at: Optional[datetime],
    ) -> Subscription:
        changes: Dict[str, object] = {"status": new_status}
        if new_status != S.DELETED:
            if period_start is not None:
                changes["current_period_start"] = as_utc(period_start)
            if period_end is not None:
                changes["current_period_end"] = as_utc(period_end)
                changes["period_confirmed"] = True

        if cancel_at_period_end is True:
            changes["cancel_at_period_end"] = True
            changes["canceled_at"] = as_utc(canceled_at) if canceled_at else (current.canceled_at or self._now())
        elif cancel_at_period_end is False:
            changes["cancel_at_period_end"] = False
            changes["canceled_at"] = None

        if new_status == S.DELETED:
            changes["cancel_at_period_end"] = False
            changes["canceled_at"] = (
                as_utc(canceled_at) if canceled_at else (current.canceled_at or self._now())
            )

        if new_status == S.PAST_DUE:
            if current.status != S.PAST_DUE:
                window_end = changes.get("current_period_end", current.current_period_end)
                changes["grace_period_end"] = grace_period_end(window_end, self.grace_period_days)
        else:
            changes["grace_period_end"] = None

        return current.model_copy(update=changes)

    def cancel(self, subscription_id: str, *, immediate: bool) -> Subscription:
        """Cancel now (deleted) or at the end of the current period."""

        now = self._now()
        with self.repository.transaction() as uow:
            current = uow.get_subscription(subscription_id, for_update=True)
            if current is None:
                raise SubscriptionNotFound(
                    f"Subscription {subscription_id} not found",
                    detail={"subscription_id": subscription_id},
                )
            if current.status == S.DELETED:
                return current
            if immediate:
                if not can_transition(current.status, S.DELETED):
                    raise InvalidTransition(
                        f"Cannot cancel a subscription in status {current.status.value}",
                        detail={"status": current.status.value},
                    )
                updated = current.model_copy(
                    update={
                        "status": S.DELETED,
                        "canceled_at": now,
                        "cancel_at_period_end": False,
                        "grace_period_end": None,
                    }
                )
            else:
                if current.cancel_at_period_end:
                    return current
                updated = current.model_copy(update={"cancel_at_period_end": True, "canceled_at": now})
            stored = uow.save_subscription(updated)
        logger.info(
            "Canceled subscription %s (immediate=%s)",
            subscription_id,
            immediate,
            extra={"subscription_id": subscription_id, "organization_id": stored.organization_id},
        )
        return stored

    def change_plan(
        self,
        subscription_id: str,
        tier: PlanTier,
        interval: BillingInterval = BillingInterval.MONTHLY,
    ) -> Subscription:
        """Move the subscription to another plan without touching its billing period."""

        definition = self.catalog.resolve(tier, interval)
        with self.repository.transaction() as uow:
            current = uow.get_subscription(subscription_id, for_update=True)
            if current is None:
                raise SubscriptionNotFound(
                    f"Subscription {subscription_id} not found",
                    detail={"subscription_id": subscription_id},
                )
            if current.status == S.DELETED:
                raise InvalidTransition(
                    "Cannot change the plan of a deleted subscription",
                    detail={"subscription_id": subscription_id},
                )
            plan = ensure_plan(uow, self.catalog, definition)
            seats = plan.max_seats if plan.max_seats is not None else current.seats
            if seats < current.used_seats:
                raise SeatBelowUsage(
                    f"Plan {plan.tier.value} allows {seats} seats but {current.used_seats} are assigned",
                    detail={"seats": seats, "used_seats": current.used_seats},
                )
            if (
                plan.plan_id == current.plan_id
                and definition.billing_interval == current.billing_interval
                and seats == current.seats
            ):
                return current
            updated = current.model_copy(
                update={
                    "plan_id": plan.plan_id,
                    "billing_interval": definition.billing_interval,
                    "seats": seats,
                }
            )
            stored = uow.save_subscription(updated)
        logger.info(
            "Subscription %s changed to plan %s",
            subscription_id,
            definition.key,
            extra={"subscription_id": subscription_id, "organization_id": stored.organization_id},
        )
        return stored

    def expire_grace_period(self, subscription_id: str, now: Optional[datetime] = None) -> ReconcileResult:
        """Move a past-due subscription whose grace deadline has elapsed to unpaid."""

        moment = as_utc(now) if now else self._now()
        with self.repository.transaction() as uow:
            current = uow.get_subscription(subscription_id, for_update=True)
            if current is None:
                raise SubscriptionNotFound(
                    f"Subscription {subscription_id} not found",
                    detail={"subscription_id": subscription_id},
                )
            if current.status != S.PAST_DUE or current.grace_period_end is None or current.grace_period_end > moment:
                return ReconcileResult(outcome=ReconcileOutcome.NOOP, subscription=current)
            stored = uow.save_subscription(current.model_copy(update={"status": S.UNPAID, "grace_period_end": None}))
        logger.info(
            "Grace period expired for subscription %s",
            subscription_id,
            extra={"subscription_id": subscription_id, "organization_id": stored.organization_id},
        )
        return ReconcileResult(outcome=ReconcileOutcome.APPLIED, subscription=stored)
