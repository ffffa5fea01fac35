"""Seat assignment and capacity management for organization subscriptions."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from .errors import (
    InvalidSeatCount,
    SeatAssignmentConflict,
    SeatBelowUsage,
    SeatCeilingExceeded,
    SeatLimitExceeded,
    SubscriptionNotFound,
    UserNotFound,
)
from .models import Subscription
from .repository import BillingRepository, BillingUnitOfWork
from .timeutils import Clock, current_time

logger = logging.getLogger(__name__)

SEAT_CAPABILITY = "billing:seats"


class PermissionChecker(Protocol):
    """Role-based access control lookup owned by the identity service."""

    def has_capability(self, actor_id: str, organization_id: str, capability: str) -> bool:
        ...


def authorize(
    permissions: Optional[PermissionChecker],
    actor_id: Optional[str],
    organization_id: str,
    capability: str,
) -> None:
    """Raise :class:`PermissionError` unless ``actor_id`` holds ``capability``.

    Calls without an actor are internal (webhooks, sweeps) and skip the check.
    """

    if actor_id is None or permissions is None:
        return
    if not permissions.has_capability(actor_id, organization_id, capability):
        logger.warning(
            "Actor %s lacks %s for organization %s",
            actor_id,
            capability,
            organization_id,
            extra={"organization_id": organization_id},
        )
        raise PermissionError(f"Missing capability {capability}")


def _load_subscription(uow: BillingUnitOfWork, subscription_id: str) -> Subscription:
    subscription = uow.get_subscription(subscription_id, for_update=True)
    if subscription is None:
        raise SubscriptionNotFound(
            f"Subscription {subscription_id} not found",
            detail={"subscription_id": subscription_id},
        )
    return subscription


@dataclass
class SeatAllocator:
    """Assigns users to seats while keeping ``used_seats`` within capacity."""

    repository: BillingRepository
    permissions: Optional[PermissionChecker] = None
    clock: Optional[Clock] = None

    def _now(self) -> datetime:
        return current_time(self.clock)

    def assign(self, subscription_id: str, user_id: str, *, actor_id: Optional[str] = None) -> Subscription:
        with self.repository.transaction() as uow:
            subscription = _load_subscription(uow, subscription_id)
            authorize(self.permissions, actor_id, subscription.organization_id, SEAT_CAPABILITY)
            user = uow.get_user(user_id, for_update=True)
            if user is None:
                raise UserNotFound(f"User {user_id} not found", detail={"user_id": user_id})
            if user.holds_seat_in(subscription.organization_id):
                return subscription
            if user.seat_assigned_at is not None:
                raise SeatAssignmentConflict(
                    "User already holds a seat in another organization",
                    detail={"user_id": user_id, "organization_id": user.organization_id},
                )
            updated = uow.increment_used_seats(subscription_id)
            if updated is None:
                raise SeatLimitExceeded(
                    "No seats available on this subscription",
                    detail={"seats": subscription.seats, "used_seats": subscription.used_seats},
                )
            uow.save_user(
                user.model_copy(
                    update={"organization_id": subscription.organization_id, "seat_assigned_at": self._now()}
                )
            )
        logger.info(
            "Assigned seat on %s to user %s (%s/%s)",
            subscription_id,
            user_id,
            updated.used_seats,
            updated.seats,
            extra={"subscription_id": subscription_id, "organization_id": updated.organization_id},
        )
        return updated

    def unassign(self, subscription_id: str, user_id: str, *, actor_id: Optional[str] = None) -> Subscription:
        with self.repository.transaction() as uow:
            subscription = _load_subscription(uow, subscription_id)
            authorize(self.permissions, actor_id, subscription.organization_id, SEAT_CAPABILITY)
            user = uow.get_user(user_id, for_update=True)
            if user is None:
                raise UserNotFound(f"User {user_id} not found", detail={"user_id": user_id})
            if not user.holds_seat_in(subscription.organization_id):
                return subscription
            uow.save_user(user.model_copy(update={"seat_assigned_at": None}))
            updated = uow.decrement_used_seats(subscription_id) or subscription
        logger.info(
            "Released seat on %s from user %s (%s/%s)",
            subscription_id,
            user_id,
            updated.used_seats,
            updated.seats,
            extra={"subscription_id": subscription_id, "organization_id": updated.organization_id},
        )
        return updated

    def resize(self, subscription_id: str, delta: int, *, actor_id: Optional[str] = None) -> Subscription:
        """Grow or shrink seat capacity by ``delta``."""

        with self.repository.transaction() as uow:
            subscription = _load_subscription(uow, subscription_id)
            authorize(self.permissions, actor_id, subscription.organization_id, SEAT_CAPABILITY)
            if delta == 0:
                return subscription
            target = subscription.seats + delta
            if delta > 0:
                plan = uow.get_plan(subscription.plan_id)
                ceiling = plan.max_seats if plan else None
                if ceiling is not None and target > ceiling:
                    raise SeatCeilingExceeded(
                        f"Plan allows at most {ceiling} seats",
                        detail={"requested": target, "max_seats": ceiling},
                    )
            else:
                if target < subscription.used_seats:
                    raise SeatBelowUsage(
                        f"Cannot reduce to {target} seats while {subscription.used_seats} are assigned",
                        detail={"seats": target, "used_seats": subscription.used_seats},
                    )
                if target < 1:
                    raise InvalidSeatCount("A subscription needs at least one seat", detail={"seats": target})
            updated = uow.set_seat_capacity(subscription_id, target)
            if updated is None:
                raise SeatBelowUsage(
                    f"Cannot reduce to {target} seats below current usage",
                    detail={"seats": target},
                )
        logger.info(
            "Resized subscription %s from %s to %s seats",
            subscription_id,
            subscription.seats,
            updated.seats,
            extra={"subscription_id": subscription_id, "organization_id": updated.organization_id},
        )
        return updated

    def add_seats(self, subscription_id: str, count: int = 1, *, actor_id: Optional[str] = None) -> Subscription:
        if count < 1:
            raise InvalidSeatCount("Seat count must be positive", detail={"count": count})
        return self.resize(subscription_id, count, actor_id=actor_id)

    def remove_seats(self, subscription_id: str, count: int = 1, *, actor_id: Optional[str] = None) -> Subscription:
        if count < 1:
            raise InvalidSeatCount("Seat count must be positive", detail={"count": count})
        return self.resize(subscription_id, -count, actor_id=actor_id)
