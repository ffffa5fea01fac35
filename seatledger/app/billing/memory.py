"""In-memory billing store suitable for tests and local development."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, Optional, Sequence

from .errors import DuplicateSubscription
from .models import (
    Invoice,
    Organization,
    PlanTier,
    ReconcileOutcome,
    SeatHolder,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    WebhookEventRecord,
)


def _touch(model, **changes):
    changes.setdefault("updated_at", datetime.now(timezone.utc))
    return model.model_copy(update=changes)


class _InMemoryState:
    def __init__(self) -> None:
        self.organizations: Dict[str, Organization] = {}
        self.plans: Dict[str, SubscriptionPlan] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        self.users: Dict[str, SeatHolder] = {}
        self.invoices: Dict[str, Invoice] = {}
        self.webhook_events: Dict[str, WebhookEventRecord] = {}


class InMemoryUnitOfWork:
    """Unit of work over the shared dictionaries; callers hold the store lock."""

    def __init__(self, state: _InMemoryState) -> None:
        self._state = state

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        return self._state.organizations.get(organization_id)

    def find_organization_by_customer(self, customer_id: str) -> Optional[Organization]:
        return next(
            (org for org in self._state.organizations.values() if org.customer_id == customer_id),
            None,
        )

    def save_organization(self, organization: Organization) -> Organization:
        self._state.organizations[organization.organization_id] = organization
        return organization

    def get_plan(self, plan_id: str) -> Optional[SubscriptionPlan]:
        return self._state.plans.get(plan_id)

    def get_plan_by_tier(self, tier: PlanTier) -> Optional[SubscriptionPlan]:
        return next((plan for plan in self._state.plans.values() if plan.tier == tier), None)

    def insert_plan(self, plan: SubscriptionPlan) -> SubscriptionPlan:
        existing = self.get_plan_by_tier(plan.tier)
        if existing is not None:
            return existing
        self._state.plans[plan.plan_id] = plan
        return plan

    def get_subscription(self, subscription_id: str, *, for_update: bool = False) -> Optional[Subscription]:
        return self._state.subscriptions.get(subscription_id)

    def find_subscription_by_external_id(
        self, external_id: str, *, for_update: bool = False
    ) -> Optional[Subscription]:
        return next(
            (sub for sub in self._state.subscriptions.values() if sub.external_id == external_id),
            None,
        )

    def find_subscription_by_organization(
        self, organization_id: str, *, for_update: bool = False
    ) -> Optional[Subscription]:
        return next(
            (sub for sub in self._state.subscriptions.values() if sub.organization_id == organization_id),
            None,
        )

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        if self.find_subscription_by_organization(subscription.organization_id) is not None:
            raise DuplicateSubscription(
                "Organization already has a subscription",
                detail={"organization_id": subscription.organization_id},
            )
        if subscription.external_id and self.find_subscription_by_external_id(subscription.external_id):
            raise DuplicateSubscription(
                "External subscription id already recorded",
                detail={"external_id": subscription.external_id},
            )
        self._state.subscriptions[subscription.subscription_id] = subscription
        return subscription

    def save_subscription(self, subscription: Subscription) -> Subscription:
        current = self._state.subscriptions.get(subscription.subscription_id)
        if current is None:
            raise RuntimeError(f"Subscription {subscription.subscription_id} disappeared during update")
        # Seat usage only moves through the counter operations.
        stored = Subscription.model_validate(
            {**subscription.model_dump(), "used_seats": current.used_seats, "updated_at": datetime.now(timezone.utc)}
        )
        self._state.subscriptions[stored.subscription_id] = stored
        return stored

    def increment_used_seats(self, subscription_id: str) -> Optional[Subscription]:
        current = self._state.subscriptions.get(subscription_id)
        if current is None or current.used_seats >= current.seats:
            return None
        updated = _touch(current, used_seats=current.used_seats + 1)
        self._state.subscriptions[subscription_id] = updated
        return updated

    def decrement_used_seats(self, subscription_id: str) -> Optional[Subscription]:
        current = self._state.subscriptions.get(subscription_id)
        if current is None:
            return None
        updated = _touch(current, used_seats=max(current.used_seats - 1, 0))
        self._state.subscriptions[subscription_id] = updated
        return updated

    def set_seat_capacity(self, subscription_id: str, seats: int) -> Optional[Subscription]:
        current = self._state.subscriptions.get(subscription_id)
        if current is None or current.used_seats > seats:
            return None
        updated = _touch(current, seats=seats)
        self._state.subscriptions[subscription_id] = updated
        return updated

    def list_expired_grace_periods(self, now: datetime, *, limit: int) -> Sequence[Subscription]:
        expired = [
            sub
            for sub in self._state.subscriptions.values()
            if sub.status == SubscriptionStatus.PAST_DUE
            and sub.grace_period_end is not None
            and sub.grace_period_end <= now
        ]
        expired.sort(key=lambda sub: sub.grace_period_end)
        return expired[:limit]

    def get_user(self, user_id: str, *, for_update: bool = False) -> Optional[SeatHolder]:
        return self._state.users.get(user_id)

    def save_user(self, user: SeatHolder) -> SeatHolder:
        if user.user_id not in self._state.users:
            raise RuntimeError(f"User {user.user_id} disappeared during update")
        self._state.users[user.user_id] = user
        return user

    def find_invoice_by_external_id(self, external_id: str, *, for_update: bool = False) -> Optional[Invoice]:
        return next(
            (inv for inv in self._state.invoices.values() if inv.external_id == external_id),
            None,
        )

    def insert_invoice(self, invoice: Invoice) -> Invoice:
        existing = self.find_invoice_by_external_id(invoice.external_id)
        if existing is not None:
            return existing
        self._state.invoices[invoice.invoice_id] = invoice
        return invoice

    def save_invoice(self, invoice: Invoice) -> Invoice:
        stored = _touch(invoice)
        self._state.invoices[invoice.invoice_id] = stored
        return stored

    def list_invoices(self, subscription_id: str, *, limit: int = 20) -> Sequence[Invoice]:
        matching = [inv for inv in self._state.invoices.values() if inv.subscription_id == subscription_id]
        matching.sort(key=lambda inv: inv.created_at, reverse=True)
        return matching[:limit]

    def get_webhook_event(self, event_id: str) -> Optional[WebhookEventRecord]:
        return self._state.webhook_events.get(event_id)

    def record_webhook_event(self, record: WebhookEventRecord) -> WebhookEventRecord:
        existing = self._state.webhook_events.get(record.event_id)
        if existing is not None:
            record = existing.model_copy(
                update={
                    "outcome": record.outcome,
                    "detail": record.detail,
                    "attempts": existing.attempts + 1,
                    "processed_at": record.processed_at,
                }
            )
        self._state.webhook_events[record.event_id] = record
        return record

    def list_webhook_events(
        self,
        outcomes: Iterable[ReconcileOutcome],
        *,
        max_attempts: int,
        limit: int,
    ) -> Sequence[WebhookEventRecord]:
        wanted = set(outcomes)
        matching = [
            record
            for record in self._state.webhook_events.values()
            if record.outcome in wanted and record.attempts < max_attempts
        ]
        matching.sort(key=lambda record: record.received_at)
        return matching[:limit]


class InMemoryBillingRepository:
    """Serializes transactions with a lock and restores state when one fails."""

    def __init__(self) -> None:
        self._state = _InMemoryState()
        self._lock = threading.RLock()

    def open(self) -> None:
        return None

    def close(self) -> None:
        return None

    @contextmanager
    def transaction(self) -> Iterator[InMemoryUnitOfWork]:
        with self._lock:
            snapshot = {name: dict(table) for name, table in vars(self._state).items()}
            try:
                yield InMemoryUnitOfWork(self._state)
            except Exception:
                self._state.__dict__.update(snapshot)
                raise

    # Seeding helpers ---------------------------------------------------

    def add_organization(self, organization: Organization) -> Organization:
        with self.transaction() as uow:
            return uow.save_organization(organization)

    def add_user(self, user: SeatHolder) -> SeatHolder:
        with self._lock:
            self._state.users[user.user_id] = user
            return user

    def add_subscription(self, subscription: Subscription) -> Subscription:
        with self._lock:
            self._state.subscriptions[subscription.subscription_id] = subscription
            return subscription

    def add_plan(self, plan: SubscriptionPlan) -> SubscriptionPlan:
        with self._lock:
            self._state.plans[plan.plan_id] = plan
            return plan

    # Read helpers ------------------------------------------------------

    @property
    def subscriptions(self) -> Dict[str, Subscription]:
        return dict(self._state.subscriptions)

    @property
    def invoices(self) -> Dict[str, Invoice]:
        return dict(self._state.invoices)

    @property
    def users(self) -> Dict[str, SeatHolder]:
        return dict(self._state.users)

    @property
    def webhook_events(self) -> Dict[str, WebhookEventRecord]:
        return dict(self._state.webhook_events)
