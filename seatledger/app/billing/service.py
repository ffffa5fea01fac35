"""Internal management operations over an organization's subscription."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Sequence

from ..notifications import Notifier, subscription_canceled_message
from .catalog import PlanCatalog
from .errors import SubscriptionNotFound
from .ledger import InvoiceLedger
from .models import BillingInterval, Invoice, PlanTier, Subscription, SubscriptionPlan
from .reconciler import SubscriptionReconciler
from .repository import BillingRepository
from .seats import PermissionChecker, SeatAllocator, authorize

if TYPE_CHECKING:  # pragma: no cover
    from ..feature_gates import FeatureAccess

logger = logging.getLogger(__name__)

MANAGE_CAPABILITY = "billing:manage"
READ_CAPABILITY = "billing:read"


@dataclass
class BillingService:
    """Organization-keyed facade used by the internal API."""

    repository: BillingRepository
    reconciler: SubscriptionReconciler
    seats: SeatAllocator
    ledger: InvoiceLedger
    features: FeatureAccess
    catalog: PlanCatalog
    permissions: Optional[PermissionChecker] = None
    notifier: Optional[Notifier] = None
    app_base_url: str = "http://localhost:5173"

    def _subscription_for(self, organization_id: str) -> Subscription:
        with self.repository.transaction() as uow:
            subscription = uow.find_subscription_by_organization(organization_id)
        if subscription is None:
            raise SubscriptionNotFound(
                f"Organization {organization_id} has no subscription",
                detail={"organization_id": organization_id},
            )
        return subscription

    def get_subscription(self, organization_id: str, *, actor_id: Optional[str] = None) -> Subscription:
        authorize(self.permissions, actor_id, organization_id, READ_CAPABILITY)
        return self._subscription_for(organization_id)

    def get_plan(self, subscription: Subscription) -> Optional[SubscriptionPlan]:
        with self.repository.transaction() as uow:
            return uow.get_plan(subscription.plan_id)

    def create_subscription(
        self,
        organization_id: str,
        tier: PlanTier,
        interval: BillingInterval = BillingInterval.MONTHLY,
        *,
        external_id: Optional[str] = None,
        seats: Optional[int] = None,
        actor_id: Optional[str] = None,
    ) -> Subscription:
        authorize(self.permissions, actor_id, organization_id, MANAGE_CAPABILITY)
        definition = self.catalog.resolve(tier, interval)
        return self.reconciler.create(organization_id, definition, external_id, seats=seats)

    def change_plan(
        self,
        organization_id: str,
        tier: PlanTier,
        interval: BillingInterval = BillingInterval.MONTHLY,
        *,
        actor_id: Optional[str] = None,
    ) -> Subscription:
        authorize(self.permissions, actor_id, organization_id, MANAGE_CAPABILITY)
        subscription = self._subscription_for(organization_id)
        return self.reconciler.change_plan(subscription.subscription_id, tier, interval)

    def cancel_subscription(
        self,
        organization_id: str,
        *,
        immediate: bool = False,
        actor_id: Optional[str] = None,
    ) -> Subscription:
        authorize(self.permissions, actor_id, organization_id, MANAGE_CAPABILITY)
        subscription = self._subscription_for(organization_id)
        canceled = self.reconciler.cancel(subscription.subscription_id, immediate=immediate)
        if canceled != subscription:
            self._notify_canceled(canceled, immediate=immediate)
        return canceled

    def add_seats(self, organization_id: str, count: int = 1, *, actor_id: Optional[str] = None) -> Subscription:
        subscription = self._subscription_for(organization_id)
        return self.seats.add_seats(subscription.subscription_id, count, actor_id=actor_id)

    def remove_seats(self, organization_id: str, count: int = 1, *, actor_id: Optional[str] = None) -> Subscription:
        subscription = self._subscription_for(organization_id)
        return self.seats.remove_seats(subscription.subscription_id, count, actor_id=actor_id)

    def assign_seat(self, organization_id: str, user_id: str, *, actor_id: Optional[str] = None) -> Subscription:
        subscription = self._subscription_for(organization_id)
        return self.seats.assign(subscription.subscription_id, user_id, actor_id=actor_id)

    def unassign_seat(self, organization_id: str, user_id: str, *, actor_id: Optional[str] = None) -> Subscription:
        subscription = self._subscription_for(organization_id)
        return self.seats.unassign(subscription.subscription_id, user_id, actor_id=actor_id)

    def has_feature(self, organization_id: str, feature: str) -> bool:
        return self.features.has_feature(organization_id, feature)

    def list_invoices(
        self,
        organization_id: str,
        *,
        limit: int = 20,
        actor_id: Optional[str] = None,
    ) -> Sequence[Invoice]:
        authorize(self.permissions, actor_id, organization_id, READ_CAPABILITY)
        subscription = self._subscription_for(organization_id)
        return self.ledger.list_invoices(subscription.subscription_id, limit=limit)

    def _notify_canceled(self, subscription: Subscription, *, immediate: bool) -> None:
        with self.repository.transaction() as uow:
            organization = uow.get_organization(subscription.organization_id)
        if self.notifier is None or organization is None or not organization.billing_email:
            logger.info(
                "No billing contact for organization %s",
                subscription.organization_id,
                extra={"organization_id": subscription.organization_id},
            )
            return
        message = subscription_canceled_message(
            organization_name=organization.name,
            access_until=None if immediate else subscription.current_period_end,
            app_base_url=self.app_base_url,
        )
        try:
            self.notifier.send(organization.billing_email, message.subject, message.body)
        except Exception:
            logger.exception(
                "Failed to queue cancellation notification",
                extra={"organization_id": subscription.organization_id},
            )
