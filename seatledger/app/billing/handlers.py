"""Per-event reconciliation of payment processor webhooks."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Mapping, Optional

from ..notifications import (
    Notifier,
    RenderedMessage,
    payment_failed_message,
    subscription_canceled_message,
)
from .catalog import PlanCatalog, PlanDefinition
from .errors import BillingError, DuplicateSubscription, NotFoundError, UnknownPlanTier
from .events import (
    CHECKOUT_COMPLETED,
    INVOICE_PAID,
    INVOICE_PAYMENT_FAILED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
    AnyEvent,
    CheckoutCompletedEvent,
    InvoicePaidEvent,
    InvoicePaymentFailedEvent,
    LineItemList,
    SubscriptionBody,
    SubscriptionCreatedEvent,
    SubscriptionDeletedEvent,
    SubscriptionUpdatedEvent,
    map_processor_status,
)
from .ledger import InvoiceLedger
from .models import (
    Organization,
    ReconcileOutcome,
    ReconcileResult,
    Subscription,
    SubscriptionStatus,
)
from .reconciler import SubscriptionReconciler
from .repository import BillingRepository

logger = logging.getLogger(__name__)


def _event_context(event: AnyEvent, **extra: Optional[str]) -> Dict[str, Optional[str]]:
    context: Dict[str, Optional[str]] = {"event_id": event.id, "event_type": event.type}
    context.update(extra)
    return context


@dataclass
class BillingEventHandlers:
    """Maps each processor event onto reconciler, ledger and seat operations.

    Handlers are idempotent and tolerate reordering: creation versus update is
    decided solely by the processor's subscription id, and status merges go
    through the reconciler's period-end staleness guard.
    """

    repository: BillingRepository
    reconciler: SubscriptionReconciler
    ledger: InvoiceLedger
    catalog: PlanCatalog
    notifier: Optional[Notifier] = None
    app_base_url: str = "http://localhost:5173"

    def handle(self, event: AnyEvent) -> ReconcileResult:
        routes: Dict[str, Callable[..., ReconcileResult]] = {
            CHECKOUT_COMPLETED: self.checkout_completed,
            INVOICE_PAID: self.invoice_paid,
            INVOICE_PAYMENT_FAILED: self.invoice_payment_failed,
            SUBSCRIPTION_CREATED: self.subscription_created,
            SUBSCRIPTION_UPDATED: self.subscription_updated,
            SUBSCRIPTION_DELETED: self.subscription_deleted,
        }
        handler = routes.get(event.type)
        if handler is None:
            logger.info("Ignoring unhandled event type %s", event.type, extra=_event_context(event))
            return ReconcileResult(outcome=ReconcileOutcome.IGNORED, detail="unhandled event type")
        try:
            return handler(event)
        except NotFoundError as exc:
            return self._orphan(event, exc.message)
        except BillingError as exc:
            logger.warning(
                "Rejected %s event %s: %s",
                event.type,
                event.id,
                exc.message,
                extra=_event_context(event, error=exc.code),
            )
            return ReconcileResult(outcome=ReconcileOutcome.REJECTED, detail=exc.message)

    # Event handlers ----------------------------------------------------

    def checkout_completed(self, event: CheckoutCompletedEvent) -> ReconcileResult:
        session = event.data.body
        if session.mode != "subscription" or not session.subscription:
            logger.info("Checkout %s carries no subscription", session.id, extra=_event_context(event))
            return ReconcileResult(outcome=ReconcileOutcome.IGNORED, detail="checkout without subscription")

        existing = self._find_subscription(session.subscription)
        if existing is not None:
            # Later subscription events own the record once it exists.
            logger.info(
                "Checkout %s refers to known subscription %s",
                session.id,
                session.subscription,
                extra=_event_context(event, subscription_id=existing.subscription_id),
            )
            return ReconcileResult(outcome=ReconcileOutcome.NOOP, subscription=existing)

        organization = self._resolve_organization(
            session.client_reference_id or session.metadata.get("organization_id"),
            session.customer,
        )
        if organization is None:
            return self._orphan(event, "organization could not be resolved")
        plan = self._resolve_plan(session.metadata, session.line_items)
        self._remember_customer(organization, session.customer)
        return self._create(
            event,
            organization,
            plan,
            session.subscription,
            seats=session.line_items.total_quantity(),
        )

    def subscription_created(self, event: SubscriptionCreatedEvent) -> ReconcileResult:
        body = event.data.body
        status = map_processor_status(body.status)
        if status is None:
            return self._unknown_status(event, body.status)

        existing = self._find_subscription(body.id)
        if existing is not None:
            return self._merge_subscription(event, existing, body, status)

        organization = self._resolve_organization(body.metadata.get("organization_id"), body.customer)
        if organization is None:
            return self._orphan(event, "organization could not be resolved")
        plan = self._resolve_plan(body.metadata, body.items)
        return self._create(
            event,
            organization,
            plan,
            body.id,
            seats=body.items.total_quantity(),
            status=status,
            period_start=body.current_period_start,
            period_end=body.current_period_end,
        )

    def subscription_updated(self, event: SubscriptionUpdatedEvent) -> ReconcileResult:
        body = event.data.body
        status = map_processor_status(body.status)
        if status is None:
            return self._unknown_status(event, body.status)
        existing = self._find_subscription(body.id)
        if existing is None:
            return self._orphan(event, f"subscription {body.id} is unknown")
        return self._merge_subscription(event, existing, body, status)

    def subscription_deleted(self, event: SubscriptionDeletedEvent) -> ReconcileResult:
        body = event.data.body
        existing = self._find_subscription(body.id)
        if existing is None:
            return self._orphan(event, f"subscription {body.id} is unknown")
        result = self.reconciler.apply_external_status(
            existing.subscription_id,
            SubscriptionStatus.DELETED,
            canceled_at=body.canceled_at,
        )
        if result.changed:
            self._notify_cancellation(existing, access_until=None)
        return result

    def invoice_paid(self, event: InvoicePaidEvent) -> ReconcileResult:
        invoice = event.data.body
        if not invoice.subscription:
            logger.info("Invoice %s is not tied to a subscription", invoice.id, extra=_event_context(event))
            return ReconcileResult(outcome=ReconcileOutcome.IGNORED, detail="invoice without subscription")
        subscription = self._find_subscription(invoice.subscription)
        if subscription is None:
            return self._orphan(event, f"subscription {invoice.subscription} is unknown")

        self.ledger.create(
            subscription.subscription_id,
            invoice.amount_paid,
            invoice.due_date,
            invoice.id,
            currency=invoice.currency,
            period_start=invoice.period_start,
            period_end=invoice.period_end,
        )
        self.ledger.mark_paid(invoice.id)
        return self.reconciler.apply_external_status(
            subscription.subscription_id,
            SubscriptionStatus.ACTIVE,
            period_start=invoice.period_start,
            period_end=invoice.period_end,
        )

    def invoice_payment_failed(self, event: InvoicePaymentFailedEvent) -> ReconcileResult:
        invoice = event.data.body
        if not invoice.subscription:
            logger.info("Invoice %s is not tied to a subscription", invoice.id, extra=_event_context(event))
            return ReconcileResult(outcome=ReconcileOutcome.IGNORED, detail="invoice without subscription")
        subscription = self._find_subscription(invoice.subscription)
        if subscription is None:
            return self._orphan(event, f"subscription {invoice.subscription} is unknown")

        self.ledger.create(
            subscription.subscription_id,
            invoice.amount_due,
            invoice.due_date,
            invoice.id,
            currency=invoice.currency,
            period_start=invoice.period_start,
            period_end=invoice.period_end,
        )
        result = self.reconciler.apply_external_status(
            subscription.subscription_id,
            SubscriptionStatus.PAST_DUE,
            period_start=invoice.period_start,
            period_end=invoice.period_end,
        )
        updated = result.subscription
        if (
            result.changed
            and updated is not None
            and updated.status == SubscriptionStatus.PAST_DUE
            and subscription.status != SubscriptionStatus.PAST_DUE
        ):
            organization = self._get_organization(updated.organization_id)
            self._send(
                invoice.customer_email or (organization.billing_email if organization else None),
                payment_failed_message(
                    organization_name=organization.name if organization else updated.organization_id,
                    grace_period_end=updated.grace_period_end,
                    app_base_url=self.app_base_url,
                ),
                updated,
            )
        return result

    # Helpers -----------------------------------------------------------

    def _find_subscription(self, external_id: str) -> Optional[Subscription]:
        with self.repository.transaction() as uow:
            return uow.find_subscription_by_external_id(external_id)

    def _get_organization(self, organization_id: str) -> Optional[Organization]:
        with self.repository.transaction() as uow:
            return uow.get_organization(organization_id)

    def _resolve_organization(self, organization_id: Optional[str], customer_id: Optional[str]) -> Optional[Organization]:
        with self.repository.transaction() as uow:
            if organization_id:
                organization = uow.get_organization(organization_id)
                if organization is not None:
                    return organization
            if customer_id:
                return uow.find_organization_by_customer(customer_id)
        return None

    def _remember_customer(self, organization: Organization, customer_id: Optional[str]) -> None:
        if not customer_id or organization.customer_id == customer_id:
            return
        if organization.customer_id is not None:
            logger.warning(
                "Organization %s already maps to customer %s, not %s",
                organization.organization_id,
                organization.customer_id,
                customer_id,
                extra={"organization_id": organization.organization_id},
            )
            return
        with self.repository.transaction() as uow:
            uow.save_organization(organization.model_copy(update={"customer_id": customer_id}))

    def _resolve_plan(self, metadata: Mapping[str, str], items: LineItemList) -> PlanDefinition:
        tier = metadata.get("plan_tier")
        if tier:
            return self.catalog.resolve(tier, metadata.get("billing_interval") or "monthly")
        price_id = items.single_price_id()
        if price_id:
            return self.catalog.resolve_price(price_id)
        raise UnknownPlanTier("Event does not identify a plan")

    def _create(
        self,
        event: AnyEvent,
        organization: Organization,
        plan: PlanDefinition,
        external_id: str,
        seats: Optional[int] = None,
        **options,
    ) -> ReconcileResult:
        if seats is not None and plan.max_seats is not None and seats > plan.max_seats:
            logger.warning(
                "Clamping %s seats on %s to the %s plan ceiling of %s",
                seats,
                external_id,
                plan.tier.value,
                plan.max_seats,
                extra=_event_context(event, organization_id=organization.organization_id),
            )
            seats = plan.max_seats
        try:
            created = self.reconciler.create(
                organization.organization_id, plan, external_id, seats=seats, **options
            )
        except DuplicateSubscription:
            # Lost a race with a concurrent delivery of the same subscription.
            existing = self._find_subscription(external_id)
            if existing is None:
                raise
            logger.info(
                "Subscription %s was created concurrently",
                external_id,
                extra=_event_context(event, subscription_id=existing.subscription_id),
            )
            return ReconcileResult(outcome=ReconcileOutcome.NOOP, subscription=existing)
        return ReconcileResult(outcome=ReconcileOutcome.APPLIED, subscription=created)

    def _merge_subscription(
        self,
        event: AnyEvent,
        existing: Subscription,
        body: SubscriptionBody,
        status: SubscriptionStatus,
    ) -> ReconcileResult:
        result = self.reconciler.apply_external_status(
            existing.subscription_id,
            status,
            period_start=body.current_period_start,
            period_end=body.current_period_end,
            cancel_at_period_end=body.cancel_at_period_end,
            canceled_at=body.canceled_at,
        )
        if result.outcome in {ReconcileOutcome.APPLIED, ReconcileOutcome.NOOP}:
            result = self._apply_plan_change(event, result, body)
        if result.changed and body.cancel_at_period_end and not existing.cancel_at_period_end:
            self._notify_cancellation(existing, access_until=body.current_period_end or existing.current_period_end)
        return result

    def _apply_plan_change(self, event: AnyEvent, result: ReconcileResult, body: SubscriptionBody) -> ReconcileResult:
        current = result.subscription
        if current is None or current.status == SubscriptionStatus.DELETED:
            return result
        try:
            definition = self._resolve_plan(body.metadata, body.items)
        except UnknownPlanTier:
            return result
        with self.repository.transaction() as uow:
            plan = uow.get_plan(current.plan_id)
        if plan is not None and plan.tier == definition.tier and current.billing_interval == definition.billing_interval:
            return result
        try:
            changed = self.reconciler.change_plan(current.subscription_id, definition.tier, definition.billing_interval)
        except BillingError as exc:
            logger.warning(
                "Could not apply plan %s to subscription %s: %s",
                definition.key,
                current.subscription_id,
                exc.message,
                extra=_event_context(event, subscription_id=current.subscription_id),
            )
            return result.model_copy(update={"detail": exc.message})
        return ReconcileResult(outcome=ReconcileOutcome.APPLIED, subscription=changed)

    def _notify_cancellation(self, subscription: Subscription, *, access_until: Optional[datetime]) -> None:
        organization = self._get_organization(subscription.organization_id)
        self._send(
            organization.billing_email if organization else None,
            subscription_canceled_message(
                organization_name=organization.name if organization else subscription.organization_id,
                access_until=access_until,
                app_base_url=self.app_base_url,
            ),
            subscription,
        )

    def _send(self, to: Optional[str], message: RenderedMessage, subscription: Subscription) -> None:
        context = {"subscription_id": subscription.subscription_id, "organization_id": subscription.organization_id}
        if self.notifier is None or not to:
            logger.info("No billing contact for %r notification", message.subject, extra=context)
            return
        try:
            self.notifier.send(to, message.subject, message.body)
        except Exception:
            logger.exception("Failed to queue %r notification", message.subject, extra=context)

    def _orphan(self, event: AnyEvent, reason: str) -> ReconcileResult:
        logger.warning(
            "Orphan %s event %s: %s",
            event.type,
            event.id,
            reason,
            extra=_event_context(event),
        )
        return ReconcileResult(outcome=ReconcileOutcome.ORPHAN, detail=reason)

    def _unknown_status(self, event: AnyEvent, status: str) -> ReconcileResult:
        logger.warning(
            "Unknown processor status %r on event %s",
            status,
            event.id,
            extra=_event_context(event),
        )
        return ReconcileResult(outcome=ReconcileOutcome.REJECTED, detail=f"unknown status {status}")
