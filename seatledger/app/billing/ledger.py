"""Invoice ledger keyed by processor invoice ids."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence
from uuid import uuid4

from .errors import InvoiceNotFound, SubscriptionNotFound
from .models import Invoice, InvoiceStatus
from .repository import BillingRepository
from .timeutils import Clock, as_utc, current_time

logger = logging.getLogger(__name__)


@dataclass
class InvoiceLedger:
    repository: BillingRepository
    clock: Optional[Clock] = None

    def _now(self) -> datetime:
        return current_time(self.clock)

    def create(
        self,
        subscription_id: str,
        amount: int,
        due_date: Optional[datetime],
        external_invoice_id: str,
        *,
        currency: str = "USD",
        status: InvoiceStatus = InvoiceStatus.OPEN,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> Invoice:
        """Record an invoice once; repeated calls return the stored record unchanged."""

        now = self._now()
        with self.repository.transaction() as uow:
            existing = uow.find_invoice_by_external_id(external_invoice_id)
            if existing is not None:
                return existing
            subscription = uow.get_subscription(subscription_id)
            if subscription is None:
                raise SubscriptionNotFound(
                    f"Subscription {subscription_id} not found",
                    detail={"subscription_id": subscription_id},
                )
            invoice = Invoice(
                invoice_id=f"inv_{uuid4().hex}",
                subscription_id=subscription_id,
                organization_id=subscription.organization_id,
                external_id=external_invoice_id,
                amount=amount,
                currency=currency,
                status=status,
                due_date=as_utc(due_date) if due_date else None,
                paid_at=now if status == InvoiceStatus.PAID else None,
                period_start=as_utc(period_start) if period_start else None,
                period_end=as_utc(period_end) if period_end else None,
                created_at=now,
                updated_at=now,
            )
            stored = uow.insert_invoice(invoice)
        if stored.invoice_id == invoice.invoice_id:
            logger.info(
                "Recorded invoice %s for subscription %s",
                external_invoice_id,
                subscription_id,
                extra={"subscription_id": subscription_id, "invoice_id": stored.invoice_id},
            )
        return stored

    def mark_paid(self, external_invoice_id: str) -> Invoice:
        with self.repository.transaction() as uow:
            invoice = uow.find_invoice_by_external_id(external_invoice_id, for_update=True)
            if invoice is None:
                raise InvoiceNotFound(
                    f"Invoice {external_invoice_id} not found",
                    detail={"external_invoice_id": external_invoice_id},
                )
            if invoice.status == InvoiceStatus.PAID:
                return invoice
            return uow.save_invoice(invoice.model_copy(update={"status": InvoiceStatus.PAID, "paid_at": self._now()}))

    def list_invoices(self, subscription_id: str, *, limit: int = 20) -> Sequence[Invoice]:
        with self.repository.transaction() as uow:
            return uow.list_invoices(subscription_id, limit=limit)
