"""API schemas for billing endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import (
    BillingInterval,
    Invoice,
    InvoiceStatus,
    PlanTier,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
)


class CreateSubscriptionRequest(BaseModel):
    tier: PlanTier
    billing_interval: BillingInterval = Field(alias="billingInterval", default=BillingInterval.MONTHLY)
    seats: Optional[int] = Field(default=None, ge=1)
    external_id: Optional[str] = Field(alias="externalId", default=None)

    model_config = ConfigDict(populate_by_name=True)


class ChangePlanRequest(BaseModel):
    tier: PlanTier
    billing_interval: BillingInterval = Field(alias="billingInterval", default=BillingInterval.MONTHLY)

    model_config = ConfigDict(populate_by_name=True)


class CancelSubscriptionRequest(BaseModel):
    immediate: bool = False

    model_config = ConfigDict(populate_by_name=True)


class SeatCountRequest(BaseModel):
    count: int = Field(default=1, ge=1)

    model_config = ConfigDict(populate_by_name=True)


class PlanResponse(BaseModel):
    plan_id: str = Field(alias="planId")
    tier: PlanTier
    name: str
    features: Dict[str, bool]
    max_seats: Optional[int] = Field(alias="maxSeats", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_plan(cls, plan: SubscriptionPlan) -> "PlanResponse":
        return cls(
            plan_id=plan.plan_id,
            tier=plan.tier,
            name=plan.name,
            features=dict(plan.features),
            max_seats=plan.max_seats,
        )


class SubscriptionResponse(BaseModel):
    subscription_id: str = Field(alias="subscriptionId")
    organization_id: str = Field(alias="organizationId")
    status: SubscriptionStatus
    billing_interval: BillingInterval = Field(alias="billingInterval")
    current_period_start: datetime = Field(alias="currentPeriodStart")
    current_period_end: datetime = Field(alias="currentPeriodEnd")
    cancel_at_period_end: bool = Field(alias="cancelAtPeriodEnd")
    canceled_at: Optional[datetime] = Field(alias="canceledAt", default=None)
    grace_period_end: Optional[datetime] = Field(alias="gracePeriodEnd", default=None)
    seats: int
    used_seats: int = Field(alias="usedSeats")
    available_seats: int = Field(alias="availableSeats")
    plan: Optional[PlanResponse] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_subscription(
        cls,
        subscription: Subscription,
        plan: Optional[SubscriptionPlan] = None,
    ) -> "SubscriptionResponse":
        return cls(
            subscription_id=subscription.subscription_id,
            organization_id=subscription.organization_id,
            status=subscription.status,
            billing_interval=subscription.billing_interval,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            canceled_at=subscription.canceled_at,
            grace_period_end=subscription.grace_period_end,
            seats=subscription.seats,
            used_seats=subscription.used_seats,
            available_seats=subscription.seats - subscription.used_seats,
            plan=PlanResponse.from_plan(plan) if plan else None,
        )


class FeatureAccessResponse(BaseModel):
    feature: str
    enabled: bool

    model_config = ConfigDict(populate_by_name=True)


class InvoiceResponse(BaseModel):
    invoice_id: str = Field(alias="invoiceId")
    external_id: str = Field(alias="externalId")
    amount: int
    currency: str
    status: InvoiceStatus
    due_date: Optional[datetime] = Field(alias="dueDate", default=None)
    paid_at: Optional[datetime] = Field(alias="paidAt", default=None)
    period_start: Optional[datetime] = Field(alias="periodStart", default=None)
    period_end: Optional[datetime] = Field(alias="periodEnd", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_invoice(cls, invoice: Invoice) -> "InvoiceResponse":
        return cls(
            invoice_id=invoice.invoice_id,
            external_id=invoice.external_id,
            amount=invoice.amount,
            currency=invoice.currency,
            status=invoice.status,
            due_date=invoice.due_date,
            paid_at=invoice.paid_at,
            period_start=invoice.period_start,
            period_end=invoice.period_end,
        )


class InvoiceListResponse(BaseModel):
    invoices: List[InvoiceResponse]

    model_config = ConfigDict(populate_by_name=True)


class WebhookAck(BaseModel):
    received: bool = True
