"""Domain models for the billing system."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlanTier(str, Enum):
    """Commercial plan tiers offered to organizations."""

    FREE = "free"
    PRO = "pro"
    TEAM = "team"
    EXECUTIVE = "executive"


class BillingInterval(str, Enum):
    """Billing cadence for a subscription."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionStatus(str, Enum):
    """Lifecycle status for a subscription."""

    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    DELETED = "deleted"


class InvoiceStatus(str, Enum):
    """Status of a persisted invoice record."""

    OPEN = "open"
    PAID = "paid"


class ReconcileOutcome(str, Enum):
    """What happened when an event or status change was applied."""

    APPLIED = "applied"
    NOOP = "noop"
    STALE = "stale"
    REJECTED = "rejected"
    ORPHAN = "orphan"
    IGNORED = "ignored"
    FAILED = "failed"
    DUPLICATE = "duplicate"


class Organization(BaseModel):
    """Tenant that owns at most one subscription."""

    organization_id: str
    name: str
    billing_email: Optional[str] = None
    customer_id: Optional[str] = Field(default=None, description="Payment processor customer id")
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SubscriptionPlan(BaseModel):
    """Persisted plan record, created lazily per tier."""

    plan_id: str
    tier: PlanTier
    name: str
    features: Dict[str, bool] = Field(default_factory=dict)
    max_seats: Optional[int] = Field(default=None, ge=1)
    monthly_price: int = Field(default=0, ge=0, description="Minor currency units")
    yearly_price: Optional[int] = Field(default=None, ge=0)
    trial_days: int = Field(default=0, ge=0)
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def enables(self, feature: str) -> bool:
        return bool(self.features.get(feature, False))


class Subscription(BaseModel):
    """Authoritative billing state for one organization."""

    subscription_id: str
    organization_id: str
    plan_id: str
    billing_interval: BillingInterval = BillingInterval.MONTHLY
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    period_confirmed: bool = Field(default=True, description="Whether the processor reported the current window")
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    external_id: Optional[str] = Field(default=None, description="Payment processor subscription id")
    seats: int = Field(default=1, ge=1)
    used_seats: int = Field(default=0, ge=0)
    grace_period_end: Optional[datetime] = None
    billing_cycle_anchor: datetime = Field(default_factory=_utcnow)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator(
        "current_period_start",
        "current_period_end",
        "canceled_at",
        "grace_period_end",
        "billing_cycle_anchor",
    )
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _check_invariants(self) -> "Subscription":
        if self.used_seats > self.seats:
            raise ValueError("used_seats cannot exceed seats")
        if (self.status == SubscriptionStatus.PAST_DUE) != (self.grace_period_end is not None):
            raise ValueError("grace_period_end must be set exactly when the subscription is past due")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in {SubscriptionStatus.DELETED, SubscriptionStatus.INCOMPLETE_EXPIRED}

    def grants_access(self, now: datetime) -> bool:
        """Whether the subscription currently entitles its organization to plan features."""

        if self.status in {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}:
            return True
        if self.status == SubscriptionStatus.PAST_DUE and self.grace_period_end is not None:
            return now < self.grace_period_end
        return False


class SeatHolder(BaseModel):
    """User side of a seat assignment."""

    user_id: str
    email: Optional[str] = None
    organization_id: Optional[str] = None
    seat_assigned_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def holds_seat_in(self, organization_id: str) -> bool:
        return self.seat_assigned_at is not None and self.organization_id == organization_id


class Invoice(BaseModel):
    """Ledger entry mirroring a processor invoice."""

    invoice_id: str
    subscription_id: str
    organization_id: str
    external_id: str
    amount: int = Field(ge=0, description="Minor currency units")
    currency: str = "USD"
    status: InvoiceStatus = InvoiceStatus.OPEN
    due_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        if not value:
            raise ValueError("Currency code is required")
        return value.upper()


class WebhookEventRecord(BaseModel):
    """Receipt of a webhook delivery and how it was processed."""

    event_id: str
    event_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    outcome: ReconcileOutcome
    detail: Optional[str] = None
    attempts: int = Field(default=1, ge=1)
    received_at: datetime = Field(default_factory=_utcnow)
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ReconcileResult(BaseModel):
    """Typed result returned by the reconciler and the event handlers."""

    outcome: ReconcileOutcome
    subscription: Optional[Subscription] = None
    detail: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def changed(self) -> bool:
        return self.outcome == ReconcileOutcome.APPLIED
