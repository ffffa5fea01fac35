"""Billing domain package: subscription reconciliation, seats and invoices."""

from .catalog import PLAN_CATALOG, PlanCatalog, PlanDefinition
from .errors import (
    BillingError,
    DuplicateSubscription,
    InvalidSeatCount,
    InvalidSignature,
    InvalidTransition,
    InvoiceNotFound,
    MalformedEvent,
    NotFoundError,
    OrganizationNotFound,
    SeatAssignmentConflict,
    SeatBelowUsage,
    SeatCeilingExceeded,
    SeatLimitExceeded,
    SubscriptionNotFound,
    UnknownPlanTier,
    UserNotFound,
    WebhookRejected,
)
from .gateway import WebhookGateway, WebhookReceipt, WebhookSignatureVerifier
from .grace import grace_period_end
from .handlers import BillingEventHandlers
from .ledger import InvoiceLedger
from .memory import InMemoryBillingRepository
from .models import (
    BillingInterval,
    Invoice,
    InvoiceStatus,
    Organization,
    PlanTier,
    ReconcileOutcome,
    ReconcileResult,
    SeatHolder,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    WebhookEventRecord,
)
from .reconciler import ALLOWED_TRANSITIONS, SubscriptionReconciler, can_transition
from .repository import BillingRepository, BillingUnitOfWork, PostgresBillingRepository
from .seats import PermissionChecker, SeatAllocator
from .service import BillingService
from .sweep import ReconciliationSweep, SweepSummary, SweepWorker

__all__ = [
    "ALLOWED_TRANSITIONS",
    "BillingError",
    "BillingEventHandlers",
    "BillingInterval",
    "BillingRepository",
    "BillingService",
    "BillingUnitOfWork",
    "DuplicateSubscription",
    "InMemoryBillingRepository",
    "InvalidSeatCount",
    "InvalidSignature",
    "InvalidTransition",
    "Invoice",
    "InvoiceLedger",
    "InvoiceNotFound",
    "InvoiceStatus",
    "MalformedEvent",
    "NotFoundError",
    "Organization",
    "OrganizationNotFound",
    "PLAN_CATALOG",
    "PermissionChecker",
    "PlanCatalog",
    "PlanDefinition",
    "PlanTier",
    "PostgresBillingRepository",
    "ReconcileOutcome",
    "ReconcileResult",
    "ReconciliationSweep",
    "SeatAllocator",
    "SeatAssignmentConflict",
    "SeatBelowUsage",
    "SeatCeilingExceeded",
    "SeatHolder",
    "SeatLimitExceeded",
    "Subscription",
    "SubscriptionNotFound",
    "SubscriptionPlan",
    "SubscriptionReconciler",
    "SubscriptionStatus",
    "SweepSummary",
    "SweepWorker",
    "UnknownPlanTier",
    "UserNotFound",
    "WebhookEventRecord",
    "WebhookGateway",
    "WebhookReceipt",
    "WebhookRejected",
    "WebhookSignatureVerifier",
    "grace_period_end",
]
