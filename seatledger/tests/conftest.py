from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pytest

from seatledger.app.billing import (
    BillingEventHandlers,
    BillingService,
    InMemoryBillingRepository,
    InvoiceLedger,
    Organization,
    PlanCatalog,
    ReconciliationSweep,
    SeatAllocator,
    SeatHolder,
    SubscriptionReconciler,
    WebhookGateway,
    WebhookReceipt,
    WebhookSignatureVerifier,
)
from seatledger.app.feature_gates import FeatureAccess

WEBHOOK_SECRET = "whsec_test_secret"
START = datetime(2024, 12, 1, tzinfo=timezone.utc)
PRICE_IDS = {
    "pro_monthly": "price_pro_monthly",
    "team_monthly": "price_team_monthly",
    "team_yearly": "price_team_yearly",
    "executive_monthly": "price_exec_monthly",
}


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


class RecordingNotifier:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.sent: List[Tuple[str, str, str]] = []

    def send(self, to: str, subject: str, body: str) -> None:
        if self.fail:
            raise RuntimeError("mail relay unavailable")
        self.sent.append((to, subject, body))

    @property
    def subjects(self) -> List[str]:
        return [subject for _, subject, _ in self.sent]


class StaticPermissionChecker:
    def __init__(self, grants: Iterable[Tuple[str, str, str]]) -> None:
        self.grants = set(grants)
        self.checked: List[Tuple[str, str, str]] = []

    def has_capability(self, actor_id: str, organization_id: str, capability: str) -> bool:
        self.checked.append((actor_id, organization_id, capability))
        return (actor_id, organization_id, capability) in self.grants


def seed_repository(repository: InMemoryBillingRepository) -> InMemoryBillingRepository:
    repository.add_organization(
        Organization(
            organization_id="org-1",
            name="Acme Robotics",
            billing_email="billing@acme.test",
            customer_id="cus_acme",
        )
    )
    repository.add_organization(
        Organization(organization_id="org-2", name="Globex", billing_email="ap@globex.test", customer_id="cus_globex")
    )
    for index in range(1, 9):
        repository.add_user(SeatHolder(user_id=f"user-{index}", email=f"user{index}@example.test"))
    return repository


def make_event(event_type: str, body: Dict[str, Any], *, event_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "id": event_id or f"evt_{event_type.replace('.', '_')}_{body.get('id', 'x')}",
        "type": event_type,
        "created": int(START.timestamp()),
        "livemode": False,
        "data": {"object": body},
    }


def ts(value: datetime) -> int:
    return int(value.timestamp())


@dataclass
class BillingComponents:
    repository: InMemoryBillingRepository
    clock: FixedClock
    notifier: RecordingNotifier
    catalog: PlanCatalog
    reconciler: SubscriptionReconciler
    seats: SeatAllocator
    ledger: InvoiceLedger
    handlers: BillingEventHandlers
    gateway: WebhookGateway
    verifier: WebhookSignatureVerifier
    features: FeatureAccess
    service: BillingService
    sweep: ReconciliationSweep
    permissions: Optional[StaticPermissionChecker] = None

    def sign(self, event: Dict[str, Any]) -> Tuple[bytes, str]:
        payload = json.dumps(event).encode("utf-8")
        return payload, self.verifier.sign(payload)

    def deliver(self, event: Dict[str, Any]) -> WebhookReceipt:
        payload, header = self.sign(event)
        return self.gateway.process(payload, header)

    def subscription_for(self, organization_id: str):
        with self.repository.transaction() as uow:
            return uow.find_subscription_by_organization(organization_id)


def build_components(
    *,
    grace_period_days: int = 7,
    grants: Optional[Iterable[Tuple[str, str, str]]] = None,
    notifier_fails: bool = False,
) -> BillingComponents:
    repository = seed_repository(InMemoryBillingRepository())
    clock = FixedClock(START)
    notifier = RecordingNotifier(fail=notifier_fails)
    permissions = StaticPermissionChecker(grants) if grants is not None else None
    catalog = PlanCatalog(price_ids=PRICE_IDS)
    reconciler = SubscriptionReconciler(
        repository=repository,
        catalog=catalog,
        grace_period_days=grace_period_days,
        clock=clock,
    )
    seats = SeatAllocator(repository=repository, permissions=permissions, clock=clock)
    ledger = InvoiceLedger(repository=repository, clock=clock)
    handlers = BillingEventHandlers(
        repository=repository,
        reconciler=reconciler,
        ledger=ledger,
        catalog=catalog,
        notifier=notifier,
        app_base_url="https://app.test",
    )
    verifier = WebhookSignatureVerifier(WEBHOOK_SECRET, tolerance_seconds=300, clock=clock)
    gateway = WebhookGateway(verifier=verifier, handlers=handlers, repository=repository, clock=clock)
    features = FeatureAccess(repository=repository, clock=clock)
    service = BillingService(
        repository=repository,
        reconciler=reconciler,
        seats=seats,
        ledger=ledger,
        features=features,
        catalog=catalog,
        permissions=permissions,
        notifier=notifier,
        app_base_url="https://app.test",
    )
    sweep = ReconciliationSweep(
        repository=repository,
        gateway=gateway,
        reconciler=reconciler,
        notifier=notifier,
        app_base_url="https://app.test",
        batch_size=50,
        max_attempts=3,
        clock=clock,
    )
    return BillingComponents(
        repository=repository,
        clock=clock,
        notifier=notifier,
        catalog=catalog,
        reconciler=reconciler,
        seats=seats,
        ledger=ledger,
        handlers=handlers,
        gateway=gateway,
        verifier=verifier,
        features=features,
        service=service,
        sweep=sweep,
        permissions=permissions,
    )


@pytest.fixture
def components() -> BillingComponents:
    return build_components()


@pytest.fixture
def event():
    return make_event


@pytest.fixture
def timestamp():
    return ts


@pytest.fixture
def build():
    return build_components


@pytest.fixture
def webhook_secret() -> str:
    return WEBHOOK_SECRET
