"""Application wiring for the billing service."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends, Request

from ...app_context import BillingRuntime
from ...config import BillingConfig
from ..billing import (
    BillingEventHandlers,
    BillingRepository,
    BillingService,
    InMemoryBillingRepository,
    InvoiceLedger,
    PermissionChecker,
    PlanCatalog,
    PostgresBillingRepository,
    ReconciliationSweep,
    SeatAllocator,
    SubscriptionReconciler,
    WebhookGateway,
    WebhookSignatureVerifier,
)
from ..billing.timeutils import Clock
from ..feature_gates import FeatureAccess
from ..notifications import NotificationDispatcher, Notifier, create_email_provider

logger = logging.getLogger("billing")


class AllowAllPermissionChecker(PermissionChecker):
    """Placeholder checker that grants every capability until the identity service is wired in."""

    def has_capability(self, actor_id: str, organization_id: str, capability: str) -> bool:
        logger.debug(
            "Granting %s to actor %s for organization %s without RBAC lookup",
            capability,
            actor_id,
            organization_id,
        )
        return True


def _create_repository(config: BillingConfig) -> BillingRepository:
    if config.store == "memory":
        logger.warning("Using in-memory billing store; data will not survive a restart")
        return InMemoryBillingRepository()
    return PostgresBillingRepository(
        connect_kwargs=config.db_connect_kwargs,
        minconn=config.db_pool_min,
        maxconn=max(config.db_pool_min, config.db_pool_max),
    )


def build_runtime(
    config: BillingConfig,
    *,
    repository: Optional[BillingRepository] = None,
    notifier: Optional[Notifier] = None,
    permissions: Optional[PermissionChecker] = None,
    clock: Optional[Clock] = None,
) -> BillingRuntime:
    """Assemble every billing component from ``config``.

    ``repository``, ``notifier`` and ``permissions`` override the defaults
    derived from configuration; tests pass an in-memory store and a recording
    notifier here.
    """

    repository = repository if repository is not None else _create_repository(config)
    dispatcher = NotificationDispatcher(
        create_email_provider(config.email),
        max_workers=config.notification_workers,
    )
    outbound: Notifier = notifier if notifier is not None else dispatcher
    if permissions is None:
        permissions = AllowAllPermissionChecker()

    catalog = PlanCatalog(price_ids=config.price_ids)
    reconciler = SubscriptionReconciler(
        repository=repository,
        catalog=catalog,
        grace_period_days=config.grace_period_days,
        clock=clock,
    )
    ledger = InvoiceLedger(repository=repository, clock=clock)
    seats = SeatAllocator(repository=repository, permissions=permissions, clock=clock)
    features = FeatureAccess(repository=repository, clock=clock)
    handlers = BillingEventHandlers(
        repository=repository,
        reconciler=reconciler,
        ledger=ledger,
        catalog=catalog,
        notifier=outbound,
        app_base_url=config.app_base_url,
    )
    gateway = WebhookGateway(
        verifier=WebhookSignatureVerifier(
            config.webhook_secret,
            tolerance_seconds=config.webhook_tolerance_seconds,
            clock=clock,
        ),
        handlers=handlers,
        repository=repository,
        clock=clock,
    )
    service = BillingService(
        repository=repository,
        reconciler=reconciler,
        seats=seats,
        ledger=ledger,
        features=features,
        catalog=catalog,
        permissions=permissions,
        notifier=outbound,
        app_base_url=config.app_base_url,
    )
    sweep = ReconciliationSweep(
        repository=repository,
        gateway=gateway,
        reconciler=reconciler,
        notifier=outbound,
        app_base_url=config.app_base_url,
        batch_size=config.sweep_batch_size,
        max_attempts=config.sweep_max_attempts,
        expire_grace_periods=config.expire_grace_periods,
        clock=clock,
    )
    return BillingRuntime(
        config=config,
        repository=repository,
        dispatcher=dispatcher,
        service=service,
        gateway=gateway,
        sweep=sweep,
    )


def get_runtime(request: Request) -> BillingRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise RuntimeError("Billing runtime has not been configured yet")
    return runtime


def get_billing_service(runtime: BillingRuntime = Depends(get_runtime)) -> BillingService:
    return runtime.service


def get_webhook_gateway(runtime: BillingRuntime = Depends(get_runtime)) -> WebhookGateway:
    return runtime.gateway


__all__ = [
    "AllowAllPermissionChecker",
    "build_runtime",
    "get_billing_service",
    "get_runtime",
    "get_webhook_gateway",
]
