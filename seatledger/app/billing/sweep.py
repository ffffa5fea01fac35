"""Out-of-band reconciliation: replay unresolved webhooks and expire grace periods."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from threading import Event, Lock, Thread
from typing import Dict, Optional

from ..notifications import Notifier, grace_period_expired_message
from .errors import MalformedEvent
from .events import decode_event_payload
from .gateway import WebhookGateway
from .models import ReconcileOutcome
from .reconciler import SubscriptionReconciler
from .repository import BillingRepository
from .timeutils import Clock, current_time

logger = logging.getLogger(__name__)

REPLAYABLE_OUTCOMES = (ReconcileOutcome.FAILED, ReconcileOutcome.ORPHAN)


@dataclass
class SweepSummary:
    replayed: int = 0
    recovered: int = 0
    grace_expired: int = 0
    errors: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "replayed": self.replayed,
            "recovered": self.recovered,
            "grace_expired": self.grace_expired,
            "errors": self.errors,
        }


@dataclass
class ReconciliationSweep:
    repository: BillingRepository
    gateway: WebhookGateway
    reconciler: SubscriptionReconciler
    notifier: Optional[Notifier] = None
    app_base_url: str = "http://localhost:5173"
    batch_size: int = 100
    max_attempts: int = 5
    expire_grace_periods: bool = True
    clock: Optional[Clock] = None

    def run_once(self, now: Optional[datetime] = None) -> SweepSummary:
        summary = SweepSummary()
        moment = now or current_time(self.clock)
        self._replay_events(summary)
        if self.expire_grace_periods:
            self._expire_grace_periods(moment, summary)
        logger.info("Billing reconciliation sweep finished", extra=summary.as_dict())
        return summary

    def _replay_events(self, summary: SweepSummary) -> None:
        with self.repository.transaction() as uow:
            pending = uow.list_webhook_events(
                REPLAYABLE_OUTCOMES,
                max_attempts=self.max_attempts,
                limit=self.batch_size,
            )
        for record in pending:
            try:
                event = decode_event_payload(record.payload)
            except MalformedEvent:
                summary.errors += 1
                logger.exception("Stored webhook %s no longer decodes", record.event_id, extra={"event_id": record.event_id})
                continue
            receipt = self.gateway.dispatch(event, replay=True)
            summary.replayed += 1
            if receipt.outcome not in REPLAYABLE_OUTCOMES:
                summary.recovered += 1

    def _expire_grace_periods(self, now: datetime, summary: SweepSummary) -> None:
        with self.repository.transaction() as uow:
            expired = uow.list_expired_grace_periods(now, limit=self.batch_size)
        for subscription in expired:
            try:
                result = self.reconciler.expire_grace_period(subscription.subscription_id, now)
            except Exception:
                summary.errors += 1
                logger.exception(
                    "Failed to expire grace period for %s",
                    subscription.subscription_id,
                    extra={"subscription_id": subscription.subscription_id},
                )
                continue
            if not result.changed:
                continue
            summary.grace_expired += 1
            self._notify_expired(subscription.organization_id, subscription.grace_period_end)

    def _notify_expired(self, organization_id: str, grace_end: Optional[datetime]) -> None:
        if self.notifier is None:
            return
        with self.repository.transaction() as uow:
            organization = uow.get_organization(organization_id)
        if organization is None or not organization.billing_email:
            logger.info("No billing contact for organization %s", organization_id, extra={"organization_id": organization_id})
            return
        message = grace_period_expired_message(
            organization_name=organization.name,
            grace_period_end=grace_end,
            app_base_url=self.app_base_url,
        )
        try:
            self.notifier.send(organization.billing_email, message.subject, message.body)
        except Exception:
            logger.exception("Failed to queue grace expiry notification", extra={"organization_id": organization_id})


class SweepWorker(Thread):
    """Runs :class:`ReconciliationSweep` on a fixed interval until stopped."""

    def __init__(self, sweep: ReconciliationSweep, *, interval: float, initial_delay: float = 0.0) -> None:
        super().__init__(daemon=True, name="billing-sweep")
        self.sweep = sweep
        self._interval = max(1.0, interval)
        self._initial_delay = max(0.0, initial_delay)
        self._stop_event = Event()
        self._metrics_lock = Lock()
        self.metrics: Dict[str, object] = {
            "runs": 0,
            "failures": 0,
            "last_run_at": None,
            "last_summary": None,
        }

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout)

    def run(self) -> None:  # pragma: no cover - thread execution
        if self._stop_event.wait(self._initial_delay):
            return
        while not self._stop_event.is_set():
            self.run_now()
            if self._stop_event.wait(self._interval):
                break

    def run_now(self) -> Optional[SweepSummary]:
        try:
            summary = self.sweep.run_once()
        except Exception:
            logger.exception("Billing reconciliation sweep failed")
            with self._metrics_lock:
                self.metrics["failures"] = int(self.metrics["failures"]) + 1
            return None
        with self._metrics_lock:
            self.metrics["runs"] = int(self.metrics["runs"]) + 1
            self.metrics["last_run_at"] = current_time(self.sweep.clock).isoformat()
            self.metrics["last_summary"] = summary.as_dict()
        return summary
