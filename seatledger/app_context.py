"""Shared application runtime for the billing service."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from .app.billing import (
    BillingRepository,
    BillingService,
    ReconciliationSweep,
    SweepWorker,
    WebhookGateway,
)
from .app.notifications import NotificationDispatcher
from .config import BillingConfig

logger = logging.getLogger(__name__)


@dataclass
class BillingRuntime:
    """Owns the long-lived resources behind the HTTP surface.

    The repository (and its connection pool), the notification dispatcher and
    the sweep worker are started and stopped together. Request handlers only
    ever see the already-wired :class:`BillingService` and
    :class:`WebhookGateway`.
    """

    config: BillingConfig
    repository: BillingRepository
    dispatcher: NotificationDispatcher
    service: BillingService
    gateway: WebhookGateway
    sweep: ReconciliationSweep
    worker: Optional[SweepWorker] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _started: bool = field(default=False, repr=False)

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            self.repository.open()
            self.dispatcher.start()
            if self.config.sweep_enabled:
                # Threads cannot be restarted, so every start gets a new worker.
                self.worker = SweepWorker(
                    self.sweep,
                    interval=self.config.sweep_interval_seconds,
                    initial_delay=min(30.0, self.config.sweep_interval_seconds),
                )
                self.worker.start()
            self._started = True
        logger.info(
            "Billing runtime started",
            extra={"billing_store": self.config.store, "sweep_enabled": self.config.sweep_enabled},
        )

    def stop(self) -> None:
        with self._lock:
            if not self._started:
                return
            worker, self.worker = self.worker, None
            if worker is not None:
                worker.stop()
            self.dispatcher.stop(wait=True)
            self.repository.close()
            self._started = False
        logger.info("Billing runtime stopped")


__all__ = ["BillingRuntime"]
