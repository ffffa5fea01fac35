"""Fire-and-forget delivery of billing notifications."""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional, Protocol

from .providers import EmailProvider

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Sends a plain-text message; must never block or raise into the caller."""

    def send(self, to: str, subject: str, body: str) -> None:
        ...


class NotificationDispatcher:
    """Hands messages to a small worker pool so callers never wait on delivery."""

    def __init__(self, provider: EmailProvider, *, max_workers: int = 2) -> None:
        self.provider = provider
        self._max_workers = max(1, max_workers)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()
        self.delivered = 0
        self.failed = 0

    def start(self) -> None:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers,
                    thread_name_prefix="billing-notify",
                )
                logger.info("Notification dispatcher started", extra=self.provider.describe())

    def stop(self, *, wait: bool = True) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
            logger.info("Notification dispatcher stopped")

    def send(self, to: str, subject: str, body: str) -> Optional[Future]:
        with self._lock:
            executor = self._executor
        if executor is None:
            logger.warning(
                "Notification dispatcher not running; dropping message %r",
                subject,
                extra={"email_recipient": to},
            )
            return None
        try:
            return executor.submit(self._deliver, to, subject, body)
        except RuntimeError:
            logger.warning("Notification dispatcher is shutting down; dropping message %r", subject)
            return None

    def _deliver(self, to: str, subject: str, body: str) -> None:
        try:
            self.provider.send_email(to, subject, body)
        except Exception:
            with self._lock:
                self.failed += 1
            logger.exception(
                "Failed to deliver billing notification",
                extra={"email_recipient": to, "email_subject": subject, **self.provider.describe()},
            )
            return
        with self._lock:
            self.delivered += 1
