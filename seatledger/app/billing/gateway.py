"""Authenticated entry point for payment processor webhooks."""
from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from .errors import InvalidSignature
from .events import AnyEvent, UnhandledEvent, decode_event, event_to_payload
from .handlers import BillingEventHandlers
from .models import ReconcileOutcome, WebhookEventRecord
from .repository import BillingRepository
from .timeutils import Clock, current_time

logger = logging.getLogger(__name__)

# Outcomes that make a repeated delivery of the same event id a no-op.
SETTLED_OUTCOMES = frozenset(
    {
        ReconcileOutcome.APPLIED,
        ReconcileOutcome.NOOP,
        ReconcileOutcome.STALE,
        ReconcileOutcome.IGNORED,
        ReconcileOutcome.REJECTED,
    }
)


class WebhookReceipt(BaseModel):
    event_id: str
    event_type: str
    outcome: ReconcileOutcome
    detail: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class WebhookSignatureVerifier:
    """HMAC-SHA256 verification of ``t=<unix>,v1=<hex>`` signature headers."""

    def __init__(self, secret: str, *, tolerance_seconds: int = 300, clock: Optional[Clock] = None) -> None:
        if not secret:
            raise ValueError("secret must be provided")
        self._secret = secret.encode("utf-8")
        self._tolerance = max(0, tolerance_seconds)
        self._clock = clock

    def _digest(self, timestamp: str, payload: bytes) -> str:
        return hmac.new(self._secret, f"{timestamp}.".encode("utf-8") + payload, hashlib.sha256).hexdigest()

    def sign(self, payload: bytes, *, timestamp: Optional[int] = None) -> str:
        moment = timestamp if timestamp is not None else int(current_time(self._clock).timestamp())
        return f"t={moment},v1={self._digest(str(moment), payload)}"

    @staticmethod
    def _parse_header(header: str) -> Tuple[Optional[str], List[str]]:
        timestamp: Optional[str] = None
        signatures: List[str] = []
        for part in header.split(","):
            key, sep, value = part.strip().partition("=")
            if not sep:
                continue
            if key == "t":
                timestamp = value
            elif key == "v1":
                signatures.append(value)
        return timestamp, signatures

    def verify(self, payload: bytes, header: Optional[str]) -> None:
        if not header:
            raise InvalidSignature("Missing webhook signature")
        timestamp, signatures = self._parse_header(header)
        if not timestamp or not signatures:
            raise InvalidSignature("Malformed webhook signature header")
        try:
            signed_at = int(timestamp)
        except ValueError as exc:
            raise InvalidSignature("Webhook signature timestamp is not an integer") from exc
        if self._tolerance:
            now = int(current_time(self._clock).timestamp())
            if abs(now - signed_at) > self._tolerance:
                raise InvalidSignature("Webhook signature timestamp outside allowed window")
        expected = self._digest(timestamp, payload)
        if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
            raise InvalidSignature("Webhook signature mismatch")


@dataclass
class WebhookGateway:
    """Verifies, decodes and dispatches deliveries, acknowledging every authentic one."""

    verifier: WebhookSignatureVerifier
    handlers: BillingEventHandlers
    repository: BillingRepository
    clock: Optional[Clock] = None

    def _now(self) -> datetime:
        return current_time(self.clock)

    def process(self, payload: bytes, signature_header: Optional[str]) -> WebhookReceipt:
        """Raises :class:`WebhookRejected` subclasses for unauthentic or unparseable input."""

        self.verifier.verify(payload, signature_header)
        event = decode_event(payload)
        return self.dispatch(event)

    def dispatch(self, event: AnyEvent, *, replay: bool = False) -> WebhookReceipt:
        context = {"event_id": event.id, "event_type": event.type}
        received_at = self._now()

        if isinstance(event, UnhandledEvent):
            logger.info("Ignoring webhook event type %s", event.type, extra=context)
            return self._finish(event, ReconcileOutcome.IGNORED, "unhandled event type", received_at)

        if not replay:
            previous = self._previous_receipt(event.id)
            if previous is not None and previous.outcome in SETTLED_OUTCOMES:
                logger.info("Duplicate delivery of event %s", event.id, extra=context)
                return WebhookReceipt(
                    event_id=event.id,
                    event_type=event.type,
                    outcome=ReconcileOutcome.DUPLICATE,
                    detail=f"already {previous.outcome.value}",
                )

        try:
            result = self.handlers.handle(event)
        except Exception as exc:
            logger.exception("Webhook handler failed for event %s", event.id, extra=context)
            return self._finish(event, ReconcileOutcome.FAILED, f"{type(exc).__name__}: {exc}", received_at)

        logger.info(
            "Processed webhook event %s: %s",
            event.id,
            result.outcome.value,
            extra={
                **context,
                "subscription_id": result.subscription.subscription_id if result.subscription else None,
            },
        )
        return self._finish(event, result.outcome, result.detail, received_at)

    def _previous_receipt(self, event_id: str) -> Optional[WebhookEventRecord]:
        try:
            with self.repository.transaction() as uow:
                return uow.get_webhook_event(event_id)
        except Exception:
            logger.exception("Could not look up webhook receipt %s", event_id, extra={"event_id": event_id})
            return None

    def _finish(
        self,
        event: AnyEvent,
        outcome: ReconcileOutcome,
        detail: Optional[str],
        received_at: datetime,
    ) -> WebhookReceipt:
        record = WebhookEventRecord(
            event_id=event.id,
            event_type=event.type,
            payload=event_to_payload(event),
            outcome=outcome,
            detail=detail,
            received_at=received_at,
            processed_at=self._now(),
        )
        try:
            with self.repository.transaction() as uow:
                uow.record_webhook_event(record)
        except Exception:
            logger.exception(
                "Could not record webhook receipt %s",
                event.id,
                extra={"event_id": event.id, "event_type": event.type},
            )
        return WebhookReceipt(event_id=event.id, event_type=event.type, outcome=outcome, detail=detail)
