"""Typed errors raised by the billing components."""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


class BillingError(Exception):
    """Domain validation failure surfaced to internal API callers."""

    code = "billing_error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, *, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        body.update(self.detail)
        return body

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class SeatLimitExceeded(BillingError):
    code = "seat_limit_exceeded"
    status_code = status.HTTP_409_CONFLICT


class SeatBelowUsage(BillingError):
    code = "seat_below_usage"
    status_code = status.HTTP_409_CONFLICT


class SeatCeilingExceeded(BillingError):
    code = "seat_ceiling_exceeded"
    status_code = status.HTTP_409_CONFLICT


class InvalidSeatCount(BillingError):
    code = "invalid_seat_count"


class SeatAssignmentConflict(BillingError):
    """The user already holds a seat in another organization."""

    code = "seat_assignment_conflict"
    status_code = status.HTTP_409_CONFLICT


class DuplicateSubscription(BillingError):
    code = "duplicate_subscription"
    status_code = status.HTTP_409_CONFLICT


class UnknownPlanTier(BillingError):
    code = "unknown_plan_tier"


class InvalidTransition(BillingError):
    code = "invalid_transition"
    status_code = status.HTTP_409_CONFLICT


class NotFoundError(BillingError, LookupError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class SubscriptionNotFound(NotFoundError):
    code = "subscription_not_found"


class OrganizationNotFound(NotFoundError):
    code = "organization_not_found"


class InvoiceNotFound(NotFoundError):
    code = "invoice_not_found"


class UserNotFound(NotFoundError):
    code = "user_not_found"


class WebhookRejected(Exception):
    """Transport level failure; the delivery is answered with HTTP 400."""

    reason = "rejected"


class InvalidSignature(WebhookRejected):
    reason = "invalid_signature"


class MalformedEvent(WebhookRejected):
    reason = "malformed_event"
