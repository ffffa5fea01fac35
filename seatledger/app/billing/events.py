"""Typed payment processor webhook events.

Deliveries are decoded once, at the gateway, into one of a closed set of
event models discriminated by ``type``. Handlers never see raw dictionaries.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Annotated, Any, Dict, Generic, List, Literal, Mapping, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .errors import MalformedEvent
from .models import SubscriptionStatus

ObjectT = TypeVar("ObjectT")

CHECKOUT_COMPLETED = "checkout.session.completed"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

HANDLED_EVENT_TYPES = frozenset(
    {
        CHECKOUT_COMPLETED,
        INVOICE_PAID,
        INVOICE_PAYMENT_FAILED,
        SUBSCRIPTION_CREATED,
        SUBSCRIPTION_UPDATED,
        SUBSCRIPTION_DELETED,
    }
)

PROCESSOR_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.DELETED,
    "deleted": SubscriptionStatus.DELETED,
    "unpaid": SubscriptionStatus.UNPAID,
    "trialing": SubscriptionStatus.TRIALING,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.INCOMPLETE_EXPIRED,
}


def map_processor_status(value: str) -> Optional[SubscriptionStatus]:
    return PROCESSOR_STATUS_MAP.get((value or "").strip().lower())


class _Body(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class PriceRef(_Body):
    id: str


class LineItem(_Body):
    price: Optional[PriceRef] = None
    quantity: int = Field(default=1, ge=0)


class LineItemList(_Body):
    data: List[LineItem] = Field(default_factory=list)

    def single_price_id(self) -> Optional[str]:
        """Price id when exactly one priced line item is present."""

        priced = [item.price.id for item in self.data if item.price is not None]
        return priced[0] if len(priced) == 1 else None

    def total_quantity(self) -> Optional[int]:
        if not self.data:
            return None
        return sum(item.quantity for item in self.data)


class CheckoutSessionBody(_Body):
    id: str
    mode: str = "subscription"
    customer: Optional[str] = None
    customer_email: Optional[str] = None
    subscription: Optional[str] = None
    client_reference_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    line_items: LineItemList = Field(default_factory=LineItemList)


class InvoiceBody(_Body):
    id: str
    customer: Optional[str] = None
    customer_email: Optional[str] = None
    subscription: Optional[str] = None
    amount_due: int = Field(default=0, ge=0)
    amount_paid: int = Field(default=0, ge=0)
    currency: str = "usd"
    due_date: Optional[datetime] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


class SubscriptionBody(_Body):
    id: str
    customer: Optional[str] = None
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    items: LineItemList = Field(default_factory=LineItemList)


class EventData(BaseModel, Generic[ObjectT]):
    body: ObjectT = Field(alias="object")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class _Envelope(BaseModel):
    id: str
    created: Optional[datetime] = None
    livemode: bool = False

    model_config = ConfigDict(extra="ignore", frozen=True)


class CheckoutCompletedEvent(_Envelope):
    type: Literal["checkout.session.completed"]
    data: EventData[CheckoutSessionBody]


class InvoicePaidEvent(_Envelope):
    type: Literal["invoice.paid"]
    data: EventData[InvoiceBody]


class InvoicePaymentFailedEvent(_Envelope):
    type: Literal["invoice.payment_failed"]
    data: EventData[InvoiceBody]


class SubscriptionCreatedEvent(_Envelope):
    type: Literal["customer.subscription.created"]
    data: EventData[SubscriptionBody]


class SubscriptionUpdatedEvent(_Envelope):
    type: Literal["customer.subscription.updated"]
    data: EventData[SubscriptionBody]


class SubscriptionDeletedEvent(_Envelope):
    type: Literal["customer.subscription.deleted"]
    data: EventData[SubscriptionBody]


class UnhandledEvent(_Envelope):
    """Authentic delivery of a type this service does not react to."""

    type: str


WebhookEvent = Annotated[
    Union[
        CheckoutCompletedEvent,
        InvoicePaidEvent,
        InvoicePaymentFailedEvent,
        SubscriptionCreatedEvent,
        SubscriptionUpdatedEvent,
        SubscriptionDeletedEvent,
    ],
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter = TypeAdapter(WebhookEvent)

AnyEvent = Union[
    CheckoutCompletedEvent,
    InvoicePaidEvent,
    InvoicePaymentFailedEvent,
    SubscriptionCreatedEvent,
    SubscriptionUpdatedEvent,
    SubscriptionDeletedEvent,
    UnhandledEvent,
]


def decode_event_payload(raw: Mapping[str, Any]) -> AnyEvent:
    """Validate an already parsed JSON object into a typed event."""

    if not isinstance(raw, Mapping):
        raise MalformedEvent("Webhook payload must be a JSON object")
    event_type = raw.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEvent("Webhook payload is missing an event type")
    try:
        if event_type not in HANDLED_EVENT_TYPES:
            return UnhandledEvent.model_validate(raw)
        return _EVENT_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        raise MalformedEvent(f"Invalid {event_type} payload: {exc.error_count()} validation error(s)") from exc


def decode_event(payload: bytes) -> AnyEvent:
    try:
        raw = json.loads(payload)
    except (TypeError, ValueError) as exc:
        raise MalformedEvent("Webhook payload is not valid JSON") from exc
    return decode_event_payload(raw)


def event_to_payload(event: AnyEvent) -> Dict[str, Any]:
    return event.model_dump(mode="json", by_alias=True)
