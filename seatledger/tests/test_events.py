from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from seatledger.app.billing import MalformedEvent, SubscriptionStatus
from seatledger.app.billing.events import (
    CheckoutCompletedEvent,
    InvoicePaymentFailedEvent,
    SubscriptionUpdatedEvent,
    UnhandledEvent,
    decode_event,
    event_to_payload,
    map_processor_status,
)


def _encode(payload) -> bytes:
    return json.dumps(payload).encode("utf-8")


def test_decodes_checkout_session(event) -> None:
    raw = event(
        "checkout.session.completed",
        {
            "id": "cs_1",
            "mode": "subscription",
            "customer": "cus_acme",
            "subscription": "sub_ext_1",
            "client_reference_id": "org-1",
            "metadata": {"plan_tier": "team"},
            "line_items": {"data": [{"price": {"id": "price_team_monthly"}, "quantity": 3}]},
            "unexpected_field": "ignored",
        },
    )

    decoded = decode_event(_encode(raw))

    assert isinstance(decoded, CheckoutCompletedEvent)
    session = decoded.data.body
    assert session.subscription == "sub_ext_1"
    assert session.line_items.single_price_id() == "price_team_monthly"
    assert session.line_items.total_quantity() == 3


def test_decodes_invoice_timestamps_as_utc(event) -> None:
    period_end = datetime(2025, 1, 1, tzinfo=timezone.utc)
    raw = event(
        "invoice.payment_failed",
        {"id": "in_1", "subscription": "sub_ext_1", "amount_due": 4999, "period_end": int(period_end.timestamp())},
    )

    decoded = decode_event(_encode(raw))

    assert isinstance(decoded, InvoicePaymentFailedEvent)
    assert decoded.data.body.period_end == period_end
    assert decoded.data.body.currency == "usd"


def test_unknown_event_type_decodes_as_unhandled(event) -> None:
    decoded = decode_event(_encode(event("customer.created", {"id": "cus_1"})))

    assert isinstance(decoded, UnhandledEvent)
    assert decoded.type == "customer.created"


@pytest.mark.parametrize(
    "payload",
    [
        b"not json",
        b"[1, 2, 3]",
        b'{"id": "evt_1", "data": {}}',
        b'{"id": "evt_1", "type": "customer.subscription.updated", "data": {"object": {"id": "sub_1"}}}',
        b'{"type": "invoice.paid", "data": {"object": {"id": "in_1"}}}',
    ],
)
def test_malformed_payloads_are_rejected(payload: bytes) -> None:
    with pytest.raises(MalformedEvent):
        decode_event(payload)


def test_event_to_payload_keeps_wire_shape(event) -> None:
    raw = event("customer.subscription.updated", {"id": "sub_ext_1", "status": "active"}, event_id="evt_42")
    decoded = decode_event(_encode(raw))

    assert isinstance(decoded, SubscriptionUpdatedEvent)
    payload = event_to_payload(decoded)
    assert payload["id"] == "evt_42"
    assert payload["data"]["object"]["id"] == "sub_ext_1"


@pytest.mark.parametrize(
    "value,expected",
    [
        ("active", SubscriptionStatus.ACTIVE),
        ("canceled", SubscriptionStatus.DELETED),
        ("PAST_DUE", SubscriptionStatus.PAST_DUE),
        ("paused", None),
    ],
)
def test_map_processor_status(value, expected) -> None:
    assert map_processor_status(value) is expected
