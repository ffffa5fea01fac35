from __future__ import annotations

import json

import pytest

from seatledger.app.billing import InvalidSignature, MalformedEvent, ReconcileOutcome, WebhookSignatureVerifier


def checkout_event(event):
    return event(
        "checkout.session.completed",
        {
            "id": "cs_1",
            "customer": "cus_acme",
            "subscription": "sub_ext_1",
            "client_reference_id": "org-1",
            "metadata": {"plan_tier": "team"},
        },
        event_id="evt_checkout_1",
    )


def test_valid_signature_is_accepted(components) -> None:
    payload = b'{"id": "evt_1"}'
    header = components.verifier.sign(payload)

    components.verifier.verify(payload, header)


def test_tampered_payload_is_rejected(components) -> None:
    header = components.verifier.sign(b'{"amount": 100}')

    with pytest.raises(InvalidSignature):
        components.verifier.verify(b'{"amount": 1}', header)


@pytest.mark.parametrize("header", [None, "", "garbage", "t=abc,v1=deadbeef", "v1=deadbeef"])
def test_missing_or_malformed_header_is_rejected(components, header) -> None:
    with pytest.raises(InvalidSignature):
        components.verifier.verify(b"{}", header)


def test_signature_outside_tolerance_is_rejected(components) -> None:
    payload = b"{}"
    header = components.verifier.sign(payload)
    components.clock.advance(seconds=301)

    with pytest.raises(InvalidSignature):
        components.verifier.verify(payload, header)


def test_any_matching_v1_signature_is_accepted(components) -> None:
    payload = b"{}"
    header = components.verifier.sign(payload)
    timestamp, signature = header.split(",")

    components.verifier.verify(payload, f"{timestamp},v1={'0' * 64},{signature}")


def test_signature_from_other_secret_is_rejected(components) -> None:
    payload = b"{}"
    other = WebhookSignatureVerifier("whsec_other", clock=components.clock)

    with pytest.raises(InvalidSignature):
        components.verifier.verify(payload, other.sign(payload))


def test_empty_secret_is_refused() -> None:
    with pytest.raises(ValueError):
        WebhookSignatureVerifier("")


def test_unverified_delivery_is_not_recorded(components, event) -> None:
    payload = json.dumps(checkout_event(event)).encode("utf-8")

    with pytest.raises(InvalidSignature):
        components.gateway.process(payload, "t=1,v1=bad")

    assert components.repository.webhook_events == {}
    assert components.repository.subscriptions == {}


def test_signed_malformed_payload_is_rejected(components) -> None:
    payload = b'{"id": "evt_1", "type": "invoice.paid", "data": {"object": {}}}'

    with pytest.raises(MalformedEvent):
        components.gateway.process(payload, components.verifier.sign(payload))

    assert components.repository.webhook_events == {}


def test_unhandled_event_type_is_acknowledged(components, event) -> None:
    receipt = components.deliver(event("customer.created", {"id": "cus_1"}, event_id="evt_customer"))

    assert receipt.outcome == ReconcileOutcome.IGNORED
    assert components.repository.webhook_events["evt_customer"].outcome == ReconcileOutcome.IGNORED


def test_handler_failure_is_recorded_and_redelivery_retries(components, event, monkeypatch) -> None:
    delivery = checkout_event(event)

    def explode(_event):
        raise RuntimeError("database went away")

    monkeypatch.setattr(components.handlers, "handle", explode)
    failed = components.deliver(delivery)
    monkeypatch.undo()
    retried = components.deliver(delivery)

    assert failed.outcome == ReconcileOutcome.FAILED
    assert "database went away" in failed.detail
    assert retried.outcome == ReconcileOutcome.APPLIED
    record = components.repository.webhook_events["evt_checkout_1"]
    assert record.outcome == ReconcileOutcome.APPLIED
    assert record.attempts == 2
