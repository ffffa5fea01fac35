from __future__ import annotations

from datetime import datetime, timezone

import pytest

from seatledger.app.notifications import (
    DevLogProvider,
    EmailProvider,
    NotificationDispatcher,
    SMTPProvider,
    create_email_provider,
    grace_period_expired_message,
    payment_failed_message,
    subscription_canceled_message,
)
from seatledger.config import EmailConfig


class RecordingProvider(EmailProvider):
    name = "recording"

    def __init__(self, *, fail: bool = False) -> None:
        super().__init__(sender="billing@example.com")
        self.fail = fail
        self.messages = []

    def send_email(self, to: str, subject: str, body: str) -> None:
        if self.fail:
            raise ConnectionError("relay down")
        self.messages.append((to, subject, body))


def test_payment_failed_message_mentions_deadline_and_billing_link() -> None:
    message = payment_failed_message(
        organization_name="Acme Robotics",
        grace_period_end=datetime(2025, 1, 8, tzinfo=timezone.utc),
        app_base_url="https://app.test/",
    )

    assert message.subject == "Payment Failed - Action Required"
    assert "Acme Robotics" in message.body
    assert "January 08, 2025" in message.body
    assert "https://app.test/settings/billing" in message.body
    assert "{{" not in message.body


def test_cancellation_message_varies_with_access_window() -> None:
    scheduled = subscription_canceled_message(
        organization_name="Acme Robotics",
        access_until=datetime(2025, 1, 1, tzinfo=timezone.utc),
        app_base_url="https://app.test",
    )
    immediate = subscription_canceled_message(
        organization_name="Acme Robotics",
        access_until=None,
        app_base_url="https://app.test",
    )

    assert "until January 01, 2025" in scheduled.body
    assert "no longer available" in immediate.body


def test_grace_expired_message_without_deadline() -> None:
    message = grace_period_expired_message(
        organization_name="Globex", grace_period_end=None, app_base_url="https://app.test"
    )

    assert message.subject == "Access suspended - payment overdue"
    assert "the end of the grace period" in message.body


def test_dispatcher_delivers_in_background() -> None:
    provider = RecordingProvider()
    dispatcher = NotificationDispatcher(provider, max_workers=1)
    dispatcher.start()
    try:
        future = dispatcher.send("billing@acme.test", "Hello", "Body")
        future.result(timeout=5)
    finally:
        dispatcher.stop()

    assert provider.messages == [("billing@acme.test", "Hello", "Body")]
    assert dispatcher.delivered == 1
    assert dispatcher.failed == 0


def test_dispatcher_counts_provider_failures() -> None:
    dispatcher = NotificationDispatcher(RecordingProvider(fail=True))
    dispatcher.start()
    try:
        dispatcher.send("billing@acme.test", "Hello", "Body").result(timeout=5)
    finally:
        dispatcher.stop()

    assert dispatcher.failed == 1
    assert dispatcher.delivered == 0


def test_dispatcher_drops_messages_when_not_running() -> None:
    provider = RecordingProvider()
    dispatcher = NotificationDispatcher(provider)

    assert dispatcher.send("billing@acme.test", "Hello", "Body") is None
    dispatcher.start()
    dispatcher.stop()
    assert dispatcher.send("billing@acme.test", "Hello", "Body") is None
    assert provider.messages == []


@pytest.mark.parametrize(
    "name,expected",
    [("smtp", SMTPProvider), ("SMTP ", SMTPProvider), ("dev", DevLogProvider), ("carrier-pigeon", DevLogProvider)],
)
def test_create_email_provider(name, expected) -> None:
    provider = create_email_provider(EmailConfig(provider_name=name, smtp_host="smtp.test"))

    assert isinstance(provider, expected)


class FakeSMTP:
    calls: list = []

    def __init__(self, host, port, timeout):
        self.calls.append(("connect", type(self).__name__, host, port, timeout))

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def close(self):
        self.calls.append(("close",))

    def starttls(self):
        self.calls.append(("starttls",))

    def login(self, username, password):
        self.calls.append(("login", username, password))

    def send_message(self, message):
        self.calls.append(("send", message["From"], message["To"], message["Subject"], message.get_content().strip()))


class FakeSMTPSSL(FakeSMTP):
    pass


@pytest.fixture
def smtp_calls(monkeypatch):
    FakeSMTP.calls = []
    monkeypatch.setattr("seatledger.app.notifications.providers.smtplib.SMTP", FakeSMTP)
    monkeypatch.setattr("seatledger.app.notifications.providers.smtplib.SMTP_SSL", FakeSMTPSSL)
    return FakeSMTP.calls


def test_smtp_provider_uses_starttls_and_login(smtp_calls) -> None:
    provider = SMTPProvider(
        sender="billing@example.com",
        host="smtp.test",
        port=587,
        username="mailer",
        password="secret",
        use_tls=True,
        timeout=5,
    )

    provider.send_email("ap@globex.test", "Invoice", "Body")

    assert smtp_calls == [
        ("connect", "FakeSMTP", "smtp.test", 587, 5),
        ("starttls",),
        ("login", "mailer", "secret"),
        ("send", "billing@example.com", "ap@globex.test", "Invoice", "Body"),
    ]


def test_smtp_provider_uses_implicit_tls_on_port_465(smtp_calls) -> None:
    provider = SMTPProvider(sender="billing@example.com", host="smtp.test", port=465, use_tls=True)

    provider.send_email("ap@globex.test", "Invoice", "Body")

    assert smtp_calls[0] == ("connect", "FakeSMTPSSL", "smtp.test", 465, 30.0)
    assert ("starttls",) not in smtp_calls
    assert not any(call[0] == "login" for call in smtp_calls)


def test_messages_carry_delivery_headers() -> None:
    message = DevLogProvider(sender="billing@acme.test").build_message("ap@globex.test", "Hello", "Body")

    assert message["Message-ID"].endswith("@acme.test>")
    assert message["Date"]
    assert message.get_content_type() == "text/plain"


def test_dispatcher_counts_concurrent_deliveries() -> None:
    provider = RecordingProvider()
    dispatcher = NotificationDispatcher(provider, max_workers=4)
    dispatcher.start()
    try:
        futures = [dispatcher.send(f"user{index}@acme.test", "Hello", "Body") for index in range(200)]
        for future in futures:
            future.result(timeout=5)
    finally:
        dispatcher.stop()

    assert dispatcher.delivered == 200
    assert len(provider.messages) == 200
