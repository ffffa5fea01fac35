"""Outbound email transports for billing notices."""
from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import TYPE_CHECKING, Callable, Dict, Optional

if TYPE_CHECKING:  # pragma: no cover
    from ...config import EmailConfig

logger = logging.getLogger(__name__)

IMPLICIT_TLS_PORT = 465


class EmailProvider:
    """Delivers a single plain-text billing notice."""

    name = "base"

    def __init__(self, *, sender: str) -> None:
        self.sender = sender

    def build_message(self, to: str, subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message["Date"] = formatdate(localtime=False)
        message["Message-ID"] = make_msgid(domain=self.sender.rpartition("@")[2] or None)
        message.set_content(body)
        return message

    def send_email(self, to: str, subject: str, body: str) -> None:
        raise NotImplementedError

    def describe(self) -> Dict[str, str]:
        return {"email_provider": self.name, "email_sender": self.sender}


class DevLogProvider(EmailProvider):
    """Writes notices to the log instead of delivering them."""

    name = "dev"

    def send_email(self, to: str, subject: str, body: str) -> None:
        message = self.build_message(to, subject, body)
        logger.info(
            "Billing notice (not sent): %s",
            subject,
            extra={
                "email_recipient": to,
                "email_message_id": message["Message-ID"],
                **self.describe(),
            },
        )


class SMTPProvider(EmailProvider):
    """SMTP relay delivery; port 465 uses implicit TLS, other ports optional STARTTLS."""

    name = "smtp"

    def __init__(
        self,
        *,
        sender: str,
        host: str,
        port: int,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(sender=sender)
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def _connect(self) -> smtplib.SMTP:
        if self.port == IMPLICIT_TLS_PORT:
            return smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        client = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        if self.use_tls:
            try:
                client.starttls()
            except Exception:
                client.close()
                raise
        return client

    def send_email(self, to: str, subject: str, body: str) -> None:
        message = self.build_message(to, subject, body)
        with self._connect() as client:
            if self.username and self.password:
                client.login(self.username, self.password)
            client.send_message(message)
        logger.debug(
            "Billing notice relayed: %s",
            subject,
            extra={"email_recipient": to, "smtp_host": self.host, "smtp_port": self.port},
        )


def _dev_provider(config: EmailConfig) -> EmailProvider:
    return DevLogProvider(sender=config.from_email)


def _smtp_provider(config: EmailConfig) -> EmailProvider:
    return SMTPProvider(
        sender=config.from_email,
        host=config.smtp_host,
        port=config.smtp_port,
        username=config.smtp_username,
        password=config.smtp_password,
        use_tls=config.smtp_use_tls,
        timeout=config.smtp_timeout_seconds,
    )


_PROVIDER_FACTORIES: Dict[str, Callable[[EmailConfig], EmailProvider]] = {
    DevLogProvider.name: _dev_provider,
    SMTPProvider.name: _smtp_provider,
}


def create_email_provider(config: EmailConfig) -> EmailProvider:
    requested = (config.provider_name or DevLogProvider.name).strip().lower()
    factory = _PROVIDER_FACTORIES.get(requested)
    if factory is None:
        logger.warning("Unknown email provider %r; notices will only be logged", requested)
        factory = _dev_provider
    return factory(config)
