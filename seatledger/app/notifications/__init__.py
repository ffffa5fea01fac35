"""Billing notification delivery."""

from .dispatcher import NotificationDispatcher, Notifier
from .messages import (
    RenderedMessage,
    grace_period_expired_message,
    payment_failed_message,
    subscription_canceled_message,
)
from .providers import DevLogProvider, EmailProvider, SMTPProvider, create_email_provider

__all__ = [
    "DevLogProvider",
    "EmailProvider",
    "NotificationDispatcher",
    "Notifier",
    "RenderedMessage",
    "SMTPProvider",
    "create_email_provider",
    "grace_period_expired_message",
    "payment_failed_message",
    "subscription_canceled_message",
]
