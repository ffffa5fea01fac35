"""Rendering helpers for billing notification emails."""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

_TEMPLATE_PATH = Path(__file__).resolve().parent / "templates"
_PLACEHOLDER_PATTERN = re.compile(r"{{\s*(\w+)\s*}}")


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    body: str


def _load_template(template: str) -> str:
    path = _TEMPLATE_PATH / template
    return path.read_text(encoding="utf-8")


def _render_template(template: str, context: Dict[str, Any]) -> str:
    source = _load_template(template)

    def _replace(match: "re.Match[str]") -> str:
        value = context.get(match.group(1), "")
        return "" if value is None else str(value)

    return _PLACEHOLDER_PATTERN.sub(_replace, source)


def _render(base_template: str, context: Dict[str, Any]) -> RenderedMessage:
    subject = _render_template(f"{base_template}_subject.txt.j2", context)
    body = _render_template(f"{base_template}_body.txt.j2", context)
    return RenderedMessage(subject=subject.strip(), body=body.strip())


def _format_date(value: Optional[datetime]) -> str:
    return value.strftime("%B %d, %Y") if value else "the end of the grace period"


def billing_url(app_base_url: str) -> str:
    return f"{app_base_url.rstrip('/')}/settings/billing"


def payment_failed_message(
    *, organization_name: str, grace_period_end: Optional[datetime], app_base_url: str
) -> RenderedMessage:
    return _render(
        "payment_failed",
        {
            "organization_name": organization_name,
            "grace_period_end": _format_date(grace_period_end),
            "billing_url": billing_url(app_base_url),
        },
    )


def subscription_canceled_message(
    *, organization_name: str, access_until: Optional[datetime], app_base_url: str
) -> RenderedMessage:
    if access_until is not None:
        access_note = f"You keep access to paid features until {_format_date(access_until)}."
    else:
        access_note = "Paid features are no longer available."
    return _render(
        "subscription_canceled",
        {
            "organization_name": organization_name,
            "access_note": access_note,
            "billing_url": billing_url(app_base_url),
        },
    )


def grace_period_expired_message(
    *, organization_name: str, grace_period_end: Optional[datetime], app_base_url: str
) -> RenderedMessage:
    return _render(
        "grace_period_expired",
        {
            "organization_name": organization_name,
            "grace_period_end": _format_date(grace_period_end),
            "billing_url": billing_url(app_base_url),
        },
    )
