"""Clock and calendar helpers shared by the billing components."""
from __future__ import annotations

import calendar
from datetime import datetime, timezone
from typing import Callable, Optional

from .models import BillingInterval

Clock = Callable[[], datetime]


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def current_time(clock: Optional[Clock]) -> datetime:
    now = clock() if clock else datetime.now(timezone.utc)
    return as_utc(now)


def add_months(value: datetime, months: int) -> datetime:
    """Shift ``value`` by whole calendar months, clamping to the month's last day."""

    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def period_end_for(start: datetime, interval: BillingInterval) -> datetime:
    if interval == BillingInterval.YEARLY:
        return add_months(start, 12)
    return add_months(start, 1)
