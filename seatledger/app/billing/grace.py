"""Grace period computation for subscriptions with failed payments."""
from __future__ import annotations

from datetime import datetime, timedelta

from .timeutils import as_utc


def grace_period_end(period_end: datetime, grace_days: int) -> datetime:
    """Return the instant access ends for a past-due subscription.

    The deadline is measured from the end of the billing period the failed
    payment was meant to cover, not from when the failure was observed.
    """

    if grace_days < 0:
        raise ValueError("grace_days must be zero or positive")
    return as_utc(period_end) + timedelta(days=grace_days)
