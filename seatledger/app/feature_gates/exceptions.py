"""Errors raised when a subscription does not entitle a caller."""
from __future__ import annotations

from typing import Any, Mapping, Optional

from fastapi import status

from ..billing.errors import BillingError


class FeatureGateError(BillingError):
    """Access denied by subscription state; ``code`` carries the denial reason."""

    code = "feature_unavailable"
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, reason: str, message: str, *, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message, detail=detail)
        self.code = reason
