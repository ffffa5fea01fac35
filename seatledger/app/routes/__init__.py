"""HTTP routers for the billing service."""

from .billing import router as billing_router
from .webhooks import router as webhooks_router

__all__ = ["billing_router", "webhooks_router"]
