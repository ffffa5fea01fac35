"""FastAPI entry point for the billing reconciliation service."""
from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .app.routes import billing_router, webhooks_router
from .app.services.billing import build_runtime
from .app_context import BillingRuntime
from .config import BillingConfig, load_billing_config

load_dotenv()

logger = logging.getLogger("seatledger")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def create_app(
    runtime: Optional[BillingRuntime] = None,
    *,
    config: Optional[BillingConfig] = None,
) -> FastAPI:
    """Build the application; a runtime is assembled at startup unless one is supplied."""

    if config is None:
        config = runtime.config if runtime is not None else load_billing_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        active = runtime if runtime is not None else build_runtime(config)
        active.start()
        app.state.runtime = active
        try:
            yield
        finally:
            active.stop()
            app.state.runtime = None

    app = FastAPI(title="Seatledger Billing API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[config.app_base_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(webhooks_router)
    app.include_router(billing_router)
    return app


_config = load_billing_config()
configure_logging(_config.log_level)
app = create_app(config=_config)


def run() -> None:  # pragma: no cover - manual entry point
    import uvicorn

    uvicorn.run(
        "seatledger.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
    )
