"""Inbound payment processor webhooks."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from starlette.concurrency import run_in_threadpool

from ...app_context import BillingRuntime
from ..billing import WebhookRejected
from ..schemas.billing import WebhookAck
from ..services.billing import get_runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/payments", response_model=WebhookAck)
async def receive_payment_webhook(
    request: Request,
    runtime: BillingRuntime = Depends(get_runtime),
) -> WebhookAck:
    payload = await request.body()
    signature = request.headers.get(runtime.config.signature_header)
    try:
        # Handlers hit the database and take row locks; keep them off the event loop.
        receipt = await run_in_threadpool(runtime.gateway.process, payload, signature)
    except WebhookRejected as exc:
        logger.warning("Rejected webhook delivery: %s", exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    logger.debug(
        "Acknowledged webhook %s",
        receipt.event_id,
        extra={"event_id": receipt.event_id, "outcome": receipt.outcome.value},
    )
    return WebhookAck(received=True)
