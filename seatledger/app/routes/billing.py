"""API routes exposing billing management for organizations."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from ..billing import BillingError, BillingService, Subscription
from ..schemas.billing import (
    CancelSubscriptionRequest,
    ChangePlanRequest,
    CreateSubscriptionRequest,
    FeatureAccessResponse,
    InvoiceListResponse,
    InvoiceResponse,
    SeatCountRequest,
    SubscriptionResponse,
)
from ..services.billing import get_billing_service

router = APIRouter(prefix="/api/billing/organizations/{organization_id}", tags=["billing"])


def _actor_id(actor_id: Optional[str] = Header(None, alias="X-Actor-Id")) -> str:
    """Identify the caller; HTTP requests never run as the internal actor."""

    actor = (actor_id or "").strip()
    if not actor:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "actor_required", "message": "X-Actor-Id header is required"},
        )
    return actor


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


def _respond(service: BillingService, subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse.from_subscription(subscription, service.get_plan(subscription))


@router.get("/subscription", response_model=SubscriptionResponse)
def get_subscription(
    organization_id: str,
    *,
    actor_id: str = Depends(_actor_id),
    service: BillingService = Depends(get_billing_service),
) -> SubscriptionResponse:
    with _translate_errors():
        subscription = service.get_subscription(organization_id, actor_id=actor_id)
    return _respond(service, subscription)


@router.post("/subscription", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
def create_subscription(
    organization_id: str,
    payload: CreateSubscriptionRequest,
    *,
    actor_id: str = Depends(_actor_id),
    service: BillingService = Depends(get_billing_service),
) -> SubscriptionResponse:
    with _translate_errors():
        subscription = service.create_subscription(
            organization_id,
            payload.tier,
            payload.billing_interval,
            external_id=payload.external_id,
            seats=payload.seats,
            actor_id=actor_id,
        )
    return _respond(service, subscription)


@router.post("/subscription/plan", response_model=SubscriptionResponse)
def change_plan(
    organization_id: str,
    payload: ChangePlanRequest,
    *,
    actor_id: str = Depends(_actor_id),
    service: BillingService = Depends(get_billing_service),
) -> SubscriptionResponse:
    with _translate_errors():
        subscription = service.change_plan(
            organization_id,
            payload.tier,
            payload.billing_interval,
            actor_id=actor_id,
        )
    return _respond(service, subscription)


@router.post("/subscription/cancel", response_model=SubscriptionResponse)
def cancel_subscription(
    organization_id: str,
    payload: Optional[CancelSubscriptionRequest] = None,
    *,
    actor_id: str = Depends(_actor_id),
    service: BillingService = Depends(get_billing_service),
) -> SubscriptionResponse:
    immediate = payload.immediate if payload else False
    with _translate_errors():
        subscription = service.cancel_subscription(organization_id, immediate=immediate, actor_id=actor_id)
    return _respond(service, subscription)


@router.post("/seats/add", response_model=SubscriptionResponse)
def add_seats(
    organization_id: str,
    payload: SeatCountRequest,
    *,
    actor_id: str = Depends(_actor_id),
    service: BillingService = Depends(get_billing_service),
) -> SubscriptionResponse:
    with _translate_errors():
        subscription = service.add_seats(organization_id, payload.count, actor_id=actor_id)
    return _respond(service, subscription)


@router.post("/seats/remove", response_model=SubscriptionResponse)
def remove_seats(
    organization_id: str,
    payload: SeatCountRequest,
    *,
    actor_id: str = Depends(_actor_id),
    service: BillingService = Depends(get_billing_service),
) -> SubscriptionResponse:
    with _translate_errors():
        subscription = service.remove_seats(organization_id, payload.count, actor_id=actor_id)
    return _respond(service, subscription)


@router.put("/seats/{user_id}", response_model=SubscriptionResponse)
def assign_seat(
    organization_id: str,
    user_id: str,
    *,
    actor_id: str = Depends(_actor_id),
    service: BillingService = Depends(get_billing_service),
) -> SubscriptionResponse:
    with _translate_errors():
        subscription = service.assign_seat(organization_id, user_id, actor_id=actor_id)
    return _respond(service, subscription)


@router.delete("/seats/{user_id}", response_model=SubscriptionResponse)
def unassign_seat(
    organization_id: str,
    user_id: str,
    *,
    actor_id: str = Depends(_actor_id),
    service: BillingService = Depends(get_billing_service),
) -> SubscriptionResponse:
    with _translate_errors():
        subscription = service.unassign_seat(organization_id, user_id, actor_id=actor_id)
    return _respond(service, subscription)


@router.get(
    "/features/{feature}",
    response_model=FeatureAccessResponse,
    dependencies=[Depends(_actor_id)],
)
def check_feature(
    organization_id: str,
    feature: str,
    *,
    service: BillingService = Depends(get_billing_service),
) -> FeatureAccessResponse:
    return FeatureAccessResponse(feature=feature, enabled=service.has_feature(organization_id, feature))


@router.get("/invoices", response_model=InvoiceListResponse)
def list_invoices(
    organization_id: str,
    limit: int = Query(20, ge=1, le=100),
    *,
    actor_id: str = Depends(_actor_id),
    service: BillingService = Depends(get_billing_service),
) -> InvoiceListResponse:
    with _translate_errors():
        invoices = service.list_invoices(organization_id, limit=limit, actor_id=actor_id)
    return InvoiceListResponse(invoices=[InvoiceResponse.from_invoice(invoice) for invoice in invoices])
