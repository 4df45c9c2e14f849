"""
Quote endpoints
===============

GET  /api/v1/quotes/{quote_id}               -- quote with derived trip window
POST /api/v1/quotes/{quote_id}/assign-driver -- bind a driver, price, arm expiry
POST /api/v1/quotes/{quote_id}/auto-assign   -- fair (least recently assigned) pick
POST /api/v1/quotes/{quote_id}/pay           -- QUOTED -> PAID, returns reservation
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from charterbook.api.dependencies import get_quote_service
from charterbook.api.middleware import limiter
from charterbook.api.schemas import (
    AssignDriverRequest,
    ErrorResponse,
    PayRequest,
    QuoteResponse,
    ReservationResponse,
)
from charterbook.config import settings
from charterbook.services.quotes import QuoteStateMachine

router = APIRouter(prefix="/quotes", tags=["quotes"])

_errors = {
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


@router.get(
    "/{quote_id}",
    response_model=QuoteResponse,
    summary="Get a quote with its pricing and trip window",
    responses={404: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit)
async def get_quote(
    request: Request,
    quote_id: str,
    service: QuoteStateMachine = Depends(get_quote_service),
):
    return QuoteResponse.from_domain(await service.get_quote(quote_id))


@router.post(
    "/{quote_id}/assign-driver",
    response_model=QuoteResponse,
    summary="Assign a driver and issue the priced quote",
    description=(
        "Checks eligibility and date-range conflicts, prices the trip with "
        "the driver's own hourly rate and opens the 24 h payment window."
    ),
    responses=_errors,
)
@limiter.limit(settings.rate_limit)
async def assign_driver(
    request: Request,
    quote_id: str,
    body: AssignDriverRequest,
    service: QuoteStateMachine = Depends(get_quote_service),
):
    return QuoteResponse.from_domain(
        await service.assign_driver(quote_id, body.driver_id)
    )


@router.post(
    "/{quote_id}/auto-assign",
    response_model=QuoteResponse,
    summary="Assign the least recently assigned free driver",
    responses=_errors,
)
@limiter.limit(settings.rate_limit)
async def auto_assign(
    request: Request,
    quote_id: str,
    service: QuoteStateMachine = Depends(get_quote_service),
):
    return QuoteResponse.from_domain(await service.auto_assign(quote_id))


@router.post(
    "/{quote_id}/pay",
    response_model=ReservationResponse,
    summary="Confirm payment and create the reservation",
    responses={**_errors, 410: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit)
async def pay_quote(
    request: Request,
    quote_id: str,
    body: PayRequest,
    service: QuoteStateMachine = Depends(get_quote_service),
):
    reservation = await service.pay(quote_id, body.payment_reference)
    return ReservationResponse.from_domain(reservation)
