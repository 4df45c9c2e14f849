"""
Driver endpoints
================

GET /api/v1/drivers/{driver_id}/eligibility?quote_id= -- can this driver take the quote?
"""

from fastapi import APIRouter, Depends, Query, Request

from charterbook.api.dependencies import get_quote_service
from charterbook.api.middleware import limiter
from charterbook.api.schemas import EligibilityResponse, ErrorResponse
from charterbook.config import settings
from charterbook.services.quotes import QuoteStateMachine

router = APIRouter(prefix="/drivers", tags=["drivers"])


@router.get(
    "/{driver_id}/eligibility",
    response_model=EligibilityResponse,
    summary="Check whether a driver can be assigned to a quote",
    description="Ineligibility is a normal answer (200 with a reason), not an error.",
    responses={404: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit)
async def driver_eligibility(
    request: Request,
    driver_id: str,
    quote_id: str = Query(..., min_length=1),
    service: QuoteStateMachine = Depends(get_quote_service),
):
    result = await service.check_eligibility(driver_id, quote_id)
    return EligibilityResponse.model_validate(result)
