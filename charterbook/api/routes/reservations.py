"""
Reservation endpoints
=====================

GET /api/v1/reservations/{reservation_id}/trip-status -- derived phase + chat gate
"""

from fastapi import APIRouter, Depends, Request

from charterbook.api.dependencies import get_trip_service
from charterbook.api.middleware import limiter
from charterbook.api.schemas import ErrorResponse, TripStatusResponse
from charterbook.config import settings
from charterbook.services.trips import TripStatusService

router = APIRouter(prefix="/reservations", tags=["reservations"])


@router.get(
    "/{reservation_id}/trip-status",
    response_model=TripStatusResponse,
    summary="Trip phase, chat availability and rider privacy level",
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit)
async def trip_status(
    request: Request,
    reservation_id: str,
    service: TripStatusService = Depends(get_trip_service),
):
    status = await service.trip_status(reservation_id)
    return TripStatusResponse(
        reservation_id=status.reservation_id,
        trip_start_at=status.window.trip_start_at,
        trip_end_at=status.window.trip_end_at,
        state=status.state.value,
        within_24_hours_of_start=status.within_24_hours_of_start,
        chat_enabled=status.chat_enabled,
        privacy=status.privacy,
    )
