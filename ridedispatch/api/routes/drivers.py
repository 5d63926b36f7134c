"""
Driver self-service endpoints
=============================

GET /api/v1/drivers/me/status   -- own status, active bookings and trip totals
PUT /api/v1/drivers/me/status   -- go online/offline, optionally with location.
                                   Going offline returns the driver's
                                   accepted / on-way bookings to the pool.
GET /api/v1/drivers/me/bookings -- ``view=available`` is the waiting pool to
                                   self-accept from; ``assigned``,
                                   ``completed`` and ``all`` list own bookings.
"""

from fastapi import APIRouter, Depends, Query, Request

from ridedispatch.api.dependencies import get_service, require_role
from ridedispatch.api.middleware import limiter
from ridedispatch.api.schemas import (
    BookingListResponse,
    BookingResponse,
    DriverOverviewResponse,
    DriverResponse,
    DriverStatusRequest,
    ErrorResponse,
)
from ridedispatch.config import settings
from ridedispatch.domain.commands import UpdateDriverStatus
from ridedispatch.domain.entities import Actor
from ridedispatch.domain.enums import Role
from ridedispatch.domain.ports import DriverBookingView
from ridedispatch.services.dispatch import DispatchService

router = APIRouter(prefix="/drivers", tags=["drivers"])

_driver = require_role(Role.DRIVER)


@router.get(
    "/me/status",
    response_model=DriverOverviewResponse,
    summary="Own status, active bookings and trip totals",
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def get_my_status(
    actor: Actor = Depends(_driver),
    service: DispatchService = Depends(get_service),
):
    overview = await service.driver_overview(actor.user_id)
    return DriverOverviewResponse(
        driver=DriverResponse.from_entity(overview.driver),
        active_bookings=[BookingResponse.from_entity(b) for b in overview.active_bookings],
        completed_trips=overview.completed_trips,
        total_earnings=overview.total_earnings,
    )


@router.put(
    "/me/status",
    response_model=DriverResponse,
    summary="Update own availability",
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
@limiter.limit(settings.driver_status_rate_limit)
async def update_my_status(
    request: Request,
    body: DriverStatusRequest,
    actor: Actor = Depends(_driver),
    service: DispatchService = Depends(get_service),
):
    driver = await service.handle(
        UpdateDriverStatus(
            driver_id=actor.user_id,
            status=body.status,
            location=body.location_domain(),
        )
    )
    return DriverResponse.from_entity(driver)


@router.get(
    "/me/bookings",
    response_model=BookingListResponse,
    summary="List bookings open for self-accept, or own bookings",
    responses={403: {"model": ErrorResponse}},
)
async def list_my_bookings(
    view: DriverBookingView = Query(DriverBookingView.ALL),
    limit: int = Query(20, ge=1, le=50),
    actor: Actor = Depends(_driver),
    service: DispatchService = Depends(get_service),
):
    bookings = await service.driver_bookings(actor, view, limit)
    return BookingListResponse.from_entities(bookings, limit)
