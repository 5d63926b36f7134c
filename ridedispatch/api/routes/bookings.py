"""
Booking endpoints
=================

GET  /api/v1/bookings/{booking_id}              -- booking with driver snapshot
POST /api/v1/bookings/{booking_id}/transitions  -- request a status change
POST /api/v1/bookings/{booking_id}/auto-assign  -- nearest-driver assignment (admin)
"""

from fastapi import APIRouter, Depends, Request

from ridedispatch.api.dependencies import get_actor, get_service, require_role
from ridedispatch.api.middleware import limiter
from ridedispatch.api.schemas import (
    AssignmentResponse,
    BookingResponse,
    ErrorResponse,
    TransitionRequest,
    TransitionResponse,
)
from ridedispatch.config import settings
from ridedispatch.domain.commands import AutoAssign, RequestTransition
from ridedispatch.domain.entities import Actor
from ridedispatch.domain.enums import Role
from ridedispatch.services.dispatch import DispatchService

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.get(
    "/{booking_id}",
    response_model=BookingResponse,
    summary="Get a booking",
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def get_booking(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    service: DispatchService = Depends(get_service),
):
    booking = await service.get_booking(booking_id, actor)
    return BookingResponse.from_entity(booking)


@router.post(
    "/{booking_id}/transitions",
    response_model=TransitionResponse,
    summary="Request a booking status change",
    description=(
        "Drivers accept, reject, progress and complete their bookings; "
        "customers cancel their own waiting bookings; admins override. "
        "Returns 409 when the edge does not exist or the booking/driver "
        "changed underneath the request."
    ),
    responses={
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
@limiter.limit(settings.driver_action_rate_limit)
async def request_transition(
    request: Request,
    booking_id: str,
    body: TransitionRequest,
    actor: Actor = Depends(get_actor),
    service: DispatchService = Depends(get_service),
):
    status = await service.handle(
        RequestTransition(
            booking_id=booking_id,
            target_status=body.target_status,
            actor=actor,
            location=body.location_domain(),
            notes=body.notes,
        )
    )
    return TransitionResponse(booking_id=booking_id, status=status)


@router.post(
    "/{booking_id}/auto-assign",
    response_model=AssignmentResponse,
    summary="Assign the nearest available driver",
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
@limiter.limit(settings.admin_action_rate_limit)
async def auto_assign(
    request: Request,
    booking_id: str,
    actor: Actor = Depends(require_role(Role.ADMIN)),
    service: DispatchService = Depends(get_service),
):
    assignment = await service.handle(AutoAssign(booking_id=booking_id))
    return AssignmentResponse(
        booking_id=assignment.booking_id,
        driver_id=assignment.driver_id,
        distance_km=assignment.distance_km,
    )
