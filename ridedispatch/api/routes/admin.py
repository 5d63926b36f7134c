"""
Admin endpoints
===============

POST /api/v1/admin/bookings/{booking_id}/assign -- commit a specific driver
POST /api/v1/admin/drivers/{driver_id}/offline  -- force a driver offline (cascades)
POST /api/v1/admin/drivers/{driver_id}/release  -- re-run the offline cascade
POST /api/v1/admin/auto-assign/run              -- run one auto-assign batch now
GET  /api/v1/admin/bookings                     -- list bookings by status, driver,
                                                   customer or tier, newest first
GET  /api/v1/admin/health                       -- simple health check
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from ridedispatch.api.dependencies import get_service, require_role
from ridedispatch.api.middleware import limiter
from ridedispatch.api.schemas import (
    AssignDriverRequest,
    AssignmentResponse,
    BookingListResponse,
    CycleResponse,
    DriverResponse,
    ErrorResponse,
    HealthResponse,
    ReleaseResponse,
)
from ridedispatch.config import settings
from ridedispatch.domain.commands import (
    AssignDriver,
    ReleaseDriverBookings,
    UpdateDriverStatus,
)
from ridedispatch.domain.entities import Actor
from ridedispatch.domain.enums import BookingStatus, DriverStatus, Role
from ridedispatch.domain.ports import BookingQuery
from ridedispatch.services.dispatch import DispatchService
from ridedispatch.workers.auto_assign import assign_waiting_bookings

router = APIRouter(prefix="/admin", tags=["admin"])

_admin = require_role(Role.ADMIN)
_errors = {
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


@router.post(
    "/bookings/{booking_id}/assign",
    response_model=AssignmentResponse,
    summary="Assign a specific driver to a waiting booking",
    responses=_errors,
)
@limiter.limit(settings.admin_action_rate_limit)
async def assign_driver(
    request: Request,
    booking_id: str,
    body: AssignDriverRequest,
    actor: Actor = Depends(_admin),
    service: DispatchService = Depends(get_service),
):
    assignment = await service.handle(
        AssignDriver(booking_id=booking_id, driver_id=body.driver_id, actor=actor)
    )
    return AssignmentResponse(
        booking_id=assignment.booking_id, driver_id=assignment.driver_id
    )


@router.post(
    "/drivers/{driver_id}/offline",
    response_model=DriverResponse,
    summary="Force a driver offline and release their bookings",
    responses=_errors,
)
@limiter.limit(settings.admin_action_rate_limit)
async def force_offline(
    request: Request,
    driver_id: str,
    actor: Actor = Depends(_admin),
    service: DispatchService = Depends(get_service),
):
    driver = await service.handle(
        UpdateDriverStatus(driver_id=driver_id, status=DriverStatus.OFFLINE)
    )
    return DriverResponse.from_entity(driver)


@router.post(
    "/drivers/{driver_id}/release",
    response_model=ReleaseResponse,
    summary="Return an offline driver's in-flight bookings to the pool",
    responses=_errors,
)
@limiter.limit(settings.admin_action_rate_limit)
async def release_driver_bookings(
    request: Request,
    driver_id: str,
    actor: Actor = Depends(_admin),
    service: DispatchService = Depends(get_service),
):
    released = await service.handle(
        ReleaseDriverBookings(driver_id=driver_id)
    )
    return ReleaseResponse(driver_id=driver_id, released=released)


@router.post(
    "/auto-assign/run",
    response_model=CycleResponse,
    summary="Run one auto-assign batch immediately",
)
@limiter.limit(settings.admin_action_rate_limit)
async def run_auto_assign(
    request: Request,
    actor: Actor = Depends(_admin),
    service: DispatchService = Depends(get_service),
):
    result = await assign_waiting_bookings(service)
    return CycleResponse(
        assigned=result.assigned,
        skipped=result.skipped,
        failed=result.failed,
        exhausted=result.exhausted,
    )


@router.get(
    "/bookings",
    response_model=BookingListResponse,
    summary="List bookings with filters",
    responses={403: {"model": ErrorResponse}},
)
@limiter.limit(settings.admin_action_rate_limit)
async def list_bookings(
    request: Request,
    status: Optional[BookingStatus] = Query(None),
    driver_id: Optional[str] = Query(None, max_length=64),
    customer_id: Optional[str] = Query(None, max_length=64),
    service_tier: Optional[str] = Query(None, max_length=32),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(_admin),
    service: DispatchService = Depends(get_service),
):
    query = BookingQuery(
        statuses=frozenset({status}) if status else None,
        driver_id=driver_id,
        customer_id=customer_id,
        service_tier=service_tier,
        limit=limit,
        offset=(page - 1) * limit,
    )
    bookings = await service.list_bookings(actor, query)
    return BookingListResponse.from_entities(bookings, limit)


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health():
    return HealthResponse()
