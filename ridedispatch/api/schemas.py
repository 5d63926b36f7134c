"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from ridedispatch.domain.entities import Booking, Driver, Location
from ridedispatch.domain.enums import BookingStatus, DriverStatus


class LocationSchema(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)

    def to_domain(self) -> Location:
        return Location(lat=self.lat, lng=self.lng)


def _location(schema: Optional[LocationSchema]) -> Optional[Location]:
    return schema.to_domain() if schema else None


# ── Requests ──────────────────────────────────────────────────────────


class TransitionRequest(BaseModel):
    target_status: BookingStatus
    location: Optional[LocationSchema] = None
    notes: Optional[str] = Field(None, max_length=500)

    def location_domain(self) -> Optional[Location]:
        return _location(self.location)


class AssignDriverRequest(BaseModel):
    driver_id: str = Field(..., min_length=1, max_length=64)


class DriverStatusRequest(BaseModel):
    status: DriverStatus = Field(
        ..., description="available or offline; busy is set by dispatch only."
    )
    location: Optional[LocationSchema] = None

    def location_domain(self) -> Optional[Location]:
        return _location(self.location)


# ── Responses ─────────────────────────────────────────────────────────


class DriverSnapshotResponse(BaseModel):
    id: str
    name: str
    phone: str
    vehicle: str
    license_plate: str
    location: Optional[LocationSchema] = None


class BookingResponse(BaseModel):
    id: str
    customer_id: str
    status: BookingStatus
    pickup_address: str
    pickup: Optional[LocationSchema] = None
    driver: Optional[DriverSnapshotResponse] = None
    price: Optional[float] = None
    service_tier: str
    driver_notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    on_way_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, booking: Booking) -> "BookingResponse":
        snap = booking.assigned_driver
        pickup = booking.pickup.location
        return cls(
            id=booking.id,
            customer_id=booking.customer_id,
            status=booking.status,
            pickup_address=booking.pickup.address,
            pickup=LocationSchema(lat=pickup.lat, lng=pickup.lng) if pickup else None,
            driver=(
                DriverSnapshotResponse(
                    id=snap.driver_id,
                    name=snap.name,
                    phone=snap.phone,
                    vehicle=snap.vehicle,
                    license_plate=snap.license_plate,
                    location=(
                        LocationSchema(lat=snap.location.lat, lng=snap.location.lng)
                        if snap.location
                        else None
                    ),
                )
                if snap
                else None
            ),
            price=booking.price,
            service_tier=booking.service_tier,
            driver_notes=booking.driver_notes,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
            accepted_at=booking.accepted_at,
            on_way_at=booking.on_way_at,
            arrived_at=booking.arrived_at,
            started_at=booking.started_at,
            completed_at=booking.completed_at,
            cancelled_at=booking.cancelled_at,
        )


class TransitionResponse(BaseModel):
    booking_id: str
    status: BookingStatus


class AssignmentResponse(BaseModel):
    booking_id: str
    driver_id: str
    distance_km: Optional[float] = None


class DriverResponse(BaseModel):
    id: str
    status: DriverStatus
    location: Optional[LocationSchema] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, driver: Driver) -> "DriverResponse":
        loc = driver.location
        return cls(
            id=driver.id,
            status=driver.status,
            location=LocationSchema(lat=loc.lat, lng=loc.lng) if loc else None,
            updated_at=driver.updated_at,
        )


class ReleaseResponse(BaseModel):
    driver_id: str
    released: int


class CycleResponse(BaseModel):
    assigned: int
    skipped: int
    failed: int
    exhausted: bool


class BookingListResponse(BaseModel):
    bookings: list[BookingResponse]
    count: int
    has_more: bool

    @classmethod
    def from_entities(cls, bookings: list[Booking], limit: int) -> "BookingListResponse":
        return cls(
            bookings=[BookingResponse.from_entity(b) for b in bookings],
            count=len(bookings),
            has_more=len(bookings) == limit,
        )


class DriverOverviewResponse(BaseModel):
    driver: DriverResponse
    active_bookings: list[BookingResponse]
    completed_trips: int
    total_earnings: float


class HealthResponse(BaseModel):
    status: str = "ok"


class ErrorResponse(BaseModel):
    detail: str
    code: str
