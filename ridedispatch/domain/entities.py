"""
Domain entities.

Records are plain mutable dataclasses: store adapters hydrate them inside a
transaction, the transition rules mutate them, and the adapter writes them
back.  No entity talks to a store.

Invariant kept by ``domain.transitions``: ``Booking.assigned_driver`` is set
iff ``Booking.status`` is in ``ACTIVE_ASSIGNED``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .enums import ACTIVE_ASSIGNED, BookingStatus, DriverStatus, Role


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Location:
    lat: float
    lng: float


@dataclass(frozen=True)
class Actor:
    """Caller identity as resolved by the identity service."""

    role: Role
    user_id: str

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_driver(self) -> bool:
        return self.role == Role.DRIVER


@dataclass(frozen=True)
class Pickup:
    address: str = ""
    location: Optional[Location] = None


@dataclass(frozen=True)
class DriverSnapshot:
    """Copy of the driver's public details taken at assignment time."""

    driver_id: str
    name: str = ""
    phone: str = ""
    vehicle: str = ""
    license_plate: str = ""
    location: Optional[Location] = None


# ── Entities ──────────────────────────────────────────────────────────


@dataclass
class Driver:
    id: str
    name: str = ""
    phone: str = ""
    vehicle: str = ""
    license_plate: str = ""
    status: DriverStatus = DriverStatus.OFFLINE
    location: Optional[Location] = None
    h3_cell: Optional[str] = None
    updated_at: Optional[datetime] = None

    def snapshot(self, location: Optional[Location] = None) -> DriverSnapshot:
        return DriverSnapshot(
            driver_id=self.id,
            name=self.name,
            phone=self.phone,
            vehicle=self.vehicle,
            license_plate=self.license_plate,
            location=location or self.location,
        )


@dataclass
class Booking:
    id: str
    customer_id: str
    status: BookingStatus = BookingStatus.WAITING
    pickup: Pickup = field(default_factory=Pickup)
    assigned_driver: Optional[DriverSnapshot] = None
    last_driver_id: Optional[str] = None
    price: Optional[float] = None
    service_tier: str = "standard"
    driver_notes: Optional[str] = None
    rejected_by: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    on_way_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    driver_went_offline_at: Optional[datetime] = None

    @property
    def driver_id(self) -> Optional[str]:
        return self.assigned_driver.driver_id if self.assigned_driver else None

    def is_assigned_to(self, driver_id: str) -> bool:
        return self.driver_id is not None and self.driver_id == driver_id

    def handled_by(self, driver_id: str) -> bool:
        """Assigned to *driver_id* now, or completed by them."""
        if self.status == BookingStatus.COMPLETED:
            return self.last_driver_id == driver_id
        return self.is_assigned_to(driver_id)

    @property
    def is_consistent(self) -> bool:
        """True when the driver snapshot agrees with the status."""
        return (self.assigned_driver is not None) == (
            self.status in ACTIVE_ASSIGNED
        )
