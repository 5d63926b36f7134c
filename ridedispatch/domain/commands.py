"""
Request types accepted by the dispatch service.

One frozen dataclass per entry point, each with explicit required and
optional fields.  ``DispatchCommand`` is the closed union of all of them;
``DispatchService.handle`` dispatches on it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from .entities import Actor, Location
from .enums import BookingStatus, DriverStatus


@dataclass(frozen=True)
class RequestTransition:
    booking_id: str
    target_status: BookingStatus
    actor: Actor
    location: Optional[Location] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class AutoAssign:
    booking_id: str


@dataclass(frozen=True)
class AssignDriver:
    """Admin picks a specific driver for a waiting booking."""

    booking_id: str
    driver_id: str
    actor: Actor


@dataclass(frozen=True)
class ReleaseDriverBookings:
    driver_id: str


@dataclass(frozen=True)
class UpdateDriverStatus:
    driver_id: str
    status: DriverStatus
    location: Optional[Location] = None


DispatchCommand = Union[
    RequestTransition,
    AutoAssign,
    AssignDriver,
    ReleaseDriverBookings,
    UpdateDriverStatus,
]
