"""
Interfaces the dispatch service consumes.

The service never imports a concrete store.  Any backend offering
per-record compare-and-swap (or serialisable transactions) can implement
``DispatchStore``; ``infrastructure.repositories`` does it with
PostgreSQL row locks + version columns, ``infrastructure.memory_store``
with in-process version counters.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol, TypeVar

from .entities import Actor, Booking, Driver
from .enums import ACTIVE_ASSIGNED, BookingStatus

T = TypeVar("T")


class Transaction(Protocol):
    """Reads and buffered writes of one optimistic transaction."""

    async def get_booking(self, booking_id: str) -> Optional[Booking]: ...

    async def get_driver(self, driver_id: str) -> Optional[Driver]: ...

    def put_booking(self, booking: Booking) -> None: ...

    def put_driver(self, driver: Driver) -> None: ...


class DispatchStore(Protocol):
    async def attempt(self, work: Callable[[Transaction], Awaitable[T]]) -> T:
        """
        Run *work* in a single transaction attempt and commit.

        Raises ``WriteConflict`` if a concurrent commit invalidated what
        *work* read.  Any exception from *work* rolls the attempt back and
        propagates unchanged.
        """
        ...

    # Non-transactional reads: may be stale, never used to decide a write
    # without re-reading inside a transaction.

    async def get_booking(self, booking_id: str) -> Optional[Booking]: ...

    async def get_driver(self, driver_id: str) -> Optional[Driver]: ...

    async def available_drivers(
        self, cells: Optional[set[str]] = None
    ) -> list[Driver]: ...

    async def bookings_for_driver(
        self, driver_id: str, statuses: Iterable[BookingStatus]
    ) -> list[Booking]: ...

    async def waiting_bookings(self, limit: int) -> list[Booking]: ...

    async def list_bookings(self, query: BookingQuery) -> list[Booking]: ...


# ── Listing queries ───────────────────────────────────────────────────


class DriverBookingView(str, enum.Enum):
    """The booking lists a driver can page through."""

    AVAILABLE = "available"  # the waiting pool they may self-accept from
    ASSIGNED = "assigned"
    COMPLETED = "completed"
    ALL = "all"


@dataclass(frozen=True)
class BookingQuery:
    """
    Filter for booking listings.  Unset fields match every booking.

    ``driver_id`` matches the driver currently attached and, for completed
    bookings, the driver who completed them (the snapshot is cleared on
    completion but ``last_driver_id`` keeps it).
    """

    statuses: Optional[frozenset[BookingStatus]] = None
    driver_id: Optional[str] = None
    customer_id: Optional[str] = None
    service_tier: Optional[str] = None
    newest_first: bool = True
    limit: Optional[int] = 20
    offset: int = 0

    @classmethod
    def for_driver(
        cls, driver_id: str, view: DriverBookingView, limit: Optional[int] = 20
    ) -> BookingQuery:
        if view == DriverBookingView.AVAILABLE:
            return cls(statuses=frozenset({BookingStatus.WAITING}), limit=limit)
        statuses = {
            DriverBookingView.ASSIGNED: ACTIVE_ASSIGNED,
            DriverBookingView.COMPLETED: frozenset({BookingStatus.COMPLETED}),
            DriverBookingView.ALL: None,
        }[view]
        return cls(statuses=statuses, driver_id=driver_id, limit=limit)

    def matches(self, booking: Booking) -> bool:
        if self.statuses is not None and booking.status not in self.statuses:
            return False
        if self.driver_id is not None and not booking.handled_by(self.driver_id):
            return False
        if self.customer_id is not None and booking.customer_id != self.customer_id:
            return False
        if self.service_tier is not None and booking.service_tier != self.service_tier:
            return False
        return True


@dataclass(frozen=True)
class DispatchEvent:
    """Emitted once per committed transition."""

    booking_id: str
    event: str
    status: BookingStatus
    previous_status: Optional[BookingStatus]
    at: datetime
    driver_id: Optional[str] = None
    actor: Optional[Actor] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "booking_id": self.booking_id,
            "event": self.event,
            "status": self.status.value,
            "previous_status": (
                self.previous_status.value if self.previous_status else None
            ),
            "at": self.at.isoformat(),
            "driver_id": self.driver_id,
            "actor": (
                {"role": self.actor.role.value, "user_id": self.actor.user_id}
                if self.actor
                else None
            ),
            **self.extra,
        }


class NotificationSink(Protocol):
    """Fire-and-forget delivery; failures never undo a commit."""

    async def notify(self, user_id: str, event: DispatchEvent) -> None: ...


class IdentityResolver(Protocol):
    async def resolve(self, credential: str) -> Optional[Actor]: ...
