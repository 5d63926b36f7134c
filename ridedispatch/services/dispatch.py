"""
Dispatch Service
================

Entry points
------------
* ``request_transition`` -- driver self-service actions and admin overrides,
  validated against ``domain.transitions.TRANSITIONS``.
* ``auto_assign``        -- nearest-driver matching + transactional commit,
  used by the auto-assign job and the admin "auto-assign" button.
* ``assign_driver``      -- admin commits a specific driver.
* ``release_driver_bookings`` / ``update_driver_status`` -- the cascade
  that returns a driver's in-flight bookings to the pool when they go
  offline.
* ``get_booking`` / ``list_bookings`` / ``driver_bookings`` /
  ``driver_overview`` -- reads for the API; never used to decide a write.

Concurrency safety
------------------
Every write goes through ``Transactor.run``: the unit of work re-reads the
booking and the driver *inside* the transaction, re-checks the guard, and
writes both records together.  Reads made outside a transaction (candidate
selection, pre-checks) are only hints; a stale hint surfaces as
``PreconditionFailed`` at commit time, never as a double assignment.

Notifications are sent after commit and are best-effort.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from ridedispatch.config import settings
from ridedispatch.domain import transitions
from ridedispatch.domain.commands import (
    AssignDriver,
    AutoAssign,
    DispatchCommand,
    ReleaseDriverBookings,
    RequestTransition,
    UpdateDriverStatus,
)
from ridedispatch.domain.distance import validate_location
from ridedispatch.domain.entities import Actor, Booking, Driver, Location
from ridedispatch.domain.enums import (
    ACTIVE_ASSIGNED,
    RELEASABLE_ON_OFFLINE,
    BookingStatus,
    DriverStatus,
)
from ridedispatch.domain.errors import (
    DriverUnavailable,
    Forbidden,
    InvalidCoordinates,
    NoCandidates,
    NotFound,
    PreconditionFailed,
    ValidationFailed,
)
from ridedispatch.domain.matching import (
    candidate_cells,
    location_h3_cell,
    rank_candidates,
)
from ridedispatch.domain.ports import (
    BookingQuery,
    DispatchEvent,
    DispatchStore,
    DriverBookingView,
    NotificationSink,
    Transaction,
)
from ridedispatch.services.transactor import Transactor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Assignment:
    booking_id: str
    driver_id: str
    distance_km: Optional[float] = None


@dataclass(frozen=True)
class DriverOverview:
    driver: Driver
    active_bookings: list[Booking]
    completed_trips: int
    total_earnings: float


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DispatchService:
    def __init__(
        self,
        store: DispatchStore,
        notifier: NotificationSink,
        *,
        transactor: Optional[Transactor] = None,
        clock: Callable[[], datetime] = utcnow,
        max_assign_attempts: Optional[int] = None,
        h3_resolution: Optional[int] = None,
        h3_rings: Optional[int] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.transactor = transactor or Transactor(store)
        self.clock = clock
        self.max_assign_attempts = (
            settings.auto_assign_max_attempts
            if max_assign_attempts is None
            else max_assign_attempts
        )
        if self.max_assign_attempts < 1:
            raise ValueError("max_assign_attempts must be at least 1")
        self.h3_resolution = h3_resolution or settings.h3_resolution
        self.h3_rings = h3_rings if h3_rings is not None else settings.matching_h3_rings

    async def handle(self, command: DispatchCommand):
        handlers = {
            RequestTransition: self.request_transition,
            AutoAssign: self.auto_assign,
            AssignDriver: self.assign_driver,
            ReleaseDriverBookings: self.release_driver_bookings,
            UpdateDriverStatus: self.update_driver_status,
        }
        handler = handlers.get(type(command))
        if handler is None:
            raise TypeError(f"Unsupported command: {type(command).__name__}")
        return await handler(command)

    # ── Reads ─────────────────────────────────────────────────────────

    async def get_booking(self, booking_id: str, actor: Actor) -> Booking:
        booking = await self.store.get_booking(booking_id)
        if booking is None:
            raise NotFound(f"Booking {booking_id} not found")
        visible = (
            actor.is_admin
            or booking.customer_id == actor.user_id
            or booking.is_assigned_to(actor.user_id)
            or (actor.is_driver and booking.status == BookingStatus.WAITING)
        )
        if not visible:
            raise Forbidden(f"Booking {booking_id} is not visible to {actor.user_id}")
        return booking

    async def list_bookings(self, actor: Actor, query: BookingQuery) -> list[Booking]:
        if not actor.is_admin:
            raise Forbidden("Only admins can list all bookings")
        return await self.store.list_bookings(query)

    async def driver_bookings(
        self, actor: Actor, view: DriverBookingView, limit: int = 20
    ) -> list[Booking]:
        """The waiting pool, or the driver's own assigned / completed bookings."""
        if not actor.is_driver:
            raise Forbidden("Driver role required")
        return await self.store.list_bookings(
            BookingQuery.for_driver(actor.user_id, view, limit)
        )

    async def driver_overview(self, driver_id: str) -> DriverOverview:
        driver = await self.store.get_driver(driver_id)
        if driver is None:
            raise NotFound(f"Driver {driver_id} not found")
        active = await self.store.bookings_for_driver(driver_id, ACTIVE_ASSIGNED)
        completed = await self.store.list_bookings(
            BookingQuery.for_driver(driver_id, DriverBookingView.COMPLETED, limit=None)
        )
        return DriverOverview(
            driver=driver,
            active_bookings=active,
            completed_trips=len(completed),
            total_earnings=sum(b.price or 0.0 for b in completed),
        )

    # ── RequestTransition ─────────────────────────────────────────────

    async def request_transition(self, cmd: RequestTransition) -> BookingStatus:
        location = _checked_location(cmd.location)

        async def work(tx: Transaction):
            booking = await tx.get_booking(cmd.booking_id)
            if booking is None:
                raise NotFound(f"Booking {cmd.booking_id} not found")

            rule = transitions.authorize(booking, cmd.target_status, cmd.actor)

            driver: Optional[Driver] = None
            if rule.needs_acting_driver:
                driver = await tx.get_driver(cmd.actor.user_id)
                if driver is None:
                    raise NotFound(f"Driver {cmd.actor.user_id} not found")
            elif rule.touches_driver and booking.driver_id:
                driver = await tx.get_driver(booking.driver_id)

            previous_driver_id = booking.driver_id
            transitions.apply(
                rule,
                booking,
                self.clock(),
                driver=driver,
                location=location,
                notes=cmd.notes,
                actor=cmd.actor,
            )
            tx.put_booking(booking)
            if driver is not None and rule.touches_driver:
                tx.put_driver(driver)
            return rule, booking, booking.driver_id or previous_driver_id

        rule, booking, driver_id = await self.transactor.run(work)
        logger.info(
            "Booking %s: %s -> %s by %s %s",
            booking.id,
            rule.source.value,
            rule.target.value,
            cmd.actor.role.value,
            cmd.actor.user_id,
        )
        await self._emit(
            booking,
            DispatchEvent(
                booking_id=booking.id,
                event=f"booking.{rule.effect.value}",
                status=booking.status,
                previous_status=rule.source,
                at=booking.updated_at or self.clock(),
                driver_id=driver_id,
                actor=cmd.actor,
            ),
            recipients=(booking.customer_id, driver_id),
        )
        return booking.status

    # ── AutoAssign ────────────────────────────────────────────────────

    async def auto_assign(self, cmd: AutoAssign) -> Assignment:
        booking = await self.store.get_booking(cmd.booking_id)
        if booking is None:
            raise NotFound(f"Booking {cmd.booking_id} not found")
        if booking.status != BookingStatus.WAITING or booking.assigned_driver:
            raise PreconditionFailed(f"Booking {booking.id} already assigned")
        pickup = booking.pickup.location
        if pickup is None:
            raise ValidationFailed("Booking is missing pickup coordinates")
        pickup = _checked_location(pickup)

        cells = candidate_cells(pickup, self.h3_resolution, self.h3_rings)
        lost: Optional[PreconditionFailed] = None

        for attempt in range(self.max_assign_attempts):
            ranked = rank_candidates(pickup, await self.store.available_drivers(cells))
            if not ranked:
                if lost is not None:
                    raise lost
                raise NoCandidates("No available drivers")

            choice = ranked[0]
            try:
                return await self._commit_assignment(
                    booking.id, choice.driver.id, choice.distance_km
                )
            except DriverUnavailable as exc:
                logger.info(
                    "Auto-assign %s: driver %s taken (attempt %d/%d)",
                    booking.id,
                    choice.driver.id,
                    attempt + 1,
                    self.max_assign_attempts,
                )
                lost = exc

        # every attempt lost its candidate to a concurrent assignment
        raise lost

    async def assign_driver(self, cmd: AssignDriver) -> Assignment:
        if not cmd.actor.is_admin:
            raise Forbidden("Only admins can assign drivers")
        return await self._commit_assignment(
            cmd.booking_id, cmd.driver_id, actor=cmd.actor, missing_driver=NotFound
        )

    async def _commit_assignment(
        self,
        booking_id: str,
        driver_id: str,
        distance_km: Optional[float] = None,
        *,
        actor: Optional[Actor] = None,
        missing_driver: type[Exception] = DriverUnavailable,
    ) -> Assignment:
        async def work(tx: Transaction) -> Booking:
            booking = await tx.get_booking(booking_id)
            if booking is None:
                raise NotFound(f"Booking {booking_id} not found")
            driver = await tx.get_driver(driver_id)
            if driver is None:
                raise missing_driver(f"Driver {driver_id} not found")

            transitions.assign(booking, driver, self.clock())
            tx.put_booking(booking)
            tx.put_driver(driver)
            return booking

        booking = await self.transactor.run(work)
        logger.info("Assigned booking %s to driver %s", booking_id, driver_id)
        await self._emit(
            booking,
            DispatchEvent(
                booking_id=booking_id,
                event="booking.assigned",
                status=booking.status,
                previous_status=BookingStatus.WAITING,
                at=booking.updated_at or self.clock(),
                driver_id=driver_id,
                actor=actor,
                extra={"distance_km": distance_km} if distance_km is not None else {},
            ),
            recipients=(booking.customer_id, driver_id),
        )
        return Assignment(booking_id, driver_id, distance_km)

    # ── Driver offline cascade ────────────────────────────────────────

    async def release_driver_bookings(self, cmd: ReleaseDriverBookings) -> int:
        """Return the driver's accepted / on-way bookings to the pool."""
        pending = await self.store.bookings_for_driver(
            cmd.driver_id, RELEASABLE_ON_OFFLINE
        )
        released = 0
        for candidate in pending:
            booking = await self.transactor.run(
                self._release_work(candidate.id, cmd.driver_id)
            )
            if booking is None:
                continue
            released += 1
            await self._emit(
                booking,
                DispatchEvent(
                    booking_id=booking.id,
                    event="booking.driver_offline",
                    status=booking.status,
                    previous_status=candidate.status,
                    at=booking.updated_at or self.clock(),
                    driver_id=cmd.driver_id,
                ),
                recipients=(booking.customer_id,),
            )

        if released:
            logger.info(
                "Driver %s offline: released %d booking(s)", cmd.driver_id, released
            )
        return released

    def _release_work(self, booking_id: str, driver_id: str):
        async def work(tx: Transaction) -> Optional[Booking]:
            driver = await tx.get_driver(driver_id)
            if driver is not None and driver.status != DriverStatus.OFFLINE:
                raise PreconditionFailed(
                    f"Driver {driver_id} is {driver.status.value}, not offline"
                )
            booking = await tx.get_booking(booking_id)
            if (
                booking is None
                or booking.status not in RELEASABLE_ON_OFFLINE
                or not booking.is_assigned_to(driver_id)
            ):
                return None

            now = self.clock()
            transitions.release_to_waiting(booking, now)
            booking.driver_went_offline_at = now
            tx.put_booking(booking)
            return booking

        return work

    async def update_driver_status(self, cmd: UpdateDriverStatus) -> Driver:
        if cmd.status == DriverStatus.BUSY:
            raise ValidationFailed("Drivers become busy only through assignment")
        location = _checked_location(cmd.location)
        cell = (
            location_h3_cell(location, self.h3_resolution) if location else None
        )

        if cmd.status == DriverStatus.AVAILABLE:
            # arrived/started bookings are never released, so the driver
            # stays out of the pool until those complete
            open_trips = await self.store.bookings_for_driver(
                cmd.driver_id, ACTIVE_ASSIGNED
            )
            if open_trips:
                raise PreconditionFailed(
                    f"Driver {cmd.driver_id} still has booking {open_trips[0].id}"
                )

        async def work(tx: Transaction) -> Driver:
            driver = await tx.get_driver(cmd.driver_id)
            if driver is None:
                raise NotFound(f"Driver {cmd.driver_id} not found")
            if cmd.status == DriverStatus.AVAILABLE and driver.status == DriverStatus.BUSY:
                raise PreconditionFailed(f"Driver {driver.id} has an active booking")

            driver.status = cmd.status
            if location is not None:
                driver.location = location
                driver.h3_cell = cell
            driver.updated_at = self.clock()
            tx.put_driver(driver)
            return driver

        driver = await self.transactor.run(work)
        logger.info("Driver %s is now %s", driver.id, driver.status.value)

        if driver.status == DriverStatus.OFFLINE:
            await self.release_driver_bookings(ReleaseDriverBookings(driver.id))
        return driver

    # ── Notifications ─────────────────────────────────────────────────

    async def _emit(
        self,
        booking: Booking,
        event: DispatchEvent,
        recipients: Iterable[Optional[str]],
    ) -> None:
        seen: set[str] = set()
        for user_id in recipients:
            if not user_id or user_id in seen:
                continue
            seen.add(user_id)
            try:
                await self.notifier.notify(user_id, event)
            except Exception:
                logger.exception(
                    "Notification %s for booking %s to %s failed",
                    event.event,
                    booking.id,
                    user_id,
                )


def _checked_location(location: Optional[Location]) -> Optional[Location]:
    if location is None:
        return None
    try:
        return validate_location(location)
    except InvalidCoordinates as exc:
        raise ValidationFailed(str(exc)) from exc
