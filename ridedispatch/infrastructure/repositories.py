"""
Repository Pattern -- SQL implementation of ``domain.ports.DispatchStore``.

Each transaction attempt opens its own ``AsyncSession`` (unit-of-work),
reads rows with ``SELECT ... FOR UPDATE`` (ignored by SQLite) and hands
the service plain domain entities.  Writes are copied back onto the same
ORM rows so the ``version`` column check applies on flush.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from .models import BookingModel, DriverModel
from ridedispatch.domain.entities import (
    Booking,
    Driver,
    DriverSnapshot,
    Location,
    Pickup,
)
from ridedispatch.domain.enums import BookingStatus, DriverStatus
from ridedispatch.domain.errors import WriteConflict
from ridedispatch.domain.ports import BookingQuery

logger = logging.getLogger(__name__)

T = TypeVar("T")

# serialization_failure, deadlock_detected, lock_not_available
_RETRYABLE_SQLSTATES = {"40001", "40P01", "55P03"}


# ── Row <-> entity mapping ────────────────────────────────────────────


def _location(lat: Optional[float], lng: Optional[float]) -> Optional[Location]:
    if lat is None or lng is None:
        return None
    return Location(lat=lat, lng=lng)


def driver_from_row(row: DriverModel) -> Driver:
    return Driver(
        id=row.id,
        name=row.name,
        phone=row.phone,
        vehicle=row.vehicle,
        license_plate=row.license_plate,
        status=DriverStatus(row.status),
        location=_location(row.lat, row.lng),
        h3_cell=row.h3_cell,
        updated_at=row.updated_at,
    )


def driver_to_row(driver: Driver, row: DriverModel) -> None:
    row.name = driver.name
    row.phone = driver.phone
    row.vehicle = driver.vehicle
    row.license_plate = driver.license_plate
    row.status = driver.status
    row.lat = driver.location.lat if driver.location else None
    row.lng = driver.location.lng if driver.location else None
    row.h3_cell = driver.h3_cell
    row.updated_at = driver.updated_at


def booking_from_row(row: BookingModel) -> Booking:
    snapshot = None
    if row.driver_id is not None:
        snapshot = DriverSnapshot(
            driver_id=row.driver_id,
            name=row.driver_name or "",
            phone=row.driver_phone or "",
            vehicle=row.driver_vehicle or "",
            license_plate=row.driver_license_plate or "",
            location=_location(row.driver_lat, row.driver_lng),
        )
    return Booking(
        id=row.id,
        customer_id=row.customer_id,
        status=BookingStatus(row.status),
        pickup=Pickup(
            address=row.pickup_address or "",
            location=_location(row.pickup_lat, row.pickup_lng),
        ),
        assigned_driver=snapshot,
        last_driver_id=row.last_driver_id,
        price=row.price,
        service_tier=row.service_tier,
        driver_notes=row.driver_notes,
        rejected_by=row.rejected_by,
        created_at=row.created_at,
        updated_at=row.updated_at,
        accepted_at=row.accepted_at,
        on_way_at=row.on_way_at,
        arrived_at=row.arrived_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
        cancelled_at=row.cancelled_at,
        rejected_at=row.rejected_at,
        driver_went_offline_at=row.driver_went_offline_at,
    )


def booking_to_row(booking: Booking, row: BookingModel) -> None:
    row.customer_id = booking.customer_id
    row.status = booking.status
    row.pickup_address = booking.pickup.address
    row.pickup_lat = booking.pickup.location.lat if booking.pickup.location else None
    row.pickup_lng = booking.pickup.location.lng if booking.pickup.location else None

    snap = booking.assigned_driver
    row.driver_id = snap.driver_id if snap else None
    row.driver_name = snap.name if snap else None
    row.driver_phone = snap.phone if snap else None
    row.driver_vehicle = snap.vehicle if snap else None
    row.driver_license_plate = snap.license_plate if snap else None
    row.driver_lat = snap.location.lat if snap and snap.location else None
    row.driver_lng = snap.location.lng if snap and snap.location else None
    row.last_driver_id = booking.last_driver_id

    row.price = booking.price
    row.service_tier = booking.service_tier
    row.driver_notes = booking.driver_notes
    row.rejected_by = booking.rejected_by
    if booking.created_at is not None:
        row.created_at = booking.created_at
    row.updated_at = booking.updated_at
    row.accepted_at = booking.accepted_at
    row.on_way_at = booking.on_way_at
    row.arrived_at = booking.arrived_at
    row.started_at = booking.started_at
    row.completed_at = booking.completed_at
    row.cancelled_at = booking.cancelled_at
    row.rejected_at = booking.rejected_at
    row.driver_went_offline_at = booking.driver_went_offline_at


# ── Transaction ───────────────────────────────────────────────────────


class SqlTransaction:
    def __init__(self, session: AsyncSession):
        self.session = session
        self._bookings: dict[str, BookingModel] = {}
        self._drivers: dict[str, DriverModel] = {}

    async def get_booking(self, booking_id: str) -> Optional[Booking]:
        row = await self.session.get(BookingModel, booking_id, with_for_update=True)
        if row is None:
            return None
        self._bookings[booking_id] = row
        return booking_from_row(row)

    async def get_driver(self, driver_id: str) -> Optional[Driver]:
        row = await self.session.get(DriverModel, driver_id, with_for_update=True)
        if row is None:
            return None
        self._drivers[driver_id] = row
        return driver_from_row(row)

    def put_booking(self, booking: Booking) -> None:
        row = self._bookings.get(booking.id)
        if row is None:
            row = BookingModel(id=booking.id)
            self.session.add(row)
            self._bookings[booking.id] = row
        booking_to_row(booking, row)

    def put_driver(self, driver: Driver) -> None:
        row = self._drivers.get(driver.id)
        if row is None:
            row = DriverModel(id=driver.id)
            self.session.add(row)
            self._drivers[driver.id] = row
        driver_to_row(driver, row)


# ── Store ─────────────────────────────────────────────────────────────


class SqlDispatchStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def add(self, *records: Booking | Driver) -> None:
        """Insert or overwrite records in one transaction (seeding, admin tools)."""

        async def work(tx: SqlTransaction) -> None:
            # load existing rows first so put_* updates instead of inserting
            for record in records:
                if isinstance(record, Booking):
                    await tx.get_booking(record.id)
                    tx.put_booking(record)
                else:
                    await tx.get_driver(record.id)
                    tx.put_driver(record)

        await self.attempt(work)

    async def attempt(self, work: Callable[[SqlTransaction], Awaitable[T]]) -> T:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    return await work(SqlTransaction(session))
        except StaleDataError as exc:
            raise WriteConflict(str(exc)) from exc
        except OperationalError as exc:
            logger.warning("Retryable database error: %s", exc.orig)
            raise WriteConflict(str(exc)) from exc
        except DBAPIError as exc:
            if _sqlstate(exc) in _RETRYABLE_SQLSTATES:
                raise WriteConflict(str(exc)) from exc
            raise

    async def get_booking(self, booking_id: str) -> Optional[Booking]:
        async with self.session_factory() as session:
            row = await session.get(BookingModel, booking_id)
            return booking_from_row(row) if row is not None else None

    async def get_driver(self, driver_id: str) -> Optional[Driver]:
        async with self.session_factory() as session:
            row = await session.get(DriverModel, driver_id)
            return driver_from_row(row) if row is not None else None

    async def available_drivers(
        self, cells: Optional[set[str]] = None
    ) -> list[Driver]:
        query = select(DriverModel).where(
            DriverModel.status == DriverStatus.AVAILABLE,
            DriverModel.lat.is_not(None),
            DriverModel.lng.is_not(None),
        )
        if cells is not None:
            query = query.where(DriverModel.h3_cell.in_(cells))
        async with self.session_factory() as session:
            result = await session.execute(query.order_by(DriverModel.id))
            return [driver_from_row(row) for row in result.scalars().all()]

    async def bookings_for_driver(
        self, driver_id: str, statuses: Iterable[BookingStatus]
    ) -> list[Booking]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BookingModel)
                .where(
                    BookingModel.driver_id == driver_id,
                    BookingModel.status.in_(list(statuses)),
                )
                .order_by(BookingModel.created_at)
            )
            return [booking_from_row(row) for row in result.scalars().all()]

    async def waiting_bookings(self, limit: int) -> list[Booking]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BookingModel)
                .where(BookingModel.status == BookingStatus.WAITING)
                .order_by(BookingModel.created_at)
                .limit(limit)
            )
            return [booking_from_row(row) for row in result.scalars().all()]

    async def list_bookings(self, query: BookingQuery) -> list[Booking]:
        stmt = select(BookingModel)
        if query.statuses is not None:
            stmt = stmt.where(BookingModel.status.in_(list(query.statuses)))
        if query.driver_id is not None:
            stmt = stmt.where(
                or_(
                    BookingModel.driver_id == query.driver_id,
                    and_(
                        BookingModel.status == BookingStatus.COMPLETED,
                        BookingModel.last_driver_id == query.driver_id,
                    ),
                )
            )
        if query.customer_id is not None:
            stmt = stmt.where(BookingModel.customer_id == query.customer_id)
        if query.service_tier is not None:
            stmt = stmt.where(BookingModel.service_tier == query.service_tier)

        if query.newest_first:
            stmt = stmt.order_by(BookingModel.created_at.desc(), BookingModel.id.desc())
        else:
            stmt = stmt.order_by(BookingModel.created_at, BookingModel.id)
        stmt = stmt.offset(query.offset)
        if query.limit is not None:
            stmt = stmt.limit(query.limit)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [booking_from_row(row) for row in result.scalars().all()]


def _sqlstate(exc: DBAPIError) -> Optional[str]:
    orig = exc.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
