"""
In-process ``DispatchStore`` with optimistic concurrency.

Each record carries a version counter.  A transaction remembers the version
of everything it read; at commit every read version must still be current
(validation of the whole read set, i.e. serialisable), otherwise the
attempt raises ``WriteConflict``.  Commit itself contains no ``await`` so it
is atomic with respect to other coroutines on the same event loop.

Reads yield to the event loop once so concurrent attempts genuinely
interleave.  Used for local runs and by the test-suite; records are deep
copied in and out so callers can never mutate stored state directly.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

from ridedispatch.domain.entities import Booking, Driver
from ridedispatch.domain.enums import BookingStatus, DriverStatus
from ridedispatch.domain.errors import WriteConflict
from ridedispatch.domain.ports import BookingQuery

T = TypeVar("T")

_BOOKING = "booking"
_DRIVER = "driver"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class _MemoryTransaction:
    def __init__(self, store: "InMemoryDispatchStore"):
        self._store = store
        self.read_versions: dict[tuple[str, str], int] = {}
        self.writes: dict[tuple[str, str], object] = {}

    async def _get(self, kind: str, record_id: str):
        await asyncio.sleep(0)
        key = (kind, record_id)
        if key in self.writes:
            return copy.deepcopy(self.writes[key])
        version, record = self._store._records.get(key, (0, None))
        self.read_versions.setdefault(key, version)
        return copy.deepcopy(record)

    async def get_booking(self, booking_id: str) -> Optional[Booking]:
        return await self._get(_BOOKING, booking_id)

    async def get_driver(self, driver_id: str) -> Optional[Driver]:
        return await self._get(_DRIVER, driver_id)

    def put_booking(self, booking: Booking) -> None:
        self.writes[(_BOOKING, booking.id)] = copy.deepcopy(booking)

    def put_driver(self, driver: Driver) -> None:
        self.writes[(_DRIVER, driver.id)] = copy.deepcopy(driver)


class InMemoryDispatchStore:
    def __init__(self) -> None:
        self._records: dict[tuple[str, str], tuple[int, object]] = {}
        self.commits = 0
        self.conflicts = 0

    # ── Seeding / inspection ──────────────────────────────────────────

    def add_booking(self, booking: Booking) -> None:
        self._put((_BOOKING, booking.id), booking)

    def add_driver(self, driver: Driver) -> None:
        self._put((_DRIVER, driver.id), driver)

    def bookings(self) -> list[Booking]:
        return self._all(_BOOKING)

    def drivers(self) -> list[Driver]:
        return self._all(_DRIVER)

    def version_of(self, kind: str, record_id: str) -> int:
        return self._records.get((kind, record_id), (0, None))[0]

    def _put(self, key: tuple[str, str], record: object) -> None:
        version = self._records.get(key, (0, None))[0]
        self._records[key] = (version + 1, copy.deepcopy(record))

    def _all(self, kind: str) -> list:
        return [
            copy.deepcopy(record)
            for (k, _), (_, record) in self._records.items()
            if k == kind and record is not None
        ]

    # ── DispatchStore ─────────────────────────────────────────────────

    async def attempt(self, work: Callable[[_MemoryTransaction], Awaitable[T]]) -> T:
        tx = _MemoryTransaction(self)
        result = await work(tx)

        stale = [
            key
            for key, version in tx.read_versions.items()
            if self._records.get(key, (0, None))[0] != version
        ]
        stale += [
            key
            for key in tx.writes
            if key not in tx.read_versions and key in self._records
        ]
        if stale:
            self.conflicts += 1
            raise WriteConflict(f"Stale read of {stale[0][0]} {stale[0][1]}")

        for key, record in tx.writes.items():
            self._put(key, record)
        self.commits += 1
        return result

    async def get_booking(self, booking_id: str) -> Optional[Booking]:
        _, record = self._records.get((_BOOKING, booking_id), (0, None))
        return copy.deepcopy(record)

    async def get_driver(self, driver_id: str) -> Optional[Driver]:
        _, record = self._records.get((_DRIVER, driver_id), (0, None))
        return copy.deepcopy(record)

    async def available_drivers(
        self, cells: Optional[set[str]] = None
    ) -> list[Driver]:
        return [
            d
            for d in self.drivers()
            if d.status == DriverStatus.AVAILABLE
            and d.location is not None
            and (cells is None or d.h3_cell in cells)
        ]

    async def bookings_for_driver(
        self, driver_id: str, statuses: Iterable[BookingStatus]
    ) -> list[Booking]:
        wanted = set(statuses)
        return [
            b
            for b in self.bookings()
            if b.status in wanted and b.is_assigned_to(driver_id)
        ]

    async def waiting_bookings(self, limit: int) -> list[Booking]:
        waiting = [b for b in self.bookings() if b.status == BookingStatus.WAITING]
        waiting.sort(key=lambda b: (b.created_at is None, b.created_at))
        return waiting[:limit]

    async def list_bookings(self, query: BookingQuery) -> list[Booking]:
        found = [b for b in self.bookings() if query.matches(b)]
        found.sort(key=lambda b: (b.created_at or _EPOCH, b.id), reverse=query.newest_first)
        end = None if query.limit is None else query.offset + query.limit
        return found[query.offset:end]
