"""
Shared test fixtures.

The dispatch service runs against ``InMemoryDispatchStore`` (same
optimistic-concurrency contract as the SQL store) so most tests need no
PostgreSQL or Redis.  The SQL store tests use an in-memory SQLite database
via aiosqlite with the production models; Redis-backed pieces are tested
with ``AsyncMock`` clients.
"""

import os

# Must be set before ridedispatch.config is imported anywhere.
os.environ.setdefault("RATE_LIMIT_STORAGE_URI", "memory://")

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from ridedispatch.domain.entities import Actor, Booking, Driver, Location, Pickup
from ridedispatch.domain.enums import BookingStatus, DriverStatus, Role
from ridedispatch.domain.ports import DispatchEvent
from ridedispatch.infrastructure.memory_store import InMemoryDispatchStore
from ridedispatch.services.dispatch import DispatchService
from ridedispatch.services.transactor import Transactor

# Stockholm Central Station
PICKUP = Location(59.3300, 18.0600)

T0 = datetime(2026, 10, 18, 8, 0, tzinfo=timezone.utc)


class RecordingNotifier:
    """Collects ``(user_id, event)`` pairs instead of publishing."""

    def __init__(self, fail: bool = False):
        self.sent: list[tuple[str, DispatchEvent]] = []
        self.fail = fail

    async def notify(self, user_id: str, event: DispatchEvent) -> None:
        if self.fail:
            raise ConnectionError("notification backend down")
        self.sent.append((user_id, event))

    def events_for(self, user_id: str) -> list[str]:
        return [e.event for uid, e in self.sent if uid == user_id]


class FixedClock:
    """Deterministic clock; each call advances one second."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


def make_driver(
    driver_id: str,
    *,
    status: DriverStatus = DriverStatus.AVAILABLE,
    lat: float = 59.3310,
    lng: float = 18.0610,
) -> Driver:
    return Driver(
        id=driver_id,
        name=f"Driver {driver_id}",
        phone="+46700000000",
        vehicle="Volvo XC60",
        license_plate="ABC123",
        status=status,
        location=Location(lat, lng),
    )


def make_booking(
    booking_id: str,
    *,
    customer_id: str = "cust-1",
    status: BookingStatus = BookingStatus.WAITING,
    pickup: Location | None = PICKUP,
    driver: Driver | None = None,
    created_at: datetime = T0,
) -> Booking:
    booking = Booking(
        id=booking_id,
        customer_id=customer_id,
        status=status,
        pickup=Pickup(address="Centralplan 15", location=pickup),
        price=189.0,
        created_at=created_at,
        updated_at=created_at,
    )
    if driver is not None:
        booking.assigned_driver = driver.snapshot()
        booking.last_driver_id = driver.id
    return booking


# ── Actors ────────────────────────────────────────────────────────────


@pytest.fixture
def admin() -> Actor:
    return Actor(role=Role.ADMIN, user_id="admin-1")


@pytest.fixture
def customer() -> Actor:
    return Actor(role=Role.CUSTOMER, user_id="cust-1")


def driver_actor(driver_id: str) -> Actor:
    return Actor(role=Role.DRIVER, user_id=driver_id)


# ── Service ───────────────────────────────────────────────────────────


@pytest.fixture
def store() -> InMemoryDispatchStore:
    return InMemoryDispatchStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def transactor(store) -> Transactor:
    return Transactor(
        store,
        timeout_seconds=2.0,
        max_retries=10,
        backoff_base_seconds=0.001,
        backoff_max_seconds=0.005,
    )


@pytest.fixture
def service(store, notifier, transactor, clock) -> DispatchService:
    return DispatchService(
        store,
        notifier,
        transactor=transactor,
        clock=clock,
        max_assign_attempts=3,
        h3_resolution=7,
    )


# ── SQL (SQLite in-memory) ────────────────────────────────────────────

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Create the production tables on a fresh SQLite engine."""
    from ridedispatch.infrastructure.database import Base
    from ridedispatch.infrastructure import models  # noqa: F401  (registers tables)

    engine = create_async_engine(TEST_DB_URL, echo=False, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()
