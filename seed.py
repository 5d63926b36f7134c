"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 8 sample drivers around Stockholm Central (6 available, 2 offline)
  - 5 sample bookings (3 waiting, 1 accepted, 1 completed)
  - Redis bearer tokens for one admin, one customer and every driver
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import text

from ridedispatch.config import settings
from ridedispatch.domain.entities import Booking, Driver, Location, Pickup
from ridedispatch.domain.enums import BookingStatus, DriverStatus
from ridedispatch.domain.matching import location_h3_cell
from ridedispatch.infrastructure.database import async_session_factory, engine
from ridedispatch.infrastructure.redis_client import close_redis, get_redis
from ridedispatch.infrastructure.repositories import SqlDispatchStore

# Stockholm Central Station (approx)
CENTRAL_LAT, CENTRAL_LNG = 59.3300, 18.0600


DRIVERS = [
    {"id": "drv-1", "name": "Astrid Lind", "vehicle": "Volvo XC60", "plate": "ABC123", "lat": 59.3310, "lng": 18.0590, "status": DriverStatus.AVAILABLE},
    {"id": "drv-2", "name": "Erik Berg", "vehicle": "Tesla Model 3", "plate": "DEF456", "lat": 59.3350, "lng": 18.0700, "status": DriverStatus.AVAILABLE},
    {"id": "drv-3", "name": "Sara Holm", "vehicle": "Toyota Prius", "plate": "GHI789", "lat": 59.3420, "lng": 18.0480, "status": DriverStatus.AVAILABLE},
    {"id": "drv-4", "name": "Johan Ek", "vehicle": "Volvo V90", "plate": "JKL012", "lat": 59.3180, "lng": 18.0720, "status": DriverStatus.AVAILABLE},
    {"id": "drv-5", "name": "Maja Strand", "vehicle": "Kia Niro", "plate": "MNO345", "lat": 59.3500, "lng": 18.0300, "status": DriverStatus.AVAILABLE},
    {"id": "drv-6", "name": "Oskar Nord", "vehicle": "Skoda Octavia", "plate": "PQR678", "lat": 59.3010, "lng": 18.1000, "status": DriverStatus.BUSY},
    {"id": "drv-7", "name": "Elsa Falk", "vehicle": "VW ID.4", "plate": "STU901", "lat": 59.3600, "lng": 18.0100, "status": DriverStatus.OFFLINE},
    {"id": "drv-8", "name": "Nils Dahl", "vehicle": "Volvo XC40", "plate": "VWX234", "lat": None, "lng": None, "status": DriverStatus.OFFLINE},
]

BOOKINGS = [
    {"id": "bkg-1", "customer": "cust-1", "address": "Centralplan 15", "lat": 59.3303, "lng": 18.0586, "status": BookingStatus.WAITING, "price": 189.0},
    {"id": "bkg-2", "customer": "cust-2", "address": "Stureplan 4", "lat": 59.3354, "lng": 18.0737, "status": BookingStatus.WAITING, "price": 145.0},
    {"id": "bkg-3", "customer": "cust-3", "address": "Odenplan 1", "lat": 59.3430, "lng": 18.0495, "status": BookingStatus.WAITING, "price": 210.0},
    {"id": "bkg-4", "customer": "cust-1", "address": "Slussen", "lat": 59.3195, "lng": 18.0718, "status": BookingStatus.ACCEPTED, "price": 160.0, "driver": "drv-6"},
    {"id": "bkg-5", "customer": "cust-2", "address": "Fridhemsplan", "lat": 59.3323, "lng": 18.0290, "status": BookingStatus.COMPLETED, "price": 120.0, "last_driver": "drv-1"},
]

TOKENS = {
    "admin-token": {"role": "admin", "user_id": "admin-1"},
    "customer-token": {"role": "customer", "user_id": "cust-1"},
}


def _drivers(now: datetime) -> dict[str, Driver]:
    drivers = {}
    for d in DRIVERS:
        location = Location(d["lat"], d["lng"]) if d["lat"] is not None else None
        drivers[d["id"]] = Driver(
            id=d["id"],
            name=d["name"],
            phone="+4670" + d["id"][-1] * 7,
            vehicle=d["vehicle"],
            license_plate=d["plate"],
            status=d["status"],
            location=location,
            h3_cell=(
                location_h3_cell(location, settings.h3_resolution)
                if location
                else None
            ),
            updated_at=now,
        )
    return drivers


def _bookings(now: datetime, drivers: dict[str, Driver]) -> list[Booking]:
    bookings = []
    for offset, b in enumerate(BOOKINGS):
        created = now - timedelta(minutes=30 - offset)
        booking = Booking(
            id=b["id"],
            customer_id=b["customer"],
            status=b["status"],
            pickup=Pickup(address=b["address"], location=Location(b["lat"], b["lng"])),
            price=b["price"],
            created_at=created,
            updated_at=created,
        )
        if "driver" in b:
            booking.assigned_driver = drivers[b["driver"]].snapshot()
            booking.last_driver_id = b["driver"]
            booking.accepted_at = created
        if "last_driver" in b:
            booking.last_driver_id = b["last_driver"]
            booking.completed_at = created
        bookings.append(booking)
    return bookings


async def seed():
    async with async_session_factory() as session:
        # Check if already seeded
        result = await session.execute(text("SELECT count(*) FROM drivers"))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return

    now = datetime.now(timezone.utc)
    drivers = _drivers(now)
    bookings = _bookings(now, drivers)

    store = SqlDispatchStore(async_session_factory)
    await store.add(*drivers.values(), *bookings)
    print(f"  Created {len(drivers)} drivers")
    print(f"  Created {len(bookings)} bookings")

    # ── Bearer tokens ─────────────────────────────────────────────────
    redis = await get_redis()
    tokens = dict(TOKENS)
    for driver_id in drivers:
        tokens[f"{driver_id}-token"] = {"role": "driver", "user_id": driver_id}
    for token, identity in tokens.items():
        await redis.hset(f"auth:token:{token}", mapping=identity)
    print(f"  Created {len(tokens)} bearer tokens")

    print("\nSeed complete!")


async def main():
    print("Seeding database...")
    try:
        await seed()
    finally:
        await close_redis()
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
