"""
SQLAlchemy ORM models  (maps to PostgreSQL).

Tables
------
* ``drivers``   -- driver directory: live status, last reported location
* ``bookings``  -- ride requests with a flattened driver snapshot

Optimistic concurrency
----------------------
Both tables carry a ``version`` column registered as SQLAlchemy's
``version_id_col``: every UPDATE is issued as
``... WHERE id = :id AND version = :loaded_version`` and a zero row count
raises ``StaleDataError``, which the store reports as ``WriteConflict``.

Indexes
-------
* **B-Tree** on ``drivers.status`` and ``drivers.h3_cell`` for candidate
  selection.
* **B-Tree** on ``bookings.status``, ``bookings.driver_id`` and
  ``bookings.customer_id`` for the matching pool, the offline cascade and
  customer look-ups.
* **B-Tree** on ``bookings.last_driver_id`` for a driver's trip history.
"""

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    Float,
    Index,
    Integer,
    String,
    Text,
    func,
)

from .database import Base
from ridedispatch.domain.enums import BookingStatus, DriverStatus


def _values(enum_cls):
    return [member.value for member in enum_cls]


class DriverModel(Base):
    __tablename__ = "drivers"

    id = Column(String(64), primary_key=True)
    name = Column(String(120), nullable=False, default="")
    phone = Column(String(32), nullable=False, default="")
    vehicle = Column(String(120), nullable=False, default="")
    license_plate = Column(String(16), nullable=False, default="")
    status = Column(
        Enum(DriverStatus, name="driver_status", values_callable=_values),
        default=DriverStatus.OFFLINE,
        nullable=False,
    )
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    h3_cell = Column(String(20), nullable=True)
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_drivers_status", "status"),
        Index("idx_drivers_cell", "h3_cell"),
    )


class BookingModel(Base):
    __tablename__ = "bookings"

    id = Column(String(64), primary_key=True)
    customer_id = Column(String(64), nullable=False)
    status = Column(
        Enum(BookingStatus, name="booking_status", values_callable=_values),
        default=BookingStatus.WAITING,
        nullable=False,
    )

    pickup_address = Column(String(255), nullable=False, default="")
    pickup_lat = Column(Float, nullable=True)
    pickup_lng = Column(Float, nullable=True)

    # Driver snapshot, NULL unless status is accepted/on_way/arrived/started
    driver_id = Column(String(64), nullable=True)
    driver_name = Column(String(120), nullable=True)
    driver_phone = Column(String(32), nullable=True)
    driver_vehicle = Column(String(120), nullable=True)
    driver_license_plate = Column(String(16), nullable=True)
    driver_lat = Column(Float, nullable=True)
    driver_lng = Column(Float, nullable=True)
    last_driver_id = Column(String(64), nullable=True)

    price = Column(Float, nullable=True)
    service_tier = Column(String(32), nullable=False, default="standard")
    driver_notes = Column(Text, nullable=True)
    rejected_by = Column(String(64), nullable=True)
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    on_way_at = Column(DateTime(timezone=True), nullable=True)
    arrived_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    driver_went_offline_at = Column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_bookings_status", "status"),
        Index("idx_bookings_driver", "driver_id"),
        Index("idx_bookings_customer", "customer_id"),
        Index("idx_bookings_last_driver", "last_driver_id"),
    )
