"""Domain enumerations and the status sets the dispatch rules are built on."""

import enum


class BookingStatus(str, enum.Enum):
    WAITING = "waiting"
    ACCEPTED = "accepted"
    ON_WAY = "on_way"
    ARRIVED = "arrived"
    STARTED = "started"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DriverStatus(str, enum.Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class Role(str, enum.Enum):
    CUSTOMER = "customer"
    DRIVER = "driver"
    ADMIN = "admin"


# A driver snapshot is attached exactly while the booking is in one of these
ACTIVE_ASSIGNED: frozenset[BookingStatus] = frozenset(
    {
        BookingStatus.ACCEPTED,
        BookingStatus.ON_WAY,
        BookingStatus.ARRIVED,
        BookingStatus.STARTED,
    }
)

TERMINAL: frozenset[BookingStatus] = frozenset(
    {BookingStatus.COMPLETED, BookingStatus.CANCELLED}
)

# Bookings reverted to WAITING when their driver goes offline
RELEASABLE_ON_OFFLINE: frozenset[BookingStatus] = frozenset(
    {BookingStatus.ACCEPTED, BookingStatus.ON_WAY}
)
