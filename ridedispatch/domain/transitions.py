"""
Booking lifecycle state machine.

Patterns used
-------------
- **Table-driven State Machine**: ``TRANSITIONS`` maps each legal
  ``(from, to)`` edge to the relations that may trigger it and the effect
  applied when they do.  Anything not in the table is an
  ``InvalidTransition``; an edge the actor has no relation for is
  ``Forbidden``.
- Effects are pure mutations of already-loaded ``Booking`` / ``Driver``
  records.  The dispatch service calls them inside a store transaction
  after re-reading both records, so every guard here runs against
  transaction-time state.

Lifecycle
---------
::

    waiting ──> accepted ──> on_way ──> arrived ──> started ──> completed
       │  ^         │                      │                      ^
       │  └─────────┘ (unassign / reject)  └──────────────────────┘
       └──> cancelled
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

from .entities import Actor, Booking, Driver, Location
from .enums import ACTIVE_ASSIGNED, BookingStatus, DriverStatus, TERMINAL
from .errors import (
    DriverUnavailable,
    Forbidden,
    InvalidTransition,
    PreconditionFailed,
)


class Relation(str, enum.Enum):
    """How an actor relates to a booking."""

    ASSIGNED_DRIVER = "assigned_driver"
    SELF_ACCEPTING_DRIVER = "self_accepting_driver"
    OWNER = "owner"
    ADMIN = "admin"


class Effect(str, enum.Enum):
    SELF_ACCEPT = "self_accept"
    ADMIN_ACCEPT = "admin_accept"
    CANCEL = "cancel"
    PROGRESS = "progress"
    COMPLETE = "complete"
    UNASSIGN = "unassign"
    REJECT = "reject"


S = BookingStatus
R = Relation

TRANSITIONS: dict[tuple[BookingStatus, BookingStatus], dict[Relation, Effect]] = {
    (S.WAITING, S.ACCEPTED): {
        R.SELF_ACCEPTING_DRIVER: Effect.SELF_ACCEPT,
        R.ADMIN: Effect.ADMIN_ACCEPT,
    },
    (S.WAITING, S.CANCELLED): {
        R.OWNER: Effect.CANCEL,
        R.ASSIGNED_DRIVER: Effect.CANCEL,
        R.ADMIN: Effect.CANCEL,
    },
    (S.ACCEPTED, S.ON_WAY): {
        R.ASSIGNED_DRIVER: Effect.PROGRESS,
        R.ADMIN: Effect.PROGRESS,
    },
    (S.ON_WAY, S.ARRIVED): {
        R.ASSIGNED_DRIVER: Effect.PROGRESS,
        R.ADMIN: Effect.PROGRESS,
    },
    (S.ARRIVED, S.STARTED): {
        R.ASSIGNED_DRIVER: Effect.PROGRESS,
    },
    (S.ARRIVED, S.COMPLETED): {
        R.ASSIGNED_DRIVER: Effect.COMPLETE,
        R.ADMIN: Effect.COMPLETE,
    },
    (S.STARTED, S.COMPLETED): {
        R.ASSIGNED_DRIVER: Effect.COMPLETE,
        R.ADMIN: Effect.COMPLETE,
    },
    (S.ACCEPTED, S.WAITING): {
        R.ASSIGNED_DRIVER: Effect.REJECT,
        R.ADMIN: Effect.UNASSIGN,
    },
}

# Relations are tried in this order when an actor holds several
_RELATION_PRIORITY = (
    R.ASSIGNED_DRIVER,
    R.SELF_ACCEPTING_DRIVER,
    R.OWNER,
    R.ADMIN,
)

_TIMESTAMP_FIELD = {
    S.ACCEPTED: "accepted_at",
    S.ON_WAY: "on_way_at",
    S.ARRIVED: "arrived_at",
    S.STARTED: "started_at",
    S.COMPLETED: "completed_at",
    S.CANCELLED: "cancelled_at",
}


@dataclass(frozen=True)
class TransitionRule:
    source: BookingStatus
    target: BookingStatus
    relation: Relation
    effect: Effect

    @property
    def needs_acting_driver(self) -> bool:
        return self.effect == Effect.SELF_ACCEPT

    @property
    def touches_driver(self) -> bool:
        return self.effect in (
            Effect.SELF_ACCEPT,
            Effect.ADMIN_ACCEPT,
            Effect.COMPLETE,
            Effect.UNASSIGN,
            Effect.REJECT,
        )


def allowed_targets(status: BookingStatus) -> set[BookingStatus]:
    return {to for (frm, to) in TRANSITIONS if frm == status}


def relations_of(actor: Actor, booking: Booking) -> set[Relation]:
    relations: set[Relation] = set()
    if actor.is_admin:
        relations.add(R.ADMIN)
    if booking.customer_id == actor.user_id:
        relations.add(R.OWNER)
    if actor.is_driver:
        if booking.is_assigned_to(actor.user_id):
            relations.add(R.ASSIGNED_DRIVER)
        if booking.assigned_driver is None:
            relations.add(R.SELF_ACCEPTING_DRIVER)
    return relations


def authorize(
    booking: Booking, target: BookingStatus, actor: Actor
) -> TransitionRule:
    """
    Resolve the rule for moving *booking* to *target* on behalf of *actor*.

    Edge validity is checked before authorisation, so a forbidden actor on a
    non-existent edge sees ``InvalidTransition``.  The exception is a driver
    accepting a booking that another accept already took: that is a lost
    race, reported as ``PreconditionFailed``.
    """
    current = booking.status
    if target == S.ACCEPTED and actor.is_driver and current in ACTIVE_ASSIGNED:
        raise PreconditionFailed(f"Booking {booking.id} already assigned")

    edge = TRANSITIONS.get((current, target))
    if current in TERMINAL or edge is None:
        raise InvalidTransition(
            f"Cannot transition from {current.value} to {target.value}"
        )

    held = relations_of(actor, booking)
    for relation in _RELATION_PRIORITY:
        if relation in held and relation in edge:
            return TransitionRule(current, target, relation, edge[relation])

    raise Forbidden(
        f"{actor.role.value} {actor.user_id} may not move booking "
        f"{booking.id} from {current.value} to {target.value}"
    )


# ── Effects ───────────────────────────────────────────────────────────


def assign(
    booking: Booking,
    driver: Driver,
    now: datetime,
    location: Optional[Location] = None,
) -> None:
    """Attach *driver* to a waiting *booking* and mark the driver busy."""
    if booking.status != S.WAITING or booking.assigned_driver is not None:
        raise PreconditionFailed(f"Booking {booking.id} already assigned")
    if driver.status != DriverStatus.AVAILABLE:
        raise DriverUnavailable(f"Driver {driver.id} no longer available")

    booking.assigned_driver = driver.snapshot(location)
    booking.status = S.ACCEPTED
    booking.accepted_at = now
    booking.updated_at = now
    driver.status = DriverStatus.BUSY
    driver.updated_at = now


def release_to_waiting(booking: Booking, now: datetime) -> None:
    """Detach the driver and put *booking* back into the matching pool."""
    booking.last_driver_id = booking.driver_id
    booking.assigned_driver = None
    booking.status = S.WAITING
    booking.updated_at = now


def free_driver(driver: Optional[Driver], now: datetime) -> None:
    if driver is not None and driver.status == DriverStatus.BUSY:
        driver.status = DriverStatus.AVAILABLE
        driver.updated_at = now


def apply(
    rule: TransitionRule,
    booking: Booking,
    now: datetime,
    *,
    driver: Optional[Driver] = None,
    location: Optional[Location] = None,
    notes: Optional[str] = None,
    actor: Optional[Actor] = None,
) -> None:
    """
    Apply *rule* to *booking* (and *driver*, where the effect touches it).

    *driver* is the acting driver for ``SELF_ACCEPT`` and the attached
    driver otherwise.  Raises ``PreconditionFailed`` when transaction-time
    state no longer satisfies the edge's guard.
    """
    if booking.status != rule.source:
        raise PreconditionFailed(
            f"Booking {booking.id} is {booking.status.value}, "
            f"expected {rule.source.value}"
        )

    effect = rule.effect
    if effect == Effect.SELF_ACCEPT:
        if driver is None:
            raise PreconditionFailed("Self-accept requires the driver record")
        assign(booking, driver, now, location)
    elif effect == Effect.ADMIN_ACCEPT:
        if booking.assigned_driver is None:
            raise PreconditionFailed("Admin accept requires a pre-assigned driver")
        if driver is None or driver.status != DriverStatus.AVAILABLE:
            raise DriverUnavailable(
                f"Driver {booking.driver_id} no longer available"
            )
        booking.status = S.ACCEPTED
        driver.status = DriverStatus.BUSY
        driver.updated_at = now
    elif effect == Effect.CANCEL:
        booking.assigned_driver = None
        booking.status = S.CANCELLED
    elif effect == Effect.PROGRESS:
        if location is not None and booking.assigned_driver is not None:
            booking.assigned_driver = _with_location(booking, location)
        booking.status = rule.target
    elif effect == Effect.COMPLETE:
        booking.last_driver_id = booking.driver_id
        booking.assigned_driver = None
        booking.status = S.COMPLETED
        free_driver(driver, now)
    elif effect == Effect.UNASSIGN:
        release_to_waiting(booking, now)
        free_driver(driver, now)
    elif effect == Effect.REJECT:
        release_to_waiting(booking, now)
        booking.rejected_at = now
        booking.rejected_by = actor.user_id if actor else booking.last_driver_id
        free_driver(driver, now)

    ts_field = _TIMESTAMP_FIELD.get(rule.target)
    if ts_field is not None:
        setattr(booking, ts_field, now)
    if notes:
        booking.driver_notes = notes
    booking.updated_at = now


def _with_location(booking: Booking, location: Location):
    return replace(booking.assigned_driver, location=location)
