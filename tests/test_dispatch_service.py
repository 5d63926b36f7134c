"""
DispatchService behaviour against the in-memory store.

Covers auto-assignment, driver self-service transitions, admin overrides,
the driver-offline cascade and best-effort notifications.
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from ridedispatch.config import Settings
from ridedispatch.domain.commands import (
    AssignDriver,
    AutoAssign,
    ReleaseDriverBookings,
    RequestTransition,
    UpdateDriverStatus,
)
from ridedispatch.domain.entities import Location
from ridedispatch.domain.enums import ACTIVE_ASSIGNED, BookingStatus, DriverStatus
from ridedispatch.domain.errors import (
    DriverUnavailable,
    Forbidden,
    InvalidTransition,
    NoCandidates,
    NotFound,
    PreconditionFailed,
    ValidationFailed,
)
from ridedispatch.domain.ports import BookingQuery, DriverBookingView
from ridedispatch.services.dispatch import DispatchService
from tests.conftest import (
    T0,
    RecordingNotifier,
    driver_actor,
    make_booking,
    make_driver,
)

S = BookingStatus


def _booking(store, booking_id):
    return next(b for b in store.bookings() if b.id == booking_id)


def _driver(store, driver_id):
    return next(d for d in store.drivers() if d.id == driver_id)


def assert_consistent(store):
    """Snapshot agrees with status, and no driver holds two active bookings."""
    holders = {}
    for b in store.bookings():
        assert b.is_consistent, b
        if b.status in ACTIVE_ASSIGNED:
            assert b.driver_id not in holders, (b.id, holders)
            holders[b.driver_id] = b.id
    for driver_id in holders:
        assert _driver(store, driver_id).status != DriverStatus.AVAILABLE


async def _move(service, booking_id, target, actor, **kwargs):
    return await service.request_transition(
        RequestTransition(booking_id, target, actor, **kwargs)
    )


# ── AutoAssign ────────────────────────────────────────────────────────


class TestAutoAssign:
    @pytest.mark.asyncio
    async def test_assigns_nearest_driver(self, service, store, notifier):
        store.add_booking(make_booking("B1"))
        store.add_driver(make_driver("D1", lat=59.339, lng=18.06))  # ~1 km
        store.add_driver(make_driver("D2", lat=59.375, lng=18.06))  # ~5 km

        assignment = await service.auto_assign(AutoAssign("B1"))

        assert assignment.driver_id == "D1"
        assert assignment.distance_km == pytest.approx(1.0, abs=0.05)
        booking = _booking(store, "B1")
        assert booking.status == S.ACCEPTED
        assert booking.driver_id == "D1"
        assert booking.accepted_at is not None
        assert _driver(store, "D1").status == DriverStatus.BUSY
        assert _driver(store, "D2").status == DriverStatus.AVAILABLE
        assert notifier.events_for("cust-1") == ["booking.assigned"]
        assert notifier.events_for("D1") == ["booking.assigned"]
        assert_consistent(store)

    @pytest.mark.asyncio
    async def test_already_assigned(self, service, store):
        d1 = make_driver("D1", status=DriverStatus.BUSY)
        store.add_driver(d1)
        store.add_driver(make_driver("D2"))
        store.add_booking(make_booking("B1", status=S.ACCEPTED, driver=d1))

        with pytest.raises(PreconditionFailed, match="already assigned"):
            await service.auto_assign(AutoAssign("B1"))

        assert _booking(store, "B1").driver_id == "D1"
        assert _driver(store, "D2").status == DriverStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_second_call_reports_already_assigned(self, service, store):
        store.add_booking(make_booking("B1"))
        store.add_driver(make_driver("D1"))
        store.add_driver(make_driver("D2", lat=59.35))

        await service.auto_assign(AutoAssign("B1"))
        with pytest.raises(PreconditionFailed, match="already assigned"):
            await service.auto_assign(AutoAssign("B1"))

    @pytest.mark.asyncio
    async def test_no_candidates(self, service, store):
        store.add_booking(make_booking("B1"))
        store.add_driver(make_driver("D1", status=DriverStatus.OFFLINE))

        with pytest.raises(NoCandidates):
            await service.auto_assign(AutoAssign("B1"))
        assert _booking(store, "B1").status == S.WAITING

    @pytest.mark.asyncio
    async def test_missing_pickup_coordinates(self, service, store):
        store.add_booking(make_booking("B1", pickup=None))
        store.add_driver(make_driver("D1"))

        with pytest.raises(ValidationFailed, match="pickup coordinates"):
            await service.auto_assign(AutoAssign("B1"))

    @pytest.mark.asyncio
    async def test_unknown_booking(self, service):
        with pytest.raises(NotFound):
            await service.auto_assign(AutoAssign("nope"))

    def test_attempt_limit_must_be_positive(self, store, notifier):
        with pytest.raises(ValueError, match="at least 1"):
            DispatchService(store, notifier, max_assign_attempts=0)

    def test_settings_reject_zero_attempts(self, monkeypatch):
        monkeypatch.setenv("AUTO_ASSIGN_MAX_ATTEMPTS", "0")
        with pytest.raises(ValidationError):
            Settings()

    @pytest.mark.asyncio
    async def test_h3_prefilter_excludes_distant_drivers(self, store, notifier, transactor, clock):
        service = DispatchService(
            store, notifier, transactor=transactor, clock=clock, h3_rings=0
        )
        far = make_driver("far", status=DriverStatus.OFFLINE, lat=59.60, lng=18.06)
        store.add_driver(far)
        await service.update_driver_status(
            UpdateDriverStatus("far", DriverStatus.AVAILABLE, far.location)
        )
        store.add_booking(make_booking("B1"))

        with pytest.raises(NoCandidates):
            await service.auto_assign(AutoAssign("B1"))

    @pytest.mark.asyncio
    async def test_h3_prefilter_keeps_local_drivers(self, store, notifier, transactor, clock):
        service = DispatchService(
            store, notifier, transactor=transactor, clock=clock, h3_rings=1
        )
        store.add_driver(make_driver("near", status=DriverStatus.OFFLINE))
        await service.update_driver_status(
            UpdateDriverStatus("near", DriverStatus.AVAILABLE, Location(59.3305, 18.0605))
        )
        store.add_booking(make_booking("B1"))

        assignment = await service.auto_assign(AutoAssign("B1"))
        assert assignment.driver_id == "near"


# ── AssignDriver ──────────────────────────────────────────────────────


class TestAssignDriver:
    @pytest.mark.asyncio
    async def test_admin_assigns_specific_driver(self, service, store, admin):
        store.add_booking(make_booking("B1"))
        store.add_driver(make_driver("D1"))
        store.add_driver(make_driver("D2", lat=59.40))

        assignment = await service.assign_driver(AssignDriver("B1", "D2", admin))

        assert assignment.driver_id == "D2"
        assert _booking(store, "B1").driver_id == "D2"
        assert _driver(store, "D2").status == DriverStatus.BUSY

    @pytest.mark.asyncio
    async def test_non_admin_forbidden(self, service, store, customer):
        store.add_booking(make_booking("B1"))
        store.add_driver(make_driver("D1"))
        with pytest.raises(Forbidden):
            await service.assign_driver(AssignDriver("B1", "D1", customer))

    @pytest.mark.asyncio
    async def test_unknown_driver(self, service, store, admin):
        store.add_booking(make_booking("B1"))
        with pytest.raises(NotFound):
            await service.assign_driver(AssignDriver("B1", "ghost", admin))

    @pytest.mark.asyncio
    async def test_busy_driver(self, service, store, admin):
        store.add_booking(make_booking("B1"))
        store.add_driver(make_driver("D1", status=DriverStatus.BUSY))
        with pytest.raises(DriverUnavailable):
            await service.assign_driver(AssignDriver("B1", "D1", admin))
        assert _booking(store, "B1").status == S.WAITING


# ── RequestTransition ─────────────────────────────────────────────────


class TestRequestTransition:
    @pytest.mark.asyncio
    async def test_full_driver_lifecycle(self, service, store, notifier):
        store.add_booking(make_booking("B1"))
        store.add_driver(make_driver("D1"))
        d1 = driver_actor("D1")

        assert await _move(service, "B1", S.ACCEPTED, d1) == S.ACCEPTED
        assert _driver(store, "D1").status == DriverStatus.BUSY
        await _move(service, "B1", S.ON_WAY, d1, location=Location(59.335, 18.065))
        await _move(service, "B1", S.ARRIVED, d1)
        await _move(service, "B1", S.STARTED, d1)
        assert_consistent(store)
        await _move(service, "B1", S.COMPLETED, d1, notes="Smooth ride")

        booking = _booking(store, "B1")
        assert booking.status == S.COMPLETED
        assert booking.assigned_driver is None
        assert booking.last_driver_id == "D1"
        assert booking.driver_notes == "Smooth ride"
        assert booking.accepted_at < booking.on_way_at < booking.arrived_at
        assert booking.arrived_at < booking.started_at < booking.completed_at
        assert _driver(store, "D1").status == DriverStatus.AVAILABLE
        assert notifier.events_for("cust-1") == [
            "booking.self_accept",
            "booking.progress",
            "booking.progress",
            "booking.progress",
            "booking.complete",
        ]
        assert notifier.events_for("D1") == notifier.events_for("cust-1")
        assert_consistent(store)

    @pytest.mark.asyncio
    async def test_progress_stores_location_snapshot(self, service, store):
        d1 = make_driver("D1", status=DriverStatus.BUSY)
        store.add_driver(d1)
        store.add_booking(make_booking("B1", status=S.ACCEPTED, driver=d1))

        await _move(
            service, "B1", S.ON_WAY, driver_actor("D1"), location=Location(59.34, 18.05)
        )
        assert _booking(store, "B1").assigned_driver.location == Location(59.34, 18.05)

    @pytest.mark.asyncio
    async def test_self_accept_while_busy(self, service, store):
        store.add_booking(make_booking("B1"))
        store.add_driver(make_driver("D1", status=DriverStatus.BUSY))

        with pytest.raises(PreconditionFailed):
            await _move(service, "B1", S.ACCEPTED, driver_actor("D1"))
        assert _booking(store, "B1").status == S.WAITING

    @pytest.mark.asyncio
    async def test_second_driver_to_accept_is_told_already_assigned(self, service, store):
        store.add_booking(make_booking("B1"))
        store.add_driver(make_driver("D1"))
        store.add_driver(make_driver("D2"))

        await _move(service, "B1", S.ACCEPTED, driver_actor("D1"))
        with pytest.raises(PreconditionFailed, match="already assigned"):
            await _move(service, "B1", S.ACCEPTED, driver_actor("D2"))

        assert _booking(store, "B1").driver_id == "D1"
        assert _driver(store, "D2").status == DriverStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_self_accept_unknown_driver(self, service, store):
        store.add_booking(make_booking("B1"))
        with pytest.raises(NotFound):
            await _move(service, "B1", S.ACCEPTED, driver_actor("ghost"))

    @pytest.mark.asyncio
    async def test_customer_cannot_cancel_someone_elses_booking(
        self, service, store, customer
    ):
        store.add_booking(make_booking("B1", customer_id="cust-2"))
        with pytest.raises(Forbidden):
            await _move(service, "B1", S.CANCELLED, customer)
        assert _booking(store, "B1").status == S.WAITING

    @pytest.mark.asyncio
    async def test_owner_cancels(self, service, store, customer):
        store.add_booking(make_booking("B1"))
        assert await _move(service, "B1", S.CANCELLED, customer) == S.CANCELLED
        assert _booking(store, "B1").cancelled_at is not None

    @pytest.mark.asyncio
    async def test_terminal_state_is_final(self, service, store, customer, admin):
        store.add_booking(make_booking("B1"))
        await _move(service, "B1", S.CANCELLED, customer)
        version = store.version_of("booking", "B1")

        for target in (S.CANCELLED, S.WAITING, S.ACCEPTED):
            with pytest.raises(InvalidTransition):
                await _move(service, "B1", target, admin)

        assert store.version_of("booking", "B1") == version

    @pytest.mark.asyncio
    async def test_driver_reject_frees_driver_and_allows_rematch(self, service, store):
        d1 = make_driver("D1", status=DriverStatus.BUSY)
        store.add_driver(d1)
        store.add_booking(make_booking("B1", status=S.ACCEPTED, driver=d1))

        assert await _move(service, "B1", S.WAITING, driver_actor("D1")) == S.WAITING

        booking = _booking(store, "B1")
        assert booking.assigned_driver is None
        assert booking.rejected_by == "D1"
        assert _driver(store, "D1").status == DriverStatus.AVAILABLE
        assignment = await service.auto_assign(AutoAssign("B1"))
        assert assignment.driver_id == "D1"

    @pytest.mark.asyncio
    async def test_admin_unassign(self, service, store, admin, notifier):
        d1 = make_driver("D1", status=DriverStatus.BUSY)
        store.add_driver(d1)
        store.add_booking(make_booking("B1", status=S.ACCEPTED, driver=d1))

        await _move(service, "B1", S.WAITING, admin)

        assert _booking(store, "B1").last_driver_id == "D1"
        assert _driver(store, "D1").status == DriverStatus.AVAILABLE
        assert notifier.events_for("D1") == ["booking.unassign"]

    @pytest.mark.asyncio
    async def test_invalid_coordinates_rejected(self, service, store):
        d1 = make_driver("D1", status=DriverStatus.BUSY)
        store.add_driver(d1)
        store.add_booking(make_booking("B1", status=S.ACCEPTED, driver=d1))

        with pytest.raises(ValidationFailed):
            await _move(
                service, "B1", S.ON_WAY, driver_actor("D1"),
                location=Location(float("nan"), 18.0),
            )

    @pytest.mark.asyncio
    async def test_unknown_booking(self, service, customer):
        with pytest.raises(NotFound):
            await _move(service, "nope", S.CANCELLED, customer)

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_undo_commit(
        self, store, transactor, clock, customer
    ):
        service = DispatchService(
            store, RecordingNotifier(fail=True), transactor=transactor, clock=clock
        )
        store.add_booking(make_booking("B1"))

        assert await _move(service, "B1", S.CANCELLED, customer) == S.CANCELLED
        assert _booking(store, "B1").status == S.CANCELLED


# ── Driver offline cascade ────────────────────────────────────────────


class TestDriverOffline:
    @pytest.mark.asyncio
    async def test_offline_releases_only_own_in_flight_bookings(
        self, service, store, notifier
    ):
        d1 = make_driver("D1", status=DriverStatus.BUSY)
        store.add_driver(d1)
        store.add_booking(make_booking("B1", status=S.ON_WAY, driver=d1))
        store.add_booking(make_booking("B2", customer_id="cust-2"))

        driver = await service.update_driver_status(
            UpdateDriverStatus("D1", DriverStatus.OFFLINE)
        )

        assert driver.status == DriverStatus.OFFLINE
        b1 = _booking(store, "B1")
        assert b1.status == S.WAITING
        assert b1.assigned_driver is None
        assert b1.last_driver_id == "D1"
        assert b1.driver_went_offline_at is not None
        b2 = _booking(store, "B2")
        assert b2.status == S.WAITING
        assert b2.driver_went_offline_at is None
        assert notifier.events_for("cust-1") == ["booking.driver_offline"]
        assert notifier.events_for("cust-2") == []
        assert_consistent(store)

    @pytest.mark.asyncio
    async def test_arrived_bookings_are_kept(self, service, store):
        d1 = make_driver("D1", status=DriverStatus.BUSY)
        store.add_driver(d1)
        store.add_booking(make_booking("B1", status=S.ARRIVED, driver=d1))

        await service.update_driver_status(UpdateDriverStatus("D1", DriverStatus.OFFLINE))

        assert _booking(store, "B1").status == S.ARRIVED
        assert _booking(store, "B1").driver_id == "D1"

    @pytest.mark.asyncio
    async def test_release_requires_offline_driver(self, service, store):
        d1 = make_driver("D1", status=DriverStatus.BUSY)
        store.add_driver(d1)
        store.add_booking(make_booking("B1", status=S.ACCEPTED, driver=d1))

        with pytest.raises(PreconditionFailed):
            await service.release_driver_bookings(ReleaseDriverBookings("D1"))
        assert _booking(store, "B1").status == S.ACCEPTED

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, service, store):
        d1 = make_driver("D1", status=DriverStatus.OFFLINE)
        store.add_driver(d1)
        store.add_booking(make_booking("B1", status=S.ACCEPTED, driver=d1))

        assert await service.release_driver_bookings(ReleaseDriverBookings("D1")) == 1
        assert await service.release_driver_bookings(ReleaseDriverBookings("D1")) == 0


class TestUpdateDriverStatus:
    @pytest.mark.asyncio
    async def test_busy_is_not_settable(self, service, store):
        store.add_driver(make_driver("D1"))
        with pytest.raises(ValidationFailed):
            await service.update_driver_status(UpdateDriverStatus("D1", DriverStatus.BUSY))

    @pytest.mark.asyncio
    async def test_available_with_open_trip(self, service, store):
        d1 = make_driver("D1", status=DriverStatus.OFFLINE)
        store.add_driver(d1)
        store.add_booking(make_booking("B1", status=S.ARRIVED, driver=d1))

        with pytest.raises(PreconditionFailed):
            await service.update_driver_status(
                UpdateDriverStatus("D1", DriverStatus.AVAILABLE)
            )

    @pytest.mark.asyncio
    async def test_available_records_location_and_cell(self, service, store):
        store.add_driver(make_driver("D1", status=DriverStatus.OFFLINE))

        driver = await service.update_driver_status(
            UpdateDriverStatus("D1", DriverStatus.AVAILABLE, Location(59.34, 18.07))
        )

        assert driver.status == DriverStatus.AVAILABLE
        stored = _driver(store, "D1")
        assert stored.location == Location(59.34, 18.07)
        assert stored.h3_cell is not None

    @pytest.mark.asyncio
    async def test_unknown_driver(self, service):
        with pytest.raises(NotFound):
            await service.update_driver_status(
                UpdateDriverStatus("ghost", DriverStatus.OFFLINE)
            )


# ── Reads / dispatch ──────────────────────────────────────────────────


class TestGetBooking:
    @pytest.mark.asyncio
    async def test_visibility(self, service, store, admin, customer):
        d1 = make_driver("D1", status=DriverStatus.BUSY)
        store.add_booking(make_booking("B1", status=S.ACCEPTED, driver=d1))
        store.add_booking(make_booking("B2", customer_id="cust-2"))

        assert (await service.get_booking("B1", admin)).id == "B1"
        assert (await service.get_booking("B1", customer)).id == "B1"
        assert (await service.get_booking("B1", driver_actor("D1"))).id == "B1"
        # any driver may look at a waiting booking before self-accepting
        assert (await service.get_booking("B2", driver_actor("D9"))).id == "B2"

        with pytest.raises(Forbidden):
            await service.get_booking("B1", driver_actor("D9"))
        with pytest.raises(Forbidden):
            await service.get_booking("B2", customer)
        with pytest.raises(NotFound):
            await service.get_booking("nope", admin)


class TestHandle:
    @pytest.mark.asyncio
    async def test_routes_commands(self, service, store):
        store.add_booking(make_booking("B1"))
        store.add_driver(make_driver("D1"))

        assignment = await service.handle(AutoAssign("B1"))
        assert assignment.driver_id == "D1"

    @pytest.mark.asyncio
    async def test_unknown_command(self, service):
        with pytest.raises(TypeError):
            await service.handle(object())


# ── Listings ──────────────────────────────────────────────────────────


def _seed_history(store):
    """B0 completed by D1, B1 on the way with D1, B2/B3 waiting, B4 with D2."""
    d1 = make_driver("D1", status=DriverStatus.BUSY)
    d2 = make_driver("D2", status=DriverStatus.BUSY)
    store.add_driver(d1)
    store.add_driver(d2)
    done = make_booking("B0", status=S.COMPLETED, created_at=T0)
    done.last_driver_id = "D1"
    store.add_booking(done)
    store.add_booking(
        make_booking(
            "B1", status=S.ON_WAY, driver=d1, created_at=T0 + timedelta(minutes=1)
        )
    )
    store.add_booking(
        make_booking("B2", customer_id="cust-2", created_at=T0 + timedelta(minutes=2))
    )
    store.add_booking(make_booking("B3", created_at=T0 + timedelta(minutes=3)))
    store.add_booking(
        make_booking(
            "B4", status=S.ACCEPTED, driver=d2, created_at=T0 + timedelta(minutes=4)
        )
    )


class TestDriverBookings:
    @pytest.mark.asyncio
    async def test_available_pool_is_waiting_newest_first(self, service, store):
        _seed_history(store)
        found = await service.driver_bookings(
            driver_actor("D9"), DriverBookingView.AVAILABLE
        )
        assert [b.id for b in found] == ["B3", "B2"]

    @pytest.mark.asyncio
    async def test_own_views(self, service, store):
        _seed_history(store)
        d1 = driver_actor("D1")

        assigned = await service.driver_bookings(d1, DriverBookingView.ASSIGNED)
        completed = await service.driver_bookings(d1, DriverBookingView.COMPLETED)
        everything = await service.driver_bookings(d1, DriverBookingView.ALL)

        assert [b.id for b in assigned] == ["B1"]
        assert [b.id for b in completed] == ["B0"]
        assert [b.id for b in everything] == ["B1", "B0"]

    @pytest.mark.asyncio
    async def test_trip_shows_up_as_completed_after_finishing(self, service, store):
        store.add_booking(make_booking("B1"))
        store.add_driver(make_driver("D1"))
        d1 = driver_actor("D1")
        for target in (S.ACCEPTED, S.ON_WAY, S.ARRIVED, S.COMPLETED):
            await _move(service, "B1", target, d1)

        completed = await service.driver_bookings(d1, DriverBookingView.COMPLETED)
        assert [b.id for b in completed] == ["B1"]
        assert await service.driver_bookings(d1, DriverBookingView.ASSIGNED) == []

    @pytest.mark.asyncio
    async def test_limit(self, service, store):
        _seed_history(store)
        found = await service.driver_bookings(
            driver_actor("D9"), DriverBookingView.AVAILABLE, limit=1
        )
        assert [b.id for b in found] == ["B3"]

    @pytest.mark.asyncio
    async def test_requires_driver(self, service, customer):
        with pytest.raises(Forbidden):
            await service.driver_bookings(customer, DriverBookingView.AVAILABLE)


class TestAdminListing:
    @pytest.mark.asyncio
    async def test_filters(self, service, store, admin):
        _seed_history(store)

        waiting = await service.list_bookings(
            admin, BookingQuery(statuses=frozenset({S.WAITING}))
        )
        by_customer = await service.list_bookings(
            admin, BookingQuery(customer_id="cust-2")
        )
        by_driver = await service.list_bookings(admin, BookingQuery(driver_id="D1"))

        assert [b.id for b in waiting] == ["B3", "B2"]
        assert [b.id for b in by_customer] == ["B2"]
        assert [b.id for b in by_driver] == ["B1", "B0"]

    @pytest.mark.asyncio
    async def test_pages(self, service, store, admin):
        _seed_history(store)

        first = await service.list_bookings(admin, BookingQuery(limit=2))
        second = await service.list_bookings(admin, BookingQuery(limit=2, offset=2))
        oldest_first = await service.list_bookings(
            admin, BookingQuery(limit=2, newest_first=False)
        )

        assert [b.id for b in first] == ["B4", "B3"]
        assert [b.id for b in second] == ["B2", "B1"]
        assert [b.id for b in oldest_first] == ["B0", "B1"]

    @pytest.mark.asyncio
    async def test_requires_admin(self, service, customer):
        with pytest.raises(Forbidden):
            await service.list_bookings(customer, BookingQuery())


class TestDriverOverview:
    @pytest.mark.asyncio
    async def test_active_bookings_and_totals(self, service, store):
        _seed_history(store)

        overview = await service.driver_overview("D1")

        assert overview.driver.status == DriverStatus.BUSY
        assert [b.id for b in overview.active_bookings] == ["B1"]
        assert overview.completed_trips == 1
        assert overview.total_earnings == pytest.approx(189.0)

    @pytest.mark.asyncio
    async def test_unknown_driver(self, service):
        with pytest.raises(NotFound):
            await service.driver_overview("ghost")
