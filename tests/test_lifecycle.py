"""
Tests for the assignment lifecycle state machine.
"""

from datetime import date, timedelta

import pytest
from sqlalchemy import select

from app.core.errors import (
    ForbiddenError,
    PreconditionFailedError,
    StateConflictError,
)
from app.core.timekeeping import confirmation_window, shift_start_at
from app.models import (
    Assignment,
    AssignmentStatus,
    BidWindow,
    BidWindowMode,
    BidWindowTrigger,
    CancelType,
    DriverHealthState,
    DriverMetrics,
    Notification,
    NotificationKind,
    RouteCompletion,
)
from app.services.lifecycle import (
    arrive_assignment,
    cancel_assignment,
    complete_assignment,
    confirm_assignment,
    create_assignment,
    edit_parcels,
    start_assignment,
)
from tests.fixtures.factories import make_assignment, reload


async def _replacement_window(db, source_id):
    result = await db.execute(
        select(BidWindow).where(BidWindow.source_assignment_id == source_id)
    )
    return result.scalar_one_or_none()


class TestConfirm:
    """Confirmation is allowed only inside [opens_at, deadline_at]."""

    async def test_confirm_at_window_open(self, db_session, policy, route, driver, shift_date):
        """Confirming exactly when the window opens succeeds."""
        assignment = await make_assignment(db_session, policy, route, shift_date, driver)
        opens_at, _ = confirmation_window(shift_date, policy)

        result = await confirm_assignment(db_session, policy, assignment.id, driver.id, opens_at)
        await db_session.commit()

        assert result.status == AssignmentStatus.CONFIRMED
        assert result.confirmed_at == opens_at

    async def test_confirm_before_window_rejected(self, db_session, policy, route, driver, shift_date):
        """One microsecond before the window opens is rejected."""
        assignment = await make_assignment(db_session, policy, route, shift_date, driver)
        opens_at, _ = confirmation_window(shift_date, policy)

        with pytest.raises(PreconditionFailedError) as exc:
            await confirm_assignment(
                db_session, policy, assignment.id, driver.id, opens_at - timedelta(microseconds=1)
            )
        assert exc.value.code == "confirmation_not_open"

    async def test_confirm_at_deadline(self, db_session, policy, route, driver, shift_date):
        """Confirming exactly 48h before shift start is still allowed."""
        assignment = await make_assignment(db_session, policy, route, shift_date, driver)
        _, deadline_at = confirmation_window(shift_date, policy)

        result = await confirm_assignment(db_session, policy, assignment.id, driver.id, deadline_at)
        assert result.status == AssignmentStatus.CONFIRMED

    async def test_confirm_after_deadline_rejected(self, db_session, policy, route, driver, shift_date):
        assignment = await make_assignment(db_session, policy, route, shift_date, driver)
        _, deadline_at = confirmation_window(shift_date, policy)

        with pytest.raises(PreconditionFailedError) as exc:
            await confirm_assignment(
                db_session, policy, assignment.id, driver.id, deadline_at + timedelta(seconds=1)
            )
        assert exc.value.code == "confirmation_closed"

    async def test_confirm_twice_conflicts(self, db_session, policy, route, driver, shift_date, at):
        assignment = await make_assignment(db_session, policy, route, shift_date, driver)
        now = at(shift_date - timedelta(days=3), 10)
        await confirm_assignment(db_session, policy, assignment.id, driver.id, now)
        await db_session.commit()

        with pytest.raises(StateConflictError):
            await confirm_assignment(db_session, policy, assignment.id, driver.id, now)

    async def test_confirm_other_drivers_shift_forbidden(
        self, db_session, policy, route, driver, other_driver, shift_date, at
    ):
        assignment = await make_assignment(db_session, policy, route, shift_date, driver)
        with pytest.raises(ForbiddenError):
            await confirm_assignment(
                db_session, policy, assignment.id, other_driver.id, at(shift_date - timedelta(days=3), 10)
            )

    async def test_confirm_counts_metric(self, db_session, policy, route, driver, shift_date, at):
        assignment = await make_assignment(db_session, policy, route, shift_date, driver)
        await confirm_assignment(
            db_session, policy, assignment.id, driver.id, at(shift_date - timedelta(days=3), 10)
        )
        await db_session.commit()

        metrics = await db_session.get(DriverMetrics, driver.id)
        assert metrics.confirmed_count == 1


class TestCancel:
    """Cancellation classification, replacement windows and hard-stop."""

    async def test_early_cancel_opens_competitive_window(
        self, db_session, policy, route, driver, shift_date, at
    ):
        assignment = await make_assignment(db_session, policy, route, shift_date, driver)
        now = at(shift_date - timedelta(days=4), 12)

        await cancel_assignment(db_session, policy, assignment.id, driver.id, now, reason="sick")
        await db_session.commit()

        await reload(db_session, assignment)
        assert assignment.status == AssignmentStatus.CANCELLED
        assert assignment.cancel_type == CancelType.EARLY
        assert assignment.driver_id == driver.id

        window = await _replacement_window(db_session, assignment.id)
        assert window.mode == BidWindowMode.COMPETITIVE
        assert window.trigger == BidWindowTrigger.CANCELLATION
        assert window.closes_at == shift_start_at(shift_date, policy) - timedelta(hours=24)

        vacancy = await db_session.get(Assignment, window.assignment_id)
        assert vacancy.status == AssignmentStatus.UNFILLED
        assert vacancy.driver_id is None
        assert vacancy.route_id == route.id

    async def test_cancel_one_second_before_48h_is_early(self, db_session, policy, route, driver, shift_date):
        assignment = await make_assignment(db_session, policy, route, shift_date, driver)
        now = shift_start_at(shift_date, policy) - timedelta(hours=48, seconds=1)

        await cancel_assignment(db_session, policy, assignment.id, driver.id, now)
        await db_session.commit()

        await reload(db_session, assignment)
        assert assignment.cancel_type == CancelType.EARLY
        metrics = await db_session.get(DriverMetrics, driver.id)
        assert metrics.early_cancel_count == 1
        assert metrics.late_cancel_count == 0

        window = await _replacement_window(db_session, assignment.id)
        assert window.mode == BidWindowMode.COMPETITIVE

    async def test_cancel_at_exactly_48h_is_late(self, db_session, policy, route, driver, shift_date):
        assignment = await make_assignment(db_session, policy, route, shift_date, driver)
        now = shift_start_at(shift_date, policy) - timedelta(hours=48)

        await cancel_assignment(db_session, policy, assignment.id, driver.id, now)
        await db_session.commit()

        await reload(db_session, assignment)
        assert assignment.cancel_type == CancelType.LATE
        metrics = await db_session.get(DriverMetrics, driver.id)
        assert metrics.late_cancel_count == 1

    async def test_cancel_inside_cutoff_opens_instant_window(
        self, db_session, policy, route, driver, shift_date
    ):
        assignment = await make_assignment(
            db_session, policy, route, shift_date, driver, status=AssignmentStatus.CONFIRMED
        )
        now = shift_start_at(shift_date, policy) - timedelta(hours=10)

        await cancel_assignment(db_session, policy, assignment.id, driver.id, now)
        await db_session.commit()

        window = await _replacement_window(db_session, assignment.id)
        assert window.mode == BidWindowMode.INSTANT
        assert window.closes_at == shift_start_at(shift_date, policy)

    async def test_cancel_after_shift_start_rejected(self, db_session, policy, route, driver, shift_date):
        assignment = await make_assignment(
            db_session, policy, route, shift_date, driver, status=AssignmentStatus.CONFIRMED
        )
        with pytest.raises(PreconditionFailedError):
            await cancel_assignment(
                db_session, policy, assignment.id, driver.id, shift_start_at(shift_date, policy)
            )

    async def test_second_late_cancel_hard_stops(self, db_session, policy, route, driver, shift_date):
        """Two late cancellations inside 30 days trigger an immediate hard-stop."""
        first_date = shift_date - timedelta(days=10)
        first = await make_assignment(db_session, policy, route, first_date, driver)
        second = await make_assignment(db_session, policy, route, shift_date, driver)

        await cancel_assignment(
            db_session, policy, first.id, driver.id,
            shift_start_at(first_date, policy) - timedelta(hours=20),
        )
        await db_session.commit()
        state = await db_session.get(DriverHealthState, driver.id)
        assert state is None or state.hard_stop is False

        await cancel_assignment(
            db_session, policy, second.id, driver.id,
            shift_start_at(shift_date, policy) - timedelta(hours=20),
        )
        await db_session.commit()

        state = await db_session.get(DriverHealthState, driver.id, populate_existing=True)
        assert state.hard_stop is True
        assert state.assignment_pool_eligible is False
        assert state.score <= policy.health.hard_stop_cap
        assert state.stars == 0

    async def test_early_cancels_never_hard_stop(self, db_session, policy, route, driver, shift_date):
        for offset in (0, 1, 2):
            day = shift_date + timedelta(days=offset)
            a = await make_assignment(db_session, policy, route, day, driver)
            await cancel_assignment(
                db_session, policy, a.id, driver.id, shift_start_at(day, policy) - timedelta(days=5)
            )
            await db_session.commit()

        state = await db_session.get(DriverHealthState, driver.id)
        assert state is None or state.hard_stop is False

    async def test_cancel_notifies_route_manager(self, db_session, policy, route, driver, shift_date, at):
        assignment = await make_assignment(db_session, policy, route, shift_date, driver)
        await cancel_assignment(
            db_session, policy, assignment.id, driver.id, at(shift_date - timedelta(days=4), 12)
        )
        await db_session.commit()

        result = await db_session.execute(
            select(Notification).where(
                Notification.recipient_id == route.manager_id,
                Notification.kind == NotificationKind.SHIFT_CANCELLED,
            )
        )
        assert result.scalar_one_or_none() is not None

    async def test_cancel_completed_conflicts(self, db_session, policy, route, driver, shift_date, at):
        assignment = await make_assignment(
            db_session, policy, route, shift_date, driver, status=AssignmentStatus.COMPLETED
        )
        with pytest.raises(StateConflictError):
            await cancel_assignment(
                db_session, policy, assignment.id, driver.id, at(shift_date - timedelta(days=1), 8)
            )


class TestArrival:
    """Arrival must be on the shift date and strictly before the deadline."""

    async def test_arrive_before_deadline(self, db_session, policy, route, driver, shift_date, at):
        assignment = await make_assignment(
            db_session, policy, route, shift_date, driver, status=AssignmentStatus.CONFIRMED
        )
        now = at(shift_date, 8, 59)

        result = await arrive_assignment(db_session, policy, assignment.id, driver.id, now)
        assert result.status == AssignmentStatus.ARRIVED
        assert result.arrived_at == now

    async def test_arrive_at_deadline_rejected(self, db_session, policy, route, driver, shift_date, at):
        assignment = await make_assignment(
            db_session, policy, route, shift_date, driver, status=AssignmentStatus.CONFIRMED
        )
        with pytest.raises(PreconditionFailedError) as exc:
            await arrive_assignment(db_session, policy, assignment.id, driver.id, at(shift_date, 9))
        assert exc.value.code == "arrival_deadline_passed"

    async def test_arrive_on_wrong_day_rejected(self, db_session, policy, route, driver, shift_date, at):
        assignment = await make_assignment(
            db_session, policy, route, shift_date, driver, status=AssignmentStatus.CONFIRMED
        )
        with pytest.raises(PreconditionFailedError):
            await arrive_assignment(
                db_session, policy, assignment.id, driver.id, at(shift_date - timedelta(days=1), 8)
            )

    async def test_arrive_unconfirmed_rejected(self, db_session, policy, route, driver, shift_date, at):
        assignment = await make_assignment(db_session, policy, route, shift_date, driver)
        with pytest.raises(PreconditionFailedError):
            await arrive_assignment(db_session, policy, assignment.id, driver.id, at(shift_date, 8))

    async def test_arrive_twice_conflicts(self, db_session, policy, route, driver, shift_date, at):
        assignment = await make_assignment(
            db_session, policy, route, shift_date, driver, status=AssignmentStatus.CONFIRMED
        )
        await arrive_assignment(db_session, policy, assignment.id, driver.id, at(shift_date, 8))
        await db_session.commit()

        with pytest.raises(StateConflictError):
            await arrive_assignment(db_session, policy, assignment.id, driver.id, at(shift_date, 8, 5))


class TestStartAndComplete:

    async def test_full_shift(self, db_session, policy, route, driver, shift_date, at):
        """arrive -> start -> complete records parcels, familiarity and the edit window."""
        assignment = await make_assignment(
            db_session, policy, route, shift_date, driver, status=AssignmentStatus.CONFIRMED
        )
        await arrive_assignment(db_session, policy, assignment.id, driver.id, at(shift_date, 8, 30))
        await start_assignment(db_session, policy, assignment.id, driver.id, 120, at(shift_date, 9, 10))
        done_at = at(shift_date, 17)
        result = await complete_assignment(db_session, policy, assignment.id, driver.id, 3, done_at)
        await db_session.commit()

        assert result.status == AssignmentStatus.COMPLETED
        assert result.parcels_delivered == 117
        assert result.editable_until == done_at + timedelta(hours=1)

        metrics = await db_session.get(DriverMetrics, driver.id)
        assert metrics.completed_count == 1
        assert metrics.high_delivery_count == 1

        completion = (
            await db_session.execute(
                select(RouteCompletion).where(RouteCompletion.driver_id == driver.id)
            )
        ).scalar_one()
        assert completion.completion_count == 1

    async def test_start_requires_arrival(self, db_session, policy, route, driver, shift_date, at):
        assignment = await make_assignment(
            db_session, policy, route, shift_date, driver, status=AssignmentStatus.CONFIRMED
        )
        with pytest.raises(PreconditionFailedError):
            await start_assignment(db_session, policy, assignment.id, driver.id, 100, at(shift_date, 8))

    async def test_returns_cannot_exceed_start(self, db_session, policy, route, driver, shift_date, at):
        assignment = await make_assignment(
            db_session, policy, route, shift_date, driver,
            status=AssignmentStatus.STARTED, parcels_start=50,
        )
        with pytest.raises(PreconditionFailedError):
            await complete_assignment(db_session, policy, assignment.id, driver.id, 51, at(shift_date, 16))


class TestParcelEdits:
    """Parcel counts stay editable for one hour after completion."""

    async def _completed(self, db_session, policy, route, driver, shift_date, at):
        done_at = at(shift_date, 17)
        assignment = await make_assignment(
            db_session, policy, route, shift_date, driver,
            status=AssignmentStatus.COMPLETED,
            parcels_start=100,
            parcels_returned=10,
            parcels_delivered=90,
            completed_at=done_at,
            editable_until=done_at + timedelta(hours=1),
        )
        return assignment, done_at

    async def test_edit_inside_window(self, db_session, policy, route, driver, shift_date, at):
        assignment, done_at = await self._completed(db_session, policy, route, driver, shift_date, at)

        result = await edit_parcels(
            db_session, policy, assignment.id, driver.id,
            done_at + timedelta(hours=1), parcels_returned=2,
        )
        assert result.parcels_delivered == 98

    async def test_edit_after_window_rejected(self, db_session, policy, route, driver, shift_date, at):
        assignment, done_at = await self._completed(db_session, policy, route, driver, shift_date, at)

        with pytest.raises(PreconditionFailedError) as exc:
            await edit_parcels(
                db_session, policy, assignment.id, driver.id,
                done_at + timedelta(hours=1, seconds=1), parcels_returned=2,
            )
        assert exc.value.code == "edit_window_closed"


class TestSchedulerIntake:

    async def test_unfilled_slot_gets_window(self, db_session, policy, route, shift_date, at):
        now = at(shift_date - timedelta(days=6), 9)
        assignment = await create_assignment(db_session, policy, route.id, shift_date, now)
        await db_session.commit()

        assert assignment.status == AssignmentStatus.UNFILLED
        window = (
            await db_session.execute(
                select(BidWindow).where(BidWindow.assignment_id == assignment.id)
            )
        ).scalar_one()
        assert window.trigger == BidWindowTrigger.SCHEDULER
        assert window.mode == BidWindowMode.COMPETITIVE

    async def test_scheduled_slot_records_arrival_deadline(self, db_session, policy, route, driver, shift_date, at):
        now = at(shift_date - timedelta(days=6), 9)
        assignment = await create_assignment(
            db_session, policy, route.id, shift_date, now, driver_id=driver.id
        )
        assert assignment.status == AssignmentStatus.SCHEDULED
        assert assignment.arrival_deadline_at == at(shift_date, 9)

    async def test_double_booking_rejected(self, db_session, policy, route, driver, shift_date, at):
        await make_assignment(db_session, policy, route, shift_date, driver)
        with pytest.raises(StateConflictError):
            await create_assignment(
                db_session, policy, route.id, shift_date,
                at(shift_date - timedelta(days=6), 9), driver_id=driver.id,
            )
