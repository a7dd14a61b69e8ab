"""
Tests for the confirmation reminder and auto-drop evaluators.
"""

from datetime import timedelta

from sqlalchemy import select

from app.core.timekeeping import confirmation_deadline_at, shift_start_at
from app.models import (
    Assignment,
    AssignmentStatus,
    BidWindow,
    BidWindowMode,
    BidWindowTrigger,
    DriverMetrics,
)
from app.services.confirmations import (
    AutoDropPipeline,
    ConfirmationReminderPipeline,
    auto_drop_assignment,
)
from tests.fixtures.factories import make_assignment, reload


async def _replacement_window(db, source):
    result = await db.execute(
        select(BidWindow).where(BidWindow.source_assignment_id == source.id)
    )
    return result.scalar_one_or_none()


class TestAutoDrop:
    """Unconfirmed shifts past the deadline are dropped with a replacement window."""

    async def test_drops_after_deadline(self, db_session, policy, route, driver, other_driver, shift_date, sender):
        assignment = await make_assignment(db_session, policy, route, shift_date, driver)
        now = confirmation_deadline_at(shift_date, policy) + timedelta(minutes=1)

        metrics = await AutoDropPipeline(db_session, policy, sender=sender, now=now).run()
        assert metrics["dropped"] == 1
        assert metrics["errors"] == []

        await reload(db_session, assignment)
        assert assignment.status == AssignmentStatus.AUTO_DROPPED
        assert assignment.cancelled_at == now

        window = await _replacement_window(db_session, assignment)
        assert window.trigger == BidWindowTrigger.AUTO_DROP
        assert window.mode == BidWindowMode.COMPETITIVE
        assert window.closes_at == shift_start_at(shift_date, policy) - timedelta(hours=24)

        vacancy = await db_session.get(Assignment, window.assignment_id)
        assert vacancy.status == AssignmentStatus.UNFILLED
        assert vacancy.driver_id is None
        assert vacancy.route_id == route.id
        assert vacancy.date == shift_date

        assert sender.for_recipient(driver.id) == ["shift_auto_dropped"]
        assert sender.for_recipient(other_driver.id) == ["bid_open"]

        counters = await db_session.get(DriverMetrics, driver.id)
        assert counters.auto_drop_count == 1

    async def test_not_dropped_at_deadline(self, db_session, policy, route, driver, shift_date, sender):
        assignment = await make_assignment(db_session, policy, route, shift_date, driver)

        metrics = await AutoDropPipeline(
            db_session, policy, sender=sender, now=confirmation_deadline_at(shift_date, policy)
        ).run()
        assert metrics["dropped"] == 0

        await reload(db_session, assignment)
        assert assignment.status == AssignmentStatus.SCHEDULED

    async def test_confirmed_shift_untouched(self, db_session, policy, route, driver, shift_date, at, sender):
        assignment = await make_assignment(
            db_session, policy, route, shift_date, driver,
            status=AssignmentStatus.CONFIRMED,
            confirmed_at=at(shift_date - timedelta(days=4), 9),
        )
        now = confirmation_deadline_at(shift_date, policy) + timedelta(hours=1)

        metrics = await AutoDropPipeline(db_session, policy, sender=sender, now=now).run()
        assert metrics["candidates"] == 0
        await reload(db_session, assignment)
        assert assignment.status == AssignmentStatus.CONFIRMED

    async def test_rerun_is_idempotent(self, db_session, policy, route, driver, shift_date, sender):
        await make_assignment(db_session, policy, route, shift_date, driver)
        now = confirmation_deadline_at(shift_date, policy) + timedelta(minutes=5)

        await AutoDropPipeline(db_session, policy, sender=sender, now=now).run()
        again = await AutoDropPipeline(db_session, policy, sender=sender, now=now).run()

        assert again["candidates"] == 0
        windows = (await db_session.execute(select(BidWindow))).scalars().all()
        assert len(windows) == 1

    async def test_no_drop_without_replacement_window(self, db_session, policy, route, driver, shift_date, at, sender):
        """Once the shift has started no window can open, so nothing is dropped."""
        assignment = await make_assignment(db_session, policy, route, shift_date, driver)

        metrics = await AutoDropPipeline(
            db_session, policy, sender=sender, now=at(shift_date, 8)
        ).run()
        assert metrics["dropped"] == 0
        assert len(metrics["errors"]) == 1

        await reload(db_session, assignment)
        assert assignment.status == AssignmentStatus.SCHEDULED
        assert await _replacement_window(db_session, assignment) is None
        vacancies = (
            await db_session.execute(
                select(Assignment).where(Assignment.status == AssignmentStatus.UNFILLED)
            )
        ).scalars().all()
        assert vacancies == []

    async def test_direct_drop_skips_non_candidates(self, db_session, policy, route, driver, shift_date):
        assignment = await make_assignment(db_session, policy, route, shift_date, driver)
        early = confirmation_deadline_at(shift_date, policy) - timedelta(hours=1)

        assert await auto_drop_assignment(db_session, policy, assignment.id, early) is None


class TestConfirmationReminders:

    async def test_reminder_sent_once(self, db_session, policy, route, driver, shift_date, at, sender):
        await make_assignment(db_session, policy, route, shift_date, driver)
        now = at(shift_date - timedelta(days=3), 8)

        first = await ConfirmationReminderPipeline(db_session, policy, sender=sender, now=now).run()
        second = await ConfirmationReminderPipeline(
            db_session, policy, sender=sender, now=now + timedelta(hours=1)
        ).run()

        assert first["sent"] == 1
        assert second["sent"] == 0
        assert second["skipped"] == 1
        assert sender.for_recipient(driver.id) == ["confirmation_reminder"]

    async def test_no_reminder_before_lead_time(self, db_session, policy, route, driver, shift_date, at, sender):
        await make_assignment(db_session, policy, route, shift_date, driver)
        reminder_at = shift_start_at(shift_date, policy) - timedelta(hours=72)

        metrics = await ConfirmationReminderPipeline(
            db_session, policy, sender=sender, now=reminder_at - timedelta(minutes=1)
        ).run()
        assert metrics["sent"] == 0
        assert sender.sent == []

    async def test_confirmed_shift_gets_no_reminder(self, db_session, policy, route, driver, shift_date, at, sender):
        await make_assignment(
            db_session, policy, route, shift_date, driver,
            status=AssignmentStatus.CONFIRMED,
            confirmed_at=at(shift_date - timedelta(days=5), 9),
        )
        metrics = await ConfirmationReminderPipeline(
            db_session, policy, sender=sender, now=at(shift_date - timedelta(days=3), 8)
        ).run()
        assert metrics["candidates"] == 0
