"""
Tests for route preferences and the weekly preference lock.
"""

from datetime import date
from uuid import uuid4

import pytest

from app.core.errors import NotFoundError, PreconditionFailedError
from app.core.timekeeping import current_preference_lock_deadline
from app.models import DriverPreference
from app.services.preferences import (
    PreferenceLockPipeline,
    get_preferences,
    is_preferences_locked,
    upcoming_lock_deadline,
    update_preferences,
)
from tests.fixtures.factories import make_preference, make_route

WEDNESDAY = date(2026, 6, 17)
SUNDAY = date(2026, 6, 14)
MONDAY = date(2026, 6, 15)
NEXT_SUNDAY = date(2026, 6, 21)


class TestUpdatePreferences:

    async def test_stores_deduplicated_preferences(self, db_session, policy, route, driver, at):
        second = await make_route(db_session)

        preference = await update_preferences(
            db_session, policy, driver.id,
            [route.id, second.id, route.id],
            [4, 0, 4],
            at(SUNDAY, 12),
        )
        await db_session.commit()

        assert preference.preferred_route_ids == [str(route.id), str(second.id)]
        assert preference.preferred_weekdays == [0, 4]
        assert preference.locked_at is None
        assert (await get_preferences(db_session, driver.id)).driver_id == driver.id

    async def test_unknown_route_rejected(self, db_session, policy, driver, at):
        with pytest.raises(PreconditionFailedError):
            await update_preferences(db_session, policy, driver.id, [uuid4()], [], at(SUNDAY, 12))

    async def test_unknown_driver(self, db_session, policy, at):
        with pytest.raises(NotFoundError):
            await update_preferences(db_session, policy, uuid4(), [], [], at(SUNDAY, 12))
        with pytest.raises(NotFoundError):
            await get_preferences(db_session, uuid4())

    async def test_locked_cycle_rejects_edits(self, db_session, policy, route, driver, at):
        await make_preference(db_session, driver, [route.id], locked_at=at(MONDAY, 0, 5))

        with pytest.raises(PreconditionFailedError) as exc_info:
            await update_preferences(db_session, policy, driver.id, [], [1], at(WEDNESDAY, 12))
        assert exc_info.value.code == "preferences_locked"

    async def test_previous_cycle_lock_allows_edits(self, db_session, policy, route, driver, at):
        await make_preference(db_session, driver, [route.id], locked_at=at(date(2026, 6, 8), 0, 5))

        preference = await update_preferences(db_session, policy, driver.id, [], [2], at(SUNDAY, 12))
        assert preference.preferred_route_ids == []
        assert preference.preferred_weekdays == [2]

    async def test_last_minute_before_cutover_allowed(self, db_session, policy, route, driver, at):
        await make_preference(db_session, driver, [route.id])

        preference = await update_preferences(db_session, policy, driver.id, [], [3], at(SUNDAY, 23, 59))
        assert preference.preferred_weekdays == [3]

    async def test_cutover_locks_before_the_lock_job_runs(self, db_session, policy, route, driver, at):
        await make_preference(db_session, driver, [route.id])

        with pytest.raises(PreconditionFailedError) as exc_info:
            await update_preferences(db_session, policy, driver.id, [], [1], at(MONDAY, 0, 0))
        assert exc_info.value.code == "preferences_locked"

        preference = await db_session.get(DriverPreference, driver.id, populate_existing=True)
        assert preference.locked_at is None
        assert preference.preferred_route_ids == [str(route.id)]

    async def test_cutover_locks_drivers_without_preferences(self, db_session, policy, driver, at):
        with pytest.raises(PreconditionFailedError):
            await update_preferences(db_session, policy, driver.id, [], [1], at(MONDAY, 0, 0))

        assert await db_session.get(DriverPreference, driver.id) is None

    def test_cutover_instant_is_locked(self, policy, at):
        cutover = current_preference_lock_deadline(at(SUNDAY, 12), policy)

        assert is_preferences_locked(None, cutover, policy) is True
        assert is_preferences_locked(None, at(SUNDAY, 23, 59), policy) is False

    def test_upcoming_deadline(self, policy, at):
        sunday_deadline = current_preference_lock_deadline(at(SUNDAY, 12), policy)

        assert upcoming_lock_deadline(at(SUNDAY, 12), policy) == sunday_deadline
        assert upcoming_lock_deadline(at(WEDNESDAY, 12), policy) == current_preference_lock_deadline(
            at(NEXT_SUNDAY, 12), policy
        )


class TestPreferenceLockPipeline:

    async def test_locks_after_cutover(self, db_session, policy, route, driver, other_driver, at, sender):
        await make_preference(db_session, driver, [route.id])
        await make_preference(db_session, other_driver, [route.id], locked_at=at(date(2026, 6, 8), 0, 1))
        now = at(MONDAY, 0, 1)

        metrics = await PreferenceLockPipeline(db_session, policy, sender=sender, now=now).run()
        assert metrics["locked"] == 2

        preference = await db_session.get(DriverPreference, driver.id, populate_existing=True)
        assert preference.locked_at == now
        assert sender.kinds() == ["preferences_locked", "preferences_locked"]

        with pytest.raises(PreconditionFailedError):
            await update_preferences(db_session, policy, driver.id, [], [], at(WEDNESDAY, 12))

    async def test_nothing_locked_before_cutover(self, db_session, policy, route, driver, at, sender):
        await make_preference(db_session, driver, [route.id])

        metrics = await PreferenceLockPipeline(
            db_session, policy, sender=sender, now=at(SUNDAY, 23, 0)
        ).run()
        assert metrics["locked"] == 0

        preference = await db_session.get(DriverPreference, driver.id, populate_existing=True)
        assert preference.locked_at is None

    async def test_rerun_in_same_cycle_is_noop(self, db_session, policy, route, driver, at, sender):
        await make_preference(db_session, driver, [route.id])
        now = at(MONDAY, 0, 1)

        await PreferenceLockPipeline(db_session, policy, sender=sender, now=now).run()
        again = await PreferenceLockPipeline(db_session, policy, sender=sender, now=at(MONDAY, 1)).run()

        assert again["locked"] == 0
