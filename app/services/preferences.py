"""
Driver route preferences and the weekly preference lock.

Edits are accepted until the cycle cutover (Sunday 23:59:59.999 local by
default). Once the active cycle's cutover has passed the cycle is locked,
whether or not the lock job has stamped the row yet.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFoundError, PreconditionFailedError, lock_conflicts_as_stale
from app.core.policy import DispatchPolicy
from app.core.timekeeping import (
    current_preference_lock_deadline,
    is_preference_cycle_locked,
    next_preference_lock_deadline,
)
from app.models import Driver, DriverPreference, NotificationKind, Route
from app.services.notifications import enqueue_notification
from app.services.pipeline import DispatchPipeline


def is_preferences_locked(
    locked_at: Optional[datetime],
    now: datetime,
    policy: DispatchPolicy,
) -> bool:
    if now >= current_preference_lock_deadline(now, policy):
        return True
    return is_preference_cycle_locked(locked_at, now, policy)


def upcoming_lock_deadline(now: datetime, policy: DispatchPolicy) -> datetime:
    """The cutover that closes the next edit window."""
    current = current_preference_lock_deadline(now, policy)
    if now < current:
        return current
    return next_preference_lock_deadline(now, policy)


async def get_preferences(db: AsyncSession, driver_id: UUID) -> Optional[DriverPreference]:
    if await db.get(Driver, driver_id) is None:
        raise NotFoundError("Driver not found")
    return await db.get(DriverPreference, driver_id)


@lock_conflicts_as_stale
async def update_preferences(
    db: AsyncSession,
    policy: DispatchPolicy,
    driver_id: UUID,
    preferred_route_ids: List[UUID],
    preferred_weekdays: List[int],
    now: datetime,
) -> DriverPreference:
    """
    Replace a driver's preferences unless the active cycle is locked.

    Raises:
        PreconditionFailedError: Preferences are locked or reference unknown routes
    """
    if await db.get(Driver, driver_id) is None:
        raise NotFoundError("Driver not found")

    preference = await db.get(
        DriverPreference, driver_id, with_for_update=True, populate_existing=True
    )
    locked_at = preference.locked_at if preference is not None else None
    if is_preferences_locked(locked_at, now, policy):
        raise PreconditionFailedError("Preferences are locked for the current cycle", code="preferences_locked")

    unique_routes = list(dict.fromkeys(preferred_route_ids))
    if unique_routes:
        result = await db.execute(select(Route.id).where(Route.id.in_(unique_routes)))
        known = {row[0] for row in result.all()}
        missing = [route_id for route_id in unique_routes if route_id not in known]
        if missing:
            raise PreconditionFailedError(f"Unknown routes: {', '.join(str(m) for m in missing)}")

    if preference is None:
        preference = DriverPreference(driver_id=driver_id)
        db.add(preference)
    preference.preferred_route_ids = [str(route_id) for route_id in unique_routes]
    preference.preferred_weekdays = sorted(set(preferred_weekdays))
    preference.updated_at = now
    await db.flush()
    return preference


class PreferenceLockPipeline(DispatchPipeline):
    """Stamps locked_at on preferences once the cycle cutover has passed."""

    name = "lock_preferences"

    async def _process(self) -> None:
        deadline = current_preference_lock_deadline(self.now, self.policy)
        self.metrics["deadline"] = deadline.isoformat()
        self.metrics["locked"] = 0
        if self.now < deadline:
            self.logger.info(f"Cutover {deadline.isoformat()} not reached; nothing to lock")
            return

        result = await self.db.execute(
            select(DriverPreference).where(
                or_(
                    DriverPreference.locked_at.is_(None),
                    DriverPreference.locked_at < deadline,
                )
            )
        )
        preferences = result.scalars().all()
        self.metrics["candidates"] = len(preferences)
        for preference in preferences:
            preference.locked_at = self.now
            enqueue_notification(
                self.db, preference.driver_id, NotificationKind.PREFERENCES_LOCKED,
                {"locked_at": self.now},
            )
            self.metrics["locked"] += 1
        try:
            await self._commit_item()
            self.metrics["processed"] = self.metrics["locked"]
        except Exception as e:
            await self._rollback_item("preference_lock", e)
            self.metrics["locked"] = 0
