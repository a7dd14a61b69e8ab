"""
No-show detection.

Finds confirmed assignments for today whose recorded arrival deadline has
passed without an arrival, marks them no_show, applies the immediate
hard-stop and opens an emergency replacement window.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select, and_, exists
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.policy import DispatchPolicy
from app.core.timekeeping import local_date
from app.models import (
    Assignment,
    AssignmentStatus,
    BidWindow,
    BidWindowTrigger,
    NotificationKind,
    Route,
)
from app.services.audit import record_audit
from app.services.bidding import create_vacancy
from app.services.health import HARD_STOP_NO_SHOW, apply_hard_stop
from app.services.lifecycle import transition_assignment
from app.services.metrics import increment_metrics
from app.services.notifications import enqueue_notification
from app.services.pipeline import DispatchPipeline


async def _window_exists_for_source(db: AsyncSession, source_id: UUID) -> bool:
    result = await db.execute(
        select(
            exists().where(
                and_(
                    BidWindow.source_assignment_id == source_id,
                    BidWindow.trigger == BidWindowTrigger.NO_SHOW,
                )
            )
        )
    )
    return bool(result.scalar())


async def mark_no_show(
    db: AsyncSession,
    policy: DispatchPolicy,
    assignment_id: UUID,
    now: datetime,
) -> Optional[BidWindow]:
    """
    Escalate one missed arrival.

    Classification uses the recorded arrival deadline, so a late-running
    check still decides correctly. Returns None when the assignment is not
    (or no longer) a no-show candidate.
    """
    result = await db.execute(
        select(Assignment)
        .where(Assignment.id == assignment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    assignment = result.scalar_one_or_none()
    if (
        assignment is None
        or assignment.status != AssignmentStatus.CONFIRMED
        or assignment.arrived_at is not None
        or now < assignment.arrival_deadline_at
    ):
        return None
    if await _window_exists_for_source(db, assignment.id):
        return None

    driver_id = assignment.driver_id
    await transition_assignment(
        db, assignment, AssignmentStatus.CONFIRMED, now,
        status=AssignmentStatus.NO_SHOW,
    )
    await increment_metrics(db, driver_id, no_show_count=1)
    await apply_hard_stop(db, policy, driver_id, HARD_STOP_NO_SHOW, now)

    _, window = await create_vacancy(
        db, policy, assignment, BidWindowTrigger.NO_SHOW, now, emergency=True
    )

    enqueue_notification(
        db, driver_id, NotificationKind.NO_SHOW,
        {"assignment_id": assignment.id, "date": assignment.date},
        assignment_id=assignment.id,
        subject_date=assignment.date,
    )
    route = await db.get(Route, assignment.route_id)
    if route is not None and route.manager_id is not None:
        enqueue_notification(
            db, route.manager_id, NotificationKind.NO_SHOW,
            {"assignment_id": assignment.id, "driver_id": driver_id, "route": route.name},
            assignment_id=assignment.id,
            subject_date=assignment.date,
        )
    record_audit(
        db, "assignment", assignment.id, "no_show",
        changes={"bid_window_id": window.id},
    )
    return window


class NoShowPipeline(DispatchPipeline):
    """Detects missed arrivals for today's confirmed shifts."""

    name = "no_show_detection"

    async def _process(self) -> None:
        result = await self.db.execute(
            select(Assignment.id)
            .where(
                and_(
                    Assignment.status == AssignmentStatus.CONFIRMED,
                    Assignment.date == local_date(self.now, self.policy),
                    Assignment.arrived_at.is_(None),
                    Assignment.arrival_deadline_at <= self.now,
                )
            )
            .order_by(Assignment.arrival_deadline_at.asc())
        )
        assignment_ids = [row[0] for row in result.all()]
        self.metrics["candidates"] = len(assignment_ids)
        self.metrics["no_shows"] = 0

        for assignment_id in assignment_ids:
            try:
                window = await mark_no_show(self.db, self.policy, assignment_id, self.now)
                if window is None:
                    await self._discard_item()
                    self.metrics["skipped"] += 1
                    continue
                await self._commit_item()
                self.metrics["no_shows"] += 1
                self.metrics["processed"] += 1
            except Exception as e:
                await self._rollback_item(assignment_id, e)
