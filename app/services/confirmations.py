"""
Confirmation and auto-drop pipeline.

Scheduled assignments must be confirmed by shift start minus the
confirmation deadline. Drivers get one reminder at the reminder lead time.
Assignments still unconfirmed after the deadline are auto-dropped, but
only together with a successfully opened replacement window.
"""

from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.policy import DispatchPolicy
from app.core.timekeeping import confirmation_deadline_at, local_date, shift_start_at
from app.models import (
    Assignment,
    AssignmentStatus,
    BidWindow,
    BidWindowTrigger,
    NotificationKind,
)
from app.services.audit import record_audit
from app.services.bidding import create_vacancy
from app.services.lifecycle import transition_assignment
from app.services.metrics import increment_metrics
from app.services.notifications import enqueue_notification, notification_exists
from app.services.pipeline import DispatchPipeline


async def _unconfirmed_candidates(
    db: AsyncSession,
    policy: DispatchPolicy,
    now: datetime,
) -> List[Assignment]:
    """Scheduled, driver-held, unconfirmed assignments from today up to the reminder horizon."""
    horizon = now + timedelta(
        hours=max(policy.confirmation.reminder_hours, policy.confirmation.deadline_hours)
    ) + timedelta(days=1)
    result = await db.execute(
        select(Assignment)
        .where(
            and_(
                Assignment.status == AssignmentStatus.SCHEDULED,
                Assignment.confirmed_at.is_(None),
                Assignment.driver_id.is_not(None),
                Assignment.date >= local_date(now, policy),
                Assignment.date <= local_date(horizon, policy),
            )
        )
        .order_by(Assignment.date.asc())
    )
    return list(result.scalars().all())


async def auto_drop_assignment(
    db: AsyncSession,
    policy: DispatchPolicy,
    assignment_id: UUID,
    now: datetime,
) -> Optional[BidWindow]:
    """
    Drop one unconfirmed assignment past its deadline and open its replacement window.

    Returns None when the assignment is no longer a candidate. Raises
    (leaving nothing applied once the caller rolls back) when the
    replacement window cannot be opened.
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
        or assignment.status != AssignmentStatus.SCHEDULED
        or assignment.confirmed_at is not None
        or assignment.driver_id is None
        or now <= confirmation_deadline_at(assignment.date, policy)
    ):
        return None

    _, window = await create_vacancy(db, policy, assignment, BidWindowTrigger.AUTO_DROP, now)

    await transition_assignment(
        db, assignment, AssignmentStatus.SCHEDULED, now,
        status=AssignmentStatus.AUTO_DROPPED,
        cancel_reason="auto_drop",
        cancelled_at=now,
    )
    await increment_metrics(db, assignment.driver_id, auto_drop_count=1)
    enqueue_notification(
        db, assignment.driver_id, NotificationKind.SHIFT_AUTO_DROPPED,
        {"assignment_id": assignment.id, "date": assignment.date},
        assignment_id=assignment.id,
        subject_date=assignment.date,
    )
    record_audit(
        db, "assignment", assignment.id, "auto_dropped",
        changes={"bid_window_id": window.id},
    )
    return window


class AutoDropPipeline(DispatchPipeline):
    """Drops assignments that missed the confirmation deadline."""

    name = "auto_drop"

    async def _process(self) -> None:
        candidates = await _unconfirmed_candidates(self.db, self.policy, self.now)
        due_ids = [
            a.id for a in candidates
            if self.now > confirmation_deadline_at(a.date, self.policy)
        ]
        self.metrics["candidates"] = len(due_ids)
        self.metrics["dropped"] = 0

        for assignment_id in due_ids:
            try:
                window = await auto_drop_assignment(self.db, self.policy, assignment_id, self.now)
                if window is None:
                    await self._discard_item()
                    self.metrics["skipped"] += 1
                    continue
                await self._commit_item()
                self.metrics["dropped"] += 1
                self.metrics["processed"] += 1
                self.logger.info(f"Auto-dropped assignment {assignment_id}; window {window.id} opened")
            except Exception as e:
                await self._rollback_item(assignment_id, e)


class ConfirmationReminderPipeline(DispatchPipeline):
    """Sends one confirmation reminder per unconfirmed assignment."""

    name = "confirmation_reminders"

    async def _process(self) -> None:
        candidates = await _unconfirmed_candidates(self.db, self.policy, self.now)
        due = []
        for a in candidates:
            reminder_at = shift_start_at(a.date, self.policy) - timedelta(
                hours=self.policy.confirmation.reminder_hours
            )
            if reminder_at <= self.now <= confirmation_deadline_at(a.date, self.policy):
                due.append((a.id, a.driver_id, a.date))
        self.metrics["candidates"] = len(due)
        self.metrics["sent"] = 0

        for assignment_id, driver_id, assignment_date in due:
            try:
                if await notification_exists(
                    self.db,
                    NotificationKind.CONFIRMATION_REMINDER,
                    assignment_id=assignment_id,
                    subject_date=assignment_date,
                ):
                    self.metrics["skipped"] += 1
                    continue
                enqueue_notification(
                    self.db, driver_id, NotificationKind.CONFIRMATION_REMINDER,
                    {
                        "assignment_id": assignment_id,
                        "date": assignment_date,
                        "deadline_at": confirmation_deadline_at(assignment_date, self.policy),
                    },
                    assignment_id=assignment_id,
                    subject_date=assignment_date,
                )
                await self._commit_item()
                self.metrics["sent"] += 1
                self.metrics["processed"] += 1
            except Exception as e:
                await self._rollback_item(assignment_id, e)
