"""
Assignment lifecycle state machine.

unfilled -> scheduled -> confirmed -> arrived -> started -> completed,
with cancellation from scheduled/confirmed, and the system-only
auto_dropped and no_show branches (see confirmations and noshow).

Driver actions lock the assignment row and transition with a conditional
UPDATE on the expected current status.
"""

import logging
from datetime import date, datetime, timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, update, and_, exists
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import (
    ForbiddenError,
    NotFoundError,
    PreconditionFailedError,
    StaleStateError,
    StateConflictError,
    lock_conflicts_as_stale,
)
from app.core.events import queue_dispatch_event
from app.core.policy import DispatchPolicy
from app.core.timekeeping import (
    arrival_deadline_at,
    confirmation_window,
    is_late_cancellation,
    local_date,
    shift_start_at,
)
from app.models import (
    ACTIVE_STATUSES,
    Assignment,
    AssignmentStatus,
    AssignedBy,
    BidWindowTrigger,
    CancelType,
    CreationTrigger,
    Driver,
    NotificationKind,
    Route,
)
from app.services.audit import record_audit
from app.services.bidding import create_vacancy, open_bid_window
from app.services.health import check_late_cancel_hard_stop, is_high_delivery
from app.services.metrics import increment_metrics, record_route_completion
from app.services.notifications import enqueue_notification

logger = logging.getLogger(__name__)


async def transition_assignment(
    db: AsyncSession,
    assignment: Assignment,
    expected: AssignmentStatus,
    now: datetime,
    **values,
) -> None:
    """Move an assignment out of `expected`, failing if it changed underneath us."""
    result = await db.execute(
        update(Assignment)
        .where(
            and_(
                Assignment.id == assignment.id,
                Assignment.status == expected,
            )
        )
        .values(updated_at=now, **values)
    )
    if result.rowcount != 1:
        raise StaleStateError("Assignment changed concurrently; re-fetch and retry")
    queue_dispatch_event(
        db, "assignment_updated", assignment.id,
        {"status": values.get("status", expected).value},
    )


async def _load_for_driver(
    db: AsyncSession,
    assignment_id: UUID,
    driver_id: UUID,
) -> Assignment:
    result = await db.execute(
        select(Assignment)
        .where(Assignment.id == assignment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    assignment = result.scalar_one_or_none()
    if assignment is None:
        raise NotFoundError("Assignment not found")
    if assignment.driver_id != driver_id:
        raise ForbiddenError("Assignment belongs to another driver")
    return assignment


async def get_assignment(db: AsyncSession, assignment_id: UUID) -> Assignment:
    assignment = await db.get(Assignment, assignment_id)
    if assignment is None:
        raise NotFoundError("Assignment not found")
    return assignment


async def list_driver_assignments(
    db: AsyncSession,
    driver_id: UUID,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> List[Assignment]:
    query = select(Assignment).where(Assignment.driver_id == driver_id)
    if start_date is not None:
        query = query.where(Assignment.date >= start_date)
    if end_date is not None:
        query = query.where(Assignment.date <= end_date)
    result = await db.execute(query.order_by(Assignment.date.asc()))
    return list(result.scalars().all())


async def create_assignment(
    db: AsyncSession,
    policy: DispatchPolicy,
    route_id: UUID,
    assignment_date: date,
    now: datetime,
    driver_id: Optional[UUID] = None,
) -> Assignment:
    """
    Record a scheduler-produced assignment.

    With a driver the assignment is scheduled; without one it is unfilled
    and a bid window opens for it immediately.

    Raises:
        NotFoundError: Unknown route or driver
        StateConflictError: Driver already has an active shift that day
        WindowUnavailableError: Unfilled slot whose shift already started
    """
    route = await db.get(Route, route_id)
    if route is None:
        raise NotFoundError("Route not found")

    assignment = Assignment(
        route_id=route_id,
        date=assignment_date,
        creation_trigger=CreationTrigger.SCHEDULED,
        arrival_deadline_at=arrival_deadline_at(assignment_date, route.start_time, policy),
    )

    if driver_id is not None:
        driver = await db.get(Driver, driver_id)
        if driver is None:
            raise NotFoundError("Driver not found")
        busy = await db.execute(
            select(
                exists().where(
                    and_(
                        Assignment.driver_id == driver_id,
                        Assignment.date == assignment_date,
                        Assignment.status.in_(list(ACTIVE_STATUSES)),
                    )
                )
            )
        )
        if busy.scalar():
            raise StateConflictError("Driver already has a shift on this date")
        assignment.driver_id = driver_id
        assignment.status = AssignmentStatus.SCHEDULED
        assignment.assigned_by = AssignedBy.SCHEDULER
        assignment.assigned_at = now
        db.add(assignment)
        await db.flush()
        await increment_metrics(db, driver_id, total_assigned=1)
    else:
        assignment.status = AssignmentStatus.UNFILLED
        db.add(assignment)
        await db.flush()
        await open_bid_window(db, policy, assignment, BidWindowTrigger.SCHEDULER, now)

    record_audit(
        db, "assignment", assignment.id, "created",
        changes={"status": assignment.status.value, "driver_id": driver_id},
    )
    return assignment


@lock_conflicts_as_stale
async def confirm_assignment(
    db: AsyncSession,
    policy: DispatchPolicy,
    assignment_id: UUID,
    driver_id: UUID,
    now: datetime,
) -> Assignment:
    """
    Driver confirms a scheduled shift inside its confirmation window.

    Raises:
        PreconditionFailedError: Outside [opens_at, deadline_at]
        StateConflictError: Already confirmed or not in scheduled status
    """
    assignment = await _load_for_driver(db, assignment_id, driver_id)
    if assignment.status == AssignmentStatus.CONFIRMED:
        raise StateConflictError("Assignment is already confirmed")
    if assignment.status != AssignmentStatus.SCHEDULED:
        raise StateConflictError(
            f"Cannot confirm an assignment in status {assignment.status.value}"
        )

    opens_at, deadline_at = confirmation_window(assignment.date, policy)
    if now < opens_at:
        raise PreconditionFailedError(
            f"Confirmation opens at {opens_at.isoformat()}", code="confirmation_not_open"
        )
    if now > deadline_at:
        raise PreconditionFailedError(
            f"Confirmation deadline passed at {deadline_at.isoformat()}", code="confirmation_closed"
        )

    await transition_assignment(
        db, assignment, AssignmentStatus.SCHEDULED, now,
        status=AssignmentStatus.CONFIRMED, confirmed_at=now,
    )
    await increment_metrics(db, driver_id, confirmed_count=1)
    record_audit(db, "assignment", assignment.id, "confirmed", actor_id=driver_id)
    return assignment


@lock_conflicts_as_stale
async def cancel_assignment(
    db: AsyncSession,
    policy: DispatchPolicy,
    assignment_id: UUID,
    driver_id: UUID,
    now: datetime,
    reason: Optional[str] = None,
) -> Assignment:
    """
    Driver cancels a scheduled or confirmed shift.

    Late iff shift start is at most the confirmation deadline away. The
    cancellation, the replacement window and any immediate hard-stop
    commit together.
    """
    assignment = await _load_for_driver(db, assignment_id, driver_id)
    if assignment.status not in (AssignmentStatus.SCHEDULED, AssignmentStatus.CONFIRMED):
        raise StateConflictError(
            f"Cannot cancel an assignment in status {assignment.status.value}"
        )
    if now >= shift_start_at(assignment.date, policy):
        raise PreconditionFailedError("Shift already started; cancellation not allowed")

    late = is_late_cancellation(assignment.date, now, policy)
    cancel_type = CancelType.LATE if late else CancelType.EARLY

    await transition_assignment(
        db, assignment, assignment.status, now,
        status=AssignmentStatus.CANCELLED,
        cancel_type=cancel_type,
        cancel_reason=reason,
        cancelled_at=now,
    )
    await increment_metrics(
        db, driver_id,
        **({"late_cancel_count": 1} if late else {"early_cancel_count": 1}),
    )

    await create_vacancy(db, policy, assignment, BidWindowTrigger.CANCELLATION, now)

    if late:
        await check_late_cancel_hard_stop(db, policy, driver_id, now)

    route = await db.get(Route, assignment.route_id)
    if route is not None and route.manager_id is not None:
        enqueue_notification(
            db, route.manager_id, NotificationKind.SHIFT_CANCELLED,
            {
                "assignment_id": assignment.id,
                "driver_id": driver_id,
                "date": assignment.date,
                "cancel_type": cancel_type.value,
            },
            assignment_id=assignment.id,
            subject_date=assignment.date,
        )
    record_audit(
        db, "assignment", assignment.id, "cancelled",
        actor_id=driver_id, changes={"cancel_type": cancel_type.value, "reason": reason},
    )
    logger.info(f"Assignment {assignment.id} cancelled ({cancel_type.value}) by driver {driver_id}")
    return assignment


@lock_conflicts_as_stale
async def arrive_assignment(
    db: AsyncSession,
    policy: DispatchPolicy,
    assignment_id: UUID,
    driver_id: UUID,
    now: datetime,
) -> Assignment:
    """
    Driver reports arrival: same civil day, confirmed, strictly before the arrival deadline.
    """
    assignment = await _load_for_driver(db, assignment_id, driver_id)
    if assignment.status == AssignmentStatus.ARRIVED:
        raise StateConflictError("Arrival already recorded")
    if assignment.status != AssignmentStatus.CONFIRMED:
        raise PreconditionFailedError("Only confirmed assignments can record arrival")
    if local_date(now, policy) != assignment.date:
        raise PreconditionFailedError("Arrival can only be recorded on the shift date")
    if now >= assignment.arrival_deadline_at:
        raise PreconditionFailedError(
            f"Arrival deadline passed at {assignment.arrival_deadline_at.isoformat()}",
            code="arrival_deadline_passed",
        )

    await transition_assignment(
        db, assignment, AssignmentStatus.CONFIRMED, now,
        status=AssignmentStatus.ARRIVED, arrived_at=now,
    )
    await increment_metrics(db, driver_id, arrived_on_time_count=1)
    record_audit(db, "assignment", assignment.id, "arrived", actor_id=driver_id)
    return assignment


@lock_conflicts_as_stale
async def start_assignment(
    db: AsyncSession,
    policy: DispatchPolicy,
    assignment_id: UUID,
    driver_id: UUID,
    parcels_start: int,
    now: datetime,
) -> Assignment:
    assignment = await _load_for_driver(db, assignment_id, driver_id)
    if assignment.status != AssignmentStatus.ARRIVED:
        raise PreconditionFailedError("Shift can only start after arrival")
    if parcels_start < 0:
        raise PreconditionFailedError("Parcel count cannot be negative")

    await transition_assignment(
        db, assignment, AssignmentStatus.ARRIVED, now,
        status=AssignmentStatus.STARTED, started_at=now, parcels_start=parcels_start,
    )
    record_audit(
        db, "assignment", assignment.id, "started",
        actor_id=driver_id, changes={"parcels_start": parcels_start},
    )
    return assignment


@lock_conflicts_as_stale
async def complete_assignment(
    db: AsyncSession,
    policy: DispatchPolicy,
    assignment_id: UUID,
    driver_id: UUID,
    parcels_returned: int,
    now: datetime,
) -> Assignment:
    """
    Driver completes a started shift.

    Opens the post-completion edit window and updates completion metrics
    and route familiarity.
    """
    assignment = await _load_for_driver(db, assignment_id, driver_id)
    if assignment.status != AssignmentStatus.STARTED:
        raise PreconditionFailedError("Only started shifts can be completed")
    parcels_start = assignment.parcels_start or 0
    if parcels_returned < 0 or parcels_returned > parcels_start:
        raise PreconditionFailedError("Returned parcels must be between 0 and parcels at start")

    editable_until = now + timedelta(hours=policy.shift.completion_edit_window_hours)
    await transition_assignment(
        db, assignment, AssignmentStatus.STARTED, now,
        status=AssignmentStatus.COMPLETED,
        parcels_returned=parcels_returned,
        parcels_delivered=parcels_start - parcels_returned,
        completed_at=now,
        editable_until=editable_until,
    )

    deltas = {"completed_count": 1}
    if is_high_delivery(assignment, policy):
        deltas["high_delivery_count"] = 1
    await increment_metrics(db, driver_id, **deltas)
    await record_route_completion(db, driver_id, assignment.route_id, now)

    record_audit(
        db, "assignment", assignment.id, "completed",
        actor_id=driver_id,
        changes={"parcels_returned": parcels_returned, "parcels_delivered": assignment.parcels_delivered},
    )
    return assignment


@lock_conflicts_as_stale
async def edit_parcels(
    db: AsyncSession,
    policy: DispatchPolicy,
    assignment_id: UUID,
    driver_id: UUID,
    now: datetime,
    parcels_start: Optional[int] = None,
    parcels_returned: Optional[int] = None,
) -> Assignment:
    """Correct parcel counts while the post-completion edit window is open."""
    assignment = await _load_for_driver(db, assignment_id, driver_id)
    if assignment.status != AssignmentStatus.COMPLETED or assignment.editable_until is None:
        raise PreconditionFailedError("Parcel counts are editable only after completion")
    if now > assignment.editable_until:
        raise PreconditionFailedError(
            "Edit window has closed", code="edit_window_closed"
        )

    was_high = is_high_delivery(assignment, policy)
    new_start = assignment.parcels_start if parcels_start is None else parcels_start
    new_returned = assignment.parcels_returned if parcels_returned is None else parcels_returned
    if new_start is None or new_start < 0 or new_returned is None or not 0 <= new_returned <= new_start:
        raise PreconditionFailedError("Returned parcels must be between 0 and parcels at start")

    assignment.parcels_start = new_start
    assignment.parcels_returned = new_returned
    assignment.parcels_delivered = new_start - new_returned
    assignment.updated_at = now

    is_high = is_high_delivery(assignment, policy)
    if is_high != was_high:
        await increment_metrics(db, driver_id, high_delivery_count=1 if is_high else -1)

    record_audit(
        db, "assignment", assignment.id, "parcels_edited",
        actor_id=driver_id,
        changes={"parcels_start": new_start, "parcels_returned": new_returned},
    )
    return assignment
