"""
Bid Window Resolution Engine.

Fills vacant assignments through time-boxed bid windows:
- competitive: pending bids scored at close (shift start - instant cutoff)
- instant: first valid claim wins, closes at shift start
- emergency: instant mechanics plus a pay bonus, closes at end of the shift day

Every state change to a window or its vacancy runs under a row lock on the
window and a conditional UPDATE whose rowcount is checked, so a vacancy
never gets two winners.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import select, update, and_, or_, exists
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import (
    ForbiddenError,
    NotFoundError,
    PreconditionFailedError,
    StaleStateError,
    StateConflictError,
    WindowUnavailableError,
    lock_conflicts_as_stale,
)
from app.core.events import queue_dispatch_event
from app.core.policy import DispatchPolicy
from app.core.timekeeping import end_of_civil_day, shift_start_at
from app.database import apply_lock_timeout
from app.models import (
    ACTIVE_STATUSES,
    Assignment,
    AssignmentStatus,
    AssignedBy,
    Bid,
    BidStatus,
    BidWindow,
    BidWindowMode,
    BidWindowStatus,
    BidWindowTrigger,
    CreationTrigger,
    Driver,
    DriverHealthState,
    DriverPreference,
    NotificationKind,
    Route,
    RouteCompletion,
)
from app.services.audit import record_audit
from app.services.metrics import increment_metrics
from app.services.notifications import enqueue_many, enqueue_notification
from app.services.pipeline import DispatchPipeline

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WindowPlan:
    mode: BidWindowMode
    closes_at: datetime


@dataclass
class ScoredBid:
    bid: Bid
    score: float
    components: Dict[str, float]


# ==================== Mode selection ====================

def plan_window(
    assignment_date: date,
    now: datetime,
    policy: DispatchPolicy,
    emergency: bool = False,
) -> WindowPlan:
    """
    Choose mode and close time for a new window from the time left to shift start.

    Raises:
        WindowUnavailableError: If no window can be opened any more
    """
    shift_start = shift_start_at(assignment_date, policy)
    if emergency:
        closes_at = end_of_civil_day(assignment_date, policy)
        if now >= closes_at:
            raise WindowUnavailableError("Shift day is over; emergency window unavailable")
        return WindowPlan(BidWindowMode.EMERGENCY, closes_at)

    if now >= shift_start:
        raise WindowUnavailableError("Shift already started; replacement window unavailable")

    cutoff = shift_start - timedelta(hours=policy.bidding.instant_cutoff_hours)
    if now >= cutoff:
        return WindowPlan(BidWindowMode.INSTANT, shift_start)
    return WindowPlan(BidWindowMode.COMPETITIVE, cutoff)


def effective_mode(window: BidWindow, assignment_date: date, policy: DispatchPolicy) -> BidWindowMode:
    """A competitive window closing inside the instant cutoff behaves as instant."""
    if window.mode != BidWindowMode.COMPETITIVE:
        return window.mode
    cutoff = shift_start_at(assignment_date, policy) - timedelta(
        hours=policy.bidding.instant_cutoff_hours
    )
    if window.closes_at > cutoff:
        return BidWindowMode.INSTANT
    return BidWindowMode.COMPETITIVE


# ==================== Locking helpers ====================
# Lock order: bid window before assignment.

async def _lock_window(db: AsyncSession, policy: DispatchPolicy, window_id: UUID) -> BidWindow:
    await apply_lock_timeout(db, policy.lock_timeout_ms)
    result = await db.execute(
        select(BidWindow)
        .where(BidWindow.id == window_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    window = result.scalar_one_or_none()
    if window is None:
        raise NotFoundError("Bid window not found")
    return window


async def _lock_assignment(db: AsyncSession, policy: DispatchPolicy, assignment_id: UUID) -> Assignment:
    await apply_lock_timeout(db, policy.lock_timeout_ms)
    result = await db.execute(
        select(Assignment)
        .where(Assignment.id == assignment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    assignment = result.scalar_one_or_none()
    if assignment is None:
        raise NotFoundError("Assignment not found")
    return assignment


async def get_open_window(db: AsyncSession, assignment_id: UUID) -> Optional[BidWindow]:
    result = await db.execute(
        select(BidWindow).where(
            and_(
                BidWindow.assignment_id == assignment_id,
                BidWindow.status == BidWindowStatus.OPEN,
            )
        )
    )
    return result.scalar_one_or_none()


async def _fill_vacancy(
    db: AsyncSession,
    assignment_id: UUID,
    driver_id: UUID,
    assigned_by: AssignedBy,
    now: datetime,
) -> None:
    """Conditional transition unfilled -> scheduled; loses cleanly if already filled."""
    result = await db.execute(
        update(Assignment)
        .where(
            and_(
                Assignment.id == assignment_id,
                Assignment.status == AssignmentStatus.UNFILLED,
            )
        )
        .values(
            driver_id=driver_id,
            status=AssignmentStatus.SCHEDULED,
            assigned_by=assigned_by,
            assigned_at=now,
            updated_at=now,
        )
    )
    if result.rowcount != 1:
        raise StaleStateError("Assignment is no longer unfilled")


async def _close_window(
    db: AsyncSession,
    window_id: UUID,
    new_status: BidWindowStatus,
    now: datetime,
    winner_id: Optional[UUID] = None,
) -> None:
    """Conditional transition open -> resolved/expired."""
    result = await db.execute(
        update(BidWindow)
        .where(
            and_(
                BidWindow.id == window_id,
                BidWindow.status == BidWindowStatus.OPEN,
            )
        )
        .values(status=new_status, winner_id=winner_id, resolved_at=now)
    )
    if result.rowcount != 1:
        raise StaleStateError("Bid window is no longer open")


# ==================== Eligibility ====================

def _unavailable_driver_ids(assignment_date: date):
    return select(Assignment.driver_id).where(
        and_(
            Assignment.date == assignment_date,
            Assignment.driver_id.is_not(None),
            Assignment.status.in_(list(ACTIVE_STATUSES)),
        )
    )


async def find_eligible_driver_ids(
    db: AsyncSession,
    assignment_date: date,
    exclude: Sequence[UUID] = (),
) -> List[UUID]:
    """Active, unflagged, pool-eligible drivers with no active shift on the date."""
    query = (
        select(Driver.id)
        .outerjoin(DriverHealthState, DriverHealthState.driver_id == Driver.id)
        .where(
            and_(
                Driver.is_active.is_(True),
                Driver.is_flagged.is_(False),
                or_(
                    DriverHealthState.driver_id.is_(None),
                    and_(
                        DriverHealthState.hard_stop.is_(False),
                        DriverHealthState.assignment_pool_eligible.is_(True),
                    ),
                ),
                Driver.id.not_in(_unavailable_driver_ids(assignment_date)),
            )
        )
        .order_by(Driver.created_at.asc())
    )
    if exclude:
        query = query.where(Driver.id.not_in(list(exclude)))
    result = await db.execute(query)
    return [row[0] for row in result.all()]


async def check_bid_eligibility(
    db: AsyncSession,
    driver_id: UUID,
    assignment: Assignment,
) -> Driver:
    """
    Ensure a driver may bid on or claim the assignment.

    Raises:
        NotFoundError: Unknown driver
        ForbiddenError: Inactive, flagged or hard-stopped driver
        PreconditionFailedError: Driver already works that day
    """
    driver = await db.get(Driver, driver_id)
    if driver is None:
        raise NotFoundError("Driver not found")
    if not driver.is_active or driver.is_flagged:
        raise ForbiddenError("Driver is not eligible to bid")

    state_result = await db.execute(
        select(DriverHealthState).where(DriverHealthState.driver_id == driver_id)
    )
    state = state_result.scalar_one_or_none()
    if state is not None and (state.hard_stop or not state.assignment_pool_eligible):
        raise ForbiddenError("Driver is under hard-stop and cannot bid")

    busy = await db.execute(
        select(
            exists().where(
                and_(
                    Assignment.driver_id == driver_id,
                    Assignment.date == assignment.date,
                    Assignment.status.in_(list(ACTIVE_STATUSES)),
                    Assignment.id != assignment.id,
                )
            )
        )
    )
    if busy.scalar():
        raise PreconditionFailedError("Driver already has a shift on this date")
    return driver


async def _eligible_bids(
    db: AsyncSession,
    assignment: Assignment,
    bids: Sequence[Bid],
) -> List[Bid]:
    """Drop bids from drivers who became ineligible since bidding; they settle as lost."""
    eligible = []
    for bid in bids:
        try:
            await check_bid_eligibility(db, bid.driver_id, assignment)
        except (NotFoundError, ForbiddenError, PreconditionFailedError) as e:
            logger.info(f"Bid {bid.id} from driver {bid.driver_id} no longer eligible: {e}")
            continue
        eligible.append(bid)
    return eligible


# ==================== Window creation ====================

async def open_bid_window(
    db: AsyncSession,
    policy: DispatchPolicy,
    assignment: Assignment,
    trigger: BidWindowTrigger,
    now: datetime,
    emergency: bool = False,
    source_assignment_id: Optional[UUID] = None,
    plan: Optional[WindowPlan] = None,
) -> BidWindow:
    """
    Open a window on an unfilled assignment and notify eligible drivers.

    Raises:
        WindowUnavailableError: If the shift is past the point a window can open
        StateConflictError: If the assignment is filled or already has an open window
    """
    if assignment.status != AssignmentStatus.UNFILLED:
        raise StateConflictError("Only unfilled assignments can have a bid window")

    plan = plan or plan_window(assignment.date, now, policy, emergency=emergency)
    if await get_open_window(db, assignment.id) is not None:
        raise StateConflictError("Assignment already has an open bid window")

    bonus = policy.bidding.emergency_bonus_percent if plan.mode == BidWindowMode.EMERGENCY else 0
    window = BidWindow(
        assignment_id=assignment.id,
        source_assignment_id=source_assignment_id,
        trigger=trigger,
        mode=plan.mode,
        status=BidWindowStatus.OPEN,
        opens_at=now,
        closes_at=plan.closes_at,
        pay_bonus_percent=bonus,
    )
    db.add(window)
    try:
        await db.flush()
    except IntegrityError:
        raise StateConflictError("Assignment already has an open bid window")

    excluded = []
    if source_assignment_id is not None:
        source = await db.get(Assignment, source_assignment_id)
        if source is not None and source.driver_id is not None:
            excluded.append(source.driver_id)
    recipients = await find_eligible_driver_ids(db, assignment.date, exclude=excluded)
    kind = (
        NotificationKind.EMERGENCY_ROUTE_AVAILABLE
        if plan.mode == BidWindowMode.EMERGENCY
        else NotificationKind.BID_OPEN
    )
    enqueue_many(
        db,
        recipients,
        kind,
        {
            "assignment_id": assignment.id,
            "date": assignment.date,
            "mode": plan.mode.value,
            "closes_at": plan.closes_at,
            "pay_bonus_percent": bonus,
        },
        assignment_id=assignment.id,
        bid_window_id=window.id,
        subject_date=assignment.date,
    )

    record_audit(
        db, "bid_window", window.id, "opened",
        changes={"mode": plan.mode.value, "trigger": trigger.value, "assignment_id": assignment.id},
    )
    queue_dispatch_event(
        db, "bid_window_opened", assignment.id,
        {"bid_window_id": str(window.id), "mode": plan.mode.value, "trigger": trigger.value},
    )
    logger.info(
        f"Opened {plan.mode.value} window {window.id} for assignment {assignment.id} "
        f"({trigger.value}), closes {plan.closes_at.isoformat()}"
    )
    return window


async def create_vacancy(
    db: AsyncSession,
    policy: DispatchPolicy,
    source: Assignment,
    trigger: BidWindowTrigger,
    now: datetime,
    emergency: bool = False,
) -> Tuple[Assignment, BidWindow]:
    """
    Create the unfilled replacement for a failed assignment and open its window.

    The mode is planned before anything is written so an unavailable window
    leaves no vacancy behind.
    """
    plan = plan_window(source.date, now, policy, emergency=emergency)
    vacancy = Assignment(
        route_id=source.route_id,
        date=source.date,
        status=AssignmentStatus.UNFILLED,
        driver_id=None,
        creation_trigger=CreationTrigger.EMERGENCY if emergency else CreationTrigger.BID,
        arrival_deadline_at=source.arrival_deadline_at,
    )
    db.add(vacancy)
    await db.flush()
    window = await open_bid_window(
        db, policy, vacancy, trigger, now,
        emergency=emergency,
        source_assignment_id=source.id,
        plan=plan,
    )
    return vacancy, window


# ==================== Scoring ====================

def tenure_months(hired_at: date, on: date) -> int:
    months = (on.year - hired_at.year) * 12 + (on.month - hired_at.month)
    if on.day < hired_at.day:
        months -= 1
    return max(months, 0)


async def score_bids(
    db: AsyncSession,
    policy: DispatchPolicy,
    assignment: Assignment,
    bids: Sequence[Bid],
) -> List[ScoredBid]:
    """
    Score pending bids and order them best first.

    score = w_h*health + w_f*familiarity + w_s*seniority + w_p*preference,
    each component normalised to [0, 1]. Ties go to the earliest submission.
    Inputs are snapshot reads; they only affect score quality.
    """
    weights = policy.bidding
    scored: List[ScoredBid] = []
    for bid in bids:
        driver = await db.get(Driver, bid.driver_id)
        state_result = await db.execute(
            select(DriverHealthState.score).where(DriverHealthState.driver_id == bid.driver_id)
        )
        health_score = state_result.scalar_one_or_none() or 0
        completion_result = await db.execute(
            select(RouteCompletion.completion_count).where(
                and_(
                    RouteCompletion.driver_id == bid.driver_id,
                    RouteCompletion.route_id == assignment.route_id,
                )
            )
        )
        runs = completion_result.scalar_one_or_none() or 0
        preference = await db.get(DriverPreference, bid.driver_id)
        top_routes = [
            str(route_id) for route_id in (preference.preferred_route_ids if preference else [])
        ][:weights.preference_top_n]

        components = {
            "health": min(health_score / weights.health_elite_threshold, 1.0),
            "familiarity": min(runs / weights.familiarity_cap_runs, 1.0),
            "seniority": min(
                tenure_months(driver.hired_at, assignment.date) / weights.seniority_cap_months, 1.0
            ) if driver else 0.0,
            "preference": 1.0 if str(assignment.route_id) in top_routes else 0.0,
        }
        total = (
            weights.weight_health * components["health"]
            + weights.weight_familiarity * components["familiarity"]
            + weights.weight_seniority * components["seniority"]
            + weights.weight_preference * components["preference"]
        )
        scored.append(ScoredBid(bid=bid, score=round(total, 6), components=components))

    scored.sort(key=lambda s: (-s.score, s.bid.submitted_at, str(s.bid.id)))
    return scored


# ==================== Resolution ====================

async def _award(
    db: AsyncSession,
    window: BidWindow,
    assignment: Assignment,
    winner_id: UUID,
    assigned_by: AssignedBy,
    now: datetime,
) -> None:
    """Fill the vacancy, resolve the window and settle its bids as one unit."""
    await _fill_vacancy(db, assignment.id, winner_id, assigned_by, now)
    await _close_window(db, window.id, BidWindowStatus.RESOLVED, now, winner_id=winner_id)

    pending_result = await db.execute(
        select(Bid).where(
            and_(Bid.bid_window_id == window.id, Bid.status == BidStatus.PENDING)
        )
    )
    for bid in pending_result.scalars().all():
        bid.status = BidStatus.WON if bid.driver_id == winner_id else BidStatus.LOST
        bid.resolved_at = now
        kind = NotificationKind.BID_WON if bid.driver_id == winner_id else NotificationKind.BID_LOST
        enqueue_notification(
            db, bid.driver_id, kind,
            {"assignment_id": assignment.id, "date": assignment.date},
            assignment_id=assignment.id, bid_window_id=window.id,
        )

    pickup = (
        {"urgent_pickup_count": 1}
        if assigned_by == AssignedBy.EMERGENCY
        else {"bid_pickup_count": 1} if assigned_by in (AssignedBy.BID, AssignedBy.INSTANT)
        else {}
    )
    await increment_metrics(db, winner_id, total_assigned=1, **pickup)

    record_audit(
        db, "bid_window", window.id, "resolved",
        changes={"winner_id": winner_id, "assigned_by": assigned_by.value},
    )
    queue_dispatch_event(
        db, "bid_window_closed", assignment.id,
        {"bid_window_id": str(window.id), "status": "resolved", "winner_id": str(winner_id)},
    )
    queue_dispatch_event(
        db, "assignment_updated", assignment.id,
        {"status": AssignmentStatus.SCHEDULED.value, "driver_id": str(winner_id)},
    )


async def _expire(
    db: AsyncSession,
    window: BidWindow,
    assignment: Assignment,
    now: datetime,
    alert_manager: bool,
) -> None:
    await _close_window(db, window.id, BidWindowStatus.EXPIRED, now)
    stale_result = await db.execute(
        select(Bid).where(
            and_(Bid.bid_window_id == window.id, Bid.status == BidStatus.PENDING)
        )
    )
    for bid in stale_result.scalars().all():
        bid.status = BidStatus.LOST
        bid.resolved_at = now
    if alert_manager:
        route = await db.get(Route, assignment.route_id)
        if route is not None and route.manager_id is not None:
            enqueue_notification(
                db, route.manager_id, NotificationKind.ROUTE_UNFILLED,
                {"assignment_id": assignment.id, "route": route.name, "date": assignment.date},
                assignment_id=assignment.id, bid_window_id=window.id,
                subject_date=assignment.date,
            )
    record_audit(db, "bid_window", window.id, "expired")
    queue_dispatch_event(
        db, "bid_window_closed", assignment.id,
        {"bid_window_id": str(window.id), "status": "expired"},
    )


@lock_conflicts_as_stale
async def resolve_bid_window(
    db: AsyncSession,
    policy: DispatchPolicy,
    window_id: UUID,
    now: datetime,
) -> Dict[str, object]:
    """
    Close a window whose close time has passed.

    Competitive: award the best-scored pending bid, or with no bids expire
    and cascade to an instant window closing at shift start. Instant and
    emergency windows nobody claimed expire and alert the route manager.

    Returns:
        Dict describing the outcome ("resolved", "cascaded", "expired", "not_due")
    """
    window = await _lock_window(db, policy, window_id)
    if window.status != BidWindowStatus.OPEN:
        raise StaleStateError("Bid window is no longer open")
    if now < window.closes_at:
        return {"outcome": "not_due"}

    assignment = await _lock_assignment(db, policy, window.assignment_id)
    mode = effective_mode(window, assignment.date, policy)

    if mode != BidWindowMode.COMPETITIVE:
        await _expire(db, window, assignment, now, alert_manager=True)
        return {"outcome": "expired"}

    pending_result = await db.execute(
        select(Bid).where(
            and_(Bid.bid_window_id == window.id, Bid.status == BidStatus.PENDING)
        )
    )
    pending = await _eligible_bids(db, assignment, pending_result.scalars().all())

    if pending:
        winner = await _award_best(db, policy, window, assignment, pending, now)
        return {"outcome": "resolved", "winner_id": winner}

    shift_start = shift_start_at(assignment.date, policy)
    if now >= shift_start:
        await _expire(db, window, assignment, now, alert_manager=True)
        return {"outcome": "expired"}

    await _expire(db, window, assignment, now, alert_manager=False)
    cascade = await open_bid_window(
        db, policy, assignment, BidWindowTrigger.CASCADE, now,
        source_assignment_id=window.source_assignment_id,
        plan=WindowPlan(BidWindowMode.INSTANT, shift_start),
    )
    return {"outcome": "cascaded", "bid_window_id": cascade.id}


async def _award_best(
    db: AsyncSession,
    policy: DispatchPolicy,
    window: BidWindow,
    assignment: Assignment,
    pending: Sequence[Bid],
    now: datetime,
    assigned_by: AssignedBy = AssignedBy.BID,
) -> UUID:
    scored = await score_bids(db, policy, assignment, pending)
    for item in scored:
        item.bid.score = item.score
    winner = scored[0].bid.driver_id
    await _award(db, window, assignment, winner, assigned_by, now)
    logger.info(
        f"Window {window.id} resolved: driver {winner} won with score {scored[0].score} "
        f"over {len(scored) - 1} other bid(s)"
    )
    return winner


@lock_conflicts_as_stale
async def submit_bid(
    db: AsyncSession,
    policy: DispatchPolicy,
    assignment_id: UUID,
    driver_id: UUID,
    now: datetime,
) -> Bid:
    """
    Bid on a vacancy.

    Competitive windows record a pending bid; instant and emergency windows
    are claimed immediately.
    """
    assignment = await db.get(Assignment, assignment_id)
    if assignment is None:
        raise NotFoundError("Assignment not found")
    window = await get_open_window(db, assignment_id)
    if window is None:
        raise StateConflictError("No open bid window for this assignment")

    if effective_mode(window, assignment.date, policy) != BidWindowMode.COMPETITIVE:
        return await claim_bid_window(db, policy, window.id, driver_id, now)

    if now >= window.closes_at:
        raise PreconditionFailedError("Bid window has closed")
    await check_bid_eligibility(db, driver_id, assignment)

    existing = await db.execute(
        select(Bid.id).where(and_(Bid.bid_window_id == window.id, Bid.driver_id == driver_id))
    )
    if existing.first() is not None:
        raise StateConflictError("Driver already bid in this window")

    bid = Bid(
        bid_window_id=window.id,
        assignment_id=assignment_id,
        driver_id=driver_id,
        status=BidStatus.PENDING,
        submitted_at=now,
    )
    db.add(bid)
    try:
        await db.flush()
    except IntegrityError:
        raise StateConflictError("Driver already bid in this window")

    record_audit(db, "bid", bid.id, "submitted", actor_id=driver_id)
    return bid


@lock_conflicts_as_stale
async def claim_bid_window(
    db: AsyncSession,
    policy: DispatchPolicy,
    window_id: UUID,
    driver_id: UUID,
    now: datetime,
) -> Bid:
    """
    First-claim-wins on an instant or emergency window.

    Raises:
        StaleStateError: The window or vacancy was taken before the lock was acquired
    """
    window = await _lock_window(db, policy, window_id)
    if window.status != BidWindowStatus.OPEN:
        raise StaleStateError("Bid window is no longer open")

    assignment = await db.get(Assignment, window.assignment_id)
    mode = effective_mode(window, assignment.date, policy)
    if mode == BidWindowMode.COMPETITIVE:
        raise PreconditionFailedError("Competitive windows accept bids, not claims")
    if now >= window.closes_at:
        raise PreconditionFailedError("Bid window has closed")

    await check_bid_eligibility(db, driver_id, assignment)

    existing_result = await db.execute(
        select(Bid).where(and_(Bid.bid_window_id == window.id, Bid.driver_id == driver_id))
    )
    existing = existing_result.scalar_one_or_none()

    assigned_by = AssignedBy.EMERGENCY if mode == BidWindowMode.EMERGENCY else AssignedBy.INSTANT
    await _award(db, window, assignment, driver_id, assigned_by, now)

    if existing is not None:
        # A pending bid from before the window turned instant is settled as won by _award.
        bid = existing
    else:
        bid = Bid(
            bid_window_id=window.id,
            assignment_id=assignment.id,
            driver_id=driver_id,
            status=BidStatus.WON,
            submitted_at=now,
            resolved_at=now,
        )
        db.add(bid)
        enqueue_notification(
            db, driver_id, NotificationKind.BID_WON,
            {"assignment_id": assignment.id, "date": assignment.date, "pay_bonus_percent": window.pay_bonus_percent},
            assignment_id=assignment.id, bid_window_id=window.id,
        )
    await db.flush()
    logger.info(f"Driver {driver_id} claimed {mode.value} window {window.id}")
    return bid


# ==================== Manager actions ====================

@lock_conflicts_as_stale
async def manager_assign(
    db: AsyncSession,
    policy: DispatchPolicy,
    assignment_id: UUID,
    driver_id: UUID,
    manager_id: UUID,
    now: datetime,
) -> Assignment:
    """Manager fills a vacancy directly, resolving any open window under lock."""
    window = await get_open_window(db, assignment_id)
    if window is not None:
        window = await _lock_window(db, policy, window.id)
    assignment = await _lock_assignment(db, policy, assignment_id)
    if assignment.status != AssignmentStatus.UNFILLED:
        raise StateConflictError("Assignment is already filled")

    await check_bid_eligibility(db, driver_id, assignment)

    if window is not None and window.status == BidWindowStatus.OPEN:
        await _award(db, window, assignment, driver_id, AssignedBy.MANAGER, now)
    else:
        await _fill_vacancy(db, assignment.id, driver_id, AssignedBy.MANAGER, now)
        await increment_metrics(db, driver_id, total_assigned=1)
        queue_dispatch_event(
            db, "assignment_updated", assignment.id,
            {"status": AssignmentStatus.SCHEDULED.value, "driver_id": str(driver_id)},
        )

    enqueue_notification(
        db, driver_id, NotificationKind.ASSIGNED,
        {"assignment_id": assignment.id, "date": assignment.date},
        assignment_id=assignment.id,
    )
    record_audit(
        db, "assignment", assignment.id, "manager_assigned",
        actor_id=manager_id, changes={"driver_id": driver_id},
    )
    return assignment


@lock_conflicts_as_stale
async def manager_close_window(
    db: AsyncSession,
    policy: DispatchPolicy,
    window_id: UUID,
    manager_id: UUID,
    now: datetime,
) -> BidWindow:
    """
    Manager closes a window early.
    Pending competitive bids are scored and awarded; otherwise the window expires without cascading.
    """
    window = await _lock_window(db, policy, window_id)
    if window.status != BidWindowStatus.OPEN:
        raise StaleStateError("Bid window is no longer open")
    assignment = await _lock_assignment(db, policy, window.assignment_id)

    pending_result = await db.execute(
        select(Bid).where(
            and_(Bid.bid_window_id == window.id, Bid.status == BidStatus.PENDING)
        )
    )
    pending = await _eligible_bids(db, assignment, pending_result.scalars().all())
    if pending:
        await _award_best(db, policy, window, assignment, pending, now)
    else:
        await _expire(db, window, assignment, now, alert_manager=False)

    record_audit(db, "bid_window", window.id, "manager_closed", actor_id=manager_id)
    return window


@lock_conflicts_as_stale
async def emergency_reopen(
    db: AsyncSession,
    policy: DispatchPolicy,
    assignment_id: UUID,
    manager_id: UUID,
    now: datetime,
    reason: Optional[str] = None,
) -> BidWindow:
    """
    Manager converts a shift into an emergency window with the configured bonus.

    An assigned shift is cancelled (without driver penalty) and replaced by an
    emergency vacancy; an unfilled vacancy has its open window expired and an
    emergency window opened in its place.
    """
    current = await get_open_window(db, assignment_id)
    if current is not None:
        current = await _lock_window(db, policy, current.id)
        if current.status != BidWindowStatus.OPEN:
            raise StaleStateError("Bid window closed concurrently")
    assignment = await _lock_assignment(db, policy, assignment_id)

    if assignment.status == AssignmentStatus.UNFILLED:
        plan = plan_window(assignment.date, now, policy, emergency=True)
        if current is not None:
            if current.mode == BidWindowMode.EMERGENCY:
                raise StateConflictError("Assignment already has an open emergency window")
            await _expire(db, current, assignment, now, alert_manager=False)
        window = await open_bid_window(
            db, policy, assignment, BidWindowTrigger.MANAGER, now,
            emergency=True, plan=plan,
        )
    elif assignment.status in (AssignmentStatus.SCHEDULED, AssignmentStatus.CONFIRMED):
        plan_window(assignment.date, now, policy, emergency=True)
        result = await db.execute(
            update(Assignment)
            .where(
                and_(
                    Assignment.id == assignment.id,
                    Assignment.status == assignment.status,
                )
            )
            .values(
                status=AssignmentStatus.CANCELLED,
                cancel_reason=reason or "manager_emergency_reopen",
                cancelled_at=now,
                updated_at=now,
            )
        )
        if result.rowcount != 1:
            raise StaleStateError("Assignment changed concurrently")
        queue_dispatch_event(
            db, "assignment_updated", assignment.id,
            {"status": AssignmentStatus.CANCELLED.value},
        )
        _, window = await create_vacancy(
            db, policy, assignment, BidWindowTrigger.MANAGER, now, emergency=True
        )
        if assignment.driver_id is not None:
            enqueue_notification(
                db, assignment.driver_id, NotificationKind.SHIFT_CANCELLED,
                {"assignment_id": assignment.id, "date": assignment.date, "reason": reason},
                assignment_id=assignment.id,
            )
    else:
        raise StateConflictError(
            f"Cannot reopen an assignment in status {assignment.status.value}"
        )

    record_audit(
        db, "assignment", assignment.id, "emergency_reopened",
        actor_id=manager_id, changes={"bid_window_id": window.id, "reason": reason},
    )
    return window


# ==================== Queries ====================

async def list_bid_windows(
    db: AsyncSession,
    status: Optional[BidWindowStatus] = BidWindowStatus.OPEN,
    limit: int = 100,
) -> List[BidWindow]:
    query = select(BidWindow).order_by(BidWindow.closes_at.asc()).limit(limit)
    if status is not None:
        query = query.where(BidWindow.status == status)
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_bid_window(db: AsyncSession, window_id: UUID) -> BidWindow:
    window = await db.get(BidWindow, window_id)
    if window is None:
        raise NotFoundError("Bid window not found")
    return window


async def list_window_bids(db: AsyncSession, window_id: UUID) -> List[Bid]:
    result = await db.execute(
        select(Bid).where(Bid.bid_window_id == window_id).order_by(Bid.submitted_at.asc())
    )
    return list(result.scalars().all())


class BidWindowCloser(DispatchPipeline):
    """Resolves every open window whose close time has passed."""

    name = "close_bid_windows"

    async def _process(self) -> None:
        result = await self.db.execute(
            select(BidWindow.id)
            .where(
                and_(
                    BidWindow.status == BidWindowStatus.OPEN,
                    BidWindow.closes_at <= self.now,
                )
            )
            .order_by(BidWindow.closes_at.asc())
        )
        window_ids = [row[0] for row in result.all()]
        self.metrics["candidates"] = len(window_ids)
        self.metrics.update(resolved=0, cascaded=0, expired=0)

        for window_id in window_ids:
            try:
                outcome = await resolve_bid_window(self.db, self.policy, window_id, self.now)
                await self._commit_item()
                if outcome["outcome"] in ("resolved", "cascaded", "expired"):
                    self.metrics[outcome["outcome"]] += 1
                self.metrics["processed"] += 1
            except StaleStateError as e:
                await self._discard_item()
                self.metrics["skipped"] += 1
                self.logger.info(f"Window {window_id} skipped: {e}")
            except Exception as e:
                await self._rollback_item(window_id, e)
