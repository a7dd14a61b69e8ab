"""
Driver health and reliability scoring.

Immediate consequences (hard-stop on a no-show or on the second late
cancellation in the rolling window) are applied inside the triggering
transaction. The daily recompute and the weekly star evaluation run as
scheduled pipelines; the daily write is conditioned on the state version
read at the start so a stale recompute never overwrites a newer reset.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, update, and_, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFoundError, StateConflictError, lock_conflicts_as_stale
from app.core.policy import DispatchPolicy
from app.core.timekeeping import local_date, week_start
from app.models import (
    Assignment,
    AssignmentStatus,
    AssignedBy,
    CancelType,
    Driver,
    DriverHealthState,
    DriverHealthSnapshot,
    NotificationKind,
)
from app.services.audit import record_audit
from app.services.metrics import get_or_create_metrics
from app.services.notifications import enqueue_notification, notification_exists
from app.services.pipeline import DispatchPipeline

logger = logging.getLogger(__name__)

HARD_STOP_NO_SHOW = "no_show"
HARD_STOP_LATE_CANCELLATIONS = "late_cancellations"


@dataclass
class HealthLedger:
    """Additive contribution ledger for one driver."""
    counts: Dict[str, int] = field(default_factory=dict)
    contributions: Dict[str, int] = field(default_factory=dict)
    raw_total: int = 0
    score: int = 0


async def get_or_create_health_state(
    db: AsyncSession,
    driver_id: UUID,
    lock: bool = False,
) -> DriverHealthState:
    """Load a driver's health state, creating it on the first scorable event."""
    query = select(DriverHealthState).where(DriverHealthState.driver_id == driver_id)
    if lock:
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(query)
    state = result.scalar_one_or_none()
    if state is None:
        state = DriverHealthState(
            driver_id=driver_id,
            score=0,
            stars=0,
            streak_weeks=0,
            hard_stop=False,
            hard_stop_reasons=[],
            assignment_pool_eligible=True,
            requires_manager_intervention=False,
            version=0,
        )
        db.add(state)
        await db.flush()
    return state


async def count_rolling_events(
    db: AsyncSession,
    policy: DispatchPolicy,
    driver_id: UUID,
    now: datetime,
    not_before: Optional[datetime] = None,
) -> Tuple[int, int]:
    """
    Count late cancellations and no-shows in the rolling window ending at now.

    Only cancellations classified late count; early cancellations never do.

    Returns:
        (late_cancellations, no_shows)
    """
    window_start = now - timedelta(days=policy.health.late_cancel_window_days)
    if not_before is not None and not_before > window_start:
        window_start = not_before

    late_result = await db.execute(
        select(func.count(Assignment.id)).where(
            and_(
                Assignment.driver_id == driver_id,
                Assignment.status == AssignmentStatus.CANCELLED,
                Assignment.cancel_type == CancelType.LATE,
                Assignment.cancelled_at >= window_start,
                Assignment.cancelled_at <= now,
            )
        )
    )
    no_show_result = await db.execute(
        select(func.count(Assignment.id)).where(
            and_(
                Assignment.driver_id == driver_id,
                Assignment.status == AssignmentStatus.NO_SHOW,
                Assignment.arrival_deadline_at >= window_start,
                Assignment.arrival_deadline_at <= now,
            )
        )
    )
    return late_result.scalar_one(), no_show_result.scalar_one()


async def apply_hard_stop(
    db: AsyncSession,
    policy: DispatchPolicy,
    driver_id: UUID,
    reason: str,
    now: datetime,
) -> DriverHealthState:
    """
    Activate hard-stop immediately: cap the score, reset stars and streak.

    Runs inside the caller's transaction so the consequence commits (or
    rolls back) together with the triggering event.
    """
    state = await get_or_create_health_state(db, driver_id, lock=True)
    was_active = state.hard_stop

    reasons = list(state.hard_stop_reasons or [])
    if reason not in reasons:
        reasons.append(reason)

    state.score = min(state.score, policy.health.hard_stop_cap)
    state.stars = 0
    state.streak_weeks = 0
    state.hard_stop = True
    state.hard_stop_reasons = reasons
    state.assignment_pool_eligible = False
    state.requires_manager_intervention = True
    state.last_reset_at = now
    state.version += 1

    if not was_active:
        enqueue_notification(
            db,
            driver_id,
            NotificationKind.HARD_STOP,
            {"reason": reason, "score": state.score},
        )
    record_audit(db, "driver_health", driver_id, "hard_stop", changes={"reason": reason})
    logger.info(f"Hard-stop applied to driver {driver_id}: {reason}")
    return state


async def check_late_cancel_hard_stop(
    db: AsyncSession,
    policy: DispatchPolicy,
    driver_id: UUID,
    now: datetime,
) -> bool:
    """Apply hard-stop if the driver has reached the late-cancellation threshold."""
    state = await get_or_create_health_state(db, driver_id)
    late_count, _ = await count_rolling_events(
        db, policy, driver_id, now, not_before=state.reinstated_at
    )
    if late_count >= policy.health.late_cancel_threshold:
        await apply_hard_stop(db, policy, driver_id, HARD_STOP_LATE_CANCELLATIONS, now)
        return True
    return False


async def compute_health_ledger(
    db: AsyncSession,
    policy: DispatchPolicy,
    driver_id: UUID,
    since: Optional[datetime] = None,
) -> HealthLedger:
    """
    Build the contribution ledger from lifecycle events after `since`.

    Args:
        db: Database session
        policy: Dispatch policy
        driver_id: Driver UUID
        since: Last reset instant; events at or before it are ignored

    Returns:
        HealthLedger with counts, per-event contributions and the bounded score
    """
    result = await db.execute(select(Assignment).where(Assignment.driver_id == driver_id))
    assignments = result.scalars().all()

    def after(instant: Optional[datetime]) -> bool:
        return instant is not None and (since is None or instant > since)

    counts = {
        "confirmed_on_time": 0,
        "arrived_on_time": 0,
        "completed": 0,
        "high_delivery": 0,
        "bid_pickup": 0,
        "urgent_pickup": 0,
        "auto_drop": 0,
        "late_cancel": 0,
    }
    for a in assignments:
        if after(a.confirmed_at):
            counts["confirmed_on_time"] += 1
        if after(a.arrived_at):
            counts["arrived_on_time"] += 1
        if a.status == AssignmentStatus.COMPLETED and after(a.completed_at):
            counts["completed"] += 1
            if is_high_delivery(a, policy):
                counts["high_delivery"] += 1
        if after(a.assigned_at):
            if a.assigned_by in (AssignedBy.BID, AssignedBy.INSTANT):
                counts["bid_pickup"] += 1
            elif a.assigned_by == AssignedBy.EMERGENCY:
                counts["urgent_pickup"] += 1
        if a.status == AssignmentStatus.AUTO_DROPPED and after(a.cancelled_at):
            counts["auto_drop"] += 1
        if (
            a.status == AssignmentStatus.CANCELLED
            and a.cancel_type == CancelType.LATE
            and after(a.cancelled_at)
        ):
            counts["late_cancel"] += 1

    points = policy.health
    contributions = {
        "confirmed_on_time": counts["confirmed_on_time"] * points.confirmed_on_time,
        "arrived_on_time": counts["arrived_on_time"] * points.arrived_on_time,
        "completed": counts["completed"] * points.completed,
        "high_delivery": counts["high_delivery"] * points.high_delivery,
        "bid_pickup": counts["bid_pickup"] * points.bid_pickup,
        "urgent_pickup": counts["urgent_pickup"] * points.urgent_pickup,
        "auto_drop": counts["auto_drop"] * points.auto_drop,
        "late_cancel": counts["late_cancel"] * points.late_cancel,
    }
    raw_total = sum(contributions.values())
    score = max(points.score_min, min(points.score_max, raw_total))
    return HealthLedger(
        counts=counts,
        contributions=contributions,
        raw_total=raw_total,
        score=score,
    )


def is_high_delivery(assignment: Assignment, policy: DispatchPolicy) -> bool:
    if not assignment.parcels_start or assignment.parcels_delivered is None:
        return False
    return assignment.parcels_delivered / assignment.parcels_start >= policy.health.high_delivery_ratio


async def evaluate_driver_daily(
    db: AsyncSession,
    policy: DispatchPolicy,
    driver_id: UUID,
    now: datetime,
) -> Dict[str, object]:
    """
    Recompute one driver's score and write it if nothing changed meanwhile.

    Returns:
        Dict with status ("updated" or "stale"), score, hard_stop and flag_change
    """
    state = await get_or_create_health_state(db, driver_id)
    read_version = state.version
    was_hard_stopped = state.hard_stop

    ledger = await compute_health_ledger(db, policy, driver_id, since=state.last_reset_at)
    late_count, no_show_count = await count_rolling_events(
        db, policy, driver_id, now, not_before=state.reinstated_at
    )

    new_reasons: List[str] = []
    if no_show_count > 0:
        new_reasons.append(HARD_STOP_NO_SHOW)
    if late_count >= policy.health.late_cancel_threshold:
        new_reasons.append(HARD_STOP_LATE_CANCELLATIONS)

    hard_stop = was_hard_stopped or bool(new_reasons)
    score = ledger.score
    if hard_stop:
        score = min(score, policy.health.hard_stop_cap)

    reasons = list(state.hard_stop_reasons or [])
    for reason in new_reasons:
        if reason not in reasons:
            reasons.append(reason)

    values = {
        "score": score,
        "hard_stop": hard_stop,
        "hard_stop_reasons": reasons,
        "version": read_version + 1,
        "updated_at": now,
    }
    newly_stopped = hard_stop and not was_hard_stopped
    if newly_stopped:
        values.update(
            stars=0,
            streak_weeks=0,
            assignment_pool_eligible=False,
            requires_manager_intervention=True,
            last_reset_at=now,
        )

    result = await db.execute(
        update(DriverHealthState)
        .where(
            and_(
                DriverHealthState.driver_id == driver_id,
                DriverHealthState.version == read_version,
            )
        )
        .values(**values)
    )
    if result.rowcount == 0:
        return {"status": "stale", "score": state.score, "hard_stop": state.hard_stop}

    evaluated_on = local_date(now, policy)
    snapshot_result = await db.execute(
        select(DriverHealthSnapshot).where(
            and_(
                DriverHealthSnapshot.driver_id == driver_id,
                DriverHealthSnapshot.evaluated_on == evaluated_on,
            )
        )
    )
    snapshot = snapshot_result.scalar_one_or_none()
    if snapshot is None:
        snapshot = DriverHealthSnapshot(driver_id=driver_id, evaluated_on=evaluated_on)
        db.add(snapshot)
    snapshot.score = score
    snapshot.contributions = ledger.contributions
    snapshot.late_cancel_count_rolling = late_count
    snapshot.no_show_count_rolling = no_show_count
    snapshot.hard_stop = hard_stop
    snapshot.reasons = reasons

    if newly_stopped:
        enqueue_notification(
            db,
            driver_id,
            NotificationKind.HARD_STOP,
            {"reasons": reasons, "score": score},
        )

    await _maybe_warn_corrective(db, policy, driver_id, now)
    flag_change = await apply_attendance_flag(db, policy, driver_id, now)
    return {"status": "updated", "score": score, "hard_stop": hard_stop, "flag_change": flag_change}


async def _maybe_warn_corrective(
    db: AsyncSession,
    policy: DispatchPolicy,
    driver_id: UUID,
    now: datetime,
) -> bool:
    metrics = await get_or_create_metrics(db, driver_id)
    rate = metrics.completion_rate
    if rate is None or rate >= policy.health.corrective_completion_threshold:
        return False
    cooldown_start = now - timedelta(days=policy.health.corrective_cooldown_days)
    if await notification_exists(
        db,
        NotificationKind.CORRECTIVE_WARNING,
        recipient_id=driver_id,
        created_since=cooldown_start,
    ):
        return False
    enqueue_notification(
        db,
        driver_id,
        NotificationKind.CORRECTIVE_WARNING,
        {
            "completion_rate": round(rate, 4),
            "threshold": policy.health.corrective_completion_threshold,
        },
    )
    return True


async def apply_attendance_flag(
    db: AsyncSession,
    policy: DispatchPolicy,
    driver_id: UUID,
    now: datetime,
) -> Optional[str]:
    """
    Flag a driver whose attendance (completed / assigned shifts) is below the
    threshold for their experience, and clear the flag once it recovers.
    Newer drivers (fewer than attendance_early_shift_count shifts) are held
    to the stricter threshold.

    Returns:
        "flagged", "unflagged" or None when nothing changed
    """
    driver = await db.get(Driver, driver_id)
    if driver is None:
        return None
    metrics = await get_or_create_metrics(db, driver_id)
    total_shifts = metrics.total_assigned
    rate = metrics.completion_rate or 0.0
    threshold = policy.health.attendance_threshold_for(total_shifts)
    below = total_shifts > 0 and rate < threshold

    if below and not driver.is_flagged:
        driver.is_flagged = True
        driver.flag_warning_at = now
        enqueue_notification(
            db, driver_id, NotificationKind.ATTENDANCE_WARNING,
            {"attendance_rate": round(rate, 4), "threshold": threshold, "total_shifts": total_shifts},
        )
        action = "flagged"
    elif not below and driver.is_flagged:
        driver.is_flagged = False
        driver.flag_warning_at = None
        action = "unflagged"
    else:
        return None

    record_audit(
        db, "driver", driver_id, action,
        changes={"attendance_rate": round(rate, 4), "threshold": threshold, "total_shifts": total_shifts},
    )
    logger.info(f"Driver {driver_id} {action}: attendance {rate:.2f} vs {threshold:.2f} over {total_shifts} shifts")
    return action


async def evaluate_driver_week(
    db: AsyncSession,
    policy: DispatchPolicy,
    driver_id: UUID,
    week_start_date: date,
    now: datetime,
) -> Dict[str, object]:
    """
    Evaluate one completed Monday-Sunday week for star progression.

    A week with no assignments is neutral. A hard-stop resets stars and
    streak. A qualifying week advances the streak and may add a star.
    Re-running for an already evaluated week is a no-op.

    Returns:
        Dict with outcome ("already_evaluated", "neutral", "reset",
        "qualified" or "not_qualified") plus stars and streak
    """
    state = await get_or_create_health_state(db, driver_id, lock=True)
    if state.last_evaluated_week_start is not None and state.last_evaluated_week_start >= week_start_date:
        return {"outcome": "already_evaluated", "stars": state.stars, "streak_weeks": state.streak_weeks}

    week_end = week_start_date + timedelta(days=6)
    result = await db.execute(
        select(Assignment).where(
            and_(
                Assignment.driver_id == driver_id,
                Assignment.date >= week_start_date,
                Assignment.date <= week_end,
            )
        )
    )
    week_assignments = result.scalars().all()

    previous_stars = state.stars
    previous_streak = state.streak_weeks
    state.last_evaluated_week_start = week_start_date
    state.version += 1

    if not week_assignments:
        return {"outcome": "neutral", "stars": state.stars, "streak_weeks": state.streak_weeks}

    late_count, no_show_count = await count_rolling_events(
        db, policy, driver_id, now, not_before=state.reinstated_at
    )
    if (
        state.hard_stop
        or no_show_count > 0
        or late_count >= policy.health.late_cancel_threshold
    ):
        state.stars = 0
        state.streak_weeks = 0
        if previous_stars or previous_streak:
            enqueue_notification(
                db,
                driver_id,
                NotificationKind.STREAK_RESET,
                {"week_start": week_start_date, "previous_stars": previous_stars},
            )
        return {"outcome": "reset", "stars": 0, "streak_weeks": 0}

    total = len(week_assignments)
    cancelled = sum(1 for a in week_assignments if a.status == AssignmentStatus.CANCELLED)
    completed = [a for a in week_assignments if a.status == AssignmentStatus.COMPLETED]
    non_cancelled = total - cancelled
    attendance = len(completed) / non_cancelled if non_cancelled else 0.0

    rated = [a for a in completed if a.parcels_start]
    completion = (
        sum((a.parcels_delivered or 0) / a.parcels_start for a in rated) / len(rated)
        if rated else 0.0
    )
    week_no_shows = sum(1 for a in week_assignments if a.status == AssignmentStatus.NO_SHOW)
    week_late_cancels = sum(
        1 for a in week_assignments
        if a.status == AssignmentStatus.CANCELLED and a.cancel_type == CancelType.LATE
    )

    qualified = (
        attendance >= policy.health.qualifying_attendance_rate
        and completion >= policy.health.qualifying_completion_rate
        and week_no_shows == 0
        and week_late_cancels == 0
    )
    if not qualified:
        return {
            "outcome": "not_qualified",
            "stars": state.stars,
            "streak_weeks": state.streak_weeks,
            "attendance": attendance,
            "completion": completion,
        }

    state.streak_weeks = previous_streak + 1
    state.stars = max(previous_stars, policy.health.stars_for_streak(state.streak_weeks))
    state.last_qualified_week_start = week_start_date

    if state.stars > previous_stars:
        enqueue_notification(
            db,
            driver_id,
            NotificationKind.STREAK_ADVANCED,
            {"stars": state.stars, "streak_weeks": state.streak_weeks},
        )
        if state.stars == policy.health.max_stars:
            enqueue_notification(
                db,
                driver_id,
                NotificationKind.BONUS_ELIGIBLE,
                {"stars": state.stars},
            )
    return {"outcome": "qualified", "stars": state.stars, "streak_weeks": state.streak_weeks}


@lock_conflicts_as_stale
async def reinstate_driver(
    db: AsyncSession,
    driver_id: UUID,
    manager_id: UUID,
    now: datetime,
) -> DriverHealthState:
    """Manager clears an active hard-stop and restores pool eligibility."""
    driver = await db.get(Driver, driver_id)
    if driver is None:
        raise NotFoundError("Driver not found")

    state = await get_or_create_health_state(db, driver_id, lock=True)
    if not state.hard_stop:
        raise StateConflictError("Driver is not under hard-stop")

    state.hard_stop = False
    state.hard_stop_reasons = []
    state.assignment_pool_eligible = True
    state.requires_manager_intervention = False
    state.reinstated_at = now
    state.version += 1
    record_audit(db, "driver_health", driver_id, "reinstated", actor_id=manager_id)
    return state


async def get_health_state(db: AsyncSession, driver_id: UUID) -> Optional[DriverHealthState]:
    result = await db.execute(
        select(DriverHealthState).where(DriverHealthState.driver_id == driver_id)
    )
    return result.scalar_one_or_none()


class HealthDailyPipeline(DispatchPipeline):
    """Nightly score recompute for every driver with shift history."""

    name = "health_daily"

    async def _process(self) -> None:
        result = await self.db.execute(
            select(Assignment.driver_id)
            .where(Assignment.driver_id.is_not(None))
            .distinct()
        )
        driver_ids = [row[0] for row in result.all()]
        self.metrics["candidates"] = len(driver_ids)
        self.metrics.update(stale=0, flagged=0, unflagged=0)

        for driver_id in driver_ids:
            try:
                outcome = await evaluate_driver_daily(self.db, self.policy, driver_id, self.now)
                if outcome["status"] == "stale":
                    await self._discard_item()
                    self.metrics["stale"] += 1
                    self.logger.info(f"Health state for driver {driver_id} changed during recompute; skipped")
                    continue
                await self._commit_item()
                self.metrics["processed"] += 1
                if outcome.get("flag_change"):
                    self.metrics[outcome["flag_change"]] += 1
            except Exception as e:
                await self._rollback_item(driver_id, e)


class HealthWeeklyPipeline(DispatchPipeline):
    """Star and streak evaluation of the week that just ended."""

    name = "health_weekly"

    async def _process(self) -> None:
        today = local_date(self.now, self.policy)
        evaluated_week = week_start(today) - timedelta(days=7)
        self.metrics["week_start"] = evaluated_week.isoformat()
        self.metrics.update(qualified=0, neutral=0, reset=0, not_qualified=0)

        result = await self.db.execute(
            select(Driver.id).where(Driver.is_active.is_(True)).order_by(Driver.created_at.asc())
        )
        driver_ids = [row[0] for row in result.all()]
        self.metrics["candidates"] = len(driver_ids)

        for driver_id in driver_ids:
            try:
                outcome = await evaluate_driver_week(
                    self.db, self.policy, driver_id, evaluated_week, self.now
                )
                if outcome["outcome"] == "already_evaluated":
                    await self._discard_item()
                    self.metrics["skipped"] += 1
                    continue
                await self._commit_item()
                self.metrics[outcome["outcome"]] += 1
                self.metrics["processed"] += 1
            except Exception as e:
                await self._rollback_item(driver_id, e)
