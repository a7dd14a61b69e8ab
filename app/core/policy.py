"""
Dispatch policy.

All weights, cutoffs and thresholds used by the lifecycle, bidding,
confirmation, no-show and health components live in one immutable
structure. It is built once from Settings and handed to every service
call explicitly.
"""

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Tuple

from app.config import Settings, get_settings


@dataclass(frozen=True)
class ShiftPolicy:
    timezone: str = "America/Toronto"
    start_hour: int = 7
    default_arrival_time: str = "09:00"
    completion_edit_window_hours: int = 1


@dataclass(frozen=True)
class ConfirmationPolicy:
    opens_days: int = 7
    deadline_hours: int = 48
    reminder_hours: int = 72


@dataclass(frozen=True)
class BiddingPolicy:
    instant_cutoff_hours: int = 24
    emergency_bonus_percent: int = 20
    weight_health: float = 0.45
    weight_familiarity: float = 0.25
    weight_seniority: float = 0.15
    weight_preference: float = 0.15
    health_elite_threshold: float = 96.0
    familiarity_cap_runs: int = 20
    seniority_cap_months: int = 12
    preference_top_n: int = 3


@dataclass(frozen=True)
class HealthPolicy:
    confirmed_on_time: int = 1
    arrived_on_time: int = 2
    completed: int = 2
    high_delivery: int = 1
    bid_pickup: int = 2
    urgent_pickup: int = 4
    auto_drop: int = -12
    late_cancel: int = -48
    high_delivery_ratio: float = 0.95
    score_min: int = 0
    score_max: int = 100
    healthy_threshold: int = 50
    hard_stop_cap: int = 49
    late_cancel_window_days: int = 30
    late_cancel_threshold: int = 2
    corrective_completion_threshold: float = 0.80
    corrective_cooldown_days: int = 7
    attendance_early_shift_count: int = 10
    attendance_threshold_early: float = 0.80
    attendance_threshold: float = 0.70
    qualifying_attendance_rate: float = 1.0
    qualifying_completion_rate: float = 0.95
    max_stars: int = 4
    star_streak_thresholds: Tuple[int, ...] = (1, 2, 3, 4)

    def stars_for_streak(self, streak_weeks: int) -> int:
        """Number of stars earned for a qualifying streak, capped at max_stars."""
        earned = sum(1 for threshold in self.star_streak_thresholds if streak_weeks >= threshold)
        return min(earned, self.max_stars)

    def attendance_threshold_for(self, total_shifts: int) -> float:
        if total_shifts < self.attendance_early_shift_count:
            return self.attendance_threshold_early
        return self.attendance_threshold


@dataclass(frozen=True)
class PreferenceLockPolicy:
    weekday: int = 6
    hour: int = 23
    minute: int = 59


@dataclass(frozen=True)
class DispatchPolicy:
    """Immutable dispatch configuration passed into every component."""
    shift: ShiftPolicy = field(default_factory=ShiftPolicy)
    confirmation: ConfirmationPolicy = field(default_factory=ConfirmationPolicy)
    bidding: BiddingPolicy = field(default_factory=BiddingPolicy)
    health: HealthPolicy = field(default_factory=HealthPolicy)
    preference_lock: PreferenceLockPolicy = field(default_factory=PreferenceLockPolicy)
    lock_timeout_ms: int = 5000

    @classmethod
    def from_settings(cls, settings: Settings) -> "DispatchPolicy":
        thresholds = tuple(
            int(part) for part in settings.star_streak_thresholds.split(",") if part.strip()
        )
        return cls(
            shift=ShiftPolicy(
                timezone=settings.operating_timezone,
                start_hour=settings.shift_start_hour,
                default_arrival_time=settings.default_arrival_time,
                completion_edit_window_hours=settings.completion_edit_window_hours,
            ),
            confirmation=ConfirmationPolicy(
                opens_days=settings.confirmation_opens_days,
                deadline_hours=settings.confirmation_deadline_hours,
                reminder_hours=settings.confirmation_reminder_hours,
            ),
            bidding=BiddingPolicy(
                instant_cutoff_hours=settings.instant_cutoff_hours,
                emergency_bonus_percent=settings.emergency_bonus_percent,
                weight_health=settings.bid_weight_health,
                weight_familiarity=settings.bid_weight_familiarity,
                weight_seniority=settings.bid_weight_seniority,
                weight_preference=settings.bid_weight_preference,
                health_elite_threshold=settings.health_elite_threshold,
                familiarity_cap_runs=settings.familiarity_cap_runs,
                seniority_cap_months=settings.seniority_cap_months,
                preference_top_n=settings.preference_top_n,
            ),
            health=HealthPolicy(
                confirmed_on_time=settings.health_confirmed_on_time,
                arrived_on_time=settings.health_arrived_on_time,
                completed=settings.health_completed,
                high_delivery=settings.health_high_delivery,
                bid_pickup=settings.health_bid_pickup,
                urgent_pickup=settings.health_urgent_pickup,
                auto_drop=settings.health_auto_drop,
                late_cancel=settings.health_late_cancel,
                high_delivery_ratio=settings.high_delivery_ratio,
                score_min=settings.health_score_min,
                score_max=settings.health_score_max,
                healthy_threshold=settings.health_healthy_threshold,
                hard_stop_cap=settings.health_hard_stop_cap,
                late_cancel_window_days=settings.late_cancel_window_days,
                late_cancel_threshold=settings.late_cancel_threshold,
                corrective_completion_threshold=settings.corrective_completion_threshold,
                corrective_cooldown_days=settings.corrective_cooldown_days,
                attendance_early_shift_count=settings.attendance_early_shift_count,
                attendance_threshold_early=settings.attendance_threshold_early,
                attendance_threshold=settings.attendance_threshold,
                qualifying_attendance_rate=settings.qualifying_attendance_rate,
                qualifying_completion_rate=settings.qualifying_completion_rate,
                max_stars=settings.max_stars,
                star_streak_thresholds=thresholds or (1, 2, 3, 4),
            ),
            preference_lock=PreferenceLockPolicy(
                weekday=settings.preference_lock_weekday,
                hour=settings.preference_lock_hour,
                minute=settings.preference_lock_minute,
            ),
            lock_timeout_ms=settings.lock_timeout_ms,
        )


@lru_cache()
def get_policy() -> DispatchPolicy:
    """Get cached dispatch policy built from settings."""
    return DispatchPolicy.from_settings(get_settings())
