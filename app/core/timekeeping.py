"""
Time and deadline helpers for the operating timezone.

Every shift-related instant is built from a civil date plus a configured
local wall-clock time directly in the operating timezone. Day offsets are
civil days; hour offsets are exact durations.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

from app.core.policy import DispatchPolicy


def utc_now() -> datetime:
    """Current instant as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def operating_zone(policy: DispatchPolicy) -> ZoneInfo:
    return ZoneInfo(policy.shift.timezone)


def parse_clock(value: str) -> Tuple[int, int]:
    """
    Parse an "HH:MM" wall-clock string.

    Raises:
        ValueError: If the value is not a valid 24h clock time
    """
    try:
        hour_text, minute_text = value.strip().split(":")
        hour, minute = int(hour_text), int(minute_text)
    except (AttributeError, ValueError):
        raise ValueError(f"Invalid clock time: {value!r}")
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Invalid clock time: {value!r}")
    return hour, minute


def local_instant(
    civil_date: date,
    hour: int,
    minute: int,
    policy: DispatchPolicy,
    second: int = 0,
    microsecond: int = 0,
) -> datetime:
    """Instant of a local wall-clock time on a civil date, as aware UTC."""
    local = datetime.combine(
        civil_date,
        time(hour, minute, second, microsecond),
        tzinfo=operating_zone(policy),
    )
    return local.astimezone(timezone.utc)


def local_date(instant: datetime, policy: DispatchPolicy) -> date:
    """Civil date of an instant in the operating timezone."""
    return instant.astimezone(operating_zone(policy)).date()


def shift_start_at(civil_date: date, policy: DispatchPolicy) -> datetime:
    return local_instant(civil_date, policy.shift.start_hour, 0, policy)


def arrival_deadline_at(
    civil_date: date,
    route_start_time: Optional[str],
    policy: DispatchPolicy,
) -> datetime:
    """Arrival deadline for a route on a civil date (route start time, else the default)."""
    hour, minute = parse_clock(route_start_time or policy.shift.default_arrival_time)
    return local_instant(civil_date, hour, minute, policy)


def end_of_civil_day(civil_date: date, policy: DispatchPolicy) -> datetime:
    return local_instant(civil_date, 23, 59, policy, second=59, microsecond=999999)


def time_until_shift(civil_date: date, now: datetime, policy: DispatchPolicy) -> timedelta:
    """Exact duration from now until the shift start instant (negative once started)."""
    return shift_start_at(civil_date, policy) - now


def confirmation_window(civil_date: date, policy: DispatchPolicy) -> Tuple[datetime, datetime]:
    """
    Confirmation window for a shift date.

    Opens at the shift start hour a fixed number of civil days earlier and
    closes an exact number of hours before shift start. Both bounds are
    inclusive.

    Returns:
        (opens_at, deadline_at) as aware UTC datetimes
    """
    opens_at = shift_start_at(
        civil_date - timedelta(days=policy.confirmation.opens_days), policy
    )
    deadline_at = shift_start_at(civil_date, policy) - timedelta(
        hours=policy.confirmation.deadline_hours
    )
    return opens_at, deadline_at


def confirmation_deadline_at(civil_date: date, policy: DispatchPolicy) -> datetime:
    return confirmation_window(civil_date, policy)[1]


def is_late_cancellation(civil_date: date, now: datetime, policy: DispatchPolicy) -> bool:
    """A cancellation is late when shift start is at most the deadline duration away."""
    return time_until_shift(civil_date, now, policy) <= timedelta(
        hours=policy.confirmation.deadline_hours
    )


def week_start(civil_date: date) -> date:
    """Monday of the week containing the civil date."""
    return civil_date - timedelta(days=civil_date.weekday())


def current_preference_lock_deadline(now: datetime, policy: DispatchPolicy) -> datetime:
    """Lock cutover for the active scheduling cycle (the latest cutover day on or before today)."""
    lock = policy.preference_lock
    today = local_date(now, policy)
    days_back = (today.weekday() - lock.weekday) % 7
    cutover_day = today - timedelta(days=days_back)
    return local_instant(cutover_day, lock.hour, lock.minute, policy, second=59, microsecond=999999)


def next_preference_lock_deadline(now: datetime, policy: DispatchPolicy) -> datetime:
    """The upcoming cutover strictly after today's civil date."""
    lock = policy.preference_lock
    today = local_date(now, policy)
    days_ahead = (lock.weekday - today.weekday()) % 7 or 7
    cutover_day = today + timedelta(days=days_ahead)
    return local_instant(cutover_day, lock.hour, lock.minute, policy, second=59, microsecond=999999)


def is_preference_cycle_locked(
    locked_at: Optional[datetime],
    now: datetime,
    policy: DispatchPolicy,
) -> bool:
    if locked_at is None:
        return False
    return locked_at >= current_preference_lock_deadline(now, policy)
