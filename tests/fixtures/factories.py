"""
Factories for building dispatch scenarios directly in the database.
"""

import uuid
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from faker import Faker

from app.core.policy import DispatchPolicy
from app.core.timekeeping import arrival_deadline_at
from app.models import (
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
    Route,
    RouteCompletion,
)

fake = Faker()


class RecordingSender:
    """Notification sender that records every delivery."""

    def __init__(self):
        self.sent: List[Tuple[uuid.UUID, str, Dict[str, Any]]] = []

    async def send(self, recipient_id, event_type, payload) -> None:
        self.sent.append((recipient_id, event_type, payload))

    def kinds(self) -> List[str]:
        return [event_type for _, event_type, _ in self.sent]

    def for_recipient(self, recipient_id) -> List[str]:
        return [event_type for rid, event_type, _ in self.sent if rid == recipient_id]


class FailingSender:
    """Notification sender whose transport is always down."""

    async def send(self, recipient_id, event_type, payload) -> None:
        raise ConnectionError("notification transport unavailable")


async def make_driver(
    db,
    name: Optional[str] = None,
    hired_at: date = date(2025, 1, 1),
    **fields,
) -> Driver:
    driver = Driver(name=name or fake.name(), hired_at=hired_at, **fields)
    db.add(driver)
    await db.commit()
    return driver


async def make_route(
    db,
    name: Optional[str] = None,
    start_time: str = "09:00",
    manager_id: Optional[uuid.UUID] = None,
) -> Route:
    route = Route(
        name=name or f"Route {fake.bothify('##')}",
        start_time=start_time,
        manager_id=manager_id if manager_id is not None else uuid.uuid4(),
    )
    db.add(route)
    await db.commit()
    return route


async def make_assignment(
    db,
    policy: DispatchPolicy,
    route: Route,
    assignment_date: date,
    driver: Optional[Driver] = None,
    status: Optional[AssignmentStatus] = None,
    **fields,
) -> Assignment:
    """Assignment row in any state; scheduled when a driver is given, else unfilled."""
    if status is None:
        status = AssignmentStatus.SCHEDULED if driver is not None else AssignmentStatus.UNFILLED
    assignment = Assignment(
        route_id=route.id,
        date=assignment_date,
        status=status,
        driver_id=driver.id if driver is not None else None,
        creation_trigger=fields.pop("creation_trigger", CreationTrigger.SCHEDULED),
        assigned_by=fields.pop("assigned_by", AssignedBy.SCHEDULER if driver is not None else None),
        arrival_deadline_at=arrival_deadline_at(assignment_date, route.start_time, policy),
        **fields,
    )
    db.add(assignment)
    await db.commit()
    return assignment


async def make_window(
    db,
    assignment: Assignment,
    mode: BidWindowMode,
    opens_at: datetime,
    closes_at: datetime,
    trigger: BidWindowTrigger = BidWindowTrigger.SCHEDULER,
    **fields,
) -> BidWindow:
    window = BidWindow(
        assignment_id=assignment.id,
        trigger=trigger,
        mode=mode,
        status=BidWindowStatus.OPEN,
        opens_at=opens_at,
        closes_at=closes_at,
        pay_bonus_percent=fields.pop("pay_bonus_percent", 0),
        **fields,
    )
    db.add(window)
    await db.commit()
    return window


async def make_bid(db, window: BidWindow, driver: Driver, submitted_at: datetime) -> Bid:
    bid = Bid(
        bid_window_id=window.id,
        assignment_id=window.assignment_id,
        driver_id=driver.id,
        status=BidStatus.PENDING,
        submitted_at=submitted_at,
    )
    db.add(bid)
    await db.commit()
    return bid


async def make_health(db, driver: Driver, **fields) -> DriverHealthState:
    values = dict(
        score=0,
        stars=0,
        streak_weeks=0,
        hard_stop=False,
        hard_stop_reasons=[],
        assignment_pool_eligible=True,
        requires_manager_intervention=False,
        version=0,
    )
    values.update(fields)
    state = DriverHealthState(driver_id=driver.id, **values)
    db.add(state)
    await db.commit()
    return state


async def make_completions(db, driver: Driver, route: Route, count: int) -> RouteCompletion:
    completion = RouteCompletion(driver_id=driver.id, route_id=route.id, completion_count=count)
    db.add(completion)
    await db.commit()
    return completion


async def make_preference(db, driver: Driver, route_ids, locked_at: Optional[datetime] = None) -> DriverPreference:
    preference = DriverPreference(
        driver_id=driver.id,
        preferred_route_ids=[str(route_id) for route_id in route_ids],
        preferred_weekdays=[],
        locked_at=locked_at,
    )
    db.add(preference)
    await db.commit()
    return preference


async def reload(db, instance):
    """Re-read a row after a service committed or rolled back."""
    await db.refresh(instance)
    return instance
