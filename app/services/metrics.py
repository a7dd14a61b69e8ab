"""
Driver metrics and route familiarity counters.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import DriverMetrics, RouteCompletion


async def get_or_create_metrics(db: AsyncSession, driver_id: UUID) -> DriverMetrics:
    result = await db.execute(
        select(DriverMetrics).where(DriverMetrics.driver_id == driver_id)
    )
    metrics = result.scalar_one_or_none()
    if metrics is None:
        metrics = DriverMetrics(
            driver_id=driver_id,
            total_assigned=0,
            confirmed_count=0,
            arrived_on_time_count=0,
            completed_count=0,
            high_delivery_count=0,
            bid_pickup_count=0,
            urgent_pickup_count=0,
            auto_drop_count=0,
            late_cancel_count=0,
            early_cancel_count=0,
            no_show_count=0,
        )
        db.add(metrics)
        await db.flush()
    return metrics


async def increment_metrics(db: AsyncSession, driver_id: UUID, **deltas: int) -> DriverMetrics:
    """
    Add deltas to a driver's counters.

    Args:
        db: Database session
        driver_id: Driver UUID
        **deltas: Counter name to amount, e.g. completed_count=1

    Returns:
        Updated DriverMetrics
    """
    metrics = await get_or_create_metrics(db, driver_id)
    for field_name, delta in deltas.items():
        setattr(metrics, field_name, getattr(metrics, field_name) + delta)
    return metrics


async def record_route_completion(
    db: AsyncSession,
    driver_id: UUID,
    route_id: UUID,
    completed_at: datetime,
) -> RouteCompletion:
    result = await db.execute(
        select(RouteCompletion).where(
            and_(
                RouteCompletion.driver_id == driver_id,
                RouteCompletion.route_id == route_id,
            )
        )
    )
    completion = result.scalar_one_or_none()
    if completion is None:
        completion = RouteCompletion(
            driver_id=driver_id,
            route_id=route_id,
            completion_count=0,
        )
        db.add(completion)
    completion.completion_count += 1
    completion.last_completed_at = completed_at
    return completion
