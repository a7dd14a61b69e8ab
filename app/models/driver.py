"""
Driver-related database models.
Includes Driver, DriverPreference, DriverMetrics and RouteCompletion models.
"""

import uuid
from datetime import datetime, date
from typing import Optional, List, TYPE_CHECKING

from sqlalchemy import String, Integer, Date, ForeignKey, JSON, Boolean, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, GUID, UTCDateTime, utcnow

if TYPE_CHECKING:
    from app.models.assignment import Assignment
    from app.models.health import DriverHealthState


class Driver(Base):
    """
    Driver model representing delivery personnel.
    Tenure feeds bid seniority; flagged or inactive drivers cannot bid.
    is_flagged is maintained by the daily attendance check.
    """
    __tablename__ = "drivers"

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    hired_at: Mapped[date] = mapped_column(Date, nullable=False, default=date.today)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_flagged: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    flag_warning_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    # Relationships
    assignments: Mapped[List["Assignment"]] = relationship(
        "Assignment",
        back_populates="driver",
        foreign_keys="Assignment.driver_id",
    )
    preference: Mapped[Optional["DriverPreference"]] = relationship(
        "DriverPreference",
        back_populates="driver",
        uselist=False,
    )
    metrics: Mapped[Optional["DriverMetrics"]] = relationship(
        "DriverMetrics",
        back_populates="driver",
        uselist=False,
    )
    health_state: Mapped[Optional["DriverHealthState"]] = relationship(
        "DriverHealthState",
        back_populates="driver",
        uselist=False,
    )

    def __repr__(self) -> str:
        return f"<Driver(id={self.id}, name={self.name})>"


class DriverPreference(Base):
    """
    Ordered route preferences for a driver.
    The first preference_top_n routes count for bid scoring.
    """
    __tablename__ = "driver_preferences"

    driver_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("drivers.id", ondelete="CASCADE"),
        primary_key=True,
    )
    preferred_route_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    preferred_weekdays: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow)
    locked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    driver: Mapped["Driver"] = relationship("Driver", back_populates="preference")

    def __repr__(self) -> str:
        return f"<DriverPreference(driver_id={self.driver_id}, routes={self.preferred_route_ids})>"


class DriverMetrics(Base):
    """Cumulative lifecycle counters per driver."""
    __tablename__ = "driver_metrics"

    driver_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("drivers.id", ondelete="CASCADE"),
        primary_key=True,
    )
    total_assigned: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    confirmed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    arrived_on_time_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    completed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    high_delivery_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    bid_pickup_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    urgent_pickup_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    auto_drop_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    late_cancel_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    early_cancel_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    no_show_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow)

    driver: Mapped["Driver"] = relationship("Driver", back_populates="metrics")

    @property
    def completion_rate(self) -> Optional[float]:
        if not self.total_assigned:
            return None
        return self.completed_count / self.total_assigned

    def __repr__(self) -> str:
        return f"<DriverMetrics(driver_id={self.driver_id}, completed={self.completed_count})>"


class RouteCompletion(Base):
    """Per driver/route completion count, the familiarity input to bid scoring."""
    __tablename__ = "route_completions"
    __table_args__ = (
        UniqueConstraint("driver_id", "route_id", name="uq_route_completions_driver_route"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )
    driver_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("drivers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    route_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("routes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    completion_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<RouteCompletion(driver_id={self.driver_id}, route_id={self.route_id}, count={self.completion_count})>"
