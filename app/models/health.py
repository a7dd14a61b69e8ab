"""
Driver health database models.
Rolling reliability state plus one snapshot per evaluated day.
"""

import uuid
from datetime import datetime, date
from typing import Optional, TYPE_CHECKING

from sqlalchemy import Integer, Boolean, Date, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, GUID, UTCDateTime, utcnow

if TYPE_CHECKING:
    from app.models.driver import Driver


class DriverHealthState(Base):
    """
    Current health score, star progression and hard-stop status for a driver.
    version is bumped by every write; the daily recompute only writes if it is unchanged.
    """
    __tablename__ = "driver_health_states"

    driver_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("drivers.id", ondelete="CASCADE"),
        primary_key=True,
    )
    score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stars: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    streak_weeks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    hard_stop: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    hard_stop_reasons: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    assignment_pool_eligible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    requires_manager_intervention: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_reset_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    reinstated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    last_evaluated_week_start: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    last_qualified_week_start: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow)

    driver: Mapped["Driver"] = relationship("Driver", back_populates="health_state")

    def __repr__(self) -> str:
        return (
            f"<DriverHealthState(driver_id={self.driver_id}, score={self.score}, "
            f"stars={self.stars}, hard_stop={self.hard_stop})>"
        )


class DriverHealthSnapshot(Base):
    """Daily health evaluation result (one row per driver and evaluated date)."""
    __tablename__ = "driver_health_snapshots"
    __table_args__ = (
        UniqueConstraint("driver_id", "evaluated_on", name="uq_health_snapshots_driver_date"),
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
    evaluated_on: Mapped[date] = mapped_column(Date, nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    contributions: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    late_cancel_count_rolling: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    no_show_count_rolling: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    hard_stop: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reasons: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<DriverHealthSnapshot(driver_id={self.driver_id}, on={self.evaluated_on}, score={self.score})>"
