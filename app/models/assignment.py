"""
Assignment database model.
One driver-route-date unit of work and its lifecycle fields.
"""

import enum
import uuid
from datetime import datetime, date
from typing import Optional, TYPE_CHECKING

from sqlalchemy import String, Integer, Date, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, GUID, UTCDateTime, enum_type, utcnow

if TYPE_CHECKING:
    from app.models.driver import Driver
    from app.models.route import Route


class AssignmentStatus(str, enum.Enum):
    """Lifecycle states of an assignment."""
    UNFILLED = "unfilled"
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    ARRIVED = "arrived"
    STARTED = "started"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    AUTO_DROPPED = "auto_dropped"


TERMINAL_STATUSES = frozenset({
    AssignmentStatus.COMPLETED,
    AssignmentStatus.CANCELLED,
    AssignmentStatus.NO_SHOW,
    AssignmentStatus.AUTO_DROPPED,
})

# A driver holding one of these on a date is not free to take another shift that day.
ACTIVE_STATUSES = frozenset({
    AssignmentStatus.SCHEDULED,
    AssignmentStatus.CONFIRMED,
    AssignmentStatus.ARRIVED,
    AssignmentStatus.STARTED,
})


class CancelType(str, enum.Enum):
    NONE = "none"
    EARLY = "early"
    LATE = "late"


class CreationTrigger(str, enum.Enum):
    SCHEDULED = "scheduled"
    BID = "bid"
    EMERGENCY = "emergency"


class AssignedBy(str, enum.Enum):
    SCHEDULER = "scheduler"
    BID = "bid"
    INSTANT = "instant"
    EMERGENCY = "emergency"
    MANAGER = "manager"


class Assignment(Base):
    """
    Assignment model.
    driver_id is null exactly while the assignment is unfilled. Terminal rows
    are kept for scoring and audit.
    """
    __tablename__ = "assignments"
    __table_args__ = (
        Index("ix_assignments_status_date", "status", "date"),
        Index("ix_assignments_driver_date", "driver_id", "date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )
    route_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("routes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    status: Mapped[AssignmentStatus] = mapped_column(
        enum_type(AssignmentStatus),
        nullable=False,
        default=AssignmentStatus.UNFILLED,
    )
    driver_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(),
        ForeignKey("drivers.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    creation_trigger: Mapped[CreationTrigger] = mapped_column(
        enum_type(CreationTrigger),
        nullable=False,
        default=CreationTrigger.SCHEDULED,
    )
    assigned_by: Mapped[Optional[AssignedBy]] = mapped_column(enum_type(AssignedBy), nullable=True)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # Confirmation / cancellation
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    cancel_type: Mapped[CancelType] = mapped_column(
        enum_type(CancelType),
        nullable=False,
        default=CancelType.NONE,
    )
    cancel_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # Shift progress
    arrival_deadline_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    arrived_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    parcels_start: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    parcels_returned: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    parcels_delivered: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    editable_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    # Relationships
    driver: Mapped[Optional["Driver"]] = relationship(
        "Driver",
        back_populates="assignments",
        foreign_keys=[driver_id],
    )
    route: Mapped["Route"] = relationship("Route", back_populates="assignments")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<Assignment(id={self.id}, route_id={self.route_id}, date={self.date}, status={self.status.value})>"
