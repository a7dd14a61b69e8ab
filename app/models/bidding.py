"""
Bid window and bid database models.
"""

import enum
import uuid
from datetime import datetime
from typing import Optional, List

from sqlalchemy import Integer, Float, ForeignKey, Index, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, GUID, UTCDateTime, enum_type, utcnow


class BidWindowMode(str, enum.Enum):
    COMPETITIVE = "competitive"
    INSTANT = "instant"
    EMERGENCY = "emergency"


class BidWindowStatus(str, enum.Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    EXPIRED = "expired"


class BidWindowTrigger(str, enum.Enum):
    """Why the vacancy exists."""
    SCHEDULER = "scheduler"
    CANCELLATION = "cancellation"
    AUTO_DROP = "auto_drop"
    NO_SHOW = "no_show"
    MANAGER = "manager"
    CASCADE = "cascade"


class BidStatus(str, enum.Enum):
    PENDING = "pending"
    WON = "won"
    LOST = "lost"


class BidWindow(Base):
    """
    Time-boxed opportunity to claim one unfilled assignment.
    At most one open window exists per assignment (partial unique index).
    """
    __tablename__ = "bid_windows"
    __table_args__ = (
        Index(
            "uq_bid_windows_open_assignment",
            "assignment_id",
            unique=True,
            sqlite_where=text("status = 'open'"),
            postgresql_where=text("status = 'open'"),
        ),
        Index("ix_bid_windows_status_closes_at", "status", "closes_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )
    assignment_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("assignments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    source_assignment_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(),
        ForeignKey("assignments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    trigger: Mapped[BidWindowTrigger] = mapped_column(enum_type(BidWindowTrigger), nullable=False)
    mode: Mapped[BidWindowMode] = mapped_column(enum_type(BidWindowMode), nullable=False)
    status: Mapped[BidWindowStatus] = mapped_column(
        enum_type(BidWindowStatus),
        nullable=False,
        default=BidWindowStatus.OPEN,
    )
    opens_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    closes_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    pay_bonus_percent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    winner_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(),
        ForeignKey("drivers.id", ondelete="SET NULL"),
        nullable=True,
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    bids: Mapped[List["Bid"]] = relationship(
        "Bid",
        back_populates="bid_window",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return (
            f"<BidWindow(id={self.id}, assignment_id={self.assignment_id}, "
            f"mode={self.mode.value}, status={self.status.value})>"
        )


class Bid(Base):
    """One driver's claim against a specific bid window."""
    __tablename__ = "bids"
    __table_args__ = (
        UniqueConstraint("bid_window_id", "driver_id", name="uq_bids_window_driver"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )
    bid_window_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("bid_windows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    assignment_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("assignments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    driver_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("drivers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[BidStatus] = mapped_column(
        enum_type(BidStatus),
        nullable=False,
        default=BidStatus.PENDING,
    )
    score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    bid_window: Mapped["BidWindow"] = relationship("BidWindow", back_populates="bids")

    def __repr__(self) -> str:
        return f"<Bid(id={self.id}, driver_id={self.driver_id}, status={self.status.value})>"
