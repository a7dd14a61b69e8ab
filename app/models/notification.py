"""
Notification outbox model.
Rows are written inside the mutating transaction and delivered after commit.
"""

import enum
import uuid
from datetime import datetime, date
from typing import Optional

from sqlalchemy import String, Date, Index, JSON
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, GUID, UTCDateTime, enum_type, utcnow


class NotificationKind(str, enum.Enum):
    CONFIRMATION_REMINDER = "confirmation_reminder"
    SHIFT_AUTO_DROPPED = "shift_auto_dropped"
    SHIFT_CANCELLED = "shift_cancelled"
    NO_SHOW = "no_show"
    BID_OPEN = "bid_open"
    EMERGENCY_ROUTE_AVAILABLE = "emergency_route_available"
    BID_WON = "bid_won"
    BID_LOST = "bid_lost"
    ASSIGNED = "assigned"
    ROUTE_UNFILLED = "route_unfilled"
    HARD_STOP = "hard_stop"
    CORRECTIVE_WARNING = "corrective_warning"
    ATTENDANCE_WARNING = "attendance_warning"
    STREAK_ADVANCED = "streak_advanced"
    BONUS_ELIGIBLE = "bonus_eligible"
    STREAK_RESET = "streak_reset"
    PREFERENCES_LOCKED = "preferences_locked"


class Notification(Base):
    """Outbox row for one notification to one recipient (driver or manager)."""
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_kind_assignment", "kind", "assignment_id"),
        Index("ix_notifications_undelivered", "dispatched_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )
    recipient_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False, index=True)
    kind: Mapped[NotificationKind] = mapped_column(enum_type(NotificationKind), nullable=False)
    assignment_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID(), nullable=True)
    bid_window_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID(), nullable=True)
    subject_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    dispatched_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    def __repr__(self) -> str:
        return f"<Notification(id={self.id}, kind={self.kind.value}, recipient_id={self.recipient_id})>"
