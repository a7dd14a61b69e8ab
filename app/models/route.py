"""
Route database model.
A recurring delivery route staffed by one driver per civil date.
"""

import uuid
from datetime import datetime
from typing import Optional, List, TYPE_CHECKING

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, GUID, UTCDateTime, utcnow

if TYPE_CHECKING:
    from app.models.assignment import Assignment


class Route(Base):
    """
    Route model.
    start_time is the local "HH:MM" arrival deadline; manager_id receives unfilled alerts.
    """
    __tablename__ = "routes"

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False, default="09:00")
    manager_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID(), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    assignments: Mapped[List["Assignment"]] = relationship(
        "Assignment",
        back_populates="route",
    )

    def __repr__(self) -> str:
        return f"<Route(id={self.id}, name={self.name}, start_time={self.start_time})>"
