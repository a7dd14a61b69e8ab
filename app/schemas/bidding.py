"""
Pydantic schemas for bid windows and bids.
"""

import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from app.models.bidding import (
    BidStatus,
    BidWindowMode,
    BidWindowStatus,
    BidWindowTrigger,
)


class BidResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    bid_window_id: UUID
    assignment_id: UUID
    driver_id: UUID
    status: BidStatus
    score: Optional[float] = None
    submitted_at: datetime.datetime
    resolved_at: Optional[datetime.datetime] = None


class BidWindowResponse(BaseModel):
    """A bid window over one vacancy."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    assignment_id: UUID
    source_assignment_id: Optional[UUID] = None
    trigger: BidWindowTrigger
    mode: BidWindowMode
    status: BidWindowStatus
    opens_at: datetime.datetime
    closes_at: datetime.datetime
    pay_bonus_percent: int
    winner_id: Optional[UUID] = None
    resolved_at: Optional[datetime.datetime] = None


class BidWindowDetailResponse(BidWindowResponse):
    bids: List[BidResponse] = []


class BidWindowListResponse(BaseModel):
    windows: List[BidWindowResponse]
    count: int


class BidRequest(BaseModel):
    """Driver bid on a vacancy."""
    assignment_id: UUID
    driver_id: UUID


class ClaimRequest(BaseModel):
    driver_id: UUID


class CloseWindowRequest(BaseModel):
    manager_id: UUID
