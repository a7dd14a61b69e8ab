"""
Pydantic schemas for assignment lifecycle endpoints.
"""

import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.assignment import (
    AssignedBy,
    AssignmentStatus,
    CancelType,
    CreationTrigger,
)


class AssignmentResponse(BaseModel):
    """One route-day assignment."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    route_id: UUID
    date: datetime.date
    status: AssignmentStatus
    driver_id: Optional[UUID] = None
    creation_trigger: CreationTrigger
    assigned_by: Optional[AssignedBy] = None
    assigned_at: Optional[datetime.datetime] = None
    confirmed_at: Optional[datetime.datetime] = None
    cancel_type: CancelType
    cancel_reason: Optional[str] = None
    cancelled_at: Optional[datetime.datetime] = None
    arrival_deadline_at: datetime.datetime
    arrived_at: Optional[datetime.datetime] = None
    started_at: Optional[datetime.datetime] = None
    completed_at: Optional[datetime.datetime] = None
    parcels_start: Optional[int] = None
    parcels_returned: Optional[int] = None
    parcels_delivered: Optional[int] = None
    editable_until: Optional[datetime.datetime] = None


class AssignmentListResponse(BaseModel):
    assignments: List[AssignmentResponse]
    count: int


# ==================== Driver Action Requests ====================

class DriverActionRequest(BaseModel):
    """Body for confirm and arrive."""
    driver_id: UUID


class CancelRequest(BaseModel):
    driver_id: UUID
    reason: Optional[str] = Field(default=None, max_length=500)


class StartRequest(BaseModel):
    driver_id: UUID
    parcels_start: int = Field(..., ge=0)


class CompleteRequest(BaseModel):
    driver_id: UUID
    parcels_returned: int = Field(..., ge=0)


class ParcelEditRequest(BaseModel):
    """At least one parcel count must be supplied."""
    driver_id: UUID
    parcels_start: Optional[int] = Field(default=None, ge=0)
    parcels_returned: Optional[int] = Field(default=None, ge=0)


# ==================== Manager Requests ====================

class AssignmentCreateRequest(BaseModel):
    """Scheduler intake for one route-day."""
    route_id: UUID
    date: datetime.date
    driver_id: Optional[UUID] = None


class ManagerAssignRequest(BaseModel):
    driver_id: UUID
    manager_id: UUID


class EmergencyReopenRequest(BaseModel):
    manager_id: UUID
    reason: Optional[str] = Field(default=None, max_length=500)
