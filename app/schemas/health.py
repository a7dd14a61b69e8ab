"""
Pydantic schemas for driver health, preferences and reinstatement.
"""

import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DriverHealthResponse(BaseModel):
    """Current health state for a driver."""
    model_config = ConfigDict(from_attributes=True)

    driver_id: UUID
    score: int
    stars: int
    streak_weeks: int
    hard_stop: bool
    hard_stop_reasons: List[str] = []
    assignment_pool_eligible: bool
    requires_manager_intervention: bool
    last_reset_at: Optional[datetime.datetime] = None
    reinstated_at: Optional[datetime.datetime] = None
    last_evaluated_week_start: Optional[datetime.date] = None


class ReinstateRequest(BaseModel):
    manager_id: UUID


class PreferencesResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    driver_id: UUID
    preferred_route_ids: List[UUID] = []
    preferred_weekdays: List[int] = []
    updated_at: Optional[datetime.datetime] = None
    locked_at: Optional[datetime.datetime] = None
    is_locked: bool = False
    lock_deadline: Optional[datetime.datetime] = None


class PreferencesUpdateRequest(BaseModel):
    """Ranked route choices; only the first preference_top_n count for bidding."""
    preferred_route_ids: List[UUID] = Field(default_factory=list, max_length=20)
    preferred_weekdays: List[int] = Field(default_factory=list)

    @field_validator("preferred_weekdays")
    @classmethod
    def validate_weekdays(cls, v: List[int]) -> List[int]:
        if any(day < 0 or day > 6 for day in v):
            raise ValueError("preferred_weekdays must be 0 (Monday) through 6 (Sunday)")
        return v
