"""Schemas package initialization."""

from app.schemas.assignment import (
    AssignmentResponse,
    AssignmentListResponse,
    AssignmentCreateRequest,
)
from app.schemas.bidding import (
    BidResponse,
    BidWindowResponse,
    BidWindowDetailResponse,
    BidWindowListResponse,
)
from app.schemas.health import DriverHealthResponse, PreferencesResponse

__all__ = [
    "AssignmentResponse",
    "AssignmentListResponse",
    "AssignmentCreateRequest",
    "BidResponse",
    "BidWindowResponse",
    "BidWindowDetailResponse",
    "BidWindowListResponse",
    "DriverHealthResponse",
    "PreferencesResponse",
]
