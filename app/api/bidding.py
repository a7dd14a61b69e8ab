"""
Bid window endpoints: browse open vacancies, bid, and claim.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import PostCommit, abort, commit_and_dispatch, get_now
from app.core.errors import DispatchError, dispatch_error_to_http
from app.core.policy import DispatchPolicy, get_policy
from app.database import get_db
from app.models.bidding import BidWindowStatus
from app.schemas.bidding import (
    BidRequest,
    BidResponse,
    BidWindowDetailResponse,
    BidWindowListResponse,
    BidWindowResponse,
    ClaimRequest,
)
from app.services.bidding import (
    claim_bid_window,
    get_bid_window,
    list_bid_windows,
    list_window_bids,
    submit_bid,
)

router = APIRouter(tags=["Bidding"])


@router.get(
    "/bid-windows",
    response_model=BidWindowListResponse,
    summary="List bid windows",
)
async def read_bid_windows(
    window_status: Optional[BidWindowStatus] = Query(
        default=BidWindowStatus.OPEN, alias="status", description="Filter by window status"
    ),
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> BidWindowListResponse:
    windows = await list_bid_windows(db, window_status, limit)
    return BidWindowListResponse(
        windows=[BidWindowResponse.model_validate(w) for w in windows],
        count=len(windows),
    )


@router.get(
    "/bid-windows/{window_id}",
    response_model=BidWindowDetailResponse,
    summary="Get a bid window with its bids",
)
async def read_bid_window(
    window_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> BidWindowDetailResponse:
    try:
        window = await get_bid_window(db, window_id)
    except DispatchError as e:
        raise dispatch_error_to_http(e)
    bids = await list_window_bids(db, window_id)
    detail = BidWindowDetailResponse.model_validate(window)
    detail.bids = [BidResponse.model_validate(b) for b in bids]
    return detail


@router.post(
    "/bids",
    response_model=BidResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Bid on a vacancy",
    description=(
        "Competitive windows record a pending bid. Instant and emergency "
        "windows are first-claim-wins and award immediately."
    ),
)
async def create_bid(
    request: BidRequest,
    db: AsyncSession = Depends(get_db),
    policy: DispatchPolicy = Depends(get_policy),
    post_commit: PostCommit = Depends(),
    now: datetime = Depends(get_now),
) -> BidResponse:
    try:
        bid = await submit_bid(db, policy, request.assignment_id, request.driver_id, now)
        await commit_and_dispatch(db, post_commit, bid)
    except DispatchError as e:
        await abort(db)
        raise dispatch_error_to_http(e)
    return bid


@router.post(
    "/bid-windows/{window_id}/claim",
    response_model=BidResponse,
    summary="Claim an instant or emergency window",
)
async def claim_window(
    window_id: UUID,
    request: ClaimRequest,
    db: AsyncSession = Depends(get_db),
    policy: DispatchPolicy = Depends(get_policy),
    post_commit: PostCommit = Depends(),
    now: datetime = Depends(get_now),
) -> BidResponse:
    try:
        bid = await claim_bid_window(db, policy, window_id, request.driver_id, now)
        await commit_and_dispatch(db, post_commit, bid)
    except DispatchError as e:
        await abort(db)
        raise dispatch_error_to_http(e)
    return bid
