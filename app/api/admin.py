"""
Manager endpoints: scheduler intake, direct assignment, emergency reopen,
early window close and hard-stop reinstatement.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import PostCommit, abort, commit_and_dispatch, get_now
from app.core.errors import DispatchError, dispatch_error_to_http
from app.core.policy import DispatchPolicy, get_policy
from app.database import get_db
from app.schemas.assignment import (
    AssignmentCreateRequest,
    AssignmentResponse,
    EmergencyReopenRequest,
    ManagerAssignRequest,
)
from app.schemas.bidding import BidWindowResponse, CloseWindowRequest
from app.schemas.health import DriverHealthResponse, ReinstateRequest
from app.services.bidding import emergency_reopen, manager_assign, manager_close_window
from app.services.health import reinstate_driver
from app.services.lifecycle import create_assignment

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.post(
    "/assignments",
    response_model=AssignmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a scheduled assignment",
    description="With a driver the shift is scheduled; without one it is unfilled and a bid window opens.",
)
async def create_scheduled_assignment(
    request: AssignmentCreateRequest,
    db: AsyncSession = Depends(get_db),
    policy: DispatchPolicy = Depends(get_policy),
    post_commit: PostCommit = Depends(),
    now: datetime = Depends(get_now),
) -> AssignmentResponse:
    try:
        assignment = await create_assignment(
            db, policy, request.route_id, request.date, now, driver_id=request.driver_id
        )
        await commit_and_dispatch(db, post_commit, assignment)
    except DispatchError as e:
        await abort(db)
        raise dispatch_error_to_http(e)
    return assignment


@router.post(
    "/assignments/{assignment_id}/assign",
    response_model=AssignmentResponse,
    summary="Assign a vacancy directly",
)
async def assign_vacancy(
    assignment_id: UUID,
    request: ManagerAssignRequest,
    db: AsyncSession = Depends(get_db),
    policy: DispatchPolicy = Depends(get_policy),
    post_commit: PostCommit = Depends(),
    now: datetime = Depends(get_now),
) -> AssignmentResponse:
    try:
        assignment = await manager_assign(
            db, policy, assignment_id, request.driver_id, request.manager_id, now
        )
        await commit_and_dispatch(db, post_commit, assignment)
    except DispatchError as e:
        await abort(db)
        raise dispatch_error_to_http(e)
    return assignment


@router.post(
    "/assignments/{assignment_id}/emergency-reopen",
    response_model=BidWindowResponse,
    summary="Reopen a shift as an emergency window",
    description="Opens a first-claim-wins window with the configured pay bonus.",
)
async def reopen_as_emergency(
    assignment_id: UUID,
    request: EmergencyReopenRequest,
    db: AsyncSession = Depends(get_db),
    policy: DispatchPolicy = Depends(get_policy),
    post_commit: PostCommit = Depends(),
    now: datetime = Depends(get_now),
) -> BidWindowResponse:
    try:
        window = await emergency_reopen(
            db, policy, assignment_id, request.manager_id, now, reason=request.reason
        )
        await commit_and_dispatch(db, post_commit, window)
    except DispatchError as e:
        await abort(db)
        raise dispatch_error_to_http(e)
    return window


@router.post(
    "/bid-windows/{window_id}/close",
    response_model=BidWindowResponse,
    summary="Close a bid window early",
)
async def close_window(
    window_id: UUID,
    request: CloseWindowRequest,
    db: AsyncSession = Depends(get_db),
    policy: DispatchPolicy = Depends(get_policy),
    post_commit: PostCommit = Depends(),
    now: datetime = Depends(get_now),
) -> BidWindowResponse:
    try:
        window = await manager_close_window(db, policy, window_id, request.manager_id, now)
        await commit_and_dispatch(db, post_commit, window)
    except DispatchError as e:
        await abort(db)
        raise dispatch_error_to_http(e)
    return window


@router.post(
    "/drivers/{driver_id}/reinstate",
    response_model=DriverHealthResponse,
    summary="Reinstate a hard-stopped driver",
)
async def reinstate(
    driver_id: UUID,
    request: ReinstateRequest,
    db: AsyncSession = Depends(get_db),
    post_commit: PostCommit = Depends(),
    now: datetime = Depends(get_now),
) -> DriverHealthResponse:
    try:
        state = await reinstate_driver(db, driver_id, request.manager_id, now)
        await commit_and_dispatch(db, post_commit, state)
    except DispatchError as e:
        await abort(db)
        raise dispatch_error_to_http(e)
    return state
