"""
Assignment lifecycle endpoints.
Drivers confirm, cancel, arrive, start and complete their own shifts.
"""

from datetime import date as date_type, datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import PostCommit, abort, commit_and_dispatch, get_now
from app.core.errors import DispatchError, dispatch_error_to_http
from app.core.policy import DispatchPolicy, get_policy
from app.database import get_db
from app.schemas.assignment import (
    AssignmentListResponse,
    AssignmentResponse,
    CancelRequest,
    CompleteRequest,
    DriverActionRequest,
    ParcelEditRequest,
    StartRequest,
)
from app.services.lifecycle import (
    arrive_assignment,
    cancel_assignment,
    complete_assignment,
    confirm_assignment,
    edit_parcels,
    get_assignment,
    list_driver_assignments,
    start_assignment,
)

router = APIRouter(tags=["Assignments"])


@router.get(
    "/assignments/{assignment_id}",
    response_model=AssignmentResponse,
    summary="Get assignment",
)
async def read_assignment(
    assignment_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> AssignmentResponse:
    try:
        assignment = await get_assignment(db, assignment_id)
    except DispatchError as e:
        raise dispatch_error_to_http(e)
    return assignment


@router.get(
    "/drivers/{driver_id}/assignments",
    response_model=AssignmentListResponse,
    summary="List a driver's assignments",
)
async def read_driver_assignments(
    driver_id: UUID,
    start_date: Optional[date_type] = Query(default=None, description="First civil date (inclusive)"),
    end_date: Optional[date_type] = Query(default=None, description="Last civil date (inclusive)"),
    db: AsyncSession = Depends(get_db),
) -> AssignmentListResponse:
    assignments = await list_driver_assignments(db, driver_id, start_date, end_date)
    return AssignmentListResponse(
        assignments=[AssignmentResponse.model_validate(a) for a in assignments],
        count=len(assignments),
    )


@router.post(
    "/assignments/{assignment_id}/confirm",
    response_model=AssignmentResponse,
    summary="Confirm a scheduled shift",
    description="Allowed from 7 days to 48 hours before shift start.",
)
async def confirm(
    assignment_id: UUID,
    request: DriverActionRequest,
    db: AsyncSession = Depends(get_db),
    policy: DispatchPolicy = Depends(get_policy),
    post_commit: PostCommit = Depends(),
    now: datetime = Depends(get_now),
) -> AssignmentResponse:
    try:
        assignment = await confirm_assignment(db, policy, assignment_id, request.driver_id, now)
        await commit_and_dispatch(db, post_commit, assignment)
    except DispatchError as e:
        await abort(db)
        raise dispatch_error_to_http(e)
    return assignment


@router.post(
    "/assignments/{assignment_id}/cancel",
    response_model=AssignmentResponse,
    summary="Cancel a shift",
    description="Cancels before shift start and opens a replacement bid window.",
)
async def cancel(
    assignment_id: UUID,
    request: CancelRequest,
    db: AsyncSession = Depends(get_db),
    policy: DispatchPolicy = Depends(get_policy),
    post_commit: PostCommit = Depends(),
    now: datetime = Depends(get_now),
) -> AssignmentResponse:
    try:
        assignment = await cancel_assignment(
            db, policy, assignment_id, request.driver_id, now, reason=request.reason
        )
        await commit_and_dispatch(db, post_commit, assignment)
    except DispatchError as e:
        await abort(db)
        raise dispatch_error_to_http(e)
    return assignment


@router.post(
    "/assignments/{assignment_id}/arrive",
    response_model=AssignmentResponse,
    summary="Report arrival",
)
async def arrive(
    assignment_id: UUID,
    request: DriverActionRequest,
    db: AsyncSession = Depends(get_db),
    policy: DispatchPolicy = Depends(get_policy),
    post_commit: PostCommit = Depends(),
    now: datetime = Depends(get_now),
) -> AssignmentResponse:
    try:
        assignment = await arrive_assignment(db, policy, assignment_id, request.driver_id, now)
        await commit_and_dispatch(db, post_commit, assignment)
    except DispatchError as e:
        await abort(db)
        raise dispatch_error_to_http(e)
    return assignment


@router.post(
    "/assignments/{assignment_id}/start",
    response_model=AssignmentResponse,
    summary="Start the route",
)
async def start(
    assignment_id: UUID,
    request: StartRequest,
    db: AsyncSession = Depends(get_db),
    policy: DispatchPolicy = Depends(get_policy),
    post_commit: PostCommit = Depends(),
    now: datetime = Depends(get_now),
) -> AssignmentResponse:
    try:
        assignment = await start_assignment(
            db, policy, assignment_id, request.driver_id, request.parcels_start, now
        )
        await commit_and_dispatch(db, post_commit, assignment)
    except DispatchError as e:
        await abort(db)
        raise dispatch_error_to_http(e)
    return assignment


@router.post(
    "/assignments/{assignment_id}/complete",
    response_model=AssignmentResponse,
    summary="Complete the route",
)
async def complete(
    assignment_id: UUID,
    request: CompleteRequest,
    db: AsyncSession = Depends(get_db),
    policy: DispatchPolicy = Depends(get_policy),
    post_commit: PostCommit = Depends(),
    now: datetime = Depends(get_now),
) -> AssignmentResponse:
    try:
        assignment = await complete_assignment(
            db, policy, assignment_id, request.driver_id, request.parcels_returned, now
        )
        await commit_and_dispatch(db, post_commit, assignment)
    except DispatchError as e:
        await abort(db)
        raise dispatch_error_to_http(e)
    return assignment


@router.patch(
    "/assignments/{assignment_id}/parcels",
    response_model=AssignmentResponse,
    summary="Correct parcel counts",
    description="Allowed during the edit window after completion.",
)
async def patch_parcels(
    assignment_id: UUID,
    request: ParcelEditRequest,
    db: AsyncSession = Depends(get_db),
    policy: DispatchPolicy = Depends(get_policy),
    post_commit: PostCommit = Depends(),
    now: datetime = Depends(get_now),
) -> AssignmentResponse:
    try:
        assignment = await edit_parcels(
            db, policy, assignment_id, request.driver_id, now,
            parcels_start=request.parcels_start,
            parcels_returned=request.parcels_returned,
        )
        await commit_and_dispatch(db, post_commit, assignment)
    except DispatchError as e:
        await abort(db)
        raise dispatch_error_to_http(e)
    return assignment
