"""
Driver profile endpoints: route preferences and health.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import PostCommit, abort, commit_and_dispatch, get_now
from app.core.errors import DispatchError, dispatch_error_to_http
from app.core.policy import DispatchPolicy, get_policy
from app.database import get_db
from app.models import DriverPreference
from app.schemas.health import (
    DriverHealthResponse,
    PreferencesResponse,
    PreferencesUpdateRequest,
)
from app.services.health import get_health_state
from app.services.preferences import (
    get_preferences,
    is_preferences_locked,
    upcoming_lock_deadline,
    update_preferences,
)

router = APIRouter(prefix="/drivers", tags=["Drivers"])


@router.get(
    "/{driver_id}/preferences",
    response_model=PreferencesResponse,
    summary="Get route preferences",
    description="Includes whether the current cycle is locked and when the next edit window closes.",
)
async def read_preferences(
    driver_id: UUID,
    db: AsyncSession = Depends(get_db),
    policy: DispatchPolicy = Depends(get_policy),
    now: datetime = Depends(get_now),
) -> PreferencesResponse:
    try:
        preference = await get_preferences(db, driver_id)
    except DispatchError as e:
        raise dispatch_error_to_http(e)
    return _preferences_response(driver_id, preference, policy, now)


@router.put(
    "/{driver_id}/preferences",
    response_model=PreferencesResponse,
    summary="Replace route preferences",
    description="Rejected with 412 once the weekly preference lock has passed.",
)
async def write_preferences(
    driver_id: UUID,
    request: PreferencesUpdateRequest,
    db: AsyncSession = Depends(get_db),
    policy: DispatchPolicy = Depends(get_policy),
    post_commit: PostCommit = Depends(),
    now: datetime = Depends(get_now),
) -> PreferencesResponse:
    try:
        preference = await update_preferences(
            db, policy, driver_id,
            request.preferred_route_ids,
            request.preferred_weekdays,
            now,
        )
        await commit_and_dispatch(db, post_commit, preference)
    except DispatchError as e:
        await abort(db)
        raise dispatch_error_to_http(e)
    return _preferences_response(driver_id, preference, policy, now)


@router.get(
    "/{driver_id}/health",
    response_model=DriverHealthResponse,
    summary="Get driver health",
)
async def read_health(
    driver_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> DriverHealthResponse:
    state = await get_health_state(db, driver_id)
    if state is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No health state recorded for driver",
        )
    return state


def _preferences_response(
    driver_id: UUID,
    preference: Optional[DriverPreference],
    policy: DispatchPolicy,
    now: datetime,
) -> PreferencesResponse:
    if preference is None:
        response = PreferencesResponse(driver_id=driver_id)
    else:
        response = PreferencesResponse.model_validate(preference)
    response.is_locked = is_preferences_locked(response.locked_at, now, policy)
    response.lock_deadline = upcoming_lock_deadline(now, policy)
    return response
