"""Profile endpoints: the caller's own profile and the shared directory."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Query

from taskshare.api.deps import CALLER_DEP, PROFILE_DEP, SESSION_DEP
from taskshare.schemas.profiles import ProfileRead, ProfileSummary, ProfileUpdate
from taskshare.services import profiles as profile_service
from taskshare.services.profiles import PROFILE_SEARCH_LIMIT

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

    from taskshare.models.profiles import Profile
    from taskshare.services.policy import Caller

router = APIRouter(prefix="/profiles", tags=["profiles"])
EMAIL_QUERY = Query(default=None, description="Case-insensitive email prefix.")
LIMIT_QUERY = Query(default=PROFILE_SEARCH_LIMIT, ge=1, le=200)


@router.get("/me", response_model=ProfileRead)
async def get_my_profile(profile: Profile = PROFILE_DEP) -> ProfileRead:
    """Return the caller's profile."""
    return ProfileRead.model_validate(profile, from_attributes=True)


@router.patch("/me", response_model=ProfileRead)
async def update_my_profile(
    payload: ProfileUpdate,
    session: AsyncSession = SESSION_DEP,
    caller: Caller = CALLER_DEP,
) -> ProfileRead:
    """Update display fields on the caller's profile."""
    profile = await profile_service.update_profile(session, caller, caller.id, payload)
    return ProfileRead.model_validate(profile, from_attributes=True)


@router.get("", response_model=list[ProfileSummary])
async def list_profiles(
    session: AsyncSession = SESSION_DEP,
    _caller: Caller = CALLER_DEP,
    *,
    email: str | None = EMAIL_QUERY,
    limit: int = LIMIT_QUERY,
) -> list[ProfileSummary]:
    """List profiles, optionally narrowed by email prefix."""
    profiles = await profile_service.list_profiles(session, email_prefix=email, limit=limit)
    return [ProfileSummary.model_validate(profile, from_attributes=True) for profile in profiles]
