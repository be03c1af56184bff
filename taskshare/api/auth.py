"""Authentication bootstrap endpoints for the task sharing API."""

from __future__ import annotations

from fastapi import APIRouter, status

from taskshare.api.deps import PROFILE_DEP
from taskshare.models.profiles import Profile
from taskshare.schemas.errors import ErrorResponse
from taskshare.schemas.profiles import ProfileRead

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post(
    "/bootstrap",
    response_model=ProfileRead,
    summary="Bootstrap Authenticated Profile",
    description=(
        "Resolve caller identity from auth headers, provisioning the profile on first "
        "sign-in, and return it. This endpoint does not accept a request body."
    ),
    responses={
        status.HTTP_200_OK: {
            "description": "Profile resolved (or provisioned) for the authenticated identity.",
            "content": {
                "application/json": {
                    "example": {
                        "id": "user_2abcXYZ",
                        "email": "alex@example.com",
                        "full_name": "Alex Chen",
                        "avatar_url": None,
                        "created_at": "2026-10-01T12:00:00",
                        "updated_at": "2026-10-01T12:00:00",
                    }
                }
            },
        },
        status.HTTP_401_UNAUTHORIZED: {
            "model": ErrorResponse,
            "description": "Caller is not authenticated.",
        },
    },
)
async def bootstrap_profile(profile: Profile = PROFILE_DEP) -> ProfileRead:
    """Return the authenticated caller's profile."""
    return ProfileRead.model_validate(profile, from_attributes=True)
