"""Public schema exports shared across API route modules."""

from taskshare.schemas.common import OkResponse
from taskshare.schemas.profiles import IdentityCreated, ProfileRead, ProfileSummary, ProfileUpdate
from taskshare.schemas.tasks import (
    TaskCreate,
    TaskFilters,
    TaskRead,
    TaskShareCreate,
    TaskShareRead,
    TaskStats,
    TaskUpdate,
)

__all__ = [
    "IdentityCreated",
    "OkResponse",
    "ProfileRead",
    "ProfileSummary",
    "ProfileUpdate",
    "TaskCreate",
    "TaskFilters",
    "TaskRead",
    "TaskShareCreate",
    "TaskShareRead",
    "TaskStats",
    "TaskUpdate",
]
