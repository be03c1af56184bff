"""User profile model keyed by the auth provider's identity id."""

from __future__ import annotations

from datetime import datetime

from sqlmodel import Field

from taskshare.core.time import utcnow
from taskshare.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class Profile(QueryModel, table=True):
    """Globally readable identity record; one per authenticated identity."""

    __tablename__ = "profiles"  # pyright: ignore[reportAssignmentType]

    id: str = Field(primary_key=True, max_length=255)
    email: str = Field(index=True, unique=True, max_length=320)
    full_name: str | None = None
    avatar_url: str | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
