"""Profile API schemas for read, update, and identity provisioning payloads."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field
from sqlmodel import SQLModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class ProfileSummary(SQLModel):
    """Compact profile embedded in task and share payloads."""

    id: str = Field(examples=["user_2abcXYZ"])
    email: str = Field(examples=["alex@example.com"])
    full_name: str | None = Field(default=None, examples=["Alex Chen"])


class ProfileRead(ProfileSummary):
    """Full profile payload returned by API responses."""

    avatar_url: str | None = Field(
        default=None,
        examples=["https://img.example.com/alex.png"],
    )
    created_at: datetime
    updated_at: datetime


class ProfileUpdate(SQLModel):
    """Payload for partial profile updates. Email is owned by the auth provider."""

    full_name: str | None = None
    avatar_url: str | None = None


class IdentityCreated(SQLModel):
    """Identity-created event delivered by the auth provider."""

    id: str = Field(description="Auth provider identity id.", examples=["user_2abcXYZ"])
    email: str | None = Field(default=None, examples=["alex@example.com"])
    full_name: str | None = None
    avatar_url: str | None = None
