"""Schemas for task CRUD, sharing, filtering, and summary payloads."""

from __future__ import annotations

from datetime import date, datetime
from typing import Literal
from uuid import UUID

from pydantic import Field
from sqlmodel import SQLModel

from taskshare.schemas.profiles import ProfileSummary

RUNTIME_ANNOTATION_TYPES = (date, datetime, UUID)

DueDateFilter = Literal["all", "today", "overdue", "upcoming"]


class TaskCreate(SQLModel):
    """Payload for creating a task owned by the caller."""

    title: str = Field(examples=["Write report"])
    description: str | None = None
    due_date: date | None = Field(default=None, examples=["2026-11-01"])
    priority: str = Field(default="medium", examples=["high"])
    status: str = Field(default="pending", examples=["pending"])


class TaskUpdate(SQLModel):
    """Partial update; only fields present in the payload are applied."""

    title: str | None = None
    description: str | None = None
    due_date: date | None = None
    priority: str | None = None
    status: str | None = None


class TaskShareCreate(SQLModel):
    """Payload for sharing a task with another profile by email."""

    email: str = Field(examples=["bob@example.com"])
    permission: str = Field(default="view", examples=["view", "edit"])


class TaskShareRead(SQLModel):
    """Share grant enriched with the recipient's profile summary."""

    id: UUID
    task_id: UUID
    grantor_id: str
    recipient_id: str
    permission: str
    created_at: datetime
    recipient: ProfileSummary | None = None


class TaskRead(SQLModel):
    """Task as seen by a specific caller."""

    id: UUID
    owner_id: str
    title: str
    description: str | None = None
    due_date: date | None = None
    priority: str
    status: str
    created_at: datetime
    updated_at: datetime
    owner: ProfileSummary | None = None
    shares: list[TaskShareRead] = Field(default_factory=list)
    is_owner: bool = Field(
        default=False,
        description="Whether the caller owns this task.",
    )
    can_edit: bool = Field(
        default=False,
        description="Whether the caller may update this task.",
    )


class TaskFilters(SQLModel):
    """Client-side filter criteria applied to a visible task set."""

    q: str | None = Field(default=None, description="Case-insensitive title/description search.")
    status: str | None = None
    priority: str | None = None
    due: DueDateFilter = "all"


class TaskStats(SQLModel):
    """Counts over a caller's visible task set."""

    total: int = 0
    completed: int = 0
    in_progress: int = 0
    pending: int = 0
    overdue: int = 0
