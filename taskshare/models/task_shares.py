"""Share grants extending a task's visibility to another profile."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, Column, ForeignKey, String, UniqueConstraint, Uuid
from sqlmodel import Field

from taskshare.core.time import utcnow
from taskshare.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)

SHARE_PERMISSIONS = ("view", "edit")
DEFAULT_PERMISSION = "view"


class TaskShare(QueryModel, table=True):
    """Recipient-scoped, permission-leveled grant over a single task."""

    __tablename__ = "task_shares"  # pyright: ignore[reportAssignmentType]
    __table_args__ = (
        UniqueConstraint("task_id", "recipient_id", name="uq_task_shares_task_recipient"),
        CheckConstraint("permission IN ('view', 'edit')", name="ck_task_shares_permission"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    task_id: UUID = Field(
        sa_column=Column(
            Uuid,
            ForeignKey("tasks.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    grantor_id: str = Field(
        sa_column=Column(
            String(255),
            ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    recipient_id: str = Field(
        sa_column=Column(
            String(255),
            ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    permission: str = Field(default=DEFAULT_PERMISSION)

    created_at: datetime = Field(default_factory=utcnow)
