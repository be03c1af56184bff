"""Task model owned by a single profile."""

from __future__ import annotations

from datetime import date, datetime
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, Column, ForeignKey, String
from sqlmodel import Field

from taskshare.core.time import utcnow
from taskshare.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (date, datetime)

TASK_PRIORITIES = ("low", "medium", "high")
TASK_STATUSES = ("pending", "in-progress", "completed")
DEFAULT_PRIORITY = "medium"
DEFAULT_STATUS = "pending"


def _in_clause(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


class Task(QueryModel, table=True):
    """Personal task that may be shared with other profiles."""

    __tablename__ = "tasks"  # pyright: ignore[reportAssignmentType]
    __table_args__ = (
        CheckConstraint(_in_clause("priority", TASK_PRIORITIES), name="ck_tasks_priority"),
        CheckConstraint(_in_clause("status", TASK_STATUSES), name="ck_tasks_status"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: str = Field(
        sa_column=Column(
            String(255),
            ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )

    title: str
    description: str | None = None
    due_date: date | None = None
    priority: str = Field(default=DEFAULT_PRIORITY, index=True)
    status: str = Field(default=DEFAULT_STATUS, index=True)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
