"""Model exports for SQLAlchemy/SQLModel metadata discovery."""

from taskshare.models.profiles import Profile
from taskshare.models.task_shares import TaskShare
from taskshare.models.tasks import Task

__all__ = [
    "Profile",
    "Task",
    "TaskShare",
]
