"""Derived views over a visible task set: search, filters, and summary counts."""

from __future__ import annotations

from typing import TYPE_CHECKING

from taskshare.schemas.tasks import TaskFilters, TaskStats

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import date

    from taskshare.schemas.tasks import TaskRead

ALL = "all"


def _is_overdue(task: TaskRead, today: date) -> bool:
    return task.due_date is not None and task.due_date < today and task.status != "completed"


def _matches_query(task: TaskRead, query: str) -> bool:
    needle = query.lower()
    if needle in task.title.lower():
        return True
    return bool(task.description) and needle in (task.description or "").lower()


def _matches_due(task: TaskRead, due: str, today: date) -> bool:
    if due == ALL:
        return True
    if task.due_date is None:
        return False
    if due == "today":
        return task.due_date == today
    if due == "overdue":
        return _is_overdue(task, today)
    if due == "upcoming":
        return task.due_date > today
    return True


def filter_tasks(
    tasks: Sequence[TaskRead],
    criteria: TaskFilters,
    *,
    today: date,
) -> list[TaskRead]:
    """Return the tasks matching every active criterion, preserving order."""
    query = (criteria.q or "").strip()
    status = criteria.status if criteria.status not in (None, "", ALL) else None
    priority = criteria.priority if criteria.priority not in (None, "", ALL) else None

    matched: list[TaskRead] = []
    for task in tasks:
        if query and not _matches_query(task, query):
            continue
        if status is not None and task.status != status:
            continue
        if priority is not None and task.priority != priority:
            continue
        if not _matches_due(task, criteria.due, today):
            continue
        matched.append(task)
    return matched


def summarize_tasks(tasks: Sequence[TaskRead], *, today: date) -> TaskStats:
    """Count tasks by status plus overdue work."""
    return TaskStats(
        total=len(tasks),
        completed=sum(1 for task in tasks if task.status == "completed"),
        in_progress=sum(1 for task in tasks if task.status == "in-progress"),
        pending=sum(1 for task in tasks if task.status == "pending"),
        overdue=sum(1 for task in tasks if _is_overdue(task, today)),
    )
