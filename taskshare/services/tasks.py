"""Task aggregate service: visible-set reads, task mutations, and sharing.

All functions take the caller explicitly and route every read and write
through `taskshare.services.policy`. Change events are published only after
the transaction that produced them commits.
"""

from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlmodel import col, select

from taskshare.core.errors import NotFoundError, ValidationError
from taskshare.core.logging import get_logger
from taskshare.core.time import utcnow
from taskshare.db import crud
from taskshare.models.profiles import Profile
from taskshare.models.task_shares import SHARE_PERMISSIONS, TaskShare
from taskshare.models.tasks import TASK_PRIORITIES, TASK_STATUSES, Task
from taskshare.schemas.profiles import ProfileSummary
from taskshare.schemas.tasks import TaskRead, TaskShareRead
from taskshare.services.change_feed import (
    TASK_SHARES_TABLE,
    TASKS_TABLE,
    ChangeEvent,
    publish_changes,
    row_image,
)
from taskshare.services.policy import (
    Caller,
    Entity,
    Operation,
    require,
    require_caller,
    visible_share_clause,
    visible_task_clause,
)
from taskshare.services.profiles import get_profile_by_email, validate_email

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from sqlmodel.ext.asyncio.session import AsyncSession

    from taskshare.schemas.tasks import TaskCreate, TaskUpdate

logger = get_logger(__name__)


def _validate_title(value: object) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Title is required")
    return value.strip()


def _validate_choice(value: object, allowed: Sequence[str], field: str) -> str:
    if value not in allowed:
        choices = ", ".join(allowed)
        raise ValidationError(f"{field} must be one of: {choices}")
    return str(value)


def _coerce_due_date(value: object) -> date | None:
    if value is None or isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            pass
    raise ValidationError("Due date must be a calendar date (YYYY-MM-DD)")


def _clean_description(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


async def _profile_summaries(
    session: AsyncSession,
    profile_ids: Iterable[str],
) -> dict[str, ProfileSummary]:
    ids = set(profile_ids)
    if not ids:
        return {}
    profiles = await Profile.objects.filter(col(Profile.id).in_(ids)).all(session)
    return {
        profile.id: ProfileSummary(
            id=profile.id,
            email=profile.email,
            full_name=profile.full_name,
        )
        for profile in profiles
    }


async def _visible_shares_by_task(
    session: AsyncSession,
    caller: Caller,
    task_ids: Sequence[UUID],
) -> dict[UUID, list[TaskShare]]:
    if not task_ids:
        return {}
    shares = await (
        TaskShare.objects.filter(col(TaskShare.task_id).in_(task_ids))
        .filter(visible_share_clause(caller.id))
        .order_by(col(TaskShare.created_at).asc())
        .all(session)
    )
    grouped: dict[UUID, list[TaskShare]] = {}
    for share in shares:
        grouped.setdefault(share.task_id, []).append(share)
    return grouped


def _share_read(share: TaskShare, profiles: dict[str, ProfileSummary]) -> TaskShareRead:
    return TaskShareRead(
        id=share.id,
        task_id=share.task_id,
        grantor_id=share.grantor_id,
        recipient_id=share.recipient_id,
        permission=share.permission,
        created_at=share.created_at,
        recipient=profiles.get(share.recipient_id),
    )


async def _build_task_reads(
    session: AsyncSession,
    caller: Caller,
    tasks: Sequence[Task],
) -> list[TaskRead]:
    shares_by_task = await _visible_shares_by_task(session, caller, [task.id for task in tasks])
    profile_ids = {task.owner_id for task in tasks}
    for shares in shares_by_task.values():
        profile_ids.update(share.recipient_id for share in shares)
    profiles = await _profile_summaries(session, profile_ids)

    reads: list[TaskRead] = []
    for task in tasks:
        shares = shares_by_task.get(task.id, [])
        is_owner = task.owner_id == caller.id
        can_edit = is_owner or any(
            share.recipient_id == caller.id and share.permission == "edit" for share in shares
        )
        reads.append(
            TaskRead(
                id=task.id,
                owner_id=task.owner_id,
                title=task.title,
                description=task.description,
                due_date=task.due_date,
                priority=task.priority,
                status=task.status,
                created_at=task.created_at,
                updated_at=task.updated_at,
                owner=profiles.get(task.owner_id),
                shares=[_share_read(share, profiles) for share in shares],
                is_owner=is_owner,
                can_edit=can_edit,
            ),
        )
    return reads


async def _get_task_or_404(session: AsyncSession, task_id: UUID) -> Task:
    task = await Task.objects.by_id(task_id).first(session)
    if task is None:
        raise NotFoundError("Task not found")
    return task


async def list_visible_tasks(session: AsyncSession, caller: Caller | None) -> list[TaskRead]:
    """Return owned tasks followed by tasks shared with the caller."""
    caller = require_caller(caller)
    visible = visible_task_clause(caller.id)
    owned = await (
        Task.objects.filter_by(owner_id=caller.id)
        .filter(visible)
        .order_by(col(Task.created_at).asc())
        .all(session)
    )
    shared_statement = (
        select(Task)
        .join(TaskShare, col(TaskShare.task_id) == col(Task.id))
        .where(
            col(TaskShare.recipient_id) == caller.id,
            col(Task.owner_id) != caller.id,
            visible,
        )
        .order_by(col(Task.created_at).asc())
    )
    shared = list(await session.exec(shared_statement))

    seen: set[UUID] = set()
    tasks: list[Task] = []
    for task in [*owned, *shared]:
        if task.id in seen:
            continue
        seen.add(task.id)
        tasks.append(task)
    return await _build_task_reads(session, caller, tasks)


async def get_visible_task(
    session: AsyncSession,
    caller: Caller | None,
    task_id: UUID,
) -> TaskRead:
    """Return one task; hidden and missing tasks are both reported as not found."""
    caller = require_caller(caller)
    task = await _get_task_or_404(session, task_id)
    await require(session, caller, Entity.TASK, Operation.READ, task)
    return (await _build_task_reads(session, caller, [task]))[0]


async def create_task(
    session: AsyncSession,
    caller: Caller | None,
    payload: TaskCreate,
) -> TaskRead:
    """Create a task owned by the caller."""
    caller = require_caller(caller)
    task = Task(
        owner_id=caller.id,
        title=_validate_title(payload.title),
        description=_clean_description(payload.description),
        due_date=_coerce_due_date(payload.due_date),
        priority=_validate_choice(payload.priority, TASK_PRIORITIES, "priority"),
        status=_validate_choice(payload.status, TASK_STATUSES, "status"),
    )
    await require(session, caller, Entity.TASK, Operation.INSERT, task)
    session.add(task)
    await session.commit()
    await session.refresh(task)
    logger.info("task.create", extra={"task_id": str(task.id), "owner_id": caller.id})
    await publish_changes([ChangeEvent(TASKS_TABLE, "INSERT", new=row_image(task))])
    return (await _build_task_reads(session, caller, [task]))[0]


def _validated_updates(payload: TaskUpdate) -> dict[str, object]:
    updates = payload.model_dump(exclude_unset=True)
    validated: dict[str, object] = {}
    for key, value in updates.items():
        if key == "title":
            validated[key] = _validate_title(value)
        elif key == "priority":
            validated[key] = _validate_choice(value, TASK_PRIORITIES, "priority")
        elif key == "status":
            validated[key] = _validate_choice(value, TASK_STATUSES, "status")
        elif key == "due_date":
            validated[key] = _coerce_due_date(value)
        elif key == "description":
            validated[key] = _clean_description(value)
    return validated


async def update_task(
    session: AsyncSession,
    caller: Caller | None,
    task_id: UUID,
    payload: TaskUpdate,
) -> TaskRead:
    """Apply only the supplied fields to a task the caller may edit."""
    caller = require_caller(caller)
    task = await _get_task_or_404(session, task_id)
    await require(session, caller, Entity.TASK, Operation.UPDATE, task)
    updates = _validated_updates(payload)

    old = row_image(task)
    for key, value in updates.items():
        setattr(task, key, value)
    task.updated_at = utcnow()
    session.add(task)
    await session.commit()
    await session.refresh(task)
    logger.info(
        "task.update",
        extra={"task_id": str(task.id), "caller_id": caller.id, "fields": sorted(updates)},
    )
    await publish_changes([ChangeEvent(TASKS_TABLE, "UPDATE", old=old, new=row_image(task))])
    return (await _build_task_reads(session, caller, [task]))[0]


async def delete_task(session: AsyncSession, caller: Caller | None, task_id: UUID) -> None:
    """Delete a task and every share that references it."""
    caller = require_caller(caller)
    task = await _get_task_or_404(session, task_id)
    await require(session, caller, Entity.TASK, Operation.DELETE, task)

    shares = await TaskShare.objects.filter_by(task_id=task.id).all(session)
    events = [ChangeEvent(TASK_SHARES_TABLE, "DELETE", old=row_image(share)) for share in shares]
    events.append(ChangeEvent(TASKS_TABLE, "DELETE", old=row_image(task)))

    await crud.delete_where(
        session,
        TaskShare,
        col(TaskShare.task_id) == task.id,
        commit=False,
    )
    await session.delete(task)
    await session.commit()
    logger.info(
        "task.delete",
        extra={"task_id": str(task_id), "owner_id": caller.id, "shares_removed": len(shares)},
    )
    await publish_changes(events)


async def _upsert_share(
    session: AsyncSession,
    *,
    task_id: UUID,
    grantor_id: str,
    recipient_id: str,
    permission: str,
) -> tuple[TaskShare, ChangeEvent]:
    existing = await TaskShare.objects.filter_by(
        task_id=task_id,
        recipient_id=recipient_id,
    ).first(session)
    if existing is not None:
        old = row_image(existing)
        existing.permission = permission
        existing.grantor_id = grantor_id
        session.add(existing)
        await session.commit()
        await session.refresh(existing)
        return existing, ChangeEvent(TASK_SHARES_TABLE, "UPDATE", old=old, new=row_image(existing))

    share = TaskShare(
        task_id=task_id,
        grantor_id=grantor_id,
        recipient_id=recipient_id,
        permission=permission,
    )
    session.add(share)
    await session.commit()
    await session.refresh(share)
    return share, ChangeEvent(TASK_SHARES_TABLE, "INSERT", new=row_image(share))


async def share_task(
    session: AsyncSession,
    caller: Caller | None,
    task_id: UUID,
    recipient_email: str,
    permission: str = "view",
) -> TaskShareRead:
    """Grant or replace a recipient's access to a task owned by the caller."""
    caller = require_caller(caller)
    permission = _validate_choice(permission, SHARE_PERMISSIONS, "permission")
    email = validate_email(recipient_email)

    task = await _get_task_or_404(session, task_id)
    candidate = TaskShare(task_id=task.id, grantor_id=caller.id, recipient_id="", permission=permission)
    await require(session, caller, Entity.SHARE, Operation.INSERT, candidate)

    recipient = await get_profile_by_email(session, email)
    if recipient is None:
        raise NotFoundError("User not found")
    recipient_id = recipient.id
    if recipient_id == task.owner_id:
        raise ValidationError("A task cannot be shared with its owner")

    try:
        share, event = await _upsert_share(
            session,
            task_id=task_id,
            grantor_id=caller.id,
            recipient_id=recipient_id,
            permission=permission,
        )
    except IntegrityError:
        # A concurrent share for the same pair won the insert; replace it instead.
        await session.rollback()
        share, event = await _upsert_share(
            session,
            task_id=task_id,
            grantor_id=caller.id,
            recipient_id=recipient_id,
            permission=permission,
        )
    logger.info(
        "task.share",
        extra={
            "task_id": str(task_id),
            "recipient_id": recipient_id,
            "permission": permission,
            "replaced": event.event_type == "UPDATE",
        },
    )
    await publish_changes([event])
    profiles = await _profile_summaries(session, [recipient_id])
    return _share_read(share, profiles)


async def revoke_share(
    session: AsyncSession,
    caller: Caller | None,
    task_id: UUID,
    recipient_id: str,
) -> None:
    """Remove a recipient's share; only the task owner may revoke."""
    caller = require_caller(caller)
    share = await TaskShare.objects.filter_by(
        task_id=task_id,
        recipient_id=recipient_id,
    ).first(session)
    if share is None:
        raise NotFoundError("Share not found")
    await require(session, caller, Entity.SHARE, Operation.DELETE, share)

    event = ChangeEvent(TASK_SHARES_TABLE, "DELETE", old=row_image(share))
    await session.delete(share)
    await session.commit()
    logger.info(
        "task.share.revoke",
        extra={"task_id": str(task_id), "recipient_id": recipient_id, "owner_id": caller.id},
    )
    await publish_changes([event])
