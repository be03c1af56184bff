"""Task endpoints: the caller's visible set, task mutations, sharing, and the live stream."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING
from uuid import UUID

from fastapi import APIRouter, Query, Request
from sse_starlette.sse import EventSourceResponse

from taskshare.api.deps import CALLER_DEP, SESSION_DEP
from taskshare.core.config import settings
from taskshare.core.logging import get_logger
from taskshare.core.time import utctoday
from taskshare.db.session import async_session_maker
from taskshare.schemas.common import OkResponse
from taskshare.schemas.tasks import (
    DueDateFilter,
    TaskCreate,
    TaskFilters,
    TaskRead,
    TaskShareCreate,
    TaskShareRead,
    TaskStats,
    TaskUpdate,
)
from taskshare.services import tasks as task_service
from taskshare.services.change_feed import WATCHED_TABLES, get_change_feed
from taskshare.services.task_filters import filter_tasks, summarize_tasks
from taskshare.services.workspace import visible_task_cache

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlmodel.ext.asyncio.session import AsyncSession

    from taskshare.services.change_feed import ChangeEvent
    from taskshare.services.policy import Caller

router = APIRouter(prefix="/tasks", tags=["tasks"])
logger = get_logger(__name__)

Q_QUERY = Query(default=None, description="Case-insensitive title/description search.")
STATUS_QUERY = Query(default=None, description="Task status, or `all`.")
PRIORITY_QUERY = Query(default=None, description="Task priority, or `all`.")
DUE_QUERY = Query(default="all", description="Due-date window.")
STREAM_DISCONNECT_CHECK_SECONDS = 1.0


def _serialize_tasks(tasks: list[TaskRead]) -> list[dict[str, object]]:
    return [task.model_dump(mode="json") for task in tasks]


def _stream_payload(tasks: list[TaskRead], event: ChangeEvent | None) -> str:
    payload: dict[str, object] = {"tasks": _serialize_tasks(tasks)}
    if event is not None:
        payload["change"] = {
            "table": event.table,
            "event_type": event.event_type,
            "row_id": event.row_id,
        }
    return json.dumps(payload)


@router.get("", response_model=list[TaskRead])
async def list_tasks(
    session: AsyncSession = SESSION_DEP,
    caller: Caller = CALLER_DEP,
    *,
    q: str | None = Q_QUERY,
    status: str | None = STATUS_QUERY,
    priority: str | None = PRIORITY_QUERY,
    due: DueDateFilter = DUE_QUERY,
) -> list[TaskRead]:
    """List tasks the caller owns or has been shared, narrowed by optional filters."""
    tasks = await visible_task_cache.load(session, caller)
    criteria = TaskFilters(q=q, status=status, priority=priority, due=due)
    return filter_tasks(tasks, criteria, today=utctoday())


@router.get("/stats", response_model=TaskStats)
async def task_stats(
    session: AsyncSession = SESSION_DEP,
    caller: Caller = CALLER_DEP,
) -> TaskStats:
    """Summarize the caller's visible tasks by status and overdue count."""
    tasks = await visible_task_cache.load(session, caller)
    return summarize_tasks(tasks, today=utctoday())


@router.get("/stream")
async def stream_tasks(
    request: Request,
    caller: Caller = CALLER_DEP,
) -> EventSourceResponse:
    """Stream the caller's visible set on connect and after every task or share change."""
    subscription = await get_change_feed().subscribe(WATCHED_TABLES)
    logger.info("realtime.stream.opened", extra={"caller_id": caller.id})

    async def _snapshot() -> list[TaskRead]:
        async with async_session_maker() as s:
            return await task_service.list_visible_tasks(s, caller)

    async def event_generator() -> AsyncIterator[dict[str, str]]:
        try:
            yield {"event": "tasks", "data": _stream_payload(await _snapshot(), None)}
            while not subscription.closed:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(
                        subscription.get(),
                        timeout=STREAM_DISCONNECT_CHECK_SECONDS,
                    )
                except TimeoutError:
                    continue
                if event is None:
                    break
                yield {"event": "tasks", "data": _stream_payload(await _snapshot(), event)}
        finally:
            await subscription.unsubscribe()
            logger.info("realtime.stream.closed", extra={"caller_id": caller.id})

    return EventSourceResponse(event_generator(), ping=settings.stream_ping_seconds)


@router.post("", response_model=TaskRead)
async def create_task(
    payload: TaskCreate,
    session: AsyncSession = SESSION_DEP,
    caller: Caller = CALLER_DEP,
) -> TaskRead:
    """Create a task owned by the caller."""
    task = await task_service.create_task(session, caller, payload)
    await visible_task_cache.refresh(session, caller)
    return task


@router.get("/{task_id}", response_model=TaskRead)
async def get_task(
    task_id: UUID,
    session: AsyncSession = SESSION_DEP,
    caller: Caller = CALLER_DEP,
) -> TaskRead:
    """Return one task visible to the caller."""
    return await task_service.get_visible_task(session, caller, task_id)


@router.patch("/{task_id}", response_model=TaskRead)
async def update_task(
    task_id: UUID,
    payload: TaskUpdate,
    session: AsyncSession = SESSION_DEP,
    caller: Caller = CALLER_DEP,
) -> TaskRead:
    """Apply a partial update to a task the caller owns or may edit."""
    task = await task_service.update_task(session, caller, task_id, payload)
    await visible_task_cache.refresh(session, caller)
    return task


@router.delete("/{task_id}", response_model=OkResponse)
async def delete_task(
    task_id: UUID,
    session: AsyncSession = SESSION_DEP,
    caller: Caller = CALLER_DEP,
) -> OkResponse:
    """Delete a task the caller owns, together with its shares."""
    await task_service.delete_task(session, caller, task_id)
    await visible_task_cache.refresh(session, caller)
    return OkResponse()


@router.post("/{task_id}/shares", response_model=TaskShareRead)
async def share_task(
    task_id: UUID,
    payload: TaskShareCreate,
    session: AsyncSession = SESSION_DEP,
    caller: Caller = CALLER_DEP,
) -> TaskShareRead:
    """Share a task with another profile by email, replacing any earlier grant."""
    share = await task_service.share_task(
        session,
        caller,
        task_id,
        payload.email,
        payload.permission,
    )
    await visible_task_cache.refresh(session, caller)
    return share


@router.delete("/{task_id}/shares/{recipient_id}", response_model=OkResponse)
async def revoke_share(
    task_id: UUID,
    recipient_id: str,
    session: AsyncSession = SESSION_DEP,
    caller: Caller = CALLER_DEP,
) -> OkResponse:
    """Revoke a recipient's access to a task the caller owns."""
    await task_service.revoke_share(session, caller, task_id, recipient_id)
    await visible_task_cache.refresh(session, caller)
    return OkResponse()
