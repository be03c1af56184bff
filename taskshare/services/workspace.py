"""Caller-scoped views kept fresh by the change feed.

`VisibleTaskCache` holds visible sets keyed by caller id and drops all of them
on any task or share change. `TaskWorkspace` is the per-session aggregate: it
owns one caller's visible set, re-fetches it after that caller's own
mutations, and re-fetches again whenever the feed reports a change.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, TypeVar

from taskshare.core.logging import get_logger
from taskshare.services import tasks as task_service
from taskshare.services.change_feed import WATCHED_TABLES, get_change_feed
from taskshare.services.policy import Caller, require_caller

if TYPE_CHECKING:
    from uuid import UUID

    from sqlalchemy.ext.asyncio import async_sessionmaker
    from sqlmodel.ext.asyncio.session import AsyncSession

    from taskshare.schemas.tasks import TaskCreate, TaskRead, TaskShareRead, TaskUpdate
    from taskshare.services.change_feed import ChangeFeed, Subscription

logger = get_logger(__name__)

ResultT = TypeVar("ResultT")
RefreshListener = Callable[[list["TaskRead"]], Awaitable[None] | None]


class VisibleTaskCache:
    """Visible task sets keyed by caller id, invalidated wholesale."""

    def __init__(self) -> None:
        self._entries: dict[str, list[TaskRead]] = {}
        self._generation = 0
        self._subscription: Subscription | None = None
        self._watcher: asyncio.Task[None] | None = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def watching(self) -> bool:
        return self._watcher is not None and not self._watcher.done()

    def get(self, caller_id: str) -> list[TaskRead] | None:
        return self._entries.get(caller_id)

    def invalidate_all(self) -> None:
        self._entries.clear()
        self._generation += 1

    async def load(self, session: AsyncSession, caller: Caller | None) -> list[TaskRead]:
        """Return the cached set or fetch it through the task service.

        Cached sets are only served while the feed watcher is running.
        """
        caller = require_caller(caller)
        cached = self._entries.get(caller.id) if self.watching else None
        if cached is not None:
            return cached
        return await self.refresh(session, caller)

    async def refresh(self, session: AsyncSession, caller: Caller | None) -> list[TaskRead]:
        """Fetch the caller's visible set and store it unless invalidated meanwhile."""
        caller = require_caller(caller)
        generation = self._generation
        tasks = await task_service.list_visible_tasks(session, caller)
        if generation == self._generation:
            self._entries[caller.id] = tasks
        return tasks

    async def start(self, feed: ChangeFeed | None = None) -> None:
        if self.watching:
            return
        self._subscription = await (feed or get_change_feed()).subscribe(WATCHED_TABLES)
        self._watcher = asyncio.create_task(self._watch(self._subscription))

    async def _watch(self, subscription: Subscription) -> None:
        try:
            async for _event in subscription:
                self.invalidate_all()
        finally:
            self.invalidate_all()

    async def stop(self) -> None:
        if self._subscription is not None:
            await self._subscription.unsubscribe()
            self._subscription = None
        if self._watcher is not None:
            self._watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._watcher
            self._watcher = None
        self.invalidate_all()


visible_task_cache = VisibleTaskCache()


class TaskWorkspace:
    """One session's live view of its caller's visible tasks."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        feed: ChangeFeed | None = None,
        on_refresh: RefreshListener | None = None,
    ) -> None:
        self._session_maker = session_maker
        self._feed = feed
        self._on_refresh = on_refresh
        self._subscription: Subscription | None = None
        self._listener: asyncio.Task[None] | None = None
        self._refresh_lock = asyncio.Lock()
        self.caller: Caller | None = None
        self.tasks: list[TaskRead] = []

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None and not self._subscription.closed

    async def bind(self, caller: Caller | None) -> None:
        """Switch the workspace to `caller`, replacing any previous subscription."""
        if caller is not None and self.caller is not None and caller.id == self.caller.id:
            return
        await self._teardown()
        self.caller = caller
        self.tasks = []
        if caller is None:
            return
        feed = self._feed or get_change_feed()
        self._subscription = await feed.subscribe(WATCHED_TABLES)
        self._listener = asyncio.create_task(self._listen(self._subscription, caller))
        logger.info("realtime.subscription.opened", extra={"caller_id": caller.id})
        await self.refresh()

    async def refresh(self) -> list[TaskRead]:
        """Re-fetch the visible set; raises on failure, leaving the old set in place."""
        caller = require_caller(self.caller)
        # Serialized so an older fetch can never land after a newer one.
        async with self._refresh_lock:
            async with self._session_maker() as session:
                tasks = await task_service.list_visible_tasks(session, caller)
            if self.caller is None or self.caller.id != caller.id:
                # Identity changed while fetching; discard the stale result.
                return self.tasks
            self.tasks = tasks
        if self._on_refresh is not None:
            result = self._on_refresh(tasks)
            if asyncio.iscoroutine(result):
                await result
        return tasks

    async def _listen(self, subscription: Subscription, caller: Caller) -> None:
        async for event in subscription:
            try:
                await self.refresh()
            except Exception:
                # Retried naturally on the next event.
                logger.exception(
                    "realtime.refresh_failed",
                    extra={
                        "caller_id": caller.id,
                        "table": event.table,
                        "event_type": event.event_type,
                    },
                )

    async def _teardown(self) -> None:
        subscription, listener = self._subscription, self._listener
        self._subscription = None
        self._listener = None
        if subscription is not None:
            await subscription.unsubscribe()
        if listener is not None:
            listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await listener
        if subscription is not None and self.caller is not None:
            logger.info("realtime.subscription.closed", extra={"caller_id": self.caller.id})

    async def close(self) -> None:
        """Stop reacting to changes and forget the caller."""
        await self._teardown()
        self.caller = None
        self.tasks = []

    async def __aenter__(self) -> TaskWorkspace:
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.close()

    async def _mutate(
        self,
        operation: Callable[[AsyncSession, Caller], Awaitable[ResultT]],
    ) -> ResultT:
        caller = require_caller(self.caller)
        async with self._session_maker() as session:
            result = await operation(session, caller)
        await self.refresh()
        return result

    async def create_task(self, payload: TaskCreate) -> TaskRead:
        return await self._mutate(
            lambda session, caller: task_service.create_task(session, caller, payload),
        )

    async def update_task(self, task_id: UUID, payload: TaskUpdate) -> TaskRead:
        return await self._mutate(
            lambda session, caller: task_service.update_task(session, caller, task_id, payload),
        )

    async def delete_task(self, task_id: UUID) -> None:
        await self._mutate(
            lambda session, caller: task_service.delete_task(session, caller, task_id),
        )

    async def share_task(
        self,
        task_id: UUID,
        email: str,
        permission: str = "view",
    ) -> TaskShareRead:
        return await self._mutate(
            lambda session, caller: task_service.share_task(
                session,
                caller,
                task_id,
                email,
                permission,
            ),
        )

    async def revoke_share(self, task_id: UUID, recipient_id: str) -> None:
        await self._mutate(
            lambda session, caller: task_service.revoke_share(
                session,
                caller,
                task_id,
                recipient_id,
            ),
        )
