"""Row change feed for tasks and task shares.

Events carry full before/after row images so a consumer can rebuild state from
the stream alone. Publishing is best effort: a failed publish is logged and
never undoes the committed write that produced it.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal, Protocol

import redis.asyncio as redis_asyncio
from redis.exceptions import RedisError

from taskshare.core.config import settings
from taskshare.core.logging import get_logger
from taskshare.core.time import utcnow

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlmodel import SQLModel

    from taskshare.core.config import Settings

logger = get_logger(__name__)

TASKS_TABLE = "tasks"
TASK_SHARES_TABLE = "task_shares"
WATCHED_TABLES = frozenset({TASKS_TABLE, TASK_SHARES_TABLE})

ChangeType = Literal["INSERT", "UPDATE", "DELETE", "RESYNC"]
RESYNC_TABLE = "*"
REDIS_RECONNECT_MAX_SECONDS = 30.0


def row_image(row: SQLModel) -> dict[str, Any]:
    """Serialize every column of a row into a JSON-safe dict."""
    return row.model_dump(mode="json")


@dataclass(frozen=True)
class ChangeEvent:
    """A committed insert, update, or delete on a watched table."""

    table: str
    event_type: ChangeType
    old: dict[str, Any] = field(default_factory=dict)
    new: dict[str, Any] = field(default_factory=dict)
    committed_at: datetime = field(default_factory=utcnow)

    @property
    def row_id(self) -> str | None:
        image = self.new or self.old
        value = image.get("id")
        return str(value) if value is not None else None

    def to_json(self) -> str:
        return json.dumps(
            {
                "table": self.table,
                "event_type": self.event_type,
                "old": self.old,
                "new": self.new,
                "committed_at": self.committed_at.isoformat(),
            },
            sort_keys=True,
        )

    @classmethod
    def resync(cls) -> ChangeEvent:
        """Marker telling consumers that events may have been missed."""
        return cls(RESYNC_TABLE, "RESYNC")

    @classmethod
    def from_json(cls, raw: str | bytes) -> ChangeEvent:
        data = json.loads(raw)
        return cls(
            table=data["table"],
            event_type=data["event_type"],
            old=data.get("old") or {},
            new=data.get("new") or {},
            committed_at=datetime.fromisoformat(data["committed_at"]),
        )


class Subscription:
    """Bounded per-subscriber event queue, consumed as an async iterator.

    When the queue is full the oldest pending event is dropped; consumers
    re-fetch wholesale, so any single queued event is enough to trigger work.
    """

    def __init__(
        self,
        tables: Iterable[str],
        *,
        maxsize: int,
        on_close: Callable[[Subscription], Any] | None = None,
    ) -> None:
        self.tables = frozenset(tables)
        self._queue: asyncio.Queue[ChangeEvent | None] = asyncio.Queue(maxsize=maxsize)
        self._on_close = on_close
        self.closed = False

    def deliver(self, event: ChangeEvent) -> None:
        if self.closed or event.table not in self.tables:
            return
        self._put(event)

    def resync(self) -> None:
        if self.closed:
            return
        self._put(ChangeEvent.resync())

    def _put(self, item: ChangeEvent | None) -> None:
        if self._queue.full():
            with contextlib.suppress(asyncio.QueueEmpty):
                self._queue.get_nowait()
        self._queue.put_nowait(item)

    async def get(self) -> ChangeEvent | None:
        """Wait for the next event; `None` once the subscription is closed."""
        if self.closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is None or self.closed:
            return None
        return item

    def pending(self) -> int:
        return self._queue.qsize()

    async def unsubscribe(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Wake any consumer blocked in get().
        self._put(None)
        if self._on_close is not None:
            result = self._on_close(self)
            if asyncio.iscoroutine(result):
                await result

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ChangeEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class ChangeFeed(Protocol):
    """Publish/subscribe surface shared by feed backends."""

    async def publish(self, event: ChangeEvent) -> None: ...

    async def subscribe(self, tables: Iterable[str] = WATCHED_TABLES) -> Subscription: ...

    async def close(self) -> None: ...


class InMemoryChangeFeed:
    """Process-local fan-out feed."""

    def __init__(self, *, queue_size: int | None = None) -> None:
        self._queue_size = queue_size or settings.change_feed_queue_size
        self._subscriptions: set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions):
            subscription.deliver(event)

    async def subscribe(self, tables: Iterable[str] = WATCHED_TABLES) -> Subscription:
        subscription = Subscription(
            tables,
            maxsize=self._queue_size,
            on_close=self._subscriptions.discard,
        )
        self._subscriptions.add(subscription)
        return subscription

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            await subscription.unsubscribe()


class RedisChangeFeed:
    """Redis pub/sub feed for deployments running several API processes."""

    def __init__(
        self,
        *,
        redis_url: str | None = None,
        channel_prefix: str | None = None,
        queue_size: int | None = None,
        client: redis_asyncio.Redis | None = None,
        reconnect_delay: float = 0.5,
    ) -> None:
        self._client = client or redis_asyncio.Redis.from_url(
            redis_url or settings.change_feed_redis_url,
        )
        self._prefix = channel_prefix or settings.change_feed_channel_prefix
        self._queue_size = queue_size or settings.change_feed_queue_size
        self._reconnect_delay = reconnect_delay
        self._readers: dict[Subscription, asyncio.Task[None]] = {}

    def channel(self, table: str) -> str:
        return f"{self._prefix}:{table}"

    def reconnect_delay(self, failures: int) -> float:
        """Exponential backoff between resubscribe attempts, capped."""
        if failures <= 1:
            return self._reconnect_delay
        return min(REDIS_RECONNECT_MAX_SECONDS, self._reconnect_delay * 2 ** (failures - 1))

    async def publish(self, event: ChangeEvent) -> None:
        await self._client.publish(self.channel(event.table), event.to_json())

    async def subscribe(self, tables: Iterable[str] = WATCHED_TABLES) -> Subscription:
        subscription = Subscription(tables, maxsize=self._queue_size, on_close=self._stop_reader)
        channels = [self.channel(table) for table in sorted(subscription.tables)]
        pubsub = self._client.pubsub()
        await pubsub.subscribe(*channels)
        self._readers[subscription] = asyncio.create_task(
            self._read(pubsub, channels, subscription),
        )
        return subscription

    async def _read(self, pubsub: Any, channels: list[str], subscription: Subscription) -> None:
        failures = 0
        current: Any | None = pubsub
        while not subscription.closed:
            try:
                if current is None:
                    current = self._client.pubsub()
                    await current.subscribe(*channels)
                    # Anything published while disconnected was missed.
                    subscription.resync()
                    logger.info("realtime.redis.resubscribed", extra={"failures": failures})
                    failures = 0
                async for message in current.listen():
                    if message.get("type") != "message":
                        continue
                    try:
                        event = ChangeEvent.from_json(message["data"])
                    except (KeyError, TypeError, ValueError):
                        logger.warning(
                            "realtime.redis.bad_message",
                            extra={"channel": message.get("channel")},
                        )
                        continue
                    subscription.deliver(event)
            except RedisError:
                failures += 1
                logger.warning(
                    "realtime.redis.listen_failed",
                    extra={"failures": failures},
                    exc_info=True,
                )
            finally:
                if current is not None:
                    with contextlib.suppress(RedisError):
                        await current.aclose()
                current = None
            if not subscription.closed:
                await asyncio.sleep(self.reconnect_delay(failures))

    async def _stop_reader(self, subscription: Subscription) -> None:
        reader = self._readers.pop(subscription, None)
        if reader is None:
            return
        reader.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reader

    async def close(self) -> None:
        for subscription in list(self._readers):
            await subscription.unsubscribe()
        await self._client.aclose()


def build_change_feed(config: Settings | None = None) -> ChangeFeed:
    """Construct the feed backend selected by configuration."""
    config = config or settings
    if config.change_feed_backend == "redis":
        return RedisChangeFeed(
            redis_url=config.change_feed_redis_url,
            channel_prefix=config.change_feed_channel_prefix,
            queue_size=config.change_feed_queue_size,
        )
    return InMemoryChangeFeed(queue_size=config.change_feed_queue_size)


_feed: ChangeFeed | None = None


def get_change_feed() -> ChangeFeed:
    """Return the process-wide feed, building it on first use."""
    global _feed
    if _feed is None:
        _feed = build_change_feed()
    return _feed


def set_change_feed(feed: ChangeFeed | None) -> None:
    """Replace the process-wide feed (startup wiring and tests)."""
    global _feed
    _feed = feed


async def publish_changes(events: Iterable[ChangeEvent], *, feed: ChangeFeed | None = None) -> None:
    """Publish committed changes; failures are logged, never raised."""
    target = feed or get_change_feed()
    for event in events:
        try:
            await target.publish(event)
        except (RedisError, OSError):
            logger.warning(
                "realtime.publish_failed",
                extra={"table": event.table, "event_type": event.event_type, "row_id": event.row_id},
                exc_info=True,
            )
