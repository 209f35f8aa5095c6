"""
Change bus for the client cache.

Two producers feed it: the realtime push channel and manual sync. One
consumer (the cache) receives at most one trailing call per coalescing
window, and identical (kind, row_id, updated_at) keys inside the window
are dropped outright.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

log = logging.getLogger(__name__)

PUSH = "push"
MANUAL = "manual"

WATCHED_TABLES = ("user_subscriptions", "subscription_enhanced_status")


@dataclass(frozen=True)
class ChangeEvent:
    kind: str
    row_id: Any
    updated_at: str | None
    user_id: str | None = None
    source: str = PUSH
    table: str | None = None
    payload: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def key(self) -> tuple[str, Any, str | None]:
        return (self.kind, self.row_id, self.updated_at)

    @classmethod
    def from_push(cls, message: dict[str, Any]) -> "ChangeEvent":
        """Build from a row-change message: {eventType, table, new, old}."""
        row = message.get("new") or message.get("old") or {}
        return cls(
            kind=str(message.get("eventType") or message.get("type") or "UPDATE"),
            row_id=row.get("id"),
            updated_at=row.get("updated_at"),
            user_id=row.get("user_id"),
            source=PUSH,
            table=message.get("table"),
            payload=dict(row),
        )

    @classmethod
    def manual(cls, user_id: str, timestamp: str | None) -> "ChangeEvent":
        return cls(kind="manual_sync", row_id=user_id, updated_at=timestamp, user_id=user_id, source=MANUAL)


Consumer = Callable[[ChangeEvent], Awaitable[None]]


class Debouncer:
    def __init__(self, window_s: float, callback: Consumer, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._window_s = max(0.0, float(window_s))
        self._callback = callback
        self._clock = clock
        self._seen: dict[tuple, float] = {}
        self._pending: ChangeEvent | None = None
        self._task: asyncio.Task | None = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def _prune(self, now: float) -> None:
        cutoff = now - self._window_s
        self._seen = {k: t for k, t in self._seen.items() if t > cutoff}

    def submit(self, event: ChangeEvent) -> bool:
        """Queue an event; False when it duplicates a key seen inside the window."""
        now = self._clock()
        self._prune(now)
        if event.key in self._seen:
            log.debug("bus.duplicate_dropped", extra={"key": repr(event.key)})
            return False
        self._seen[event.key] = now
        self._pending = event
        if not self.pending:
            self._task = asyncio.get_running_loop().create_task(self._fire_later())
        return True

    async def _fire_later(self) -> None:
        await asyncio.sleep(self._window_s)
        event, self._pending = self._pending, None
        self._task = None
        if event is not None:
            await self._callback(event)

    async def close(self) -> None:
        task, self._task = self._task, None
        self._pending = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)


class EventBus:
    """Single-consumer bus; events for other users are ignored."""

    def __init__(self, consumer: Consumer, *, user_id: str | None = None, window_s: float = 0.5) -> None:
        self._user_id = user_id
        self._consumer = consumer
        self._debouncer = Debouncer(window_s, self._deliver)
        self.delivered = 0

    async def _deliver(self, event: ChangeEvent) -> None:
        self.delivered += 1
        await self._consumer(event)

    def publish(self, event: ChangeEvent) -> bool:
        if self._user_id and event.user_id and str(event.user_id) != str(self._user_id):
            return False
        return self._debouncer.submit(event)

    @property
    def pending(self) -> bool:
        return self._debouncer.pending

    async def close(self) -> None:
        await self._debouncer.close()


class RealtimeChannel(Protocol):
    """Push-style change feed filtered by row owner."""

    async def subscribe(self, table: str, user_id: str, callback: Callable[[dict[str, Any]], None]) -> Callable[[], Awaitable[None]]:
        ...


class PushChannelAdapter:
    """Producer: forwards realtime row changes for one user onto the bus."""

    def __init__(self, channel: RealtimeChannel, bus: EventBus, user_id: str, *, tables: tuple[str, ...] = WATCHED_TABLES) -> None:
        self._channel = channel
        self._bus = bus
        self._user_id = user_id
        self._tables = tables
        self._unsubscribers: list[Callable[[], Awaitable[None]]] = []

    async def start(self) -> None:
        for table in self._tables:
            self._unsubscribers.append(await self._channel.subscribe(table, self._user_id, self.on_message))

    def on_message(self, message: dict[str, Any]) -> None:
        event = ChangeEvent.from_push(message)
        if event.user_id is None:
            event = ChangeEvent(event.kind, event.row_id, event.updated_at, self._user_id, event.source, event.table, event.payload)
        self._bus.publish(event)

    async def stop(self) -> None:
        unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in unsubscribers:
            await unsubscribe()
