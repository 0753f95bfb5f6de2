"""Agent event fan-out.

The orchestrator and the change tools publish what happened in a session
(a request started, a tool call is waiting for sign-off, a change set
landed). Subscribers such as the audit log in ``anvil.main`` consume the
stream off the request path: publishing only enqueues, and a background
task delivers. A subscriber that raises is logged and skipped.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    REQUEST_STARTED = "request_started"
    REQUEST_COMPLETED = "request_completed"
    REQUEST_FAILED = "request_failed"
    APPROVAL_REQUIRED = "approval_required"
    APPROVAL_RESOLVED = "approval_resolved"
    CONTEXT_PRUNED = "context_pruned"
    CHANGESET_APPLIED = "changeset_applied"
    CHANGESET_ROLLED_BACK = "changeset_rolled_back"


# Subscribe with this to receive every event type
ALL_EVENTS = "*"

EventHandler = Callable[["Event"], Awaitable[None]]


@dataclass
class Event:
    type: str
    data: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventBus:
    """Bounded queue of session events plus one delivery task.

    When the queue is full new events are dropped and counted rather than
    stalling the agent loop.
    """

    def __init__(self, max_queue: int = 1000):
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._task: asyncio.Task | None = None
        self._running = False
        self._dropped = 0

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe ``handler`` to one event type, or to ALL_EVENTS."""
        self._subscribers[str(event_type)].append(handler)
        logger.debug("Subscribed %s to '%s'", handler.__qualname__, event_type)

    async def emit(self, event: Event) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._dropped += 1
            logger.warning("Event queue full, dropping %s for session %s", event.type, event.session_id)

    async def publish(self, event_type: str, session_id: str | None = None, **data: Any) -> None:
        """Build an Event and emit it."""
        await self.emit(Event(type=str(event_type), data=data, session_id=session_id))

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._deliver_forever(), name="anvil-events")
        logger.info("Event delivery started")

    async def stop(self) -> None:
        """Cancel the delivery task, then deliver whatever is still queued."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        drained = 0
        while not self._queue.empty():
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._deliver(event)
            drained += 1
        logger.info("Event delivery stopped (%d drained, %d dropped)", drained, self._dropped)

    async def _deliver_forever(self) -> None:
        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                await self._deliver(event)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Event delivery loop error")

    async def _deliver(self, event: Event) -> None:
        handlers = [*self._subscribers.get(event.type, []), *self._subscribers.get(ALL_EVENTS, [])]
        if handlers:
            await asyncio.gather(*(self._call(h, event) for h in handlers))

    async def _call(self, handler: EventHandler, event: Event) -> None:
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Subscriber %s failed on %s (session %s)",
                handler.__qualname__,
                event.type,
                event.session_id,
            )

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def dropped(self) -> int:
        """Events discarded because the queue was full."""
        return self._dropped
