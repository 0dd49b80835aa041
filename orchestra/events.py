"""In-process async event bus for Orchestra.

Events are dispatched to registered handlers asynchronously.
Handlers run concurrently but errors are isolated: one broken
handler never crashes the bus or blocks other handlers.

Notifier wraps the bus with the typed collaboration events that UIs
consume (collaboration_new, progress_status, tool_handling, ...).
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

# Handler type: async function taking an Event
EventHandler = Callable[["Event"], Awaitable[None]]

# Wildcard subscription key
ALL_EVENTS = "*"


@dataclass
class Event:
    """A typed event flowing through the bus."""

    type: str
    collaboration_id: str | None = None
    interaction_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventBus:
    """In-process async event bus with error isolation.

    Events are queued and processed by a background asyncio task.
    Handlers registered via on() are called concurrently for each event.
    Handler errors are logged but never propagate.
    """

    def __init__(self, max_queue: int = 1000):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._task: asyncio.Task | None = None
        self._running = False

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for an event type ("*" for every type)."""
        self._handlers[event_type].append(handler)
        logger.debug("Registered handler for '%s': %s", event_type, handler.__qualname__)

    async def emit(self, event: Event) -> None:
        """Emit an event. Non-blocking, queued for async processing.

        If queue is full, logs warning and drops event (never blocks caller).
        """
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event bus queue full, dropping event: %s", event.type)

    async def start(self) -> None:
        """Start the background processing loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._process_loop(), name="event-bus")
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Stop the bus. Cancels the loop first, then drains remaining events."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        while not self._queue.empty():
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._dispatch(event)
        logger.info("Event bus stopped")

    async def _process_loop(self) -> None:
        """Main processing loop, runs as background task."""
        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                await self._dispatch(event)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Unexpected error in event bus loop")

    async def _dispatch(self, event: Event) -> None:
        """Dispatch event to all registered handlers, errors isolated."""
        handlers = [*self._handlers.get(event.type, []), *self._handlers.get(ALL_EVENTS, [])]
        if not handlers:
            return
        await asyncio.gather(*(self._safe_handle(h, event) for h in handlers))

    async def _safe_handle(self, handler: EventHandler, event: Event) -> None:
        """Run handler with error isolation. Never propagates (except CancelledError)."""
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except BaseException:
            logger.exception(
                "Handler %s failed for event %s",
                handler.__qualname__,
                event.type,
            )

    @property
    def pending(self) -> int:
        """Number of events waiting in queue."""
        return self._queue.qsize()


class Notifier:
    """Fire-and-forget collaboration notifications on top of an EventBus.

    With no bus every call is a no-op, so engines can always notify.
    Events carry a per-interaction ``sequence`` where consumers need to
    de-duplicate.
    """

    COLLABORATION_NEW = "collaboration_new"
    COLLABORATION_ERROR = "collaboration_error"
    COLLABORATION_ANSWER = "collaboration_answer"
    COLLABORATION_CONTINUE = "collaboration_continue"
    COLLABORATION_DELETED = "collaboration_deleted"
    PROGRESS_STATUS = "progress_status"
    TOOL_HANDLING = "tool_handling"

    def __init__(self, bus: EventBus | None = None) -> None:
        self._bus = bus

    async def _emit(
        self,
        event_type: str,
        collaboration_id: str | None,
        interaction_id: str | None,
        data: dict[str, Any],
    ) -> None:
        if self._bus is None:
            return
        await self._bus.emit(Event(
            type=event_type,
            collaboration_id=collaboration_id,
            interaction_id=interaction_id,
            data=data,
        ))

    async def collaboration_new(
        self, collaboration_id: str | None, interaction_id: str, title: str
    ) -> None:
        await self._emit(self.COLLABORATION_NEW, collaboration_id, interaction_id, {"title": title})

    async def collaboration_error(
        self,
        collaboration_id: str | None,
        interaction_id: str | None,
        code: str,
        message: str,
        stats: dict[str, Any] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        await self._emit(self.COLLABORATION_ERROR, collaboration_id, interaction_id, {
            "code": code,
            "message": message,
            "stats": stats or {},
            "details": details or {},
        })

    async def progress_status(
        self,
        collaboration_id: str | None,
        interaction_id: str,
        status: str,
        sequence: int,
        **data: Any,
    ) -> None:
        await self._emit(self.PROGRESS_STATUS, collaboration_id, interaction_id, {
            "status": status,
            "sequence": sequence,
            **data,
        })

    async def tool_handling(
        self, collaboration_id: str | None, interaction_id: str, tool_name: str
    ) -> None:
        await self._emit(self.TOOL_HANDLING, collaboration_id, interaction_id, {"tool_name": tool_name})

    async def collaboration_continue(
        self, collaboration_id: str | None, interaction_id: str, entry: dict[str, Any]
    ) -> None:
        await self._emit(self.COLLABORATION_CONTINUE, collaboration_id, interaction_id, entry)

    async def collaboration_answer(
        self, collaboration_id: str | None, interaction_id: str, answer: dict[str, Any]
    ) -> None:
        await self._emit(self.COLLABORATION_ANSWER, collaboration_id, interaction_id, answer)

    async def collaboration_deleted(self, collaboration_id: str | None, interaction_id: str) -> None:
        await self._emit(self.COLLABORATION_DELETED, collaboration_id, interaction_id, {})
