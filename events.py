"""In-process event bus for broadcasting goal lifecycle changes."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger("autopilot.events")

_event_counter = itertools.count()


class EventType(StrEnum):
    """Categories of events published by the runtime."""

    GOAL_UPDATE = "goal_update"
    SUB_GOAL_UPDATE = "sub_goal_update"
    CYCLE_START = "cycle_start"
    CYCLE_COMPLETE = "cycle_complete"
    REPLAN = "replan"
    ESCALATION = "escalation"
    SUPERVISOR_STATUS = "supervisor_status"
    RECOVERY = "recovery"
    ERROR = "error"


class AutopilotEvent(BaseModel):
    """A single event published on the bus."""

    id: int = Field(default_factory=lambda: next(_event_counter))
    type: EventType
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    data: dict[str, Any] = Field(default_factory=dict)


class EventBus:
    """Async pub/sub bus with bounded history.

    Subscribers receive an ``asyncio.Queue`` that yields
    :class:`AutopilotEvent` objects as they are published.  A subscriber
    whose queue is full loses its oldest queued event.
    """

    def __init__(self, max_history: int = 5000) -> None:
        self._subscribers: list[asyncio.Queue[AutopilotEvent]] = []
        self._history: list[AutopilotEvent] = []
        self._max_history = max_history

    async def publish(self, event: AutopilotEvent) -> None:
        """Publish *event* to all subscribers and append to history."""
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history :]
        for queue in self._subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                with contextlib.suppress(asyncio.QueueEmpty):
                    queue.get_nowait()
                queue.put_nowait(event)

    async def emit(self, type_: EventType, **data: Any) -> None:
        """Shorthand for publishing an event built from keyword data."""
        await self.publish(AutopilotEvent(type=type_, data=data))

    def subscribe(self, max_queue: int = 500) -> asyncio.Queue[AutopilotEvent]:
        """Return a new queue that will receive future events."""
        queue: asyncio.Queue[AutopilotEvent] = asyncio.Queue(maxsize=max_queue)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[AutopilotEvent]) -> None:
        """Remove *queue* from the subscriber list."""
        with contextlib.suppress(ValueError):
            self._subscribers.remove(queue)

    @contextlib.asynccontextmanager
    async def subscription(
        self, max_queue: int = 500
    ) -> AsyncIterator[asyncio.Queue[AutopilotEvent]]:
        """Async context manager that auto-unsubscribes on exit."""
        queue = self.subscribe(max_queue)
        try:
            yield queue
        finally:
            self.unsubscribe(queue)

    def get_history(self) -> list[AutopilotEvent]:
        """Return a copy of all recorded events."""
        return list(self._history)


async def publish_safely(
    bus: EventBus | None, type_: EventType, **data: Any
) -> None:
    """Publish to *bus* when one is configured; never raises."""
    if bus is None:
        return
    try:
        await bus.emit(type_, **data)
    except Exception:
        logger.warning("Failed to publish %s event", type_, exc_info=True)
