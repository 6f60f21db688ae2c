"""Event emission for external logging, alerting and crisis handling."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Events published by the orchestration core."""

    COORDINATION_STARTED = "coordination_started"
    COORDINATION_COMPLETED = "coordination_completed"
    CRISIS_DETECTED = "crisis_detected"
    ALERT_TRIGGERED = "alert_triggered"
    HEALTH_UPDATED = "health_updated"
    OPTIMIZATION_COMPLETED = "optimization_completed"


@dataclass
class Event:
    """A single emitted event."""

    type: EventType
    payload: dict[str, Any]
    timestamp: float = field(default_factory=time.time)


EventListener = Callable[[Event], None] | Callable[[Event], Awaitable[None]]


class EventEmitter:
    """Fan-out of core events to registered listeners.

    Synchronous listeners run inline. Coroutine listeners are scheduled on
    the running loop and tracked until they finish. A failing listener is
    logged and never affects the emitter or other listeners.
    """

    def __init__(self) -> None:
        self._listeners: dict[EventType | None, list[EventListener]] = {}
        self._tasks: set[asyncio.Task] = set()
        self.emitted_count = 0

    def on(self, event_type: EventType | None, listener: EventListener) -> None:
        """Register a listener. ``None`` subscribes to every event type."""
        self._listeners.setdefault(event_type, []).append(listener)

    def off(self, event_type: EventType | None, listener: EventListener) -> None:
        """Remove a previously registered listener."""
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, event_type: EventType, **payload: Any) -> Event:
        """Emit an event to all matching listeners.

        Args:
            event_type: Type of the event
            **payload: Event data

        Returns:
            The emitted event
        """
        event = Event(type=event_type, payload=payload)
        self.emitted_count += 1
        listeners = [*self._listeners.get(event_type, []), *self._listeners.get(None, [])]
        for listener in listeners:
            try:
                result = listener(event)
            except Exception:
                logger.exception("Event listener failed for %s", event_type)
                continue
            if inspect.isawaitable(result):
                self._schedule(event_type, result)
        return event

    def _schedule(self, event_type: EventType, awaitable: Awaitable[None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; dropping async listener for %s", event_type)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = loop.create_task(self._run_listener(event_type, awaitable))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_listener(self, event_type: EventType, awaitable: Awaitable[None]) -> None:
        try:
            await awaitable
        except Exception:
            logger.exception("Async event listener failed for %s", event_type)

    async def drain(self) -> None:
        """Wait for all scheduled async listeners to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
