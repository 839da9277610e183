"""In-process event bus for orchestrator notifications."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from warroom.core.events import EventContext, EventType

logger = logging.getLogger(__name__)

EventHandler = Callable[[EventType, EventContext], Awaitable[object]]


class EventBus:
    """Simple async event bus.

    Emitting never fails the emitter: handler exceptions are logged and
    swallowed, and events without subscribers are dropped.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType, list[EventHandler]] = {}

    def subscribe(self, event: EventType, handler: EventHandler) -> None:
        """Subscribe a handler to an event."""
        self._handlers.setdefault(event, []).append(handler)
        logger.debug("Subscribed handler for event: %s (total: %d)", event, len(self._handlers[event]))

    def unsubscribe(self, event: EventType, handler: EventHandler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def clear(self) -> None:
        """Clear all registered handlers (primarily for tests)."""
        self._handlers.clear()

    async def emit(self, event: EventType, context: EventContext) -> int:
        """Deliver an event to all handlers concurrently.

        Returns:
            Number of handlers that completed without raising.
        """
        handlers = list(self._handlers.get(event, []))
        if not handlers:
            return 0

        results = await asyncio.gather(*(handler(event, context) for handler in handlers), return_exceptions=True)
        ok = 0
        for i, result in enumerate(results):
            if isinstance(result, Exception):
                logger.error("Handler %d failed for event %s: %s", i, event, result, exc_info=result)
            else:
                ok += 1
        return ok
