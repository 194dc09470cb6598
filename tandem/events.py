"""In-process async event bus for session state.

Events are dispatched to registered handlers as part of emit(): the
caller awaits every handler, so a state change published by a tool is
visible to the next reminder pass without polling. Handlers run
concurrently and errors are isolated -- one broken handler never
crashes the bus or blocks other handlers.
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

# Event names published by the session collaborators
TODO_CHANGED = "todo:changed"
FILE_READ = "file:read"
FILE_EDITED = "file:edited"
FILE_CONFLICT = "file:conflict"


@dataclass
class Event:
    """A typed event flowing through the bus."""

    type: str
    agent_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventBus:
    """Publish/subscribe hub with error isolation.

    Handlers registered via on() are called concurrently for each event.
    Handler errors are logged but never propagate to the publisher.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._emitted = 0

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for an event type. Can register multiple."""
        self._handlers[event_type].append(handler)
        logger.debug("Registered handler for '%s': %s", event_type, handler.__qualname__)

    def off(self, event_type: str, handler: EventHandler) -> None:
        """Remove a previously registered handler. Unknown handlers are ignored."""
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, event: Event) -> None:
        """Dispatch event to all handlers registered for its type."""
        self._emitted += 1
        handlers = list(self._handlers.get(event.type, []))
        if not handlers:
            return

        tasks = [self._safe_handle(h, event) for h in handlers]
        await asyncio.gather(*tasks)

    async def publish(
        self,
        event_type: str,
        agent_id: str | None = None,
        **data: Any,
    ) -> None:
        """Shorthand for emit(Event(event_type, agent_id, data))."""
        await self.emit(Event(type=event_type, agent_id=agent_id, data=data))

    async def _safe_handle(self, handler: EventHandler, event: Event) -> None:
        """Run handler with error isolation. Never propagates (except CancelledError)."""
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Handler %s failed for event %s",
                handler.__qualname__,
                event.type,
            )

    @property
    def emitted(self) -> int:
        """Number of events emitted since creation."""
        return self._emitted

    def handler_count(self, event_type: str) -> int:
        return len(self._handlers.get(event_type, []))
