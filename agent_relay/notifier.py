"""Fans core notifications out to the chat front-end and other listeners."""

import logging
from typing import Awaitable, Callable

from .models import EventType, RelayEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[RelayEvent], Awaitable[None]]


class Notifier:
    """Delivers RelayEvents to every registered async handler, in registration order."""

    def __init__(self):
        self._handlers: list[EventHandler] = []

    def add_handler(self, handler: EventHandler):
        """Register a handler for relay events."""
        self._handlers.append(handler)

    def remove_handler(self, handler: EventHandler):
        if handler in self._handlers:
            self._handlers.remove(handler)

    @property
    def handler_count(self) -> int:
        return len(self._handlers)

    async def emit(self, event: RelayEvent) -> int:
        """
        Emit an event to all registered handlers.

        A failing handler is logged and skipped; the rest still run.

        Returns:
            Number of handlers that completed without error
        """
        delivered = 0
        for handler in list(self._handlers):
            try:
                await handler(event)
                delivered += 1
            except Exception as e:
                logger.error(f"Event handler error ({event.event_type.value}, channel {event.channel_id}): {e}")
        return delivered

    async def notify(self, channel_id: str, event_type: EventType, **data) -> int:
        """Build and emit an event; `channel_id` is also included in the payload."""
        payload = {"channel_id": channel_id, **data}
        return await self.emit(RelayEvent(channel_id=channel_id, event_type=event_type, data=payload))
