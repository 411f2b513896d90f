"""Event bus for session and message notifications."""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Awaitable

from framelink.common.logging import get_logger


@dataclass
class Event:
    """Event message.

    Topics used by the core:
        session.state       state transition (data: previous, state, device_id)
        session.lost        link dropped unexpectedly
        session.battery     battery level reported (data: level)
        rx.<flag name>      decoded inbound message (data: message)
        rx.text             interpreter text output
        vision.result       vision API response (data: text)
    """

    topic: str
    data: dict[str, Any]
    source: str
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: float = field(default_factory=time.time)


EventHandler = Callable[[Event], Awaitable[None]]


class EventBus:
    """In-process pub/sub used to fan session events out to observers.

    Handlers run concurrently per event; a failing handler is logged and
    never affects the publisher or the other handlers.
    """

    def __init__(self, history_limit: int = 200) -> None:
        self._subscribers: dict[str, list[EventHandler]] = {}
        self._wildcard_subscribers: list[tuple[str, EventHandler]] = []
        self._history: list[Event] = []
        self._history_limit = history_limit
        self.logger = get_logger("event_bus")

    async def publish(self, event: Event) -> None:
        """Publish an event to all matching subscribers."""
        self.logger.debug("publishing_event", topic=event.topic, source=event.source)

        self._history.append(event)
        if len(self._history) > self._history_limit:
            del self._history[: len(self._history) - self._history_limit]

        handlers = list(self._subscribers.get(event.topic, []))
        for pattern, handler in self._wildcard_subscribers:
            if self._matches_pattern(event.topic, pattern):
                handlers.append(handler)

        if handlers:
            await asyncio.gather(*[self._safe_dispatch(h, event) for h in handlers])

    async def _safe_dispatch(self, handler: EventHandler, event: Event) -> None:
        try:
            await handler(event)
        except Exception as e:
            self.logger.exception(
                "event_handler_error",
                topic=event.topic,
                event_id=event.event_id,
                error=str(e),
            )

    def _matches_pattern(self, topic: str, pattern: str) -> bool:
        """Check if topic matches a wildcard pattern.

        ``*`` matches one dotted segment, a trailing ``**`` matches the rest.
        """
        topic_parts = topic.split(".")
        pattern_parts = pattern.split(".")

        for i, part in enumerate(pattern_parts):
            if part == "**":
                return i == len(pattern_parts) - 1 and len(topic_parts) > i
            if i >= len(topic_parts):
                return False
            if part != "*" and part != topic_parts[i]:
                return False

        return len(topic_parts) == len(pattern_parts)

    def subscribe(self, topic: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to a topic (wildcards allowed).

        Returns:
            Function that removes the subscription.
        """
        if "*" in topic:
            entry = (topic, handler)
            self._wildcard_subscribers.append(entry)

            def unsubscribe() -> None:
                if entry in self._wildcard_subscribers:
                    self._wildcard_subscribers.remove(entry)

        else:
            self._subscribers.setdefault(topic, []).append(handler)

            def unsubscribe() -> None:
                handlers = self._subscribers.get(topic, [])
                if handler in handlers:
                    handlers.remove(handler)

        self.logger.debug("subscribed", topic=topic)
        return unsubscribe

    async def wait_for(self, topic: str, timeout: float) -> Event | None:
        """Wait for the next event on a topic.

        Returns:
            The event, or None on timeout.
        """
        future: asyncio.Future[Event] = asyncio.get_running_loop().create_future()

        async def handler(event: Event) -> None:
            if not future.done():
                future.set_result(event)

        unsubscribe = self.subscribe(topic, handler)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            unsubscribe()

    def get_history(self, topic: str | None = None, limit: int = 50) -> list[Event]:
        """Get recent events, newest first."""
        events = self._history
        if topic:
            events = [e for e in events if self._matches_pattern(e.topic, topic)]
        return list(reversed(events[-limit:]))

    def clear_history(self) -> None:
        self._history.clear()
