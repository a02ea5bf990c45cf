"""Event bus carrying session output to the rendering layer.

Usage:
    bus = EventBus()

    async def on_timeline(event):
        render(event.data.messages)

    bus.subscribe(TIMELINE_CHANGED, on_timeline)
"""

from __future__ import annotations

import inspect
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any

from .models import Message, utcnow

LOGGER = logging.getLogger(__name__)

TIMELINE_CHANGED = "timeline.changed"
TYPING_CHANGED = "typing.changed"
THREADS_LOADED = "threads.loaded"
THREAD_SELECTED = "thread.selected"
NOTICE = "session.notice"


@dataclass
class Event:
    """Event data container."""

    name: str
    data: Any
    source: str | None = None


@dataclass
class TimelineChanged:
    thread_id: str
    messages: list[Message]
    scroll_to_latest: bool
    initial_load: bool = False


@dataclass
class TypingChanged:
    thread_id: str
    typing: bool


@dataclass
class Notice:
    """A user-visible, non-blocking notification (toast)."""

    level: str  # "info", "success", "error"
    title: str
    detail: str = ""
    timestamp: datetime = field(default_factory=utcnow)


class EventBus:
    """Publish/subscribe hub between the sync engine and its observers.

    Handlers may be plain callables or coroutine functions. A failing
    handler is logged and never interrupts the publisher.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callable[[Event], Any]]] = {}

    def subscribe(self, event_name: str, handler: Callable[[Event], Any]) -> None:
        self._subscribers.setdefault(event_name, []).append(handler)
        LOGGER.debug("Subscribed to event: %s", event_name)

    def unsubscribe(self, event_name: str, handler: Callable[[Event], Any]) -> None:
        handlers = self._subscribers.get(event_name)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            pass

    async def publish(
        self, event_name: str, data: Any, source: str | None = None
    ) -> None:
        """Deliver an event to every subscriber in registration order."""
        event = Event(name=event_name, data=data, source=source)
        for handler in list(self._subscribers.get(event_name, [])):
            try:
                if inspect.iscoroutinefunction(handler):
                    await handler(event)
                else:
                    handler(event)
            except Exception as exc:  # noqa: BLE001 - observers must not break the session.
                LOGGER.error(
                    "events.handler_failed",
                    extra={
                        "event": "events.handler_failed",
                        "event_name": event_name,
                        "reason": repr(exc),
                    },
                )

    def clear(self, event_name: str | None = None) -> None:
        if event_name:
            self._subscribers.pop(event_name, None)
        else:
            self._subscribers.clear()
