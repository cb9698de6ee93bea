"""In-process publish/subscribe used to hand control-plane requests to the UI.

``notify`` requests become :data:`NOTIFY_EVENT` and ``ask`` requests become
:data:`ASK_EVENT`. A desktop front end subscribes to both::

    bus = EventBus()
    bus.subscribe(NOTIFY_EVENT, lambda event: show_toast(event.data["message"]))

Handlers run on the publishing thread, which for control-plane events is the
connection's handler thread. Toolkits with a UI thread must marshal the call.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
import logging
import threading
from typing import Any

LOGGER = logging.getLogger(__name__)

NOTIFY_EVENT = "cli://notify"
ASK_EVENT = "cli://ask"

Handler = Callable[["Event"], Any]


@dataclass
class Event:
    name: str
    data: dict[str, Any]
    source: str | None = None


class EventBus:
    """Thread-safe registry of handlers keyed by event name."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: defaultdict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: Handler) -> None:
        with self._lock:
            self._handlers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: Handler) -> None:
        """Remove ``handler``; unknown names or handlers are ignored."""
        with self._lock:
            handlers = self._handlers.get(event_name, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(
        self, event_name: str, data: dict[str, Any], source: str | None = None
    ) -> int:
        """Deliver an event and return the number of handlers it reached.

        A failing handler is logged and does not stop delivery to the rest,
        and never propagates to the publisher.
        """
        with self._lock:
            handlers = list(self._handlers.get(event_name, ()))
        event = Event(name=event_name, data=data, source=source)
        for handler in handlers:
            try:
                handler(event)
            except Exception as exc:
                LOGGER.error(
                    "events.handler_failed",
                    extra={
                        "event": "events.handler_failed",
                        "event_name": event_name,
                        "error": str(exc),
                    },
                )
        if not handlers:
            LOGGER.debug(
                "events.unhandled",
                extra={"event": "events.unhandled", "event_name": event_name},
            )
        return len(handlers)

    def clear(self, event_name: str | None = None) -> None:
        """Drop the handlers for ``event_name``, or every handler when omitted."""
        with self._lock:
            if event_name is None:
                self._handlers.clear()
            else:
                self._handlers.pop(event_name, None)
