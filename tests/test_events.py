"""Tests for the synchronous event bus."""

from __future__ import annotations

import unittest

from lai_control.events import NOTIFY_EVENT, Event, EventBus


class EventBusTests(unittest.TestCase):
    """Validate subscribe/publish semantics."""

    def test_publish_reaches_subscribers(self) -> None:
        bus = EventBus()
        received: list[Event] = []
        bus.subscribe(NOTIFY_EVENT, received.append)
        count = bus.publish(NOTIFY_EVENT, {"message": "hi"}, source="cli")
        self.assertEqual(count, 1)
        self.assertEqual(received[0].data, {"message": "hi"})
        self.assertEqual(received[0].source, "cli")

    def test_publish_without_subscribers(self) -> None:
        self.assertEqual(EventBus().publish("cli://ask", {}), 0)

    def test_handler_failure_is_logged_not_raised(self) -> None:
        bus = EventBus()
        received: list[Event] = []

        def broken(event: Event) -> None:
            raise ValueError("ui gone")

        bus.subscribe(NOTIFY_EVENT, broken)
        bus.subscribe(NOTIFY_EVENT, received.append)
        with self.assertLogs("lai_control.events", level="ERROR") as logs:
            count = bus.publish(NOTIFY_EVENT, {"message": "x"})
        self.assertEqual(count, 2)
        self.assertEqual(len(received), 1)
        self.assertTrue(any("events.handler_failed" in line for line in logs.output))

    def test_unsubscribe_and_clear(self) -> None:
        bus = EventBus()
        received: list[Event] = []
        bus.subscribe(NOTIFY_EVENT, received.append)
        bus.unsubscribe(NOTIFY_EVENT, received.append)
        bus.unsubscribe(NOTIFY_EVENT, received.append)
        bus.publish(NOTIFY_EVENT, {})
        self.assertEqual(received, [])

        bus.subscribe(NOTIFY_EVENT, received.append)
        bus.clear()
        self.assertEqual(bus.publish(NOTIFY_EVENT, {}), 0)


if __name__ == "__main__":
    unittest.main()
