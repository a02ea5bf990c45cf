"""Tests for the session event bus."""

from __future__ import annotations

import unittest

from threadsync.events import NOTICE, TIMELINE_CHANGED, Event, EventBus, Notice


class EventBusTests(unittest.IsolatedAsyncioTestCase):
    """Validate subscription and delivery semantics."""

    async def test_sync_and_async_handlers_receive_event(self) -> None:
        bus = EventBus()
        seen: list[tuple[str, object]] = []

        def _sync(event: Event) -> None:
            seen.append(("sync", event.data))

        async def _async(event: Event) -> None:
            seen.append(("async", event.data))

        bus.subscribe(TIMELINE_CHANGED, _sync)
        bus.subscribe(TIMELINE_CHANGED, _async)
        await bus.publish(TIMELINE_CHANGED, 1, source="test")

        self.assertEqual(seen, [("sync", 1), ("async", 1)])

    async def test_failing_handler_does_not_stop_delivery(self) -> None:
        bus = EventBus()
        seen: list[Notice] = []

        def _broken(event: Event) -> None:
            raise RuntimeError("listener bug")

        bus.subscribe(NOTICE, _broken)
        bus.subscribe(NOTICE, lambda event: seen.append(event.data))

        with self.assertLogs("threadsync.events", level="ERROR") as logs:
            await bus.publish(NOTICE, Notice(level="info", title="hello"))

        self.assertEqual([n.title for n in seen], ["hello"])
        self.assertTrue(any("events.handler_failed" in line for line in logs.output))

    async def test_unsubscribe_and_clear(self) -> None:
        bus = EventBus()
        seen: list[object] = []

        def _handler(event: Event) -> None:
            seen.append(event.data)

        bus.subscribe(TIMELINE_CHANGED, _handler)
        bus.unsubscribe(TIMELINE_CHANGED, _handler)
        bus.unsubscribe(TIMELINE_CHANGED, _handler)
        await bus.publish(TIMELINE_CHANGED, "ignored")

        bus.subscribe(NOTICE, _handler)
        bus.clear()
        await bus.publish(NOTICE, "ignored")
        self.assertEqual(seen, [])


if __name__ == "__main__":
    unittest.main()
