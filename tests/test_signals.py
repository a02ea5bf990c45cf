"""Tests for the typing estimator and notification bridge."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import unittest

from threadsync.models import Message, Thread
from threadsync.signals import (
    NotificationBridge,
    NotificationIntent,
    TypingSignalEstimator,
    truncate_preview,
)

T0 = datetime(2024, 3, 1, 10, 0, 0, tzinfo=timezone.utc)


def _message(message_id: str, sender: str, at: datetime, content: str = "hi") -> Message:
    return Message(
        id=message_id,
        thread_id="thread-1",
        sender_id=sender,
        sender_name="Support" if sender != "user-1" else "Me",
        content=content,
        timestamp=at,
    )


class _RecordingSink:
    def __init__(self, fail: bool = False) -> None:
        self.intents: list[NotificationIntent] = []
        self.fail = fail

    def notify(self, intent: NotificationIntent) -> None:
        if self.fail:
            raise RuntimeError("permission revoked")
        self.intents.append(intent)


class TypingSignalEstimatorTests(unittest.IsolatedAsyncioTestCase):
    """Validate the recency heuristic and its self-expiring flag."""

    def test_remaining_seconds_for_recent_remote_message(self) -> None:
        estimator = TypingSignalEstimator("user-1", window_seconds=3.0)
        messages = [_message("m1", "maintainer", T0)]
        self.assertEqual(estimator.remaining_seconds(messages, T0 + timedelta(seconds=1)), 2.0)
        self.assertEqual(estimator.remaining_seconds(messages, T0 + timedelta(seconds=5)), 0.0)

    def test_local_or_empty_timeline_is_never_typing(self) -> None:
        estimator = TypingSignalEstimator("user-1")
        self.assertEqual(estimator.remaining_seconds([], T0), 0.0)
        self.assertEqual(
            estimator.remaining_seconds([_message("m1", "user-1", T0)], T0), 0.0
        )

    async def test_flag_rises_and_expires_on_its_own(self) -> None:
        changes: list[bool] = []
        clock_now = [T0]
        estimator = TypingSignalEstimator(
            "user-1",
            window_seconds=0.05,
            on_change=changes.append,
            clock=lambda: clock_now[0],
        )

        self.assertTrue(estimator.observe([_message("m1", "maintainer", T0)]))
        self.assertTrue(estimator.typing)
        await asyncio.sleep(0.1)

        self.assertFalse(estimator.typing)
        self.assertEqual(changes, [True, False])

    async def test_local_message_clears_flag_immediately(self) -> None:
        estimator = TypingSignalEstimator("user-1", window_seconds=3.0, clock=lambda: T0)
        estimator.observe([_message("m1", "maintainer", T0)])
        estimator.observe(
            [_message("m1", "maintainer", T0), _message("m2", "user-1", T0)]
        )
        self.assertFalse(estimator.typing)

    async def test_reset_cancels_pending_expiry(self) -> None:
        changes: list[bool] = []
        estimator = TypingSignalEstimator(
            "user-1", window_seconds=0.05, on_change=changes.append, clock=lambda: T0
        )
        estimator.observe([_message("m1", "maintainer", T0)])
        estimator.reset()
        await asyncio.sleep(0.1)
        self.assertEqual(changes, [True, False])

    async def test_broken_listener_is_logged(self) -> None:
        def _broken(typing: bool) -> None:
            raise ValueError("ui gone")

        estimator = TypingSignalEstimator("user-1", on_change=_broken, clock=lambda: T0)
        with self.assertLogs("threadsync.signals", level="ERROR"):
            estimator.observe([_message("m1", "maintainer", T0)])
        self.assertTrue(estimator.typing)
        estimator.reset()


class NotificationBridgeTests(unittest.TestCase):
    """Validate when and how notification intents are produced."""

    def setUp(self) -> None:
        self.sink = _RecordingSink()
        self.bridge = NotificationBridge(self.sink, "user-1")
        self.bridge.set_view_state(visible=False, focused=False)

    def test_remote_message_in_background_notifies(self) -> None:
        intents = self.bridge.dispatch([_message("m1", "maintainer", T0, "Your report is ready")])

        self.assertEqual(len(intents), 1)
        intent = intents[0]
        self.assertEqual(intent.title, "Support sent a message")
        self.assertEqual(intent.body, "Your report is ready")
        self.assertEqual(intent.tag, "chat-maintainer")
        self.assertEqual(intent.thread_id, "thread-1")
        self.assertEqual(self.sink.intents, intents)

    def test_foreground_view_suppresses_notifications(self) -> None:
        self.bridge.set_view_state(visible=True, focused=True)
        self.assertTrue(self.bridge.foreground)
        self.assertEqual(self.bridge.dispatch([_message("m1", "maintainer", T0)]), [])
        self.assertEqual(self.sink.intents, [])

    def test_visible_but_unfocused_still_notifies(self) -> None:
        self.bridge.set_view_state(visible=True, focused=False)
        self.assertEqual(len(self.bridge.evaluate([_message("m1", "maintainer", T0)])), 1)

    def test_own_messages_never_notify(self) -> None:
        self.assertEqual(self.bridge.evaluate([_message("m1", "user-1", T0)]), [])

    def test_disabled_bridge_is_silent(self) -> None:
        bridge = NotificationBridge(self.sink, "user-1", enabled=False)
        bridge.set_view_state(visible=False, focused=False)
        self.assertEqual(bridge.evaluate([_message("m1", "maintainer", T0)]), [])

    def test_long_content_is_truncated(self) -> None:
        content = "x" * 150
        intent = self.bridge.evaluate([_message("m1", "maintainer", T0, content)])[0]
        self.assertEqual(intent.body, "x" * 100 + "...")

    def test_sender_name_falls_back_to_thread_participant(self) -> None:
        message = Message(
            id="m1", thread_id="", sender_id="maintainer", content="hi", timestamp=T0
        )
        thread = Thread(id="thread-9", participant_name="Consultant")
        intent = self.bridge.evaluate([message], thread)[0]
        self.assertEqual(intent.title, "Consultant sent a message")
        self.assertEqual(intent.thread_id, "thread-9")

    def test_sink_failure_is_logged_not_raised(self) -> None:
        bridge = NotificationBridge(_RecordingSink(fail=True), "user-1")
        bridge.set_view_state(visible=False, focused=False)
        with self.assertLogs("threadsync.signals", level="WARNING") as logs:
            intents = bridge.dispatch([_message("m1", "maintainer", T0)])
        self.assertEqual(len(intents), 1)
        self.assertTrue(any("notifications.sink_failed" in line for line in logs.output))

    def test_from_config_reads_notification_section(self) -> None:
        bridge = NotificationBridge.from_config(
            None,
            {"user": {"id": "u-9"}, "notifications": {"enabled": False, "preview_chars": 20}},
        )
        self.assertEqual(bridge.local_user_id, "u-9")
        self.assertFalse(bridge.enabled)
        self.assertEqual(bridge.preview_chars, 20)

    def test_truncate_preview_keeps_short_text(self) -> None:
        self.assertEqual(truncate_preview("short"), "short")
        self.assertEqual(truncate_preview("abcdef", limit=3), "abc...")


if __name__ == "__main__":
    unittest.main()
