"""Tests for CLI entrypoint wiring."""

from __future__ import annotations

import asyncio
from copy import deepcopy
import io
import unittest
from unittest.mock import MagicMock, patch

from rich.console import Console

from threadsync.__main__ import main, run_watch
from threadsync.config import DEFAULT_CONFIG
from threadsync.models import Message, Thread, utcnow


class _FakeBackend:
    def __init__(self) -> None:
        self.maintainer = Thread(id="maint", participant_name="Support", is_maintainer=True)
        self.messages = [
            Message(
                id="m1",
                thread_id="maint",
                sender_id="maintainer",
                sender_name="Support",
                content="Welcome aboard",
                timestamp=utcnow(),
            )
        ]
        self.closed = False

    async def get_maintainer_thread(self) -> Thread:
        return self.maintainer

    async def get_threads(self) -> list[Thread]:
        return []

    async def get_messages(self, thread_id: str) -> list[Message]:
        return list(self.messages)

    async def send_message(self, thread_id, content, attachments=None, audio_url=None) -> Message:
        message = Message(
            id="m2",
            thread_id=thread_id,
            sender_id="user-1",
            sender_name="You",
            content=content,
            timestamp=utcnow(),
        )
        self.messages.append(message)
        return message

    async def aclose(self) -> None:
        self.closed = True


class MainEntrypointTests(unittest.TestCase):
    """Validate top-level main() behavior."""

    def test_version_flag_prints_version(self) -> None:
        with patch("builtins.print") as print_mock, patch(
            "threadsync.__main__.asyncio.run"
        ) as run_mock:
            self.assertEqual(main(["--version"]), 0)
        run_mock.assert_not_called()
        self.assertTrue(print_mock.call_args[0][0].startswith("threadsync "))

    def test_main_loads_config_and_runs_watch(self) -> None:
        config = deepcopy(DEFAULT_CONFIG)
        watch_mock = MagicMock(return_value="watch-coro")
        with patch("threadsync.__main__.ensure_config_dir") as ensure_mock, patch(
            "threadsync.__main__.load_config", return_value=config
        ) as load_mock, patch("threadsync.__main__.configure_logging") as logging_mock, patch(
            "threadsync.__main__.run_watch", watch_mock
        ), patch("threadsync.__main__.asyncio.run", return_value=0) as run_mock:
            self.assertEqual(main(["--thread", "t-1", "--send", "hello"]), 0)

        ensure_mock.assert_called_once()
        load_mock.assert_called_once_with(None)
        logging_mock.assert_called_once_with(config["logging"])
        watch_mock.assert_called_once_with(config, thread_id="t-1", send_text="hello")
        run_mock.assert_called_once_with("watch-coro")

    def test_keyboard_interrupt_exits_cleanly(self) -> None:
        with patch("threadsync.__main__.ensure_config_dir"), patch(
            "threadsync.__main__.load_config", return_value=deepcopy(DEFAULT_CONFIG)
        ), patch("threadsync.__main__.configure_logging"), patch(
            "threadsync.__main__.run_watch", MagicMock()
        ), patch("threadsync.__main__.asyncio.run", side_effect=KeyboardInterrupt):
            self.assertEqual(main([]), 0)


class RunWatchTests(unittest.IsolatedAsyncioTestCase):
    """Validate the watch loop against an in-memory backend."""

    async def test_prints_timeline_and_sends_once(self) -> None:
        output = io.StringIO()
        console = Console(file=output, width=120, color_system=None)
        backend = _FakeBackend()
        stop = asyncio.Event()
        stop.set()

        code = await run_watch(
            deepcopy(DEFAULT_CONFIG),
            send_text="hello there",
            console=console,
            backend=backend,
            stop=stop,
        )

        text = output.getvalue()
        self.assertEqual(code, 0)
        self.assertIn("Support", text)
        self.assertIn("Welcome aboard", text)
        self.assertIn("hello there", text)
        self.assertEqual(text.count("hello there"), 1)
        # Injected backends stay open for their owner.
        self.assertFalse(backend.closed)


if __name__ == "__main__":
    unittest.main()
