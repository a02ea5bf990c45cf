"""CLI entrypoint for threadsync: watch one conversation from the terminal."""

from __future__ import annotations

import argparse
import asyncio
from importlib import metadata
import logging
from pathlib import Path
from typing import Any, Sequence

from rich.console import Console
from rich.text import Text

from .backend import HttpChatBackend
from .config import ensure_config_dir, load_config
from .events import NOTICE, THREAD_SELECTED, TIMELINE_CHANGED, TYPING_CHANGED, Event
from .logging_utils import configure_logging
from .models import Message, MessageStatus
from .session import ThreadSession

LOGGER = logging.getLogger(__name__)

_STATUS_MARKS = {
    MessageStatus.PENDING: "…",
    MessageStatus.SENT: "✓",
    MessageStatus.DELIVERED: "✓✓",
    MessageStatus.READ: "✓✓ read",
    MessageStatus.FAILED: "✗",
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="threadsync", description="Follow a chat thread from the terminal"
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.toml")
    parser.add_argument("--thread", default=None, help="Thread id to open")
    parser.add_argument("--send", default=None, help="Send one message after opening")
    return parser


class TimelinePrinter:
    """Print timeline events once each, plus status changes of own messages."""

    def __init__(self, console: Console, local_user_id: str) -> None:
        self._console = console
        self._local_user_id = local_user_id
        self._shown: dict[str, MessageStatus] = {}

    def reset(self) -> None:
        self._shown.clear()

    def on_thread_selected(self, event: Event) -> None:
        thread = event.data
        self.reset()
        self._console.rule(Text(thread.participant_name or thread.id, style="bold"))

    def on_timeline(self, event: Event) -> None:
        for message in event.data.messages:
            if message.is_optimistic:
                # Printed once the server confirms it.
                continue
            previous = self._shown.get(message.id)
            if previous is None:
                self._console.print(self._line(message))
            elif previous != message.status and message.sender_id == self._local_user_id:
                self._console.print(
                    Text(f"  {_STATUS_MARKS[message.status]} {message.id}", style="dim")
                )
            self._shown[message.id] = message.status
        # Optimistic entries disappear once the server copy replaces them.
        current = {m.id for m in event.data.messages}
        for message_id in list(self._shown):
            if message_id not in current:
                del self._shown[message_id]

    def on_typing(self, event: Event) -> None:
        if event.data.typing:
            self._console.print(Text("  typing...", style="italic dim"))

    def on_notice(self, event: Event) -> None:
        notice = event.data
        style = {"error": "bold red", "success": "green"}.get(notice.level, "cyan")
        line = Text(notice.title, style=style)
        if notice.detail:
            line.append(f": {notice.detail}", style="default")
        self._console.print(line)

    def _line(self, message: Message) -> Text:
        line = Text()
        line.append(message.timestamp.astimezone().strftime("%H:%M"), style="dim")
        line.append(" ")
        own = message.sender_id == self._local_user_id
        line.append(message.sender_name or message.sender_id, style="bold green" if own else "bold blue")
        line.append(": ")
        line.append(message.content)
        for attachment in message.attachments:
            line.append(f" [{attachment.kind.value}: {attachment.name}]", style="magenta")
        if message.audio_url:
            line.append(f" <{message.audio_url}>", style="magenta")
        if own:
            line.append(f" {_STATUS_MARKS[message.status]}", style="dim")
        return line


async def run_watch(
    config: dict[str, Any],
    *,
    thread_id: str | None = None,
    send_text: str | None = None,
    console: Console | None = None,
    backend: Any = None,
    stop: asyncio.Event | None = None,
) -> int:
    """Mount a session, optionally send once, and print until ``stop`` is set."""
    console = console or Console()
    stop = stop or asyncio.Event()
    owned_backend = backend is None
    backend = backend or HttpChatBackend.from_config(config)

    session = ThreadSession.from_config(config, backend, backend, uploader=backend)
    printer = TimelinePrinter(console, session.user.id)
    session.bus.subscribe(THREAD_SELECTED, printer.on_thread_selected)
    session.bus.subscribe(TIMELINE_CHANGED, printer.on_timeline)
    session.bus.subscribe(TYPING_CHANGED, printer.on_typing)
    session.bus.subscribe(NOTICE, printer.on_notice)

    try:
        thread = await session.mount(thread_id)
        if thread is None:
            console.print(Text("No conversation available.", style="bold red"))
            return 1
        if send_text:
            result = await session.send_message(send_text, attachments=[])
            if not result.ok:
                return 1
        await stop.wait()
        return 0
    finally:
        await session.close()
        if owned_backend:
            await backend.aclose()


def main(argv: Sequence[str] | None = None) -> int:
    """Load configuration, configure logging and follow the selected thread."""
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("threadsync")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"threadsync {version}")
        return 0

    ensure_config_dir()
    config = load_config(args.config)
    configure_logging(config.get("logging", {}))
    LOGGER.info(
        "cli.started",
        extra={"event": "cli.started", "base_url": config["backend"]["base_url"]},
    )
    try:
        return asyncio.run(
            run_watch(config, thread_id=args.thread, send_text=args.send)
        )
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
