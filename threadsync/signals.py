"""Ephemeral UI signals derived from the reconciled timeline.

Neither signal has a dedicated channel on the backend: typing is inferred
from how recent the last remote message is, and notifications are decided
locally from the messages each poll adds.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
import logging
from typing import TYPE_CHECKING, Any

from .models import Message, Thread, utcnow

if TYPE_CHECKING:
    from .backend import NotificationSink

LOGGER = logging.getLogger(__name__)


class TypingSignalEstimator:
    """Heuristic "is typing" flag; a stand-in until a presence channel exists.

    The flag is raised when the newest message is from the remote participant
    and younger than ``window_seconds``, and drops by itself when the window
    runs out. A local newest message always clears it.
    """

    def __init__(
        self,
        local_user_id: str,
        *,
        window_seconds: float = 3.0,
        on_change: Callable[[bool], Any] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.local_user_id = local_user_id
        self.window_seconds = window_seconds
        self._on_change = on_change
        self._clock = clock
        self._typing = False
        self._expiry: asyncio.TimerHandle | None = None

    @property
    def typing(self) -> bool:
        return self._typing

    def remaining_seconds(self, messages: Sequence[Message], now: datetime) -> float:
        """Seconds the flag should stay up for ``messages`` at ``now`` (0 = off)."""
        if not messages:
            return 0.0
        latest = messages[-1]
        if latest.sender_id == self.local_user_id:
            return 0.0
        age = max(0.0, (now - latest.timestamp).total_seconds())
        return max(0.0, self.window_seconds - age)

    def observe(self, messages: Sequence[Message]) -> bool:
        """Re-evaluate against the current timeline and (re)arm the expiry timer."""
        self._cancel_expiry()
        remaining = self.remaining_seconds(messages, self._clock())
        if remaining > 0:
            loop = asyncio.get_running_loop()
            self._expiry = loop.call_later(remaining, self._expire)
        self._set(remaining > 0)
        return self._typing

    def reset(self) -> None:
        self._cancel_expiry()
        self._set(False)

    def _expire(self) -> None:
        self._expiry = None
        self._set(False)

    def _cancel_expiry(self) -> None:
        if self._expiry is not None:
            self._expiry.cancel()
            self._expiry = None

    def _set(self, typing: bool) -> None:
        if typing == self._typing:
            return
        self._typing = typing
        if self._on_change is None:
            return
        try:
            self._on_change(typing)
        except Exception as exc:  # noqa: BLE001 - listeners must not break estimation.
            LOGGER.error(f"Typing listener failed: {exc}")


@dataclass(frozen=True)
class NotificationIntent:
    """A request to show a background notification; delivery is the sink's job."""

    thread_id: str
    message_id: str
    sender_id: str
    sender_name: str
    title: str
    body: str
    tag: str


def truncate_preview(content: str, limit: int = 100) -> str:
    if len(content) <= limit:
        return content
    return content[:limit] + "..."


class NotificationBridge:
    """Turn newly reconciled remote messages into notification intents."""

    def __init__(
        self,
        sink: NotificationSink | None,
        local_user_id: str,
        *,
        enabled: bool = True,
        preview_chars: int = 100,
    ) -> None:
        self._sink = sink
        self.local_user_id = local_user_id
        self.enabled = enabled
        self.preview_chars = preview_chars
        self.visible = True
        self.focused = True

    @classmethod
    def from_config(
        cls, sink: NotificationSink | None, config: dict[str, Any]
    ) -> NotificationBridge:
        notifications_cfg = config.get("notifications", {})
        return cls(
            sink,
            str(config.get("user", {}).get("id", "user-1")),
            enabled=bool(notifications_cfg.get("enabled", True)),
            preview_chars=int(notifications_cfg.get("preview_chars", 100)),
        )

    @property
    def foreground(self) -> bool:
        return self.visible and self.focused

    def set_view_state(self, *, visible: bool, focused: bool) -> None:
        self.visible = visible
        self.focused = focused

    def evaluate(
        self, new_messages: Sequence[Message], thread: Thread | None = None
    ) -> list[NotificationIntent]:
        """Decide which of ``new_messages`` deserve a notification right now."""
        if not self.enabled or self.foreground:
            return []
        intents: list[NotificationIntent] = []
        for message in new_messages:
            if message.sender_id == self.local_user_id:
                continue
            sender_name = message.sender_name or (
                thread.participant_name if thread is not None else ""
            )
            intents.append(
                NotificationIntent(
                    thread_id=message.thread_id or (thread.id if thread else ""),
                    message_id=message.id,
                    sender_id=message.sender_id,
                    sender_name=sender_name,
                    title=f"{sender_name} sent a message",
                    body=truncate_preview(message.content, self.preview_chars),
                    tag=f"chat-{message.sender_id}",
                )
            )
        return intents

    def dispatch(
        self, new_messages: Sequence[Message], thread: Thread | None = None
    ) -> list[NotificationIntent]:
        intents = self.evaluate(new_messages, thread)
        if self._sink is None:
            return intents
        for intent in intents:
            try:
                self._sink.notify(intent)
            except Exception as exc:  # noqa: BLE001 - delivery is out of our hands.
                LOGGER.warning(
                    "notifications.sink_failed",
                    extra={"event": "notifications.sink_failed", "reason": str(exc)},
                )
        return intents
