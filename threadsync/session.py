"""Active-conversation session: polling lifecycle, sends and UI signals."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
import logging
import random
from typing import Any

from .backend import MessageStore, NotificationSink, ThreadDirectory, UploadService
from .events import (
    NOTICE,
    THREAD_SELECTED,
    THREADS_LOADED,
    TIMELINE_CHANGED,
    TYPING_CHANGED,
    EventBus,
    Notice,
    TimelineChanged,
    TypingChanged,
)
from .exceptions import (
    DeviceError,
    MessageValidationError,
    ThreadSyncError,
    TransportError,
    UploadError,
)
from .models import Attachment, Message, MessageStatus, Thread, new_local_id, utcnow
from .reconciler import ReconcileResult, TimelineReconciler, TimelineState
from .recording import RecordingController, format_recording_time
from .signals import NotificationBridge, TypingSignalEstimator
from .task_manager import TaskManager
from .uploads import AttachmentPipeline, UploadHandle, UploadStatus

LOGGER = logging.getLogger(__name__)

_POLL = "poll"
_STATUS_TIMER = "status-timer"


@dataclass(frozen=True)
class LocalUser:
    id: str
    name: str
    avatar: str | None = None


@dataclass(frozen=True)
class SendResult:
    ok: bool
    message: Message | None = None
    error: ThreadSyncError | None = None


class PollPolicy:
    """When to fetch next.

    The backend has no push channel, so a fixed interval stands in for
    real-time delivery. Consecutive transport failures stretch the interval
    geometrically up to ``max_interval_seconds``; optional jitter spreads
    clients apart.
    """

    def __init__(
        self,
        interval_seconds: float = 2.0,
        *,
        jitter_seconds: float = 0.0,
        backoff_factor: float = 2.0,
        max_interval_seconds: float = 30.0,
        rng: random.Random | None = None,
    ) -> None:
        self.interval_seconds = interval_seconds
        self.jitter_seconds = jitter_seconds
        self.backoff_factor = backoff_factor
        self.max_interval_seconds = max(max_interval_seconds, interval_seconds)
        self._rng = rng or random.Random()

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> PollPolicy:
        polling_cfg = config.get("polling", {})
        return cls(
            float(polling_cfg.get("interval_seconds", 2.0)),
            jitter_seconds=float(polling_cfg.get("jitter_seconds", 0.0)),
            backoff_factor=float(polling_cfg.get("backoff_factor", 2.0)),
            max_interval_seconds=float(polling_cfg.get("max_interval_seconds", 30.0)),
        )

    def next_delay(self, consecutive_failures: int = 0) -> float:
        delay = self.interval_seconds * (self.backoff_factor ** max(0, consecutive_failures))
        delay = min(delay, self.max_interval_seconds)
        if self.jitter_seconds > 0:
            delay += self._rng.uniform(0.0, self.jitter_seconds)
        return delay


class ScrollPolicy:
    """Decide whether a timeline update should scroll to the latest message.

    The first load of a thread never scrolls; afterwards only a growing
    message count does, so status-only updates leave the viewport alone.
    """

    def __init__(self) -> None:
        self._first_load = True
        self._count = 0

    def reset(self) -> None:
        self._first_load = True
        self._count = 0

    def observe(self, count: int, *, initial_load: bool = False) -> bool:
        if initial_load or self._first_load:
            self._first_load = False
            self._count = count
            return False
        grew = count > self._count
        self._count = count
        return grew


class ThreadSession:
    """Bind one active conversation to a polling loop and own its timeline.

    All timeline mutation happens on the event loop thread through the
    reconciler, so a send's optimistic entry is part of the state the very
    next poll merges into. Each activation bumps a generation counter; any
    response that comes back for an older generation is dropped.
    """

    def __init__(
        self,
        directory: ThreadDirectory,
        store: MessageStore,
        user: LocalUser,
        *,
        bus: EventBus | None = None,
        reconciler: TimelineReconciler | None = None,
        poll_policy: PollPolicy | None = None,
        typing_window_seconds: float = 3.0,
        notifications: NotificationBridge | None = None,
        uploader: UploadService | None = None,
        max_upload_bytes: int = 50 * 1024 * 1024,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._directory = directory
        self._store = store
        self.user = user
        self.bus = bus or EventBus()
        self._reconciler = reconciler or TimelineReconciler()
        self._poll_policy = poll_policy or PollPolicy()
        self._notifications = notifications or NotificationBridge(None, user.id)
        self._clock = clock
        self.typing = TypingSignalEstimator(
            user.id,
            window_seconds=typing_window_seconds,
            on_change=self._on_typing_change,
            clock=clock,
        )
        self.pipeline: AttachmentPipeline | None = None
        if uploader is not None:
            self.pipeline = AttachmentPipeline(
                uploader, max_bytes=max_upload_bytes, on_change=self._on_upload_change
            )
        self._tasks = TaskManager(owner="session")
        self._scroll = ScrollPolicy()
        self._state = TimelineState()
        self._threads: list[Thread] = []
        self._active: Thread | None = None
        self._generation = 0
        self._inflight_generation: int | None = None
        self._failures = 0

    @classmethod
    def from_config(
        cls,
        config: dict[str, Any],
        directory: ThreadDirectory,
        store: MessageStore,
        *,
        uploader: UploadService | None = None,
        notification_sink: NotificationSink | None = None,
        bus: EventBus | None = None,
    ) -> ThreadSession:
        user_cfg = config.get("user", {})
        return cls(
            directory,
            store,
            LocalUser(
                id=str(user_cfg.get("id", "user-1")),
                name=str(user_cfg.get("name", "You")),
                avatar=user_cfg.get("avatar") or None,
            ),
            bus=bus,
            reconciler=TimelineReconciler.from_config(config),
            poll_policy=PollPolicy.from_config(config),
            typing_window_seconds=float(
                config.get("typing", {}).get("window_seconds", 3.0)
            ),
            notifications=NotificationBridge.from_config(notification_sink, config),
            uploader=uploader,
            max_upload_bytes=int(
                config.get("uploads", {}).get("max_bytes", 50 * 1024 * 1024)
            ),
        )

    # -- read-only views ----------------------------------------------------

    @property
    def threads(self) -> list[Thread]:
        return list(self._threads)

    @property
    def active_thread(self) -> Thread | None:
        return self._active

    @property
    def timeline(self) -> list[Message]:
        return list(self._state.messages)

    @property
    def state(self) -> TimelineState:
        return self._state

    @property
    def is_polling(self) -> bool:
        return self._tasks.running(_POLL)

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    # -- lifecycle ----------------------------------------------------------

    async def mount(self, requested_thread_id: str | None = None) -> Thread | None:
        """Load the thread list and activate the preferred thread.

        The maintainer thread is fetched first and always listed first. An
        unknown ``requested_thread_id`` falls back to the maintainer thread,
        then to the first available thread.
        """
        maintainer: Thread | None = None
        try:
            maintainer = await self._directory.get_maintainer_thread()
        except TransportError as exc:
            LOGGER.warning(
                "session.maintainer.failed",
                extra={"event": "session.maintainer.failed", "reason": str(exc)},
            )
            await self._notice("error", "Connection Error", "Failed to load the support conversation.")

        others: list[Thread] = []
        try:
            others = await self._directory.get_threads()
        except TransportError as exc:
            LOGGER.warning(
                "session.threads.failed",
                extra={"event": "session.threads.failed", "reason": str(exc)},
            )
            await self._notice(
                "error", "Connection Error", "Failed to load conversations. Please try again."
            )

        combined: list[Thread] = []
        if maintainer is not None:
            combined.append(maintainer)
        combined.extend(t for t in others if maintainer is None or t.id != maintainer.id)
        self._threads = combined
        await self.bus.publish(THREADS_LOADED, list(combined), source="session")

        target = self._choose_thread(requested_thread_id, maintainer)
        if target is None:
            return None
        return await self.select_thread(target.id)

    def _choose_thread(
        self, requested_thread_id: str | None, maintainer: Thread | None
    ) -> Thread | None:
        if requested_thread_id:
            for thread in self._threads:
                if thread.id == requested_thread_id:
                    return thread
            LOGGER.info(
                "session.thread.unknown",
                extra={"event": "session.thread.unknown", "thread_id": requested_thread_id},
            )
        if maintainer is not None:
            return maintainer
        return self._threads[0] if self._threads else None

    async def select_thread(self, thread_id: str) -> Thread | None:
        """Make ``thread_id`` the active thread, replacing any previous loop.

        Returns ``None`` when another selection (or ``close``) superseded
        this one before its initial load finished.
        """
        thread = next((t for t in self._threads if t.id == thread_id), None)
        if thread is None:
            await self._notice("error", "Conversation not found", thread_id)
            return None
        if self._active is not None and self._active.id == thread_id and self.is_polling:
            return self._active

        await self._deactivate()
        self._generation += 1
        generation = self._generation
        self._active = thread
        self._state = TimelineState()
        self._scroll.reset()
        self._failures = 0
        LOGGER.info(
            "session.thread.selected",
            extra={
                "event": "session.thread.selected",
                "thread_id": thread.id,
                "generation": generation,
            },
        )
        await self.bus.publish(THREAD_SELECTED, thread, source="session")

        if generation == self._generation:
            await self._load_initial(thread.id, generation)
        if generation != self._generation:
            LOGGER.info(
                "session.thread.superseded",
                extra={"event": "session.thread.superseded", "thread_id": thread.id},
            )
            return None
        self._tasks.spawn(self._poll_loop(generation), name=_POLL)
        return thread

    async def load_initial_messages(self, thread_id: str) -> list[Message]:
        """Fetch the active thread's timeline right away (no scroll, no notifications)."""
        if self._active is None or self._active.id != thread_id:
            LOGGER.warning("Ignoring initial load for inactive thread %s", thread_id)
            return []
        return await self._load_initial(thread_id, self._generation)

    async def _load_initial(self, thread_id: str, generation: int) -> list[Message]:
        try:
            await self._fetch_and_merge(generation)
        except TransportError as exc:
            if generation != self._generation:
                return []
            LOGGER.warning(
                "session.initial_load.failed",
                extra={
                    "event": "session.initial_load.failed",
                    "thread_id": thread_id,
                    "reason": str(exc),
                },
            )
            await self._notice("error", "Connection Error", "Failed to load messages.")
        return self.timeline

    async def close(self) -> None:
        """Stop polling, timers and uploads; the session can be mounted again."""
        await self._deactivate()
        self._generation += 1
        self._active = None
        if self.pipeline is not None:
            await self.pipeline.aclose()
        await self._tasks.cancel_all()

    async def _deactivate(self) -> None:
        await self._tasks.cancel(_POLL)
        await self._tasks.cancel(_STATUS_TIMER)
        self.typing.reset()
        self._inflight_generation = None

    def set_view_state(self, *, visible: bool, focused: bool) -> None:
        """Tell the notification bridge whether the thread view is in front."""
        self._notifications.set_view_state(visible=visible, focused=focused)

    # -- polling ------------------------------------------------------------

    async def poll_once(self) -> bool:
        """Run one poll tick now; returns False when skipped or failed."""
        if self._active is None:
            return False
        return await self._poll_tick(self._generation)

    async def _poll_loop(self, generation: int) -> None:
        while generation == self._generation:
            await asyncio.sleep(self._poll_policy.next_delay(self._failures))
            await self._poll_tick(generation)

    async def _poll_tick(self, generation: int) -> bool:
        try:
            merged = await self._fetch_and_merge(generation)
        except TransportError as exc:
            if generation != self._generation:
                LOGGER.debug("Ignoring poll failure for a thread no longer active: %s", exc)
                return False
            self._failures += 1
            LOGGER.warning(
                "session.poll.failed",
                extra={
                    "event": "session.poll.failed",
                    "reason": str(exc),
                    "consecutive_failures": self._failures,
                },
            )
            # One notice per outage; the loop keeps retrying quietly.
            if self._failures == 1:
                await self._notice("error", "Connection Error", str(exc))
            return False
        except Exception as exc:  # noqa: BLE001 - the loop must survive collaborator bugs.
            if generation != self._generation:
                LOGGER.debug("Ignoring poll error for a thread no longer active: %s", exc)
                return False
            self._failures += 1
            LOGGER.error(f"Poll tick error: {exc}")
            return False

        if self._failures and generation == self._generation:
            LOGGER.info(
                "session.poll.recovered",
                extra={"event": "session.poll.recovered", "after_failures": self._failures},
            )
            self._failures = 0
        return merged

    async def _fetch_and_merge(self, generation: int) -> bool:
        """Fetch the active thread's snapshot and merge it if still relevant."""
        if self._inflight_generation == generation:
            LOGGER.debug("Skipping poll tick; previous tick still in flight")
            return False
        thread = self._active
        if thread is None:
            return False

        # The marker stays set until the merge has been published.
        self._inflight_generation = generation
        try:
            snapshot = await self._store.get_messages(thread.id)
            if generation != self._generation:
                LOGGER.info(
                    "session.poll.discarded_stale",
                    extra={"event": "session.poll.discarded_stale", "thread_id": thread.id},
                )
                return False

            initial = not self._state.loaded
            result = self._reconciler.reconcile(self._state, snapshot, self._clock())
            await self._commit(result, initial=initial)
            return True
        finally:
            if self._inflight_generation == generation:
                self._inflight_generation = None

    # -- sending ------------------------------------------------------------

    async def send_message(
        self,
        content: str,
        attachments: Sequence[Attachment] | None = None,
        audio_url: str | None = None,
    ) -> SendResult:
        """Send a message optimistically.

        The entry shows up at once with a temporary id. On success it takes
        over the server id; on failure it is removed and a notice published.
        When ``attachments`` is omitted the pipeline's completed uploads are
        sent and the tray is cleared.
        """
        thread = self._active
        from_pipeline = attachments is None and self.pipeline is not None
        if from_pipeline:
            attachments = self.pipeline.completed_attachments()
        attachment_list = list(attachments or [])

        if thread is None:
            return await self._reject(MessageValidationError("No conversation is selected."))
        if not content.strip() and not attachment_list and not audio_url:
            return await self._reject(MessageValidationError("Nothing to send."))

        generation = self._generation
        now = self._clock()
        optimistic = Message(
            id=new_local_id(),
            thread_id=thread.id,
            sender_id=self.user.id,
            sender_name=self.user.name,
            sender_avatar=self.user.avatar,
            content=content,
            timestamp=now,
            status=MessageStatus.PENDING,
            attachments=tuple(attachment_list),
            audio_url=audio_url,
        )
        await self._commit(self._reconciler.append_optimistic(self._state, optimistic, now))
        if from_pipeline:
            self.pipeline.clear()

        try:
            confirmed = await self._store.send_message(
                thread.id, content, attachment_list or None, audio_url
            )
        except Exception as exc:  # noqa: BLE001 - every failure rolls back the optimistic entry.
            error = exc if isinstance(exc, TransportError) else TransportError(str(exc))
            LOGGER.warning(
                "session.send.failed",
                extra={
                    "event": "session.send.failed",
                    "local_id": optimistic.id,
                    "reason": str(exc),
                },
            )
            if generation == self._generation:
                await self._commit(
                    self._reconciler.discard(self._state, optimistic.id, self._clock())
                )
            await self._notice(
                "error", "Failed to send", str(error) or "Could not send message. Please try again."
            )
            return SendResult(ok=False, error=error)

        if generation == self._generation:
            await self._commit(
                self._reconciler.acknowledge(
                    self._state, optimistic.id, confirmed, self._clock()
                )
            )
        return SendResult(ok=True, message=confirmed)

    async def start_recording(self, recorder: RecordingController) -> bool:
        try:
            started = await recorder.start()
        except DeviceError as exc:
            await self._notice(
                "error",
                "Microphone Access Denied",
                f"Please allow microphone access to use voice chat. ({exc})",
            )
            return False
        if started:
            await self._notice("info", "Recording Started", "Voice recording in progress...")
        return started

    async def stop_recording(self, recorder: RecordingController) -> bool:
        try:
            payload = await recorder.stop()
        except DeviceError as exc:
            await self._notice("error", "Recording Failed", str(exc))
            return False
        return payload is not None

    async def send_voice_message(self, recorder: RecordingController) -> SendResult:
        """Upload the stopped recording, then send a message referencing it."""
        if self.pipeline is None:
            return await self._reject(
                MessageValidationError("Voice messages need an upload service.")
            )
        elapsed = recorder.elapsed_seconds
        handle = recorder.hand_off(self.pipeline)
        if handle is None:
            return await self._reject(MessageValidationError("No voice message recorded."))

        handle = await self.pipeline.wait(handle.id)
        self.pipeline.remove(handle.id)
        if handle.status != UploadStatus.COMPLETED or not handle.url:
            error = handle.error or UploadError(f"Upload of {handle.name} did not complete.")
            await self._notice(
                "error", "Upload Failed", "Failed to upload voice message. Please try again."
            )
            return SendResult(ok=False, error=error)

        return await self.send_message(
            f"🎤 Voice message ({format_recording_time(elapsed)})",
            attachments=[],
            audio_url=handle.url,
        )

    # -- internals ----------------------------------------------------------

    async def _commit(self, result: ReconcileResult, *, initial: bool = False) -> None:
        self._state = result.state
        if result.changed or initial:
            messages = list(self._state.messages)
            thread = self._active
            scroll = self._scroll.observe(len(messages), initial_load=initial)
            await self.bus.publish(
                TIMELINE_CHANGED,
                TimelineChanged(
                    thread_id=thread.id if thread else "",
                    messages=messages,
                    scroll_to_latest=scroll,
                    initial_load=initial,
                ),
                source="session",
            )
            self.typing.observe(messages)
            if not initial and result.added:
                self._notifications.dispatch(result.added, thread)
        self._schedule_status_refresh()

    def _schedule_status_refresh(self) -> None:
        existing = self._tasks.get(_STATUS_TIMER)
        if existing is not None and existing is not asyncio.current_task():
            existing.cancel()
        self._tasks.discard(_STATUS_TIMER)

        now = self._clock()
        due = self._reconciler.next_refresh_at(self._state, now)
        if due is None:
            return
        delay = max(0.0, (due - now).total_seconds())
        self._tasks.spawn(self._refresh_after(delay, self._generation), name=_STATUS_TIMER)

    async def _refresh_after(self, delay: float, generation: int) -> None:
        await asyncio.sleep(delay)
        if generation != self._generation:
            return
        await self._commit(self._reconciler.refresh(self._state, self._clock()))

    async def _reject(self, error: ThreadSyncError) -> SendResult:
        LOGGER.info(
            "session.send.rejected",
            extra={"event": "session.send.rejected", "reason": str(error)},
        )
        await self._notice("error", "Cannot send", str(error))
        return SendResult(ok=False, error=error)

    async def _notice(self, level: str, title: str, detail: str = "") -> None:
        await self.bus.publish(NOTICE, Notice(level=level, title=title, detail=detail), source="session")

    def _on_typing_change(self, typing: bool) -> None:
        thread = self._active
        if thread is None:
            return
        self._tasks.spawn(
            self.bus.publish(
                TYPING_CHANGED, TypingChanged(thread_id=thread.id, typing=typing), source="session"
            )
        )

    def _on_upload_change(self, handle: UploadHandle) -> None:
        if handle.status != UploadStatus.FAILED or not handle.in_tray:
            return
        self._tasks.spawn(
            self._notice(
                "error",
                "Upload Failed",
                str(handle.error) if handle.error else f"Failed to upload {handle.name}.",
            )
        )
