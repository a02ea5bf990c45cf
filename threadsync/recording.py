"""Voice message capture as a lock-protected state machine."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
import logging
from typing import TYPE_CHECKING, Any, Protocol

from .exceptions import DeviceError
from .models import utcnow
from .task_manager import TaskManager
from .uploads import UploadPayload

if TYPE_CHECKING:
    from .uploads import AttachmentPipeline, UploadHandle

LOGGER = logging.getLogger(__name__)

_TICKER = "ticker"


class RecordingState(str, Enum):
    """Lifecycle of a single microphone capture."""

    IDLE = "idle"
    RECORDING = "recording"
    STOPPED = "stopped"
    CANCELED = "canceled"


class AudioCapture(Protocol):
    """An open microphone stream; ``close`` releases the device."""

    async def finalize(self) -> bytes: ...

    def close(self) -> None: ...


class AudioSource(Protocol):
    async def open(self) -> AudioCapture: ...


@dataclass
class RecordingSession:
    state: RecordingState = RecordingState.IDLE
    elapsed_seconds: int = 0
    payload: UploadPayload | None = None


def format_recording_time(seconds: int) -> str:
    """Render elapsed seconds as ``m:ss``."""
    minutes, secs = divmod(max(0, int(seconds)), 60)
    return f"{minutes}:{secs:02d}"


class RecordingController:
    """Own the microphone for the duration of one recording session.

    ``idle -> recording -> stopped -> idle`` on the happy path and
    ``recording -> canceled -> idle`` when the user backs out. The device is
    released exactly once for every successful acquisition, whichever way
    the session ends.
    """

    def __init__(
        self,
        source: AudioSource,
        *,
        tick_seconds: float = 1.0,
        mime_type: str = "audio/webm",
        max_seconds: int = 600,
        on_change: Callable[[RecordingSession], Any] | None = None,
    ) -> None:
        self._source = source
        self.tick_seconds = tick_seconds
        self.mime_type = mime_type
        self.max_seconds = max_seconds
        self._on_change = on_change
        self._lock = asyncio.Lock()
        self._session = RecordingSession()
        self._capture: AudioCapture | None = None
        self._tasks = TaskManager(owner="recording")

    @classmethod
    def from_config(
        cls,
        source: AudioSource,
        config: dict[str, Any],
        on_change: Callable[[RecordingSession], Any] | None = None,
    ) -> RecordingController:
        recording_cfg = config.get("recording", {})
        return cls(
            source,
            tick_seconds=float(recording_cfg.get("tick_seconds", 1.0)),
            mime_type=str(recording_cfg.get("mime_type", "audio/webm")),
            max_seconds=int(recording_cfg.get("max_seconds", 600)),
            on_change=on_change,
        )

    @property
    def state(self) -> RecordingState:
        return self._session.state

    @property
    def elapsed_seconds(self) -> int:
        return self._session.elapsed_seconds

    @property
    def payload(self) -> UploadPayload | None:
        return self._session.payload

    async def start(self) -> bool:
        """Acquire the microphone and begin recording.

        Returns False without side effects when a session is already active.
        Raises DeviceError when the device cannot be acquired; the controller
        then stays idle.
        """
        async with self._lock:
            if self._session.state != RecordingState.IDLE:
                LOGGER.debug("Ignoring start while %s", self._session.state.value)
                return False
            try:
                capture = await self._source.open()
            except DeviceError:
                raise
            except Exception as exc:  # noqa: BLE001 - permission and hardware failures alike.
                LOGGER.warning(
                    "recording.device_unavailable",
                    extra={"event": "recording.device_unavailable", "reason": str(exc)},
                )
                raise DeviceError(f"Microphone unavailable: {exc}") from exc
            self._capture = capture
            self._session = RecordingSession(state=RecordingState.RECORDING)
            self._tasks.spawn(self._tick_loop(), name=_TICKER)
            LOGGER.info("recording.started", extra={"event": "recording.started"})
        self._notify()
        return True

    async def stop(self) -> UploadPayload | None:
        """Finish recording and keep the finalized payload for sending."""
        async with self._lock:
            if self._session.state != RecordingState.RECORDING:
                return None
            await self._stop_ticker()
            capture = self._capture
            try:
                data = await capture.finalize() if capture is not None else b""
            except Exception as exc:  # noqa: BLE001 - any capture failure aborts the session.
                self._release()
                self._session = RecordingSession()
                self._notify()
                raise DeviceError(f"Recording could not be finalized: {exc}") from exc
            self._release()
            extension = self.mime_type.split("/", 1)[1].split(";", 1)[0]
            stamp = utcnow().strftime("%Y%m%dT%H%M%S")
            payload = UploadPayload(
                name=f"voice-message-{stamp}.{extension}",
                content=data,
                mime_type=self.mime_type,
            )
            self._session.state = RecordingState.STOPPED
            self._session.payload = payload
            LOGGER.info(
                "recording.stopped",
                extra={
                    "event": "recording.stopped",
                    "elapsed_seconds": self._session.elapsed_seconds,
                    "size_bytes": payload.size_bytes,
                },
            )
        self._notify()
        return payload

    async def cancel(self) -> bool:
        """Abort an active recording and discard everything captured."""
        async with self._lock:
            if self._session.state != RecordingState.RECORDING:
                return False
            await self._stop_ticker()
            self._release()
            self._session = RecordingSession(state=RecordingState.CANCELED)
        self._notify()
        self._session = RecordingSession()
        self._notify()
        return True

    def discard(self) -> bool:
        """Throw away a stopped recording without sending it."""
        if self._session.state != RecordingState.STOPPED:
            return False
        self._session = RecordingSession()
        self._notify()
        return True

    def hand_off(self, pipeline: AttachmentPipeline) -> UploadHandle | None:
        """Submit the finalized payload for upload and return to idle."""
        if self._session.state != RecordingState.STOPPED or self._session.payload is None:
            return None
        handle = pipeline.submit(self._session.payload, tray=False)
        self._session = RecordingSession()
        self._notify()
        return handle

    async def aclose(self) -> None:
        """Tear down: stop the ticker and release the device if still held."""
        async with self._lock:
            await self._tasks.cancel_all()
            was_active = self._session.state != RecordingState.IDLE
            self._release()
            self._session = RecordingSession()
        if was_active:
            self._notify()

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.tick_seconds)
            if self._session.state != RecordingState.RECORDING:
                return
            self._session.elapsed_seconds += 1
            self._notify()
            if self._session.elapsed_seconds >= self.max_seconds:
                try:
                    await self.stop()
                except DeviceError as exc:
                    LOGGER.warning(f"Automatic stop failed: {exc}")
                return

    async def _stop_ticker(self) -> None:
        task = self._tasks.get(_TICKER)
        if task is asyncio.current_task():
            self._tasks.discard(_TICKER)
            return
        await self._tasks.cancel(_TICKER)

    def _release(self) -> None:
        capture, self._capture = self._capture, None
        if capture is None:
            return
        try:
            capture.close()
        except Exception as exc:  # noqa: BLE001 - release is best effort, state still resets.
            LOGGER.warning(f"Microphone release raised: {exc}")
        LOGGER.info(
            "recording.device_released", extra={"event": "recording.device_released"}
        )

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self._session)
        except Exception as exc:  # noqa: BLE001 - listeners must not break capture.
            LOGGER.error(f"Recording listener failed: {exc}")
