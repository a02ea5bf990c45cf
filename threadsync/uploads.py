"""Attachment upload pipeline with per-item progress tracking."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import logging
import mimetypes
from pathlib import Path
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import aiofiles

from .exceptions import UploadError
from .models import Attachment, AttachmentKind, utcnow
from .task_manager import TaskManager

if TYPE_CHECKING:
    from .backend import UploadService

LOGGER = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class UploadPayload:
    """Binary content waiting to be uploaded."""

    name: str
    content: bytes
    mime_type: str = DEFAULT_MIME_TYPE

    @property
    def size_bytes(self) -> int:
        return len(self.content)

    @property
    def kind(self) -> AttachmentKind:
        return AttachmentKind.from_mime_type(self.mime_type)

    @classmethod
    async def from_path(cls, path: str | Path) -> UploadPayload:
        """Read a file from disk without blocking the event loop."""
        resolved = Path(path).expanduser()
        try:
            async with aiofiles.open(resolved, "rb") as handle:
                content = await handle.read()
        except OSError as exc:
            raise UploadError(f"Unable to read {resolved.name}: {exc}") from exc
        mime_type, _ = mimetypes.guess_type(resolved.name)
        return cls(
            name=resolved.name, content=content, mime_type=mime_type or DEFAULT_MIME_TYPE
        )


class UploadStatus(str, Enum):
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class UploadHandle:
    """Visible state of one submitted upload."""

    id: str
    name: str
    kind: AttachmentKind
    size_bytes: int
    uploaded_at: datetime
    status: UploadStatus = UploadStatus.UPLOADING
    progress: float = 0.0
    url: str | None = None
    error: UploadError | None = None
    in_tray: bool = True
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.status != UploadStatus.UPLOADING

    def to_attachment(self) -> Attachment:
        """Reference the uploaded file from a message."""
        if self.status != UploadStatus.COMPLETED or not self.url:
            raise UploadError(f"Upload {self.name} has not completed.")
        return Attachment(
            id=self.id,
            name=self.name,
            kind=self.kind,
            url=self.url,
            size_bytes=self.size_bytes,
            uploaded_at=self.uploaded_at,
        )


class AttachmentPipeline:
    """Drive independent uploads and keep the visible attachment tray.

    Every submission runs as its own task: one failure never touches another
    handle, and removing a handle cancels its task and silences any progress
    the service still reports for it.
    """

    def __init__(
        self,
        service: UploadService,
        *,
        max_bytes: int = 50 * 1024 * 1024,
        on_change: Callable[[UploadHandle], Any] | None = None,
    ) -> None:
        self._service = service
        self.max_bytes = max_bytes
        self._on_change = on_change
        self._handles: dict[str, UploadHandle] = {}
        self._tasks = TaskManager(owner="uploads")

    @classmethod
    def from_config(
        cls,
        service: UploadService,
        config: dict[str, Any],
        on_change: Callable[[UploadHandle], Any] | None = None,
    ) -> AttachmentPipeline:
        uploads_cfg = config.get("uploads", {})
        return cls(
            service,
            max_bytes=int(uploads_cfg.get("max_bytes", 50 * 1024 * 1024)),
            on_change=on_change,
        )

    @property
    def handles(self) -> list[UploadHandle]:
        """Tray handles in submission order."""
        return [h for h in self._handles.values() if h.in_tray]

    @property
    def has_pending(self) -> bool:
        return any(not h.is_terminal for h in self._handles.values())

    def get(self, handle_id: str) -> UploadHandle | None:
        return self._handles.get(handle_id)

    def submit(self, payload: UploadPayload, *, tray: bool = True) -> UploadHandle:
        """Register ``payload`` and start uploading it in the background.

        Handles submitted with ``tray=False`` belong to their caller: they are
        never listed, attached or cleared with the tray.
        """
        handle = UploadHandle(
            id=f"upload-{uuid4().hex[:12]}",
            name=payload.name,
            kind=payload.kind,
            size_bytes=payload.size_bytes,
            uploaded_at=utcnow(),
            in_tray=tray,
        )
        self._handles[handle.id] = handle

        if payload.size_bytes > self.max_bytes:
            max_mb = self.max_bytes / (1024 * 1024)
            self._finish(
                handle,
                error=UploadError(f"{payload.name} is too large (max {max_mb:.1f}MB)"),
            )
            return handle

        self._notify(handle)
        self._tasks.spawn(self._run(handle, payload), name=handle.id)
        return handle

    def remove(self, handle_id: str) -> bool:
        """Drop a handle from the tray; safe before or after completion."""
        handle = self._handles.pop(handle_id, None)
        if handle is None:
            return False
        task = self._tasks.get(handle_id)
        self._tasks.discard(handle_id)
        if task is not None and not task.done():
            task.cancel()
        handle._done.set()
        return True

    async def wait(self, handle_id: str) -> UploadHandle:
        """Wait until the handle completed, failed or was removed."""
        handle = self._handles.get(handle_id)
        if handle is None:
            raise KeyError(handle_id)
        await handle._done.wait()
        return handle

    def completed_attachments(self) -> list[Attachment]:
        return [
            h.to_attachment()
            for h in self._handles.values()
            if h.in_tray and h.status == UploadStatus.COMPLETED
        ]

    def clear(self) -> None:
        for handle in self.handles:
            self.remove(handle.id)

    async def aclose(self) -> None:
        await self._tasks.cancel_all()
        for handle_id in list(self._handles):
            self.remove(handle_id)

    def _visible(self, handle: UploadHandle) -> bool:
        return self._handles.get(handle.id) is handle

    async def _run(self, handle: UploadHandle, payload: UploadPayload) -> None:
        try:
            result = await self._service.upload_file(
                payload, lambda percent: self._on_progress(handle, percent)
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - the service is a black box; isolate its failure.
            if not self._visible(handle):
                return
            error = (
                exc
                if isinstance(exc, UploadError)
                else UploadError(f"Failed to upload {handle.name}: {exc}")
            )
            LOGGER.warning(
                "uploads.failed",
                extra={
                    "event": "uploads.failed",
                    "handle_id": handle.id,
                    "file_name": handle.name,
                    "reason": str(exc),
                },
            )
            self._finish(handle, error=error)
            return

        if not self._visible(handle):
            return
        self._finish(handle, url=result.url)

    def _on_progress(self, handle: UploadHandle, percent: float) -> None:
        if not self._visible(handle) or handle.is_terminal:
            return
        clamped = min(100.0, max(0.0, float(percent)))
        if clamped <= handle.progress:
            return
        handle.progress = clamped
        self._notify(handle)

    def _finish(
        self,
        handle: UploadHandle,
        *,
        url: str | None = None,
        error: UploadError | None = None,
    ) -> None:
        if error is not None:
            handle.status = UploadStatus.FAILED
            handle.error = error
        else:
            handle.status = UploadStatus.COMPLETED
            handle.url = url
            handle.progress = 100.0
        self._notify(handle)
        handle._done.set()

    def _notify(self, handle: UploadHandle) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(handle)
        except Exception as exc:  # noqa: BLE001 - a broken listener must not stall uploads.
            LOGGER.error(f"Upload listener failed: {exc}")
