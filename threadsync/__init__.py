"""Top-level package for threadsync."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .backend import HttpChatBackend
    from .config import ensure_config_dir, load_config
    from .exceptions import (
        ConfigValidationError,
        DeviceError,
        MessageValidationError,
        ThreadSyncError,
        TransportError,
        UploadError,
    )
    from .models import Attachment, Message, MessageStatus, Thread
    from .reconciler import TimelineReconciler, TimelineState
    from .recording import RecordingController
    from .session import ThreadSession
    from .uploads import AttachmentPipeline

__all__ = [
    "Attachment",
    "AttachmentPipeline",
    "ConfigValidationError",
    "DeviceError",
    "HttpChatBackend",
    "Message",
    "MessageStatus",
    "MessageValidationError",
    "RecordingController",
    "Thread",
    "ThreadSession",
    "ThreadSyncError",
    "TimelineReconciler",
    "TimelineState",
    "TransportError",
    "UploadError",
    "ensure_config_dir",
    "load_config",
]

_EXCEPTIONS = {
    "ConfigValidationError",
    "DeviceError",
    "MessageValidationError",
    "ThreadSyncError",
    "TransportError",
    "UploadError",
}


def __getattr__(name: str) -> Any:
    """Lazily import symbols so the models stay importable without httpx."""
    if name in {"ensure_config_dir", "load_config"}:
        from .config import ensure_config_dir, load_config

        return {"ensure_config_dir": ensure_config_dir, "load_config": load_config}[name]
    if name in _EXCEPTIONS:
        from . import exceptions

        return getattr(exceptions, name)
    if name in {"Attachment", "Message", "MessageStatus", "Thread"}:
        from . import models

        return getattr(models, name)
    if name in {"TimelineReconciler", "TimelineState"}:
        from .reconciler import TimelineReconciler, TimelineState

        return {"TimelineReconciler": TimelineReconciler, "TimelineState": TimelineState}[name]
    if name == "HttpChatBackend":
        from .backend import HttpChatBackend

        return HttpChatBackend
    if name == "RecordingController":
        from .recording import RecordingController

        return RecordingController
    if name == "AttachmentPipeline":
        from .uploads import AttachmentPipeline

        return AttachmentPipeline
    if name == "ThreadSession":
        from .session import ThreadSession

        return ThreadSession
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
