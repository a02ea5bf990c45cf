"""Domain exception hierarchy for the conversation sync engine."""

from __future__ import annotations


class ThreadSyncError(RuntimeError):
    """Base class for all domain-level sync errors."""


class TransportError(ThreadSyncError):
    """Raised when a fetch, poll or send against the backend fails."""


class UploadError(ThreadSyncError):
    """Raised when a single attachment upload fails."""


class DeviceError(ThreadSyncError):
    """Raised when the microphone cannot be acquired or read."""


class MessageValidationError(ThreadSyncError):
    """Raised when a send carries no content, attachments or audio."""


class ConfigValidationError(ThreadSyncError):
    """Raised when configuration cannot be validated safely."""
