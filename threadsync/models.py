"""Conversation data model shared by the reconciler, session and backend."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

TEMP_ID_PREFIX = "temp-"


def utcnow() -> datetime:
    """Return the current instant as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_local_id() -> str:
    """Return a temporary id for an optimistic message."""
    return f"{TEMP_ID_PREFIX}{uuid4().hex}"


def _ensure_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MessageStatus(str, Enum):
    """Delivery status of a message, ordered pending -> read."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        """Position in the forward progression; failed sits outside it."""
        return _STATUS_RANK[self]


_STATUS_RANK: dict[MessageStatus, int] = {
    MessageStatus.FAILED: -1,
    MessageStatus.PENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}


class AttachmentKind(str, Enum):
    """Attachment categories understood by the chat timeline."""

    IMAGE = "image"
    DOCUMENT = "document"
    AUDIO = "audio"

    @classmethod
    def from_mime_type(cls, mime_type: str) -> AttachmentKind:
        """Infer the attachment kind from a MIME type."""
        normalized = (mime_type or "").strip().lower()
        if normalized.startswith("image/"):
            return cls.IMAGE
        if normalized.startswith("audio/"):
            return cls.AUDIO
        return cls.DOCUMENT


class Attachment(BaseModel):
    """A file referenced by a message; ``url`` is set once the upload completed."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    name: str
    kind: AttachmentKind = Field(default=AttachmentKind.DOCUMENT, alias="type")
    url: str | None = None
    size_bytes: int = Field(default=0, alias="size", ge=0)
    uploaded_at: datetime | None = Field(default=None, alias="uploadedAt")

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, value: Any) -> AttachmentKind:
        if isinstance(value, AttachmentKind):
            return value
        normalized = str(value or "").strip().lower()
        # Older payloads tag whiteboard exports as "drawing".
        if normalized in {"image", "drawing"}:
            return AttachmentKind.IMAGE
        if normalized == "audio":
            return AttachmentKind.AUDIO
        return AttachmentKind.DOCUMENT

    @field_validator("size_bytes", mode="before")
    @classmethod
    def _normalize_size(cls, value: Any) -> int:
        if value is None:
            return 0
        return value

    @field_validator("uploaded_at")
    @classmethod
    def _uploaded_at_utc(cls, value: datetime | None) -> datetime | None:
        return _ensure_utc(value)

    @property
    def is_completed(self) -> bool:
        return bool(self.url)

    def to_wire(self) -> dict[str, Any]:
        """Serialize using the backend's camelCase field names."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class Message(BaseModel):
    """One timeline entry, either optimistic (temporary id) or authoritative."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    thread_id: str = Field(default="", alias="threadId")
    sender_id: str = Field(alias="senderId")
    sender_name: str = Field(default="", alias="senderName")
    sender_avatar: str | None = Field(default=None, alias="senderAvatar")
    content: str = ""
    timestamp: datetime
    status: MessageStatus = MessageStatus.SENT
    attachments: tuple[Attachment, ...] = ()
    audio_url: str | None = Field(default=None, alias="audioUrl")

    @field_validator("content", "sender_name", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> str:
        if value is None:
            return ""
        return value

    @field_validator("attachments", mode="before")
    @classmethod
    def _none_as_no_attachments(cls, value: Any) -> Any:
        if value is None:
            return ()
        return value

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> MessageStatus:
        if isinstance(value, MessageStatus):
            return value
        try:
            return MessageStatus(str(value).strip().lower())
        except ValueError:
            return MessageStatus.SENT

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: datetime) -> datetime:
        return _ensure_utc(value)  # type: ignore[return-value]

    @property
    def is_optimistic(self) -> bool:
        return self.id.startswith(TEMP_ID_PREFIX)

    def attachment_key(self) -> frozenset[str]:
        """Identity of the attachment set, independent of attachment ids."""
        return frozenset(item.url or item.name for item in self.attachments)

    def with_status(self, status: MessageStatus) -> Message:
        if status == self.status:
            return self
        return self.model_copy(update={"status": status})


class Thread(BaseModel):
    """A conversation with a single remote participant."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    participant_id: str = Field(default="", alias="participantId")
    participant_name: str = Field(default="", alias="participantName")
    participant_avatar: str | None = Field(default=None, alias="participantAvatar")
    last_message: str = Field(default="", alias="lastMessage")
    last_message_timestamp: datetime | None = Field(
        default=None, alias="lastMessageTimestamp"
    )
    # Server-rendered relative time ("5 min ago"); display only.
    last_message_time: str = Field(default="", alias="lastMessageTime")
    unread_count: int = Field(default=0, alias="unreadCount", ge=0)
    is_online: bool = Field(default=False, alias="isOnline")
    is_maintainer: bool = Field(default=False, alias="isMaintainer")

    @field_validator("last_message", "last_message_time", "participant_name", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> str:
        if value is None:
            return ""
        return value

    @field_validator("unread_count", mode="before")
    @classmethod
    def _none_as_zero(cls, value: Any) -> int:
        if value is None:
            return 0
        return value

    @field_validator("last_message_timestamp")
    @classmethod
    def _last_message_utc(cls, value: datetime | None) -> datetime | None:
        return _ensure_utc(value)
