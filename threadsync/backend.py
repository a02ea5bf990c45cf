"""Collaborator contracts consumed by the sync engine, plus an HTTP implementation.

The engine only depends on the protocols below. ``HttpChatBackend`` speaks the
REST API of the chat server (``{success, data, error}`` envelopes) and is what
the CLI wires in; tests substitute in-memory fakes.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, Any, Protocol
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from .exceptions import ThreadSyncError, TransportError, UploadError
from .models import Attachment, Message, Thread

if TYPE_CHECKING:
    from .signals import NotificationIntent
    from .uploads import UploadPayload

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


@dataclass(frozen=True)
class UploadResult:
    """Where an uploaded payload can be fetched from."""

    url: str
    id: str | None = None


class ThreadDirectory(Protocol):
    async def get_threads(self) -> list[Thread]: ...

    async def get_maintainer_thread(self) -> Thread: ...


class MessageStore(Protocol):
    async def get_messages(self, thread_id: str) -> list[Message]: ...

    async def send_message(
        self,
        thread_id: str,
        content: str,
        attachments: Sequence[Attachment] | None = None,
        audio_url: str | None = None,
    ) -> Message: ...


class UploadService(Protocol):
    async def upload_file(
        self, payload: UploadPayload, on_progress: ProgressCallback
    ) -> UploadResult: ...


class NotificationSink(Protocol):
    def notify(self, intent: NotificationIntent) -> None: ...


class HttpChatBackend:
    """ThreadDirectory, MessageStore and UploadService over the chat REST API."""

    def __init__(
        self,
        base_url: str,
        *,
        user_id: str,
        user_name: str,
        user_avatar: str = "",
        timeout: float = 15.0,
        upload_folder: str = "chat",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.user_id = user_id
        self.user_name = user_name
        self.user_avatar = user_avatar
        self.upload_folder = upload_folder
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> HttpChatBackend:
        backend_cfg = config.get("backend", {})
        user_cfg = config.get("user", {})
        return cls(
            str(backend_cfg.get("base_url", "http://localhost:3001/api")),
            user_id=str(user_cfg.get("id", "user-1")),
            user_name=str(user_cfg.get("name", "You")),
            user_avatar=str(user_cfg.get("avatar", "")),
            timeout=float(backend_cfg.get("timeout_seconds", 15.0)),
            upload_folder=str(backend_cfg.get("upload_folder", "chat")),
        )

    async def __aenter__(self) -> HttpChatBackend:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {"x-user-id": self.user_id, "x-user-name": self.user_name}
        if self.user_avatar:
            headers["x-user-avatar"] = self.user_avatar
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        error_cls: type[ThreadSyncError] = TransportError,
        **kwargs: Any,
    ) -> Any:
        """Perform a request and unwrap the response envelope's ``data``."""
        try:
            response = await self._client.request(
                method, path, headers=self._headers(), **kwargs
            )
        except httpx.HTTPError as exc:
            raise error_cls(f"{method} {path} failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code >= 400:
            detail = payload.get("error") if isinstance(payload, dict) else None
            raise error_cls(
                f"{method} {path} returned HTTP {response.status_code}"
                + (f": {detail}" if detail else "")
            )
        if not isinstance(payload, dict):
            raise error_cls(f"{method} {path} returned a malformed response.")
        if not payload.get("success"):
            raise error_cls(str(payload.get("error") or f"{method} {path} failed."))
        return payload.get("data")

    async def get_maintainer_thread(self) -> Thread:
        data = await self._request("GET", "/chat/maintainer-thread")
        try:
            thread = Thread.model_validate(data)
        except ValidationError as exc:
            raise TransportError(f"Malformed maintainer thread: {exc}") from exc
        return thread.model_copy(update={"is_maintainer": True})

    async def get_threads(self) -> list[Thread]:
        data = await self._request("GET", "/chat/threads")
        try:
            return [Thread.model_validate(row) for row in data or []]
        except (TypeError, ValidationError) as exc:
            raise TransportError(f"Malformed thread list: {exc}") from exc

    async def get_messages(self, thread_id: str) -> list[Message]:
        data = await self._request(
            "GET", f"/chat/threads/{quote(thread_id, safe='')}/messages"
        )
        try:
            return [
                Message.model_validate({**row, "threadId": thread_id})
                for row in data or []
            ]
        except (TypeError, ValidationError) as exc:
            raise TransportError(f"Malformed message list: {exc}") from exc

    async def send_message(
        self,
        thread_id: str,
        content: str,
        attachments: Sequence[Attachment] | None = None,
        audio_url: str | None = None,
    ) -> Message:
        body: dict[str, Any] = {
            "content": content,
            "senderId": self.user_id,
            "senderName": self.user_name,
            "senderAvatar": self.user_avatar or None,
            "attachments": [item.to_wire() for item in attachments]
            if attachments
            else None,
            "audioUrl": audio_url,
        }
        data = await self._request(
            "POST", f"/chat/threads/{quote(thread_id, safe='')}/messages", json=body
        )
        try:
            return Message.model_validate({**(data or {}), "threadId": thread_id})
        except (TypeError, ValidationError) as exc:
            raise TransportError(f"Malformed send response: {exc}") from exc

    async def upload_file(
        self, payload: UploadPayload, on_progress: ProgressCallback
    ) -> UploadResult:
        # Multipart bodies go out in one piece; progress is reported at the edges.
        on_progress(0.0)
        data = await self._request(
            "POST",
            "/files/upload",
            error_cls=UploadError,
            files={"file": (payload.name, payload.content, payload.mime_type)},
            data={"folder": self.upload_folder},
        )
        url = data.get("url") if isinstance(data, dict) else None
        if not isinstance(url, str) or not url:
            raise UploadError(f"Upload of {payload.name} returned no URL.")
        on_progress(100.0)
        LOGGER.debug(
            "backend.upload.completed",
            extra={"event": "backend.upload.completed", "file_name": payload.name},
        )
        return UploadResult(url=url, id=data.get("id"))
