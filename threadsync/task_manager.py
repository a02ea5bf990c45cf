"""Structured lifecycle manager for the asyncio tasks a session owns."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


class TaskManager:
    """Track named and anonymous background tasks and tear them down together.

    Named tasks are singletons per name (the poll loop, the recording ticker);
    anonymous tasks are fire-and-forget work such as uploads and status
    timers. Finished tasks drop out on their own and an unexpected exception
    is logged instead of surfacing as "never retrieved".
    """

    def __init__(self, owner: str = "") -> None:
        self._owner = owner
        self._named: dict[str, asyncio.Task[Any]] = {}
        self._anonymous: set[asyncio.Task[Any]] = set()

    def spawn(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Schedule ``coro`` on the running loop and track the task."""
        task = asyncio.create_task(coro)
        self.add(task, name=name)
        return task

    def add(self, task: asyncio.Task[Any], name: str | None = None) -> None:
        """Register a task, optionally under a unique name.

        Registering a name that is already running replaces the entry without
        cancelling the old task; call :meth:`cancel` first for that.
        """
        if name is not None:
            self._named[name] = task
            task.add_done_callback(lambda done: self._on_named_done(name, done))
        else:
            self._anonymous.add(task)
            task.add_done_callback(self._on_anonymous_done)

    def get(self, name: str) -> asyncio.Task[Any] | None:
        """Return the named task or ``None`` if not registered."""
        return self._named.get(name)

    def running(self, name: str) -> bool:
        task = self._named.get(name)
        return task is not None and not task.done()

    async def cancel(self, name: str) -> None:
        """Cancel a named task and await its completion."""
        task = self._named.pop(name, None)
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def cancel_all(self) -> None:
        """Cancel every tracked task and await them all."""
        all_tasks: list[asyncio.Task[Any]] = list(self._named.values()) + [
            t for t in self._anonymous if not t.done()
        ]
        self._named.clear()
        self._anonymous.clear()
        for task in all_tasks:
            if not task.done():
                task.cancel()
        for task in all_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:  # noqa: BLE001 - already logged by the done callback.
                pass

    def discard(self, name: str) -> None:
        """Remove a named task from tracking without cancelling it."""
        self._named.pop(name, None)

    def __len__(self) -> int:
        named = sum(1 for t in self._named.values() if not t.done())
        return named + sum(1 for t in self._anonymous if not t.done())

    def _on_named_done(self, name: str, task: asyncio.Task[Any]) -> None:
        if self._named.get(name) is task:
            del self._named[name]
        self._log_failure(task, name)

    def _on_anonymous_done(self, task: asyncio.Task[Any]) -> None:
        self._anonymous.discard(task)
        self._log_failure(task, None)

    def _log_failure(self, task: asyncio.Task[Any], name: str | None) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        LOGGER.error(
            "tasks.failed",
            extra={
                "event": "tasks.failed",
                "owner": self._owner,
                "task": name or "anonymous",
                "reason": repr(exc),
            },
        )
