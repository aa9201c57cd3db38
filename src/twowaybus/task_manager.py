"""Lifecycle tracking for background work started by a bus."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Coroutine
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


class TaskManager:
    """Hold strong references to background futures until they finish.

    The event loop only keeps weak references to running tasks, so work that
    nobody awaits (emit fan-outs, awaitables returned to ``emit``, race
    losers) is registered here. Failures are logged once the future settles
    so they are not silently lost.
    """

    def __init__(self, owner: str = "bus", log_exceptions: bool = True) -> None:
        self._owner = owner
        self._log_exceptions = log_exceptions
        self._pending: set[asyncio.Future[Any]] = set()

    def __len__(self) -> int:
        return sum(1 for future in self._pending if not future.done())

    def spawn(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Schedule ``coro`` on the running loop and track the resulting task."""
        task = asyncio.create_task(coro, name=name)
        self._register(task)
        return task

    def track(self, awaitable: Awaitable[Any]) -> asyncio.Future[Any]:
        """Wrap ``awaitable`` in a future (if needed) and track it until done."""
        future = asyncio.ensure_future(awaitable)
        self._register(future)
        return future

    def _register(self, future: asyncio.Future[Any]) -> None:
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)
        future.add_done_callback(self._log_exception)

    def _log_exception(self, future: asyncio.Future[Any]) -> None:
        """Log exceptions from background futures; reading them also marks them retrieved."""
        if future.cancelled():
            return
        exc = future.exception()
        if exc is None or not self._log_exceptions:
            return
        LOGGER.warning(
            "task.background.exception",
            extra={
                "event": "task.background.exception",
                "owner": self._owner,
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
        )

    async def drain(self) -> None:
        """Await every tracked future, including ones registered while waiting."""
        while True:
            pending = [future for future in self._pending if not future.done()]
            if not pending:
                return
            await asyncio.wait(pending)

    async def cancel_all(self) -> None:
        """Cancel every unfinished future and await them all."""
        pending = [future for future in self._pending if not future.done()]
        for future in pending:
            future.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._pending.clear()
