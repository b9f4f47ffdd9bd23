"""Detached task dispatch for webhook processing."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class TaskDispatcher:
    """Runs message processing after the webhook response has been sent.

    Nothing awaits a dispatched task; failures go to the log with the
    caller-supplied context. Stopping an account does not cancel tasks
    already running.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[None]] = set()

    def dispatch_detached(self, coro: Coroutine[Any, Any, None], *, context: str) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda done: self._on_done(done, context))

    def _on_done(self, task: asyncio.Task[None], context: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s: %s", context, exc, exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Wait until every dispatched task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
