"""Event bus used by clients and the transport channel.

SignalBus is a pyee ``AsyncIOEventEmitter`` whose subscribers are isolated
from one another: a subscriber that raises (synchronously or from its
coroutine) is logged and every remaining subscriber still receives the event.
Coroutine subscribers are scheduled as tasks, in subscription order.

Unlike the stock emitter, an ``error`` event without subscribers is not
re-raised; clients use ``error`` as an ordinary notification.
"""

import asyncio
import logging
from typing import Any, Callable, Set

from pyee.asyncio import AsyncIOEventEmitter

logger = logging.getLogger(__name__)


class SignalBus(AsyncIOEventEmitter):
    """Observer registry with per-subscriber failure isolation."""

    def __init__(self, name: str = "bus"):
        super().__init__()
        self.name = name
        self._pending: Set[asyncio.Future] = set()

    def _emit_run(self, f: Callable, args: tuple, kwargs: dict):
        try:
            result: Any = f(*args, **kwargs)
        except Exception:
            logger.exception(f"[{self.name}] subscriber {f!r} failed")
            return

        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Future):
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[{self.name}] subscriber task failed: {exc!r}")

    def _emit_handle_potential_error(self, event: str, error: Any):
        if event == "error":
            logger.debug(f"[{self.name}] unobserved error event: {error!r}")

    async def drain(self):
        """Wait until every scheduled subscriber task has finished.

        Tasks scheduled while draining are awaited too.
        """
        while True:
            running = [task for task in self._pending if not task.done()]
            if not running:
                return
            await asyncio.gather(*running, return_exceptions=True)
