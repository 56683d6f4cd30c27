from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class DebounceTimer:
    """Runs ``callback`` once after ``delay_s`` of quiet.

    Every ``reset()`` pushes the deadline out again; ``cancel()`` drops the
    pending call immediately. The callback is a coroutine function scheduled
    as a task on the running loop, and exceptions it raises are logged.
    """

    def __init__(self, delay_s: float, callback: Callable[[], Awaitable[None]]):
        self.delay_s = delay_s
        self._callback = callback
        self._handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def reset(self) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay_s, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        task = asyncio.ensure_future(self._callback())
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Debounced callback failed: {error}", exc_info=error)

    async def drain(self) -> None:
        """Wait for callbacks that already fired to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
