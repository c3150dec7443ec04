"""Event-loop timer helpers shared by the cache and the rate limiters.

Everything here runs on the caller's asyncio loop; nothing spawns threads.
When no loop is running (plain synchronous use, scripts, most unit tests)
timers are simply not scheduled and callers fall back to lazy checks.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


def get_running_loop() -> asyncio.AbstractEventLoop | None:
    """Return the running event loop, or None outside of one."""

    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def call_later(
    delay: float, callback: Callable[..., Any], *args: Any
) -> asyncio.TimerHandle | None:
    """Schedule ``callback(*args)`` on the running loop after ``delay`` seconds.

    Returns:
        The timer handle, or None when there is no running loop.
    """

    loop = get_running_loop()
    if loop is None:
        return None
    return loop.call_later(delay, callback, *args)


class PeriodicTask:
    """Run a callback every ``interval`` seconds as an asyncio task.

    The callback may be a plain function or a coroutine function. Failures
    are logged and the loop keeps going; cancellation stops it.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Any | Awaitable[Any]],
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.name = name
        self.interval = interval
        self._callback = callback
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the loop on the running event loop.

        Returns:
            True if the task is running after the call, False when there is
            no event loop to run on.
        """

        if self.running:
            return True

        loop = get_running_loop()
        if loop is None:
            return False

        self._task = loop.create_task(self._run(), name=self.name)
        logger.debug("periodic_task.started", extra={"task": self.name, "interval_s": self.interval})
        return True

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.debug("periodic_task.stopped", extra={"task": self.name})
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                result = self._callback()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("periodic_task.failed", extra={"task": self.name})
