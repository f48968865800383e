"""Trailing-edge debounce for coroutine callbacks.

A ``TrailingDebouncer`` fires its callback once after ``delay`` seconds of
quiet. Every ``trigger()`` restarts the timer, so a burst of calls collapses
into a single invocation at the end of the burst.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class TrailingDebouncer:
    """Run ``callback`` at most once per quiet period.

    Args:
        delay: Quiet period in seconds.
        callback: Zero-argument coroutine function to run.
    """

    def __init__(self, delay: float, callback: Callable[[], Awaitable[None]]) -> None:
        self._delay = delay
        self._callback = callback
        self._timer: asyncio.Task[None] | None = None
        self.fire_count = 0

    @property
    def pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def trigger(self) -> None:
        """Restart the quiet period. Must be called from a running loop."""
        self.cancel()
        self._timer = asyncio.get_running_loop().create_task(self._wait_and_fire())

    def cancel(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def flush(self) -> None:
        """Fire immediately if a call is pending."""
        if not self.pending:
            return
        self.cancel()
        await self._fire()

    async def _wait_and_fire(self) -> None:
        await asyncio.sleep(self._delay)
        self._timer = None
        await self._fire()

    async def _fire(self) -> None:
        self.fire_count += 1
        try:
            await self._callback()
        except Exception:
            logger.exception("Debounced callback failed")


__all__ = ["TrailingDebouncer"]
