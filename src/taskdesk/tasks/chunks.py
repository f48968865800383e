"""Coalescing of streamed response fragments.

Executors can emit many tiny fragments per second. For each message id the
first fragment is delivered at once; later fragments are buffered and
delivered together on a short periodic tick. A tick with nothing buffered
stops the timer and forgets the message, so a quiet stream costs nothing.
Once a message id is finished, fragments that still arrive for it are
dropped."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from taskdesk.tasks.models import ResponseMessage

logger = logging.getLogger(__name__)

FLUSH_INTERVAL = 0.01


@dataclass
class _Buffer:
    template: ResponseMessage
    pending: list[str] = field(default_factory=list)
    timer: asyncio.Task[None] | None = None


class ResponseChunkAggregator:
    """Buffers fragments per message id and delivers them in batches.

    Args:
        deliver: Called with each fragment (or merged batch) to publish.
        interval: Seconds between flush ticks.
    """

    def __init__(
        self, deliver: Callable[[ResponseMessage], None], interval: float = FLUSH_INTERVAL
    ) -> None:
        self._deliver = deliver
        self._interval = interval
        self._buffers: dict[str, _Buffer] = {}
        self._finished: set[str] = set()

    @property
    def active_ids(self) -> list[str]:
        return list(self._buffers)

    def add(self, message: ResponseMessage) -> None:
        if message.id in self._finished:
            logger.debug("Dropping late fragment for finished message %s", message.id)
            return

        buffer = self._buffers.get(message.id)
        if buffer is not None:
            buffer.pending.append(message.content)
            buffer.template = message
            return

        self._deliver(message)
        buffer = _Buffer(template=message)
        self._buffers[message.id] = buffer
        buffer.timer = asyncio.get_running_loop().create_task(self._tick(message.id, buffer))

    async def _tick(self, message_id: str, buffer: _Buffer) -> None:
        while True:
            await asyncio.sleep(self._interval)
            if not buffer.pending:
                break
            content = "".join(buffer.pending)
            buffer.pending.clear()
            try:
                self._deliver(buffer.template.model_copy(update={"content": content}))
            except Exception:
                logger.exception("Failed to deliver buffered chunk for %s", message_id)

        if self._buffers.get(message_id) is buffer:
            del self._buffers[message_id]

    def finish(self, message_id: str) -> None:
        """Stop buffering ``message_id``; anything still buffered is dropped."""
        self._finished.add(message_id)
        buffer = self._buffers.pop(message_id, None)
        if buffer is not None and buffer.timer is not None:
            buffer.timer.cancel()

    def cancel_all(self) -> None:
        """Finish every active message."""
        for message_id in list(self._buffers):
            self.finish(message_id)


__all__ = ["FLUSH_INTERVAL", "ResponseChunkAggregator"]
