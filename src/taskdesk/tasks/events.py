"""In-process publish/subscribe for task events.

Every event carries a kind, the repository root it belongs to and,
optionally, a task id. Subscribers choose the kinds they want and may narrow
to one repository and one task. Publishing never blocks and never fails
because of a slow or absent subscriber.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from taskdesk.tasks.models import (
    LogEntry,
    LogLevel,
    PromptContext,
    QuestionData,
    ResponseCompleted,
    ResponseMessage,
    TaskData,
)
from taskdesk.worktrees.models import IntegrationStatus, UpdatedFile


class EventKind(StrEnum):
    LOG = "log"
    RESPONSE_CHUNK = "response-chunk"
    RESPONSE_COMPLETED = "response-completed"
    TASK_UPDATED = "task-updated"
    TASK_CREATED = "task-created"
    TASK_DELETED = "task-deleted"
    WORKTREE_INTEGRATION_STATUS = "worktree-integration-status-updated"
    UPDATED_FILES = "updated-files-updated"
    NOTIFICATION = "notification"
    QUESTION = "question"
    TOKENS_INFO = "tokens-info"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    base_dir: str
    task_id: str | None = None
    payload: Any = None


@dataclass
class Subscription:
    """Queue-backed view of the bus; iterate it to receive events."""

    kinds: frozenset[EventKind]
    base_dir: str | None = None
    task_id: str | None = None
    queue: asyncio.Queue[Event] = field(default_factory=asyncio.Queue)
    _bus: EventBus | None = None

    def matches(self, event: Event) -> bool:
        if self.kinds and event.kind not in self.kinds:
            return False
        if self.base_dir is not None and event.base_dir != self.base_dir:
            return False
        return self.task_id is None or event.task_id == self.task_id

    def get_nowait(self) -> Event:
        return self.queue.get_nowait()

    def drain(self) -> list[Event]:
        events: list[Event] = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    def close(self) -> None:
        if self._bus is not None:
            self._bus.unsubscribe(self)
            self._bus = None

    def __aiter__(self) -> AsyncIterator[Event]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Event]:
        while True:
            yield await self.queue.get()


class EventBus:
    """Fans events out to every matching subscription."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(
        self,
        kinds: Iterable[EventKind] = (),
        base_dir: Path | str | None = None,
        task_id: str | None = None,
    ) -> Subscription:
        """Subscribe to ``kinds`` (all kinds when empty)."""
        subscription = Subscription(
            kinds=frozenset(kinds),
            base_dir=str(base_dir) if base_dir is not None else None,
            task_id=task_id,
            _bus=self,
        )
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event: Event) -> None:
        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.queue.put_nowait(event)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json")


class TaskEvents:
    """Typed publishing helpers bound to one task."""

    def __init__(self, bus: EventBus, base_dir: Path | str, task_id: str) -> None:
        self.bus = bus
        self.base_dir = str(base_dir)
        self.task_id = task_id

    def _send(self, kind: EventKind, payload: Any = None) -> None:
        self.bus.publish(Event(kind, self.base_dir, self.task_id, payload))

    def send_log(
        self,
        level: LogLevel,
        message: str = "",
        *,
        finished: bool = False,
        prompt_context: PromptContext | None = None,
        action_ids: list[str] | None = None,
    ) -> None:
        entry = LogEntry(
            level=level,
            message=message,
            finished=finished,
            prompt_context=prompt_context,
            action_ids=action_ids or [],
        )
        self._send(EventKind.LOG, _dump(entry))

    def send_response_chunk(self, message: ResponseMessage) -> None:
        self._send(EventKind.RESPONSE_CHUNK, _dump(message))

    def send_response_completed(self, completed: ResponseCompleted) -> None:
        self._send(EventKind.RESPONSE_COMPLETED, _dump(completed))

    def send_task_updated(self, task: TaskData) -> None:
        self._send(EventKind.TASK_UPDATED, _dump(task))

    def send_task_created(self, task: TaskData) -> None:
        self._send(EventKind.TASK_CREATED, _dump(task))

    def send_task_deleted(self) -> None:
        self._send(EventKind.TASK_DELETED, {"id": self.task_id})

    def send_worktree_integration_status_updated(self, status: IntegrationStatus) -> None:
        self._send(EventKind.WORKTREE_INTEGRATION_STATUS, _dump(status))

    def send_updated_files_updated(self, files: list[UpdatedFile]) -> None:
        self._send(EventKind.UPDATED_FILES, [_dump(item) for item in files])

    def send_notification(self, title: str, body: str) -> None:
        self._send(EventKind.NOTIFICATION, {"title": title, "body": body})

    def send_question(self, question: QuestionData) -> None:
        self._send(EventKind.QUESTION, _dump(question))

    def send_tokens_info(self, context_tokens: int) -> None:
        self._send(EventKind.TOKENS_INFO, {"context_tokens": context_tokens})


__all__ = [
    "Event",
    "EventBus",
    "EventKind",
    "Subscription",
    "TaskEvents",
]
