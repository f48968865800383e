"""Extension hooks fired at task lifecycle points.

A hook is an async callable ``hook(event, task)``. It may:

- return ``False`` to block the operation (the caller skips it),
- return a mapping, which is merged into the event seen by later hooks
  and reported back as ``HookResult.result``,
- return anything else (usually None) to leave the event unchanged.

Hooks registered for the same name run in registration order. A hook that
raises is logged and skipped; it never blocks the operation.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class HookName(StrEnum):
    ON_PROMPT_SUBMITTED = "on_prompt_submitted"
    ON_PROMPT_STARTED = "on_prompt_started"
    ON_TASK_INITIALIZED = "on_task_initialized"
    ON_TASK_CLOSED = "on_task_closed"
    ON_FILE_ADDED = "on_file_added"
    ON_COMMAND_EXECUTED = "on_command_executed"
    ON_QUESTION_ASKED = "on_question_asked"
    ON_QUESTION_ANSWERED = "on_question_answered"
    ON_SUBAGENT_STARTED = "on_subagent_started"
    ON_SUBAGENT_FINISHED = "on_subagent_finished"
    ON_RESPONSE_MESSAGE_PROCESSED = "on_response_message_processed"


Hook = Callable[[dict[str, Any], Any], Awaitable[Any]]


@dataclass
class HookResult:
    """Outcome of running every hook registered for one name.

    Attributes:
        event: The event after all mappings returned by hooks were merged
        result: Merged mapping returned by hooks (empty when none returned one)
        blocked: True when a hook returned ``False``
    """

    event: dict[str, Any]
    result: dict[str, Any] = field(default_factory=dict)
    blocked: bool = False


class HookManager:
    def __init__(self) -> None:
        self._hooks: dict[HookName, list[Hook]] = {}

    def register(self, name: HookName, hook: Hook) -> None:
        self._hooks.setdefault(name, []).append(hook)

    def unregister(self, name: HookName, hook: Hook) -> None:
        hooks = self._hooks.get(name, [])
        if hook in hooks:
            hooks.remove(hook)

    def has_hooks(self, name: HookName) -> bool:
        return bool(self._hooks.get(name))

    async def trigger(
        self, name: HookName, event: Mapping[str, Any] | None = None, task: Any = None
    ) -> HookResult:
        outcome = HookResult(event=dict(event or {}))
        for hook in list(self._hooks.get(name, [])):
            try:
                returned = await hook(outcome.event, task)
            except Exception:
                logger.exception("Hook %s failed", name)
                continue

            if returned is False:
                logger.info("Hook %s blocked the operation", name)
                outcome.blocked = True
                break
            if isinstance(returned, Mapping):
                outcome.event.update(returned)
                outcome.result.update(returned)
        return outcome


__all__ = ["Hook", "HookManager", "HookName", "HookResult"]
