"""Interfaces of the executors a task dispatches prompts to.

Two executor styles exist. The agent style runs a model loop and returns
the produced messages. The line-edit style accepts a prompt and reports
completion later through ``TaskOrchestrator.prompt_finished``. Both stream
their output through ``TaskOrchestrator.process_response_message``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TYPE_CHECKING, Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel, ConfigDict

from taskdesk.tasks.models import ContextMessage, Mode, PromptContext

if TYPE_CHECKING:
    from taskdesk.tasks.orchestrator import TaskOrchestrator

T = TypeVar("T")


class AgentProfile(BaseModel):
    """Capabilities granted to one agent run.

    Attributes:
        id: Stable identifier stored on tasks
        name: Display name
        model: Model id; the configured default when None
        temperature: Sampling temperature; provider default when None
        max_tokens: Completion limit; the configured default when None
        use_context_files: Whether the task's context files are sent along
        use_tools: Whether the run may call tools
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    use_context_files: bool = True
    use_tools: bool = True


DEFAULT_AGENT_PROFILE = AgentProfile(id="default", name="Default")
COMPACT_PROFILE = AgentProfile(
    id="compact", name="Compact", use_context_files=False, use_tools=False, temperature=0.0
)
HANDOFF_PROFILE = AgentProfile(
    id="handoff", name="Handoff", use_context_files=False, use_tools=False, temperature=0.0
)
CONFLICT_RESOLUTION_PROFILE = AgentProfile(
    id="conflict-resolution", name="Conflict resolution", use_context_files=False, temperature=0.0
)

PROFILES = {
    profile.id: profile
    for profile in (DEFAULT_AGENT_PROFILE, COMPACT_PROFILE, HANDOFF_PROFILE, CONFLICT_RESOLUTION_PROFILE)
}


@runtime_checkable
class AgentExecutor(Protocol):
    async def run_agent(
        self,
        task: TaskOrchestrator,
        profile: AgentProfile,
        prompt: str,
        prompt_context: PromptContext | None,
        context_messages: list[ContextMessage] | None = None,
        context_files: list[str] | None = None,
        system_prompt: str | None = None,
        waitable: bool = True,
        abort_signal: asyncio.Event | None = None,
    ) -> list[ContextMessage]:
        """Run the agent loop and return the messages it produced.

        Setting ``abort_signal`` stops the run; messages produced so far
        are returned.
        """
        ...

    async def generate_text(
        self, profile: AgentProfile, system_prompt: str, prompt: str
    ) -> str | None: ...


@runtime_checkable
class LineEditExecutor(Protocol):
    async def send_prompt(
        self,
        task_id: str,
        prompt_id: str,
        prompt: str,
        mode: Mode,
        context_messages: list[ContextMessage],
        context_files: list[str],
    ) -> None:
        """Start a prompt. Completion is reported via ``prompt_finished``."""
        ...

    async def interrupt(self, task_id: str) -> None: ...


@runtime_checkable
class TextGenerator(Protocol):
    async def generate(self, system_prompt: str, prompt: str) -> str: ...


class RunAborted(Exception):
    """The abort signal fired before the awaited work finished."""


async def run_until_aborted(work: Awaitable[T], abort_signal: asyncio.Event | None) -> T:
    """Await ``work`` unless ``abort_signal`` fires first.

    The losing side is cancelled. A result that lands together with the
    signal is discarded.

    Raises:
        RunAborted: If the signal is set before or while ``work`` runs
    """
    if abort_signal is None:
        return await work

    pending = asyncio.ensure_future(work)
    waiter = asyncio.ensure_future(abort_signal.wait())
    try:
        await asyncio.wait({pending, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not pending.done():
            pending.cancel()
            await asyncio.wait({pending})

    if abort_signal.is_set():
        if not pending.cancelled() and pending.exception() is not None:
            raise RunAborted() from pending.exception()
        raise RunAborted()
    return pending.result()


__all__ = [
    "AgentExecutor",
    "AgentProfile",
    "COMPACT_PROFILE",
    "CONFLICT_RESOLUTION_PROFILE",
    "DEFAULT_AGENT_PROFILE",
    "HANDOFF_PROFILE",
    "LineEditExecutor",
    "PROFILES",
    "RunAborted",
    "TextGenerator",
    "run_until_aborted",
]
