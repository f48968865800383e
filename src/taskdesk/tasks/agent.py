"""Agent executor backed by an ``LLMProvider``.

This executor streams a single model turn: conversation history and context
files go in, text comes back in fragments that are forwarded to the task as
they arrive. Tool execution is not part of this executor.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from pathlib import Path
from typing import TYPE_CHECKING

from taskdesk.core.config import AppConfig
from taskdesk.providers import CompletionOptions, LLMProvider, Message, ProviderError
from taskdesk.tasks.executors import AgentProfile, RunAborted, run_until_aborted
from taskdesk.tasks.models import (
    AssistantMessage,
    ContextMessage,
    PromptContext,
    ResponseMessage,
    UsageReport,
    UserMessage,
    message_text,
    new_id,
)

if TYPE_CHECKING:
    from taskdesk.tasks.orchestrator import TaskOrchestrator

logger = logging.getLogger(__name__)

MAX_CONTEXT_FILE_CHARS = 50_000


def to_provider_messages(messages: list[ContextMessage]) -> list[Message]:
    converted: list[Message] = []
    for message in messages:
        text = message_text(message)
        if not text:
            continue
        role = "user" if isinstance(message, UserMessage) else "assistant"
        converted.append(Message(role=role, content=text))
    return converted


async def read_context_files(root: Path, files: list[str]) -> str:
    """Render context files as fenced blocks; unreadable files are skipped."""
    blocks: list[str] = []
    for name in files:
        path = Path(name) if Path(name).is_absolute() else root / name
        try:
            content = await asyncio.to_thread(path.read_text, "utf-8", "replace")
        except OSError as exc:
            logger.warning("Skipping context file %s: %s", name, exc)
            continue
        blocks.append(f"File: {name}\n```\n{content[:MAX_CONTEXT_FILE_CHARS]}\n```")
    return "\n\n".join(blocks)


class ProviderAgentExecutor:
    def __init__(self, provider: LLMProvider, config: AppConfig) -> None:
        self.provider = provider
        self.config = config
        self._background: set[asyncio.Task[list[ContextMessage]]] = set()

    def _options(self, profile: AgentProfile, system_prompt: str | None) -> CompletionOptions:
        return CompletionOptions(
            temperature=profile.temperature,
            max_tokens=profile.max_tokens or self.config.agent.max_tokens,
            system_prompt=system_prompt,
        )

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
        run = self._run(
            task,
            profile,
            prompt,
            prompt_context,
            context_messages or [],
            context_files or [],
            system_prompt,
            abort_signal,
        )
        if waitable:
            return await run

        background = asyncio.get_running_loop().create_task(run)
        self._background.add(background)
        background.add_done_callback(self._background.discard)
        return []

    async def _run(
        self,
        task: TaskOrchestrator,
        profile: AgentProfile,
        prompt: str,
        prompt_context: PromptContext | None,
        context_messages: list[ContextMessage],
        context_files: list[str],
        system_prompt: str | None,
        abort_signal: asyncio.Event | None,
    ) -> list[ContextMessage]:
        messages = to_provider_messages(context_messages)
        if profile.use_context_files and context_files:
            files_text = await read_context_files(task.working_dir, context_files)
            if files_text:
                messages.append(Message(role="user", content=f"Context files:\n\n{files_text}"))
        messages.append(Message(role="user", content=prompt))

        message_id = new_id()
        model = profile.model or self.config.agent.default_model
        parts: list[str] = []
        usage: UsageReport | None = None

        stream = self.provider.stream(messages, model=model, options=self._options(profile, system_prompt))
        async with aclosing(stream) as chunks:
            while True:
                try:
                    chunk = await run_until_aborted(anext(chunks, None), abort_signal)
                except RunAborted:
                    logger.info("Agent run for task %s aborted", task.task_id)
                    break
                if chunk is None:
                    break
                if chunk.usage is not None:
                    usage = UsageReport(
                        model=model,
                        sent_tokens=chunk.usage.prompt_tokens,
                        received_tokens=chunk.usage.completion_tokens,
                    )
                if not chunk.content:
                    continue
                parts.append(chunk.content)
                await task.process_response_message(
                    ResponseMessage(id=message_id, content=chunk.content, prompt_context=prompt_context)
                )

        content = "".join(parts)
        await task.process_response_message(
            ResponseMessage(
                id=message_id,
                content=content,
                finished=True,
                usage=usage,
                prompt_context=prompt_context,
            )
        )
        if not content:
            return []
        return [
            AssistantMessage.from_text(
                content, id=message_id, usage=usage, prompt_context=prompt_context
            )
        ]

    async def generate_text(
        self, profile: AgentProfile, system_prompt: str, prompt: str
    ) -> str | None:
        model = profile.model or self.config.agent.compact_model or self.config.agent.default_model
        try:
            response = await self.provider.complete(
                [Message(role="user", content=prompt)],
                model=model,
                options=self._options(profile, system_prompt),
            )
        except ProviderError as exc:
            logger.error("Text generation with profile %s failed: %s", profile.id, exc)
            return None
        return response.content


class ProviderTextGenerator:
    """``TextGenerator`` that returns one completion's text."""

    def __init__(self, provider: LLMProvider, model: str | None = None) -> None:
        self.provider = provider
        self.model = model

    async def generate(self, system_prompt: str, prompt: str) -> str:
        response = await self.provider.complete(
            [Message(role="user", content=prompt)],
            model=self.model,
            options=CompletionOptions(system_prompt=system_prompt, temperature=0.0),
        )
        return response.content


__all__ = [
    "ProviderAgentExecutor",
    "ProviderTextGenerator",
    "read_context_files",
    "to_provider_messages",
]
