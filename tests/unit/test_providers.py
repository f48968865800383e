"""Tests for the Anthropic provider and the provider-backed agent executor."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import anthropic
import pytest

from taskdesk.core.config import AgentConfig, AppConfig
from taskdesk.providers import (
    AuthenticationError,
    CompletionOptions,
    Message,
    ModelNotFoundError,
    ProviderError,
    ProviderType,
    RateLimitError,
    get_provider,
    infer_provider_type,
)
from taskdesk.providers.anthropic import (
    AnthropicProvider,
    redact_api_key,
    resolve_model_id,
    to_anthropic_messages,
)
from taskdesk.tasks.agent import ProviderAgentExecutor, ProviderTextGenerator, to_provider_messages
from taskdesk.tasks.executors import COMPACT_PROFILE, DEFAULT_AGENT_PROFILE
from taskdesk.tasks.models import (
    AssistantMessage,
    ResponseMessage,
    ToolMessage,
    UserMessage,
    message_text,
)
from tests.mocks.mock_provider import MockProvider, StallingProvider


class FakeStream:
    def __init__(self, texts: list[str]) -> None:
        self._texts = texts

    async def __aenter__(self) -> FakeStream:
        return self

    async def __aexit__(self, *exc: object) -> None:
        return None

    @property
    async def text_stream(self) -> AsyncIterator[str]:
        for text in self._texts:
            yield text

    async def get_final_message(self) -> Any:
        return SimpleNamespace(
            stop_reason="end_turn", usage=SimpleNamespace(input_tokens=7, output_tokens=3)
        )


class FakeMessages:
    def __init__(self, reply: str = "Hello!", error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.requests: list[dict[str, Any]] = []

    async def create(self, **params: Any) -> Any:
        self.requests.append(params)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(
            content=[
                SimpleNamespace(type="thinking", thinking="hmm"),
                SimpleNamespace(type="text", text=self.reply),
            ],
            model=params["model"],
            stop_reason="end_turn",
            usage=SimpleNamespace(input_tokens=12, output_tokens=4),
        )

    def stream(self, **params: Any) -> FakeStream:
        self.requests.append(params)
        return FakeStream(["Hel", "", "lo"])


class RecordingTask:
    """Stands in for the orchestrator side of an agent run."""

    def __init__(self, working_dir: Path) -> None:
        self.task_id = "task-1"
        self.working_dir = working_dir
        self.received: list[ResponseMessage] = []

    async def process_response_message(self, message: ResponseMessage) -> None:
        self.received.append(message)


class TestMessageConversion:
    def test_system_messages_are_split_out(self) -> None:
        system, converted = to_anthropic_messages(
            [
                Message(role="system", content="Be brief."),
                Message(role="user", content="a"),
                Message(role="user", content="b"),
                Message(role="assistant", content="c"),
            ],
            system_prompt="You code.",
        )
        assert system == "You code.\n\nBe brief."
        assert converted == [
            {"role": "user", "content": "a\n\nb"},
            {"role": "assistant", "content": "c"},
        ]

    def test_leading_assistant_gets_user_turn(self) -> None:
        system, converted = to_anthropic_messages([Message(role="assistant", content="summary")])
        assert system is None
        assert converted[0] == {"role": "user", "content": "(continuing)"}

    def test_context_messages_to_provider_messages(self) -> None:
        converted = to_provider_messages(
            [UserMessage(content="q"), ToolMessage(), AssistantMessage.from_text("a")]
        )
        assert converted == [Message(role="user", content="q"), Message(role="assistant", content="a")]


class TestAnthropicProvider:
    def test_redaction(self) -> None:
        assert "sk-ant-test-key" not in redact_api_key("bad key sk-ant-test-key")
        leaked = "api_key=abcdefghijklmnopqrstuvwx"
        assert redact_api_key(leaked) == "[REDACTED]"

    def test_model_resolution(self) -> None:
        assert resolve_model_id("claude-sonnet-4-5") == "claude-sonnet-4-5-20250929"
        assert resolve_model_id("claude-custom") == "claude-custom"
        assert infer_provider_type("claude-haiku-4-5") is ProviderType.ANTHROPIC
        with pytest.raises(ModelNotFoundError):
            infer_provider_type("gpt-4o")
        assert isinstance(get_provider(AppConfig()), AnthropicProvider)

    @pytest.mark.asyncio
    async def test_missing_api_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("ANTHROPIC_API_KEY")
        provider = AnthropicProvider(AppConfig())
        with pytest.raises(AuthenticationError):
            await provider.complete([Message(role="user", content="hi")])

    @pytest.mark.asyncio
    async def test_complete(self) -> None:
        messages = FakeMessages(reply="Hi there")
        provider = AnthropicProvider(
            AppConfig(agent=AgentConfig(max_tokens=512)), client=SimpleNamespace(messages=messages)
        )

        response = await provider.complete(
            [Message(role="user", content="hello")],
            options=CompletionOptions(system_prompt="Be kind.", temperature=0.2, stop_sequences=("END",)),
        )

        assert response.content == "Hi there"
        assert response.usage is not None and response.usage.total_tokens == 16
        [request] = messages.requests
        assert request["model"] == "claude-sonnet-4-5-20250929"
        assert request["max_tokens"] == 512
        assert request["system"] == "Be kind."
        assert request["temperature"] == 0.2
        assert request["stop_sequences"] == ["END"]

    @pytest.mark.asyncio
    async def test_stream(self) -> None:
        provider = AnthropicProvider(AppConfig(), client=SimpleNamespace(messages=FakeMessages()))

        chunks = [chunk async for chunk in provider.stream([Message(role="user", content="hi")])]

        assert [chunk.content for chunk in chunks] == ["Hel", "lo", ""]
        assert chunks[-1].finish_reason == "end_turn"
        assert chunks[-1].usage is not None and chunks[-1].usage.prompt_tokens == 7

    @pytest.mark.asyncio
    async def test_errors_are_translated_and_redacted(self) -> None:
        error = anthropic.AnthropicError("request failed with token=abcdefghijklmnopqrstuv")
        provider = AnthropicProvider(
            AppConfig(), client=SimpleNamespace(messages=FakeMessages(error=error))
        )

        with pytest.raises(ProviderError) as exc_info:
            await provider.complete([Message(role="user", content="hi")])

        assert "abcdefghijklmnopqrstuv" not in str(exc_info.value)
        assert "[REDACTED]" in str(exc_info.value)


class TestProviderAgentExecutor:
    @pytest.mark.asyncio
    async def test_streams_fragments_then_final_frame(self, tmp_path: Path) -> None:
        (tmp_path / "app.py").write_text("print('hi')\n")
        provider = MockProvider(default="Looks fine to me")
        executor = ProviderAgentExecutor(provider, AppConfig())
        task = RecordingTask(tmp_path)

        produced = await executor.run_agent(
            task,
            DEFAULT_AGENT_PROFILE,
            "review app.py",
            None,
            context_messages=[UserMessage(content="earlier"), AssistantMessage.from_text("ok")],
            context_files=["app.py", "missing.py"],
        )

        fragments = [m for m in task.received if not m.finished]
        [final] = [m for m in task.received if m.finished]
        assert "".join(m.content for m in fragments) == "Looks fine to me"
        assert len({m.id for m in task.received}) == 1
        assert final.content == "Looks fine to me"
        assert final.usage is not None and final.usage.sent_tokens == 100

        [message] = produced
        assert isinstance(message, AssistantMessage)
        assert message_text(message) == "Looks fine to me"

        sent, model, options = provider.calls[0]
        assert [m.role for m in sent] == ["user", "assistant", "user", "user"]
        assert "File: app.py" in sent[2].content
        assert "missing.py" not in sent[2].content
        assert sent[3].content == "review app.py"
        assert model == AppConfig().agent.default_model
        assert options is not None and options.max_tokens == AppConfig().agent.max_tokens

    @pytest.mark.asyncio
    async def test_abort_stops_streaming(self, tmp_path: Path) -> None:
        executor = ProviderAgentExecutor(MockProvider(default="a long reply"), AppConfig())
        task = RecordingTask(tmp_path)
        abort = asyncio.Event()
        abort.set()

        produced = await executor.run_agent(
            task, DEFAULT_AGENT_PROFILE, "go", None, abort_signal=abort
        )

        assert produced == []
        assert [m.finished for m in task.received] == [True]

    @pytest.mark.asyncio
    async def test_abort_interrupts_stalled_stream(self, tmp_path: Path) -> None:
        provider = StallingProvider(first="partial")
        executor = ProviderAgentExecutor(provider, AppConfig())
        task = RecordingTask(tmp_path)
        abort = asyncio.Event()

        run = asyncio.ensure_future(
            executor.run_agent(task, DEFAULT_AGENT_PROFILE, "go", None, abort_signal=abort)
        )
        await asyncio.wait_for(provider.streaming.wait(), timeout=5)
        abort.set()
        produced = await asyncio.wait_for(run, timeout=1)

        assert provider.cancelled
        assert [message_text(m) for m in produced] == ["partial"]
        assert task.received[-1].finished
        assert task.received[-1].content == "partial"

    @pytest.mark.asyncio
    async def test_background_run_returns_immediately(self, tmp_path: Path) -> None:
        executor = ProviderAgentExecutor(MockProvider(default="later"), AppConfig())
        task = RecordingTask(tmp_path)

        assert await executor.run_agent(task, DEFAULT_AGENT_PROFILE, "go", None, waitable=False) == []
        await asyncio.sleep(0.05)

        assert task.received[-1].finished
        assert task.received[-1].content == "later"

    @pytest.mark.asyncio
    async def test_generate_text(self) -> None:
        provider = MockProvider(responses={"summarize": "summary"})
        config = AppConfig(agent=AgentConfig(compact_model="claude-haiku-4-5"))
        executor = ProviderAgentExecutor(provider, config)

        assert await executor.generate_text(COMPACT_PROFILE, "system", "summarize this") == "summary"
        _, model, options = provider.calls[0]
        assert model == "claude-haiku-4-5"
        assert options is not None and options.system_prompt == "system"

        provider.simulate_error(RateLimitError("slow down"))
        assert await executor.generate_text(COMPACT_PROFILE, "system", "summarize") is None

    @pytest.mark.asyncio
    async def test_text_generator(self) -> None:
        provider = MockProvider(default="feat: add login")
        generator = ProviderTextGenerator(provider, model="claude-haiku-4-5")

        assert await generator.generate("You write commits.", "diff") == "feat: add login"
        _, model, options = provider.calls[0]
        assert model == "claude-haiku-4-5"
        assert options is not None and options.temperature == 0.0
