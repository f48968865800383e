"""
Anthropic provider backed by the ``anthropic`` SDK.

The API key is read from ``ANTHROPIC_API_KEY``. Error messages are redacted
before they are re-raised as ``ProviderError`` subclasses.
"""

from __future__ import annotations

import os
import re
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

import anthropic

from taskdesk.providers import (
    AuthenticationError,
    BaseLLMProvider,
    CompletionOptions,
    CompletionResponse,
    ContextLengthError,
    Message,
    ModelNotFoundError,
    ProviderError,
    ProviderType,
    RateLimitError,
    StreamChunk,
    TokenUsage,
)

if TYPE_CHECKING:
    from taskdesk.core.config import AppConfig

_API_KEY_PATTERN = re.compile(
    r"""
    sk-ant-[A-Za-z0-9_\-]{20,}|
    (?:api[_-]?key|secret|token|password|credential)
    \s*[=:]\s*
    ['"]?[A-Za-z0-9_\-]{16,}['"]?
    """,
    re.IGNORECASE | re.VERBOSE,
)

DEFAULT_CONTEXT_LIMIT = 200_000

MODEL_ALIASES: dict[str, str] = {
    "claude-opus-4-5": "claude-opus-4-5-20251101",
    "claude-sonnet-4-5": "claude-sonnet-4-5-20250929",
    "claude-haiku-4-5": "claude-haiku-4-5-20251001",
    "claude-sonnet-4": "claude-sonnet-4-20250514",
}


def redact_api_key(message: str) -> str:
    api_key = os.environ.get("ANTHROPIC_API_KEY", "")
    if api_key and api_key in message:
        message = message.replace(api_key, "[REDACTED]")
    return _API_KEY_PATTERN.sub("[REDACTED]", message)


def resolve_model_id(model: str) -> str:
    return MODEL_ALIASES.get(model, model)


def to_anthropic_messages(
    messages: list[Message], system_prompt: str | None = None
) -> tuple[str | None, list[dict[str, object]]]:
    """Split system content out and merge consecutive same-role messages.

    The Messages API takes the system prompt separately and requires the
    conversation to start with a user turn and alternate roles.
    """
    system = system_prompt
    converted: list[dict[str, object]] = []
    for msg in messages:
        if msg.role == "system":
            system = f"{system}\n\n{msg.content}" if system else msg.content
            continue
        role = "user" if msg.role == "user" else "assistant"
        if converted and converted[-1]["role"] == role:
            converted[-1]["content"] = f"{converted[-1]['content']}\n\n{msg.content}"
        else:
            converted.append({"role": role, "content": msg.content})

    if converted and converted[0]["role"] == "assistant":
        converted.insert(0, {"role": "user", "content": "(continuing)"})
    return system, converted


class AnthropicProvider(BaseLLMProvider):
    """Claude models through ``anthropic.AsyncAnthropic``."""

    def __init__(self, config: AppConfig, client: Any | None = None) -> None:
        super().__init__(config)
        self._client = client

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        api_key = os.environ.get("ANTHROPIC_API_KEY")
        if not api_key:
            raise AuthenticationError("ANTHROPIC_API_KEY environment variable not set")
        self._client = anthropic.AsyncAnthropic(api_key=api_key)
        return self._client

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.ANTHROPIC

    def get_context_limit(self, model: str | None = None) -> int:
        return DEFAULT_CONTEXT_LIMIT

    def _params(
        self, messages: list[Message], model: str | None, options: CompletionOptions | None
    ) -> dict[str, object]:
        opts = options or CompletionOptions()
        system, converted = to_anthropic_messages(messages, opts.system_prompt)
        params: dict[str, object] = {
            "model": resolve_model_id(model or self.default_model),
            "messages": converted,
            "max_tokens": opts.max_tokens or self._config.agent.max_tokens,
        }
        if system:
            params["system"] = system
        if opts.temperature is not None:
            params["temperature"] = opts.temperature
        if opts.stop_sequences:
            params["stop_sequences"] = list(opts.stop_sequences)
        return params

    async def complete(
        self,
        messages: list[Message],
        model: str | None = None,
        options: CompletionOptions | None = None,
    ) -> CompletionResponse:
        client = self._get_client()
        try:
            response = await client.messages.create(**self._params(messages, model, options))
        except anthropic.AnthropicError as exc:
            raise self._translate_error(exc) from exc

        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        usage = None
        if response.usage:
            usage = TokenUsage(
                prompt_tokens=response.usage.input_tokens,
                completion_tokens=response.usage.output_tokens,
            )
        return CompletionResponse(
            content=text,
            model=response.model,
            finish_reason=response.stop_reason,
            usage=usage,
            raw_response=response,
        )

    async def stream(
        self,
        messages: list[Message],
        model: str | None = None,
        options: CompletionOptions | None = None,
    ) -> AsyncIterator[StreamChunk]:
        client = self._get_client()
        try:
            async with client.messages.stream(**self._params(messages, model, options)) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield StreamChunk(content=text)
                final = await stream.get_final_message()
        except anthropic.AnthropicError as exc:
            raise self._translate_error(exc) from exc

        usage = None
        if final.usage:
            usage = TokenUsage(
                prompt_tokens=final.usage.input_tokens,
                completion_tokens=final.usage.output_tokens,
            )
        yield StreamChunk(content="", finish_reason=final.stop_reason, usage=usage)

    def _translate_error(self, exc: anthropic.AnthropicError) -> ProviderError:
        safe_msg = redact_api_key(str(exc))
        if isinstance(exc, anthropic.AuthenticationError):
            return AuthenticationError(safe_msg)
        if isinstance(exc, anthropic.RateLimitError):
            return RateLimitError(safe_msg)
        if isinstance(exc, anthropic.NotFoundError):
            return ModelNotFoundError(safe_msg)
        if isinstance(exc, anthropic.BadRequestError) and "context" in safe_msg.lower():
            return ContextLengthError(safe_msg)
        return ProviderError(safe_msg)


__all__ = [
    "AnthropicProvider",
    "MODEL_ALIASES",
    "redact_api_key",
    "resolve_model_id",
    "to_anthropic_messages",
]
