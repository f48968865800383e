"""
Model provider abstraction for taskdesk.

The provider-backed executor talks to models only through ``LLMProvider``;
tests substitute a scripted provider with the same surface.

Usage:
    from taskdesk.providers import get_provider, Message

    provider = get_provider(config)
    async for chunk in provider.stream([Message(role="user", content="Hello")]):
        print(chunk.content, end="")
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from taskdesk.core.config import AppConfig


class ProviderType(Enum):
    """Supported model backends."""

    ANTHROPIC = auto()


@dataclass(frozen=True, slots=True)
class Message:
    """A message in the conversation sent to a provider."""

    role: str  # "user", "assistant", "system"
    content: str


@dataclass(frozen=True, slots=True)
class TokenUsage:
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(slots=True)
class CompletionResponse:
    content: str
    model: str
    finish_reason: str | None = None
    usage: TokenUsage | None = None
    raw_response: Any = None


@dataclass(slots=True)
class StreamChunk:
    """A piece of streamed output; the last chunk carries usage."""

    content: str
    finish_reason: str | None = None
    usage: TokenUsage | None = None


@dataclass(frozen=True, slots=True)
class CompletionOptions:
    """Provider-neutral request options."""

    temperature: float | None = None
    max_tokens: int | None = None
    stop_sequences: tuple[str, ...] | None = None
    system_prompt: str | None = None


class ProviderError(Exception):
    """Base exception for provider errors."""


class AuthenticationError(ProviderError):
    """Raised when authentication fails."""


class RateLimitError(ProviderError):
    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ModelNotFoundError(ProviderError):
    """Raised when the requested model is not available."""


class ContextLengthError(ProviderError):
    """Raised when input exceeds the model's context window."""


@runtime_checkable
class LLMProvider(Protocol):
    """Interface every provider implementation satisfies."""

    @property
    def provider_type(self) -> ProviderType: ...

    @property
    def default_model(self) -> str: ...

    async def complete(
        self,
        messages: list[Message],
        model: str | None = None,
        options: CompletionOptions | None = None,
    ) -> CompletionResponse:
        """Send a request and return the full response.

        Raises:
            ProviderError: On API errors
        """
        ...

    def stream(
        self,
        messages: list[Message],
        model: str | None = None,
        options: CompletionOptions | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a response chunk by chunk.

        Raises:
            ProviderError: On API errors
        """
        ...

    def get_context_limit(self, model: str | None = None) -> int: ...


class BaseLLMProvider(ABC):
    """Common state for concrete providers."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    @abstractmethod
    def provider_type(self) -> ProviderType: ...

    @property
    def default_model(self) -> str:
        return self._config.agent.default_model

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        model: str | None = None,
        options: CompletionOptions | None = None,
    ) -> CompletionResponse: ...

    @abstractmethod
    def stream(
        self,
        messages: list[Message],
        model: str | None = None,
        options: CompletionOptions | None = None,
    ) -> AsyncIterator[StreamChunk]: ...

    @abstractmethod
    def get_context_limit(self, model: str | None = None) -> int: ...


def infer_provider_type(model_id: str) -> ProviderType:
    """Infer the provider from a model id.

    Raises:
        ModelNotFoundError: If no provider serves the model
    """
    if model_id.lower().startswith("claude"):
        return ProviderType.ANTHROPIC
    raise ModelNotFoundError(f"Cannot infer provider for model: {model_id}")


def get_provider(config: AppConfig, model_id: str | None = None) -> LLMProvider:
    """Create the provider serving ``model_id`` (the configured default when None)."""
    from taskdesk.providers.anthropic import AnthropicProvider

    match infer_provider_type(model_id or config.agent.default_model):
        case ProviderType.ANTHROPIC:
            return AnthropicProvider(config)


__all__ = [
    "AuthenticationError",
    "BaseLLMProvider",
    "CompletionOptions",
    "CompletionResponse",
    "ContextLengthError",
    "LLMProvider",
    "Message",
    "ModelNotFoundError",
    "ProviderError",
    "ProviderType",
    "RateLimitError",
    "StreamChunk",
    "TokenUsage",
    "get_provider",
    "infer_provider_type",
]
