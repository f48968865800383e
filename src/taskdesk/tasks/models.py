"""Task records, conversation messages and streamed response payloads.

Conversation messages form a closed union tagged by ``role``; assistant
content is a closed union of parts tagged by ``type``. Both are decoded by
pydantic discriminators, and helpers below match on them exhaustively.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal, assert_never

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from taskdesk.worktrees.models import MergeState, Worktree

INTERNAL_TASK_ID = "internal"


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


class TaskState(StrEnum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    INTERRUPTED = "INTERRUPTED"
    MORE_INFO_NEEDED = "MORE_INFO_NEEDED"
    READY_FOR_REVIEW = "READY_FOR_REVIEW"
    READY_FOR_IMPLEMENTATION = "READY_FOR_IMPLEMENTATION"
    DONE = "DONE"


# States the post-run classification step is allowed to pick.
CLASSIFIABLE_STATES = (
    TaskState.MORE_INFO_NEEDED,
    TaskState.READY_FOR_IMPLEMENTATION,
    TaskState.READY_FOR_REVIEW,
)


class WorkingMode(StrEnum):
    LOCAL = "local"
    WORKTREE = "worktree"


class Mode(StrEnum):
    """Prompt modes. ``agent`` runs the agent executor, the rest the line-edit one."""

    CODE = "code"
    ASK = "ask"
    ARCHITECT = "architect"
    CONTEXT = "context"
    AGENT = "agent"


AGENT_MODES = frozenset({Mode.AGENT})


class PromptGroup(BaseModel):
    """UI grouping for a cancellable sub-operation."""

    id: str = Field(default_factory=new_id)
    name: str | None = None
    color: str | None = None
    finished: bool = False
    interrupt_id: str | None = None


class PromptContext(BaseModel):
    id: str = Field(default_factory=new_id)
    group: PromptGroup | None = None


# -----------------------------------------------------------------------------
# Conversation messages
# -----------------------------------------------------------------------------


class UsageReport(BaseModel):
    model: str | None = None
    sent_tokens: int = 0
    received_tokens: int = 0
    message_cost: float = 0.0


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ReasoningPart(BaseModel):
    type: Literal["reasoning"] = "reasoning"
    text: str


class ToolCallPart(BaseModel):
    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)


class ToolResultPart(BaseModel):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str
    output: Any = None


AssistantPart = Annotated[TextPart | ReasoningPart | ToolCallPart, Field(discriminator="type")]


class UserMessage(BaseModel):
    role: Literal["user"] = "user"
    id: str = Field(default_factory=new_id)
    content: str
    prompt_context: PromptContext | None = None


class AssistantMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    id: str = Field(default_factory=new_id)
    content: list[AssistantPart] = Field(default_factory=list)
    edited_files: list[str] = Field(default_factory=list)
    commit_hash: str | None = None
    commit_message: str | None = None
    diff: str | None = None
    usage: UsageReport | None = None
    prompt_context: PromptContext | None = None

    @classmethod
    def from_text(cls, text: str, **kwargs: Any) -> AssistantMessage:
        return cls(content=[TextPart(text=text)], **kwargs)


class ToolMessage(BaseModel):
    role: Literal["tool"] = "tool"
    id: str = Field(default_factory=new_id)
    content: list[ToolResultPart] = Field(default_factory=list)
    prompt_context: PromptContext | None = None


ContextMessage = Annotated[
    UserMessage | AssistantMessage | ToolMessage, Field(discriminator="role")
]
context_messages_adapter: TypeAdapter[list[ContextMessage]] = TypeAdapter(list[ContextMessage])


def part_text(part: AssistantPart, *, include_reasoning: bool = False) -> str:
    match part:
        case TextPart(text=text):
            return text
        case ReasoningPart(text=text):
            return text if include_reasoning else ""
        case ToolCallPart():
            return ""
        case _:
            assert_never(part)


def message_text(message: ContextMessage) -> str:
    """Plain text of a message; tool traffic renders as an empty string."""
    match message:
        case UserMessage(content=content):
            return content
        case AssistantMessage(content=parts):
            return "".join(part_text(part) for part in parts)
        case ToolMessage():
            return ""
        case _:
            assert_never(message)


def reasoning_text(message: AssistantMessage) -> str:
    return "".join(part.text for part in message.content if isinstance(part, ReasoningPart))


# -----------------------------------------------------------------------------
# Streaming, logs and questions
# -----------------------------------------------------------------------------


class ResponseMessage(BaseModel):
    """A fragment or the final frame of a streamed response."""

    id: str
    content: str = ""
    finished: bool = False
    reflected_message: str | None = None
    sequence_number: int = 0
    edited_files: list[str] = Field(default_factory=list)
    commit_hash: str | None = None
    commit_message: str | None = None
    diff: str | None = None
    usage: UsageReport | None = None
    prompt_context: PromptContext | None = None


class ResponseCompleted(BaseModel):
    message_id: str
    content: str
    sequence_number: int = 0
    reflected_message: str | None = None
    edited_files: list[str] = Field(default_factory=list)
    commit_hash: str | None = None
    commit_message: str | None = None
    diff: str | None = None
    usage: UsageReport | None = None
    prompt_context: PromptContext | None = None

    def to_assistant_message(self) -> AssistantMessage:
        return AssistantMessage(
            id=self.message_id,
            content=[TextPart(text=self.content)] if self.content else [],
            edited_files=self.edited_files,
            commit_hash=self.commit_hash,
            commit_message=self.commit_message,
            diff=self.diff,
            usage=self.usage,
            prompt_context=self.prompt_context,
        )


class LogLevel(StrEnum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    LOADING = "loading"


class LogEntry(BaseModel):
    level: LogLevel
    message: str = ""
    finished: bool = False
    prompt_context: PromptContext | None = None
    action_ids: list[str] = Field(default_factory=list)


class QuestionAnswer(BaseModel):
    text: str
    shortkey: str


GROUP_QUESTION_ANSWERS = (
    QuestionAnswer(text="(Y)es", shortkey="y"),
    QuestionAnswer(text="(N)o", shortkey="n"),
    QuestionAnswer(text="(A)ll", shortkey="a"),
    QuestionAnswer(text="(S)kip all", shortkey="s"),
)


class QuestionData(BaseModel):
    text: str
    subject: str | None = None
    answers: list[QuestionAnswer] | None = None
    default_answer: str = "y"
    is_group_question: bool = False
    internal: bool = False
    key: str | None = None

    @property
    def question_key(self) -> str:
        return self.key or f"{self.subject or ''}:{self.text}"


# -----------------------------------------------------------------------------
# Task
# -----------------------------------------------------------------------------


class TaskData(BaseModel):
    """Persisted state of one task."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=new_id)
    base_dir: str
    parent_id: str | None = None
    name: str = ""
    state: TaskState = TaskState.TODO
    working_mode: WorkingMode = WorkingMode.LOCAL
    worktree: Worktree | None = None
    last_merge_state: MergeState | None = None
    current_mode: Mode = Mode.AGENT
    agent_profile_id: str | None = None
    provider: str | None = None
    model: str | None = None
    line_edit_total_cost: float = 0.0
    agent_total_cost: float = 0.0
    context_tokens: int = 0
    archived: bool = False
    pinned: bool = False
    auto_approve: bool = False
    context_files: list[str] = Field(default_factory=list)
    draft_prompt: str | None = None
    created_at: str | None = None
    started_at: str | None = None
    interrupted_at: str | None = None
    completed_at: str | None = None
    updated_at: str | None = None

    @property
    def total_cost(self) -> float:
        return self.line_edit_total_cost + self.agent_total_cost


__all__ = [
    "AGENT_MODES",
    "AssistantMessage",
    "AssistantPart",
    "CLASSIFIABLE_STATES",
    "ContextMessage",
    "GROUP_QUESTION_ANSWERS",
    "INTERNAL_TASK_ID",
    "LogEntry",
    "LogLevel",
    "Mode",
    "PromptContext",
    "PromptGroup",
    "QuestionAnswer",
    "QuestionData",
    "ReasoningPart",
    "ResponseCompleted",
    "ResponseMessage",
    "TaskData",
    "TaskState",
    "TextPart",
    "ToolCallPart",
    "ToolMessage",
    "ToolResultPart",
    "UsageReport",
    "UserMessage",
    "WorkingMode",
    "context_messages_adapter",
    "message_text",
    "new_id",
    "reasoning_text",
    "utc_now",
]
