"""Per-task state machine and prompt execution.

A ``TaskOrchestrator`` owns one task: its record, its conversation and its
worktree. Prompt runs are strictly serialized through a single-flight lock
and dispatched either to the agent executor (agent modes) or to the
line-edit executor (code, ask, architect, context). Streamed fragments are
coalesced by a ``ResponseChunkAggregator`` before they reach subscribers.

Worktree integration operations (merge, apply, revert, rebase, conflict
resolution) wait for the in-flight prompt, delegate to the
``WorktreeManager`` and report their outcome as log events; git failures
never escape them; they become log entries, with action ids when the user
can recover by rebasing or resolving conflicts.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine, Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

from taskdesk.core.config import AppConfig
from taskdesk.core.debounce import TrailingDebouncer
from taskdesk.core.result import NotFoundError
from taskdesk.core.tokens import approximate_tokens
from taskdesk.git.client import GitCommandError, is_conflict_failure
from taskdesk.providers import ProviderError
from taskdesk.tasks.chunks import ResponseChunkAggregator
from taskdesk.tasks.conflicts import (
    RESOLVED_ACTION_IDS,
    AgentConflictResolver,
    ConflictResolutionCoordinator,
    ConflictResolver,
    ResolutionOutcome,
    ResolutionReport,
)
from taskdesk.tasks.events import EventBus, TaskEvents
from taskdesk.tasks.executors import (
    COMPACT_PROFILE,
    DEFAULT_AGENT_PROFILE,
    HANDOFF_PROFILE,
    PROFILES,
    AgentExecutor,
    AgentProfile,
    LineEditExecutor,
    TextGenerator,
)
from taskdesk.tasks.hooks import HookManager, HookName
from taskdesk.tasks.models import (
    AGENT_MODES,
    CLASSIFIABLE_STATES,
    GROUP_QUESTION_ANSWERS,
    AssistantMessage,
    ContextMessage,
    LogLevel,
    Mode,
    PromptContext,
    QuestionData,
    ResponseCompleted,
    ResponseMessage,
    TaskData,
    TaskState,
    UsageReport,
    UserMessage,
    WorkingMode,
    message_text,
    new_id,
    reasoning_text,
    utc_now,
)
from taskdesk.tasks.naming import generate_branch_name
from taskdesk.tasks.store import TaskStore, is_transient
from taskdesk.worktrees.manager import WorktreeManager
from taskdesk.worktrees.models import IntegrationStatus, Worktree

if TYPE_CHECKING:
    from taskdesk.project import Project

logger = logging.getLogger(__name__)

MERGE_CONFLICT_ACTION_IDS = ["rebase-worktree"]
REBASE_CONFLICT_ACTION_IDS = ["abort-rebase", "resolve-conflicts-with-agent"]

SUMMARY_MARKER = "### **Conversation Summary**"
TASK_NAME_WORDS = 5

STATE_SYSTEM_PROMPT = (
    "You classify the state of a coding task from the agent's last message. "
    "Answer with exactly one of: MORE_INFO_NEEDED (the agent asks the user a question "
    "or needs a decision), READY_FOR_IMPLEMENTATION (the agent proposed a plan that "
    "has not been implemented yet), READY_FOR_REVIEW (the agent finished work that "
    "should be reviewed), or NONE when none of these fit. Answer with the name only."
)
COMPACT_SYSTEM_PROMPT = (
    "You summarize coding conversations so they can continue in a smaller context. "
    f"Start the summary with a line '{SUMMARY_MARKER}' and keep every decision, "
    "file name and open item that matters for the remaining work."
)
HANDOFF_SYSTEM_PROMPT = (
    "You write the opening prompt for a new coding task that continues an existing "
    "conversation. Include the goal, the relevant decisions and the next steps. "
    "Answer with the prompt only."
)
COMMIT_SYSTEM_PROMPT = "You write concise conventional commit messages."


def extract_summary(reply: str) -> str:
    """Return the summary section of a compaction reply.

    Everything from the summary marker line onward is kept; without a marker
    the whole reply is the summary.
    """
    lines = reply.splitlines()
    for index, line in enumerate(lines):
        if SUMMARY_MARKER in line:
            return "\n".join(lines[index:]).strip()
    return reply.strip()


def render_transcript(messages: list[ContextMessage]) -> str:
    blocks: list[str] = []
    for message in messages:
        text = message_text(message)
        if text:
            blocks.append(f"{message.role.upper()}:\n{text}")
    return "\n\n".join(blocks)


class TaskOrchestrator:
    """Runs prompts and worktree operations for a single task.

    Args:
        task: The task record; replaced (never mutated) on every update
        config: Application configuration
        bus: Event bus that receives this task's events
        store: Persistence for the task record and conversation
        manager: Worktree manager for the task's repository
        hooks: Hook manager shared by the project
        agent_executor: Executor for agent modes and text generation
        line_edit_executor: Executor for line-edit modes, if any
        text_generator: Text generator used outside agent modes, if any
        project: Owning project; required for handoff
        conflict_resolver: Resolver for conflicted files; defaults to the
            agent executor running the conflict-resolution profile
    """

    def __init__(
        self,
        task: TaskData,
        *,
        config: AppConfig,
        bus: EventBus,
        store: TaskStore,
        manager: WorktreeManager,
        hooks: HookManager,
        agent_executor: AgentExecutor,
        line_edit_executor: LineEditExecutor | None = None,
        text_generator: TextGenerator | None = None,
        project: Project | None = None,
        conflict_resolver: ConflictResolver | None = None,
    ) -> None:
        self.task = task
        self.config = config
        self.store = store
        self.manager = manager
        self.hooks = hooks
        self.agent_executor = agent_executor
        self.line_edit_executor = line_edit_executor
        self.text_generator = text_generator
        self.project = project
        self.conflict_resolver = conflict_resolver
        self.events = TaskEvents(bus, task.base_dir, task.id)
        self.messages: list[ContextMessage] = []

        self._prompt_lock = asyncio.Lock()
        self._active_mode: Mode | None = None
        self._prompt_id: str | None = None
        self._prompt_future: asyncio.Future[list[ResponseCompleted]] | None = None
        self._responses: list[ResponseCompleted] = []
        self._abort_signal: asyncio.Event | None = None
        self._interrupts: dict[str, asyncio.Event] = {}
        self._determining_state = False

        self._question: QuestionData | None = None
        self._question_future: asyncio.Future[tuple[str, str | None]] | None = None
        self._stored_answers: dict[str, str] = {}

        self._background: set[asyncio.Task[Any]] = set()
        self._chunks = ResponseChunkAggregator(self.events.send_response_chunk)
        self._token_estimate = TrailingDebouncer(
            config.task.token_estimate_delay, self._publish_token_estimate
        )

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def task_id(self) -> str:
        return self.task.id

    @property
    def repo_path(self) -> Path:
        return Path(self.task.base_dir)

    @property
    def working_dir(self) -> Path:
        """Directory prompts operate in: the worktree when there is one."""
        if self.task.working_mode is WorkingMode.WORKTREE and self.task.worktree is not None:
            return Path(self.task.worktree.path)
        return self.repo_path

    @property
    def is_busy(self) -> bool:
        return self._prompt_lock.locked()

    @property
    def is_empty(self) -> bool:
        return not self.messages and not self.task.name

    @property
    def pending_question(self) -> QuestionData | None:
        return self._question

    @property
    def interrupt_ids(self) -> list[str]:
        return list(self._interrupts)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def init(self) -> None:
        """Reconcile the persisted working mode with git and load the conversation."""
        if self.task.working_mode is WorkingMode.WORKTREE:
            registered = await self.manager.get_worktree(self.repo_path, self.task_id)
            if registered is not None and Path(registered.path).is_dir():
                if self.task.worktree is None:
                    self.task = self.task.model_copy(update={"worktree": registered})
            else:
                logger.warning(
                    "Worktree of task %s is missing; switching back to local mode", self.task_id
                )
                await self.update_task(
                    {"working_mode": WorkingMode.LOCAL, "worktree": None, "last_merge_state": None}
                )
        elif self.task.worktree is not None:
            await self.manager.remove_worktree(self.repo_path, self.task.worktree)
            await self._discard_merge_state()
            await self.update_task({"worktree": None, "last_merge_state": None})

        self.messages = await self.store.load_context(self.task_id)
        await self.hooks.trigger(
            HookName.ON_TASK_INITIALIZED, {"task": self.task.model_dump(mode="json")}, self
        )
        self._token_estimate.trigger()

    async def close(self) -> bool:
        """Stop all in-flight work; returns True when the empty task was deleted."""
        await self.hooks.trigger(HookName.ON_TASK_CLOSED, {"task_id": self.task_id}, self)
        if self.is_busy or self._interrupts or self._question is not None:
            await self.interrupt_response()
        self._chunks.cancel_all()
        self._token_estimate.cancel()
        for background in list(self._background):
            background.cancel()

        if not self.is_empty:
            return False
        if self.task.worktree is not None:
            await self.manager.remove_worktree(self.repo_path, self.task.worktree)
        await self.store.delete(self.task_id)
        logger.info("Removed empty task %s", self.task_id)
        return True

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        background = asyncio.get_running_loop().create_task(coro)
        self._background.add(background)
        background.add_done_callback(self._background.discard)
        return background

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    async def update_task(self, updates: Mapping[str, Any]) -> TaskData:
        """Apply ``updates`` to the task record and persist it.

        A change of ``working_mode`` waits for the in-flight prompt, then
        creates or removes the worktree before the record is updated.
        """
        pending = dict(updates)
        working_mode = pending.pop("working_mode", None)
        if working_mode is not None and WorkingMode(working_mode) is not self.task.working_mode:
            await self._apply_working_mode(WorkingMode(working_mode))

        if pending.get("name") and self.task.created_at is None:
            pending.setdefault("created_at", utc_now())
        pending["updated_at"] = utc_now()

        data = self.task.model_dump()
        data.update(pending)
        self.task = TaskData.model_validate(data)
        await self._save()
        return self.task

    async def _discard_merge_state(self) -> None:
        if self.task.last_merge_state is not None:
            await self.manager.discard_merge_state(self.repo_path, self.task.last_merge_state)

    async def _save(self) -> None:
        await self.store.save(self.task)
        self.events.send_task_updated(self.task)

    async def _save_context(self) -> None:
        if is_transient(self.task):
            return
        await self.store.save_context(self.task_id, self.messages)

    async def _apply_working_mode(self, mode: WorkingMode) -> None:
        await self._wait_for_current_prompt()
        match mode:
            case WorkingMode.WORKTREE:
                branch = generate_branch_name(self.task.name, self.task_id)
                worktree = await self.manager.create_worktree(self.repo_path, self.task_id, branch)
                await self.manager.create_symlinks(
                    self.repo_path, Path(worktree.path), self.config.task.worktree_symlink_folders
                )
                self.task = self.task.model_copy(
                    update={"working_mode": WorkingMode.WORKTREE, "worktree": worktree}
                )
            case WorkingMode.LOCAL:
                if self.task.worktree is not None:
                    await self.manager.remove_worktree(self.repo_path, self.task.worktree)
                await self._discard_merge_state()
                self.task = self.task.model_copy(
                    update={
                        "working_mode": WorkingMode.LOCAL,
                        "worktree": None,
                        "last_merge_state": None,
                    }
                )
        logger.info("Task %s switched to %s mode", self.task_id, mode)

    async def _wait_for_current_prompt(self) -> None:
        async with self._prompt_lock:
            pass

    async def add_context_file(self, path: str) -> bool:
        """Add a file to the context; False when blocked by a hook or already present."""
        added = await self.hooks.trigger(HookName.ON_FILE_ADDED, {"path": path}, self)
        if added.blocked:
            return False
        path = str(added.event.get("path", path))
        if path in self.task.context_files:
            return False
        await self.update_task({"context_files": [*self.task.context_files, path]})
        self._token_estimate.trigger()
        return True

    # -------------------------------------------------------------------------
    # Prompts
    # -------------------------------------------------------------------------

    async def run_prompt(
        self,
        prompt: str,
        mode: Mode | str | None = None,
        *,
        user_message_id: str | None = None,
    ) -> list[ResponseCompleted]:
        """Run one prompt and return its completed responses in sequence order.

        A pending question is answered with ``n`` and the prompt text
        instead of starting a run.
        """
        if self._question is not None:
            await self.answer_question("n", prompt)
            return []

        selected = Mode(mode or self.task.current_mode or self.config.task.default_mode)
        submitted = await self.hooks.trigger(
            HookName.ON_PROMPT_SUBMITTED, {"prompt": prompt, "mode": selected.value}, self
        )
        if submitted.blocked:
            logger.info("Prompt for task %s blocked by hook", self.task_id)
            return []
        prompt = str(submitted.event.get("prompt", prompt))
        selected = Mode(submitted.event.get("mode", selected))

        async with self._prompt_lock:
            self._active_mode = selected
            self._responses = []
            try:
                await self._add_user_message(prompt, user_message_id)
                self.events.send_log(LogLevel.LOADING)
                if selected in AGENT_MODES:
                    return await self._run_agent_prompt(prompt)
                return await self._run_line_edit_prompt(prompt, selected)
            finally:
                self._active_mode = None
                self._responses = []

    async def _add_user_message(self, prompt: str, message_id: str | None) -> None:
        self.messages.append(UserMessage(id=message_id or new_id(), content=prompt))
        await self.update_task({"state": TaskState.TODO})
        await self._save_context()
        self._token_estimate.trigger()

    async def _begin_run(self, prompt: str) -> None:
        updates: dict[str, Any] = {"state": TaskState.IN_PROGRESS, "started_at": utc_now()}
        if not self.task.name:
            updates["name"] = " ".join(prompt.split()[:TASK_NAME_WORDS])
        await self.update_task(updates)

    def _agent_profile(self) -> AgentProfile:
        profile = PROFILES.get(self.task.agent_profile_id or "", DEFAULT_AGENT_PROFILE)
        if self.task.model:
            profile = profile.model_copy(update={"model": self.task.model})
        return profile

    async def _run_agent_prompt(self, prompt: str) -> list[ResponseCompleted]:
        await self._begin_run(prompt)
        history = self.messages[:-1]
        self._abort_signal = asyncio.Event()
        try:
            produced = await self.agent_executor.run_agent(
                self,
                self._agent_profile(),
                prompt,
                None,
                context_messages=history,
                context_files=list(self.task.context_files),
                abort_signal=self._abort_signal,
            )
        except ProviderError as exc:
            logger.error("Agent run for task %s failed: %s", self.task_id, exc)
            self.events.send_log(LogLevel.ERROR, str(exc), finished=True)
            produced = []
        finally:
            self._abort_signal = None

        self.messages.extend(produced)
        responses = sorted(self._responses, key=lambda item: item.sequence_number)
        await self._after_run(responses)

        if self.task.state is TaskState.IN_PROGRESS:
            state = TaskState.READY_FOR_REVIEW
            if self.config.task.smart_task_state:
                state = await self._determine_task_state() or TaskState.READY_FOR_REVIEW
            if self.task.state is TaskState.IN_PROGRESS:
                await self.update_task({"state": state, "completed_at": utc_now()})
        return responses

    async def _run_line_edit_prompt(self, prompt: str, mode: Mode) -> list[ResponseCompleted]:
        if self.line_edit_executor is None:
            self.events.send_log(
                LogLevel.ERROR, f"No executor available for {mode} mode", finished=True
            )
            return []

        started = await self.hooks.trigger(
            HookName.ON_PROMPT_STARTED, {"prompt": prompt, "mode": mode.value}, self
        )
        if started.blocked:
            logger.info("Prompt start for task %s blocked by hook", self.task_id)
            return []

        await self._begin_run(prompt)
        self._prompt_id = new_id()
        self._prompt_future = asyncio.get_running_loop().create_future()
        future = self._prompt_future
        try:
            await self.line_edit_executor.send_prompt(
                self.task_id,
                self._prompt_id,
                prompt,
                mode,
                self.messages[:-1],
                list(self.task.context_files),
            )
            responses = await future
        finally:
            if self._prompt_future is future:
                self._prompt_id = None
                self._prompt_future = None

        self.messages.extend(response.to_assistant_message() for response in responses)
        await self._after_run(responses)
        if self.task.state is TaskState.IN_PROGRESS:
            await self.update_task(
                {"state": TaskState.READY_FOR_REVIEW, "completed_at": utc_now()}
            )
        return responses

    async def _after_run(self, responses: list[ResponseCompleted]) -> None:
        await self._save_context()
        self._token_estimate.trigger()
        if self.task.worktree is not None:
            await self._send_worktree_status()
        if self.config.task.notifications_enabled and responses:
            self.events.send_notification(self.task.name or "Task", "Prompt finished")

    async def _determine_task_state(self) -> TaskState | None:
        last = next(
            (m for m in reversed(self.messages) if isinstance(m, AssistantMessage)), None
        )
        if last is None:
            return None

        prompt = (
            f"<agent-reasoning>\n{reasoning_text(last)}\n</agent-reasoning>\n"
            f"<agent-response>\n{message_text(last)}\n</agent-response>"
        )
        self._determining_state = True
        try:
            answer = await self._generate_text(
                COMPACT_PROFILE, STATE_SYSTEM_PROMPT, prompt, Mode.AGENT
            )
        finally:
            self._determining_state = False

        if answer is None:
            return None
        answer = answer.strip()
        if answer in {state.value for state in CLASSIFIABLE_STATES}:
            return TaskState(answer)
        if answer != "NONE":
            logger.warning("Ignoring unexpected task state answer: %r", answer)
        return None

    async def _generate_text(
        self, profile: AgentProfile, system_prompt: str, prompt: str, mode: Mode
    ) -> str | None:
        if mode in AGENT_MODES or self.text_generator is None:
            return await self.agent_executor.generate_text(profile, system_prompt, prompt)
        try:
            return await self.text_generator.generate(system_prompt, prompt)
        except ProviderError as exc:
            logger.error("Text generation for task %s failed: %s", self.task_id, exc)
            return None

    # -------------------------------------------------------------------------
    # Streaming
    # -------------------------------------------------------------------------

    async def process_response_message(self, message: ResponseMessage) -> None:
        """Accept a streamed fragment or the final frame of a response."""
        if self.hooks.has_hooks(HookName.ON_RESPONSE_MESSAGE_PROCESSED):
            processed = await self.hooks.trigger(
                HookName.ON_RESPONSE_MESSAGE_PROCESSED, message.model_dump(), self
            )
            if processed.result:
                message = ResponseMessage.model_validate(
                    {**message.model_dump(), **processed.result}
                )

        if not message.finished:
            self._chunks.add(message)
            return

        self._chunks.finish(message.id)
        self._add_cost(message.usage)
        completed = ResponseCompleted(
            message_id=message.id,
            content=message.content,
            sequence_number=message.sequence_number,
            reflected_message=message.reflected_message,
            edited_files=message.edited_files,
            commit_hash=message.commit_hash,
            commit_message=message.commit_message,
            diff=message.diff,
            usage=message.usage,
            prompt_context=message.prompt_context,
        )
        self.events.send_response_completed(completed)
        if self.is_busy:
            self._responses.append(completed)
            self._responses.sort(key=lambda item: item.sequence_number)

    def _add_cost(self, usage: UsageReport | None) -> None:
        if usage is None or not usage.message_cost:
            return
        field = (
            "line_edit_total_cost"
            if self._active_mode is not None and self._active_mode not in AGENT_MODES
            else "agent_total_cost"
        )
        current = getattr(self.task, field)
        self.task = self.task.model_copy(update={field: current + usage.message_cost})

    def prompt_finished(self, prompt_id: str) -> None:
        """Resolve the pending line-edit run with the responses collected so far."""
        if prompt_id != self._prompt_id:
            logger.debug("Ignoring completion of stale prompt %s", prompt_id)
            return
        future = self._prompt_future
        responses = sorted(self._responses, key=lambda item: item.sequence_number)
        self._prompt_id = None
        self._prompt_future = None
        self._responses = []
        if future is not None and not future.done():
            future.set_result(responses)

    async def _publish_token_estimate(self) -> None:
        text = "\n".join(message_text(message) for message in self.messages)
        tokens = await asyncio.to_thread(approximate_tokens, text)
        self.task = self.task.model_copy(update={"context_tokens": tokens})
        self.events.send_tokens_info(tokens)

    # -------------------------------------------------------------------------
    # Questions
    # -------------------------------------------------------------------------

    async def ask_question(self, question: QuestionData) -> tuple[str, str | None]:
        """Ask the user a question and wait for the answer.

        Returns:
            The answer shortkey and the free-form user input, if any
        """
        asked = await self.hooks.trigger(
            HookName.ON_QUESTION_ASKED, {"question": question.model_dump(mode="json")}, self
        )
        hook_answer = asked.result.get("answer")
        if isinstance(hook_answer, str):
            return hook_answer, None

        while self._question_future is not None:
            await asyncio.wait([self._question_future])

        stored = self._stored_answers.get(question.question_key)
        if stored is not None:
            logger.debug("Using stored answer %s for %s", stored, question.question_key)
            return stored, None
        if self.task.auto_approve and not question.internal:
            return question.default_answer, None

        if question.is_group_question and not question.answers:
            question = question.model_copy(update={"answers": list(GROUP_QUESTION_ANSWERS)})

        self._question = question
        self._question_future = asyncio.get_running_loop().create_future()
        future = self._question_future
        if self.config.task.notifications_enabled:
            self.events.send_notification(self.task.name or "Task", question.text)
        self.events.send_question(question)
        return await future

    async def answer_question(self, answer: str, user_input: str | None = None) -> bool:
        """Answer the pending question; False when nothing was waiting."""
        question = self._question
        future = self._question_future
        if question is None or future is None:
            return False

        await self.hooks.trigger(
            HookName.ON_QUESTION_ANSWERED,
            {
                "question": question.model_dump(mode="json"),
                "answer": answer,
                "user_input": user_input,
            },
            self,
        )

        normalized = answer.strip().lower()
        if any(option.shortkey == normalized for option in question.answers or []):
            resolved = normalized
        else:
            resolved = "y" if normalized in ("a", "y") else "n"
        if normalized in ("a", "d"):
            self._stored_answers[question.question_key] = resolved

        self._question = None
        self._question_future = None
        if not future.done():
            future.set_result((resolved, user_input))
        return True

    # -------------------------------------------------------------------------
    # Interruption and conversation management
    # -------------------------------------------------------------------------

    async def interrupt_response(self, interrupt_id: str | None = None) -> None:
        """Cancel in-flight work.

        With ``interrupt_id`` only the matching sub-operation is aborted.
        """
        if interrupt_id is not None:
            signal = self._interrupts.pop(interrupt_id, None)
            if signal is None:
                logger.debug("No running operation for interrupt %s", interrupt_id)
                return
            signal.set()
            return

        logger.info("Interrupting task %s", self.task_id)
        if self._question is not None:
            await self.answer_question("n", "Cancelled")
        if self._abort_signal is not None:
            self._abort_signal.set()
        for signal in self._interrupts.values():
            signal.set()
        if self.line_edit_executor is not None:
            await self.line_edit_executor.interrupt(self.task_id)
        if self._prompt_id is not None:
            self.prompt_finished(self._prompt_id)
        self._chunks.cancel_all()

        if self._determining_state:
            await self.update_task({"state": TaskState.READY_FOR_REVIEW, "completed_at": utc_now()})
        elif self.task.state is TaskState.IN_PROGRESS:
            await self.update_task({"state": TaskState.INTERRUPTED, "interrupted_at": utc_now()})
        self.events.send_log(LogLevel.INFO, "Interrupted by user.", finished=True)

    def redo_last_user_prompt(
        self, mode: Mode | str, updated_prompt: str | None = None
    ) -> asyncio.Task[list[ResponseCompleted]] | None:
        """Drop the last exchange and re-run its prompt in the background."""
        for index in range(len(self.messages) - 1, -1, -1):
            original = self.messages[index]
            if isinstance(original, UserMessage):
                break
        else:
            logger.warning("Task %s has no user message to redo", self.task_id)
            return None

        del self.messages[index:]
        return self._spawn(
            self.run_prompt(updated_prompt or original.content, mode, user_message_id=original.id)
        )

    async def compact_conversation(
        self, mode: Mode | str, custom_instructions: str | None = None
    ) -> bool:
        """Replace the conversation with its first user message and a summary."""
        selected = Mode(mode)
        async with self._prompt_lock:
            first = next((m for m in self.messages if isinstance(m, UserMessage)), None)
            if first is None:
                self.events.send_log(LogLevel.INFO, "Nothing to compact.", finished=True)
                return False

            self.events.send_log(LogLevel.LOADING, "Compacting conversation...")
            prompt = f"Summarize this conversation:\n\n{render_transcript(self.messages)}"
            if custom_instructions:
                prompt = f"{prompt}\n\nAdditional instructions:\n{custom_instructions}"
            reply = await self._generate_text(COMPACT_PROFILE, COMPACT_SYSTEM_PROMPT, prompt, selected)
            if not reply or not reply.strip():
                logger.error("Compaction of task %s produced no summary", self.task_id)
                self.events.send_log(
                    LogLevel.ERROR,
                    "Failed to compact conversation. Original conversation preserved.",
                    finished=True,
                )
                return False

            self.messages = [first, AssistantMessage.from_text(extract_summary(reply))]
            await self._save_context()
        self._token_estimate.trigger()
        self.events.send_log(LogLevel.INFO, "Conversation compacted.", finished=True)
        return True

    async def handoff_conversation(self, focus: str, mode: Mode | str) -> TaskOrchestrator | None:
        """Start a new task seeded with a prompt that continues this conversation."""
        if self.project is None:
            raise NotFoundError("Task is not attached to a project", context={"task_id": self.task_id})

        selected = Mode(mode)
        async with self._prompt_lock:
            self.events.send_log(LogLevel.LOADING, "Preparing handoff...")
            prompt = f"Conversation:\n\n{render_transcript(self.messages)}"
            if focus:
                prompt = f"{prompt}\n\nFocus the new task on: {focus}"
            reply = await self._generate_text(HANDOFF_PROFILE, HANDOFF_SYSTEM_PROMPT, prompt, selected)

        if not reply or not reply.strip():
            self.events.send_log(LogLevel.ERROR, "Failed to hand off conversation.", finished=True)
            return None

        child = await self.project.create_task(parent_id=self.task.parent_id or self.task_id)
        name = " ".join((focus or self.task.name or "Handoff").split()[:TASK_NAME_WORDS])
        await child.update_task({"name": name, "draft_prompt": reply.strip()})
        for path in self.task.context_files:
            await child.add_context_file(path)
        self.events.send_log(LogLevel.INFO, f"Handed off to task {child.task_id}.", finished=True)
        return child

    # -------------------------------------------------------------------------
    # Worktree integration
    # -------------------------------------------------------------------------

    def _require_worktree(self) -> Worktree:
        if self.task.worktree is None:
            raise NotFoundError("No worktree exists for this task", context={"task_id": self.task_id})
        return self.task.worktree

    async def _target_branch(self, target_branch: str | None) -> str:
        return (
            target_branch
            or self.config.worktree.default_target_branch
            or await self.manager.get_project_main_branch(self.repo_path)
        )

    async def _commit_message(self, worktree: Worktree, target: str) -> str | None:
        diff = await self.manager.get_changes_diff(Path(worktree.path), target)
        if not diff:
            return None
        prompt = (
            "Generate a concise conventional commit message for these changes:\n\n"
            f"{diff}\n\nOnly answer with the commit message, nothing else."
        )
        message = await self._generate_text(
            self._agent_profile(), COMMIT_SYSTEM_PROMPT, prompt, Mode.AGENT
        )
        return message.strip() if message and message.strip() else None

    def _fallback_commit_message(self) -> str:
        return self.task.name or f"Task {self.task_id} changes"

    async def merge_worktree_to_main(
        self,
        squash: bool,
        target_branch: str | None = None,
        commit_message: str | None = None,
    ) -> None:
        worktree = self._require_worktree()
        await self._wait_for_current_prompt()

        try:
            target = await self._target_branch(target_branch)
            self.events.send_log(
                LogLevel.LOADING,
                f"Squashing and merging worktree to {target} branch..."
                if squash
                else f"Merging worktree to {target} branch...",
            )
            message = commit_message
            if squash and not message:
                message = await self._commit_message(worktree, target)

            merge_state = await self.manager.merge_worktree_to_main_with_uncommitted(
                self.repo_path,
                self.task_id,
                Path(worktree.path),
                squash,
                message or self._fallback_commit_message(),
                target,
                self.config.task.worktree_symlink_folders,
            )
            await self._discard_merge_state()
            await self.update_task({"last_merge_state": merge_state})
            self.events.send_log(
                LogLevel.INFO,
                f"Successfully squashed and merged worktree to {target} branch"
                if squash
                else f"Successfully merged worktree to {target} branch",
                finished=True,
            )
        except GitCommandError as exc:
            logger.error("Failed to merge worktree of task %s: %s", self.task_id, exc.message)
            if is_conflict_failure(exc):
                self.events.send_log(
                    LogLevel.ERROR,
                    "Merge stopped on conflicts. Rebase the worktree onto the target branch "
                    "and resolve them first.",
                    finished=True,
                    action_ids=MERGE_CONFLICT_ACTION_IDS,
                )
            else:
                self.events.send_log(LogLevel.ERROR, exc.details(), finished=True)

        await self._send_worktree_status()

    async def apply_uncommitted_changes(self, target_branch: str | None = None) -> None:
        worktree = self._require_worktree()
        await self._wait_for_current_prompt()

        try:
            target = await self._target_branch(target_branch)
            self.events.send_log(
                LogLevel.LOADING, f"Applying uncommitted changes to {target} branch..."
            )
            applied = await self.manager.apply_uncommitted_changes_to_main(
                self.repo_path,
                self.task_id,
                Path(worktree.path),
                target,
                self.config.task.worktree_symlink_folders,
            )
            self.events.send_log(
                LogLevel.INFO,
                f"Successfully applied uncommitted changes to {target} branch"
                if applied
                else "No uncommitted changes to apply",
                finished=True,
            )
        except GitCommandError as exc:
            logger.error("Failed to apply uncommitted changes: %s", exc.message)
            if is_conflict_failure(exc):
                self.events.send_log(
                    LogLevel.ERROR,
                    "Uncommitted changes conflict with the target branch. Rebase the worktree first.",
                    finished=True,
                    action_ids=MERGE_CONFLICT_ACTION_IDS,
                )
            else:
                self.events.send_log(LogLevel.ERROR, exc.details(), finished=True)

        await self._send_worktree_status()

    async def revert_last_merge(self) -> None:
        merge_state = self.task.last_merge_state
        if merge_state is None:
            raise NotFoundError("No merge state found to revert", context={"task_id": self.task_id})
        worktree = self._require_worktree()
        await self._wait_for_current_prompt()

        try:
            self.events.send_log(LogLevel.LOADING, "Reverting last merge...")
            await self.manager.revert_merge(
                self.repo_path,
                self.task_id,
                Path(worktree.path),
                merge_state,
                self.config.task.worktree_symlink_folders,
            )
            await self.update_task({"last_merge_state": None})
            self.events.send_log(LogLevel.INFO, "Successfully reverted last merge", finished=True)
        except GitCommandError as exc:
            logger.error("Failed to revert merge: %s", exc.message)
            self.events.send_log(LogLevel.ERROR, exc.details(), finished=True)

        await self._send_worktree_status()

    async def get_worktree_integration_status(
        self, target_branch: str | None = None
    ) -> IntegrationStatus | None:
        if self.task.worktree is None:
            return None

        target = await self._target_branch(target_branch)
        path = Path(self.task.worktree.path)
        unmerged, prediction, rebase_state = await asyncio.gather(
            self.manager.check_worktree_for_unmerged_work(self.repo_path, path, target),
            self.manager.check_for_rebase_conflicts(path, target),
            self.manager.get_rebase_state(path),
        )
        return IntegrationStatus(
            target_branch=target,
            ahead_commits=unmerged.unmerged_commits,
            uncommitted_files=unmerged.uncommitted_files,
            conflicts=prediction,
            rebase_state=rebase_state,
        )

    async def _send_worktree_status(self) -> None:
        if self.task.worktree is None:
            return
        try:
            status = await self.get_worktree_integration_status()
        except GitCommandError as exc:
            logger.debug("Skipping integration status for %s: %s", self.task_id, exc.message)
            status = None
        if status is not None:
            self.events.send_worktree_integration_status_updated(status)
        files = await self.manager.get_updated_files(Path(self.task.worktree.path))
        self.events.send_updated_files_updated(files)

    async def rebase_worktree_from_branch(self, branch: str | None = None) -> None:
        worktree = self._require_worktree()
        source = await self._target_branch(branch)
        await self._wait_for_current_prompt()

        self.events.send_log(LogLevel.LOADING, f"Rebasing worktree from {source}...")
        outcome = await self.manager.rebase_main_into_worktree(Path(worktree.path), source)
        if outcome.success:
            await self._discard_merge_state()
            await self.update_task({"last_merge_state": None})
            self.events.send_log(LogLevel.INFO, "Worktree rebased successfully", finished=True)
        elif outcome.conflict:
            self.events.send_log(
                LogLevel.ERROR,
                f"Rebase onto {source} stopped on conflicts.",
                finished=True,
                action_ids=REBASE_CONFLICT_ACTION_IDS,
            )
        else:
            self.events.send_log(
                LogLevel.ERROR, outcome.error or f"Failed to rebase onto {source}", finished=True
            )

        await self._send_worktree_status()

    async def abort_worktree_rebase(self) -> None:
        worktree = self._require_worktree()
        await self._wait_for_current_prompt()

        try:
            self.events.send_log(LogLevel.LOADING, "Aborting rebase...")
            await self.manager.abort_rebase(Path(worktree.path))
            self.events.send_log(LogLevel.INFO, "Rebase aborted", finished=True)
        except GitCommandError as exc:
            logger.error("Failed to abort rebase: %s", exc.message)
            self.events.send_log(LogLevel.ERROR, exc.details(), finished=True)

        await self._send_worktree_status()

    async def continue_worktree_rebase(self) -> None:
        worktree = self._require_worktree()
        await self._wait_for_current_prompt()

        try:
            self.events.send_log(LogLevel.LOADING, "Continuing rebase...")
            await self.manager.continue_rebase(Path(worktree.path))
            await self._discard_merge_state()
            await self.update_task({"last_merge_state": None})
            self.events.send_log(LogLevel.INFO, "Rebase continued", finished=True)
        except GitCommandError as exc:
            logger.error("Failed to continue rebase: %s", exc.message)
            if is_conflict_failure(exc):
                self.events.send_log(
                    LogLevel.ERROR,
                    "Rebase still has unresolved conflicts.",
                    finished=True,
                    action_ids=REBASE_CONFLICT_ACTION_IDS,
                )
            else:
                self.events.send_log(LogLevel.ERROR, exc.details(), finished=True)

        await self._send_worktree_status()

    async def resolve_conflicts_with_agent(self) -> ResolutionReport:
        """Resolve conflicted files in the worktree, or else in the repository."""
        await self._wait_for_current_prompt()

        candidates: list[tuple[Path, str]] = []
        if self.task.worktree is not None:
            candidates.append((Path(self.task.worktree.path), "worktree"))
        candidates.append((self.repo_path, "main repository"))

        for directory, label in candidates:
            state = await self.manager.get_rebase_state(directory)
            if state.has_unmerged_paths:
                logger.info("Conflicts found in %s, resolving", directory)
                return await self._resolve_conflicts(directory, label)

        self.events.send_log(
            LogLevel.INFO,
            "No merge conflicts found in either worktree or main repository.",
            finished=True,
        )
        return ResolutionReport()

    def _log_progress(
        self, level: LogLevel, message: str, prompt_context: PromptContext | None
    ) -> None:
        self.events.send_log(
            level, message, finished=level is not LogLevel.LOADING, prompt_context=prompt_context
        )

    async def _resolve_conflicts(self, directory: Path, label: str) -> ResolutionReport:
        resolver = self.conflict_resolver or AgentConflictResolver(self.agent_executor, self)
        coordinator = ConflictResolutionCoordinator(
            self.manager, resolver, self._interrupts, log=self._log_progress
        )
        self.events.send_log(LogLevel.LOADING, f"Resolving conflicts in {label}...")
        try:
            report = await coordinator.resolve_all(self.repo_path, directory)
        except GitCommandError as exc:
            logger.error("Failed to resolve conflicts: %s", exc.message)
            self.events.send_log(LogLevel.ERROR, exc.details(), finished=True)
            await self._send_worktree_status()
            return ResolutionReport()

        match report.outcome:
            case ResolutionOutcome.ALL_RESOLVED:
                self.events.send_log(
                    LogLevel.INFO,
                    "Conflicts resolved and staged. You can now continue the rebase.",
                    finished=True,
                    action_ids=RESOLVED_ACTION_IDS,
                )
            case ResolutionOutcome.PARTIALLY_RESOLVED:
                self.events.send_log(
                    LogLevel.WARNING,
                    f"{report.summary()} You can continue the rebase.",
                    finished=True,
                    action_ids=RESOLVED_ACTION_IDS,
                )
            case ResolutionOutcome.NEEDS_ATTENTION:
                self.events.send_log(
                    LogLevel.ERROR,
                    report.summary(),
                    finished=True,
                    action_ids=["abort-rebase"],
                )
            case ResolutionOutcome.NO_CONFLICTS:
                self.events.send_log(LogLevel.INFO, report.summary(), finished=True)

        await self._send_worktree_status()
        return report


__all__ = [
    "MERGE_CONFLICT_ACTION_IDS",
    "REBASE_CONFLICT_ACTION_IDS",
    "SUMMARY_MARKER",
    "TaskOrchestrator",
    "extract_summary",
    "render_transcript",
]
