"""Resolution of rebase conflicts, one file at a time.

Every unmerged file in a worktree is resolved concurrently with its
siblings. Each file gets its own interrupt id and abort event, registered in
a shared interrupt table, so a user can stop one file without touching the
others. Files whose conflict regions differ only in whitespace are resolved
directly; the rest go to a ``ConflictResolver``, usually model-backed.

Git conflict marker layout (diff3 base section optional)::

    <<<<<<< ours
    ...
    ||||||| base
    ...
    =======
    ...
    >>>>>>> theirs
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from collections.abc import Callable, MutableMapping
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING, Final, Protocol

from taskdesk.core.result import TaskDeskError
from taskdesk.providers import ProviderError
from taskdesk.tasks.executors import (
    CONFLICT_RESOLUTION_PROFILE,
    AgentExecutor,
    RunAborted,
    TextGenerator,
    run_until_aborted,
)
from taskdesk.tasks.models import (
    AssistantMessage,
    LogLevel,
    PromptContext,
    PromptGroup,
    message_text,
    new_id,
)
from taskdesk.worktrees.manager import WorktreeManager
from taskdesk.worktrees.models import ConflictFileContext

if TYPE_CHECKING:
    from taskdesk.tasks.orchestrator import TaskOrchestrator

logger = logging.getLogger(__name__)

MARKER_START: Final[str] = "<<<<<<< "
MARKER_BASE: Final[str] = "||||||| "
MARKER_SEP: Final[str] = "======="
MARKER_END: Final[str] = ">>>>>>> "

RESOLVED_ACTION_IDS = ["continue-rebase", "abort-rebase"]

_FENCED_BLOCK = re.compile(r"```[^\n]*\n(.*?)\n?```", re.DOTALL)

SYSTEM_PROMPT = (
    "You resolve git merge conflicts. Combine the intent of both sides. "
    "Reply with the complete resolved file content in a single fenced code block "
    "and nothing else. Never leave conflict markers in the result."
)


# -----------------------------------------------------------------------------
# Conflict markers
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class ConflictRegion:
    """A conflict block; line numbers are 0-indexed and inclusive."""

    start_line: int
    end_line: int
    ours: str
    theirs: str
    base: str | None = None


def parse_conflict_regions(content: str) -> list[ConflictRegion]:
    """Parse conflict blocks; an unterminated block is ignored."""
    regions: list[ConflictRegion] = []
    lines = content.split("\n")
    i = 0
    while i < len(lines):
        if not lines[i].startswith(MARKER_START):
            i += 1
            continue

        start = i
        ours: list[str] = []
        theirs: list[str] = []
        base: list[str] | None = None
        section = "ours"
        i += 1
        end: int | None = None
        while i < len(lines):
            line = lines[i]
            if line.startswith(MARKER_BASE):
                section = "base"
                base = []
            elif line.startswith(MARKER_SEP) and section != "theirs":
                section = "theirs"
            elif line.startswith(MARKER_END):
                end = i
                break
            elif section == "ours":
                ours.append(line)
            elif section == "base" and base is not None:
                base.append(line)
            else:
                theirs.append(line)
            i += 1

        if end is None:
            break
        regions.append(
            ConflictRegion(
                start_line=start,
                end_line=end,
                ours="\n".join(ours),
                theirs="\n".join(theirs),
                base="\n".join(base) if base is not None else None,
            )
        )
        i = end + 1
    return regions


def has_conflict_markers(content: str) -> bool:
    return bool(parse_conflict_regions(content))


def _is_whitespace_only_diff(ours: str, theirs: str) -> bool:
    return re.sub(r"\s+", "", ours) == re.sub(r"\s+", "", theirs)


def resolve_trivially(content: str) -> str | None:
    """Resolve ``content`` when every region differs only in whitespace.

    Our side wins, with trailing whitespace stripped. Returns None when a
    region needs real merging or there are no regions.
    """
    regions = parse_conflict_regions(content)
    if not regions or not all(_is_whitespace_only_diff(r.ours, r.theirs) for r in regions):
        return None

    lines = content.split("\n")
    result: list[str] = []
    cursor = 0
    for region in regions:
        result.extend(lines[cursor : region.start_line])
        if region.ours:
            result.extend(line.rstrip() for line in region.ours.split("\n"))
        cursor = region.end_line + 1
    result.extend(lines[cursor:])
    return "\n".join(result)


def extract_file_content(reply: str) -> str | None:
    """Take the last fenced block of a model reply, or the bare reply."""
    blocks = _FENCED_BLOCK.findall(reply)
    if blocks:
        content = blocks[-1]
    else:
        content = reply.strip()
    if not content or has_conflict_markers(content):
        return None
    return content if content.endswith("\n") else f"{content}\n"


# -----------------------------------------------------------------------------
# Resolvers
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class ConflictTempFiles:
    base: Path
    ours: Path
    theirs: Path


def build_prompt(context: ConflictFileContext, temp_files: ConflictTempFiles) -> str:
    sections = [
        f"Resolve the merge conflict in `{context.file_path}`.",
        f"Common ancestor: {temp_files.base}",
        f"Our version (the branch being rebased onto): {temp_files.ours}",
        f"Their version (the commit being replayed): {temp_files.theirs}",
        "",
        "Current content with conflict markers:",
        f"```\n{context.current or ''}\n```",
    ]
    return "\n".join(sections)


class ConflictResolver(Protocol):
    async def resolve(
        self,
        context: ConflictFileContext,
        temp_files: ConflictTempFiles,
        worktree_path: Path,
        prompt_context: PromptContext,
        abort_signal: asyncio.Event,
    ) -> bool:
        """Write a marker-free version of the file; True on success."""
        ...


async def _write_resolution(worktree_path: Path, file_path: str, content: str) -> None:
    target = worktree_path / file_path
    await asyncio.to_thread(target.write_text, content, encoding="utf-8")


class TextGenerationResolver:
    """Asks a ``TextGenerator`` for the merged file and writes it."""

    def __init__(self, generator: TextGenerator) -> None:
        self.generator = generator

    async def resolve(
        self,
        context: ConflictFileContext,
        temp_files: ConflictTempFiles,
        worktree_path: Path,
        prompt_context: PromptContext,
        abort_signal: asyncio.Event,
    ) -> bool:
        try:
            reply = await run_until_aborted(
                self.generator.generate(SYSTEM_PROMPT, build_prompt(context, temp_files)), abort_signal
            )
        except RunAborted:
            return False
        content = extract_file_content(reply)
        if content is None:
            logger.warning("Model reply for %s held no usable content", context.file_path)
            return False
        await _write_resolution(worktree_path, context.file_path, content)
        return True


class AgentConflictResolver:
    """Runs the conflict-resolution agent profile on the task.

    The agent may edit the file itself; otherwise the file content is taken
    from its final reply.
    """

    def __init__(self, executor: AgentExecutor, task: TaskOrchestrator) -> None:
        self.executor = executor
        self.task = task

    async def resolve(
        self,
        context: ConflictFileContext,
        temp_files: ConflictTempFiles,
        worktree_path: Path,
        prompt_context: PromptContext,
        abort_signal: asyncio.Event,
    ) -> bool:
        run = self.executor.run_agent(
            self.task,
            CONFLICT_RESOLUTION_PROFILE,
            build_prompt(context, temp_files),
            prompt_context,
            system_prompt=SYSTEM_PROMPT,
            abort_signal=abort_signal,
        )
        try:
            messages = await run_until_aborted(run, abort_signal)
        except RunAborted:
            return False

        target = worktree_path / context.file_path
        current = await asyncio.to_thread(target.read_text, "utf-8", "replace") if target.is_file() else ""
        if current and not has_conflict_markers(current) and current != context.current:
            return True

        replies = [message_text(m) for m in messages if isinstance(m, AssistantMessage)]
        content = extract_file_content(replies[-1]) if replies else None
        if content is None:
            return False
        await _write_resolution(worktree_path, context.file_path, content)
        return True


# -----------------------------------------------------------------------------
# Coordinator
# -----------------------------------------------------------------------------


class FileOutcome(Enum):
    RESOLVED = auto()
    TRIVIAL = auto()
    INTERRUPTED = auto()
    FAILED = auto()


class ResolutionOutcome(Enum):
    NO_CONFLICTS = auto()
    ALL_RESOLVED = auto()
    PARTIALLY_RESOLVED = auto()
    NEEDS_ATTENTION = auto()


@dataclass
class ResolutionReport:
    """Per-file results of one resolution pass."""

    files: dict[str, FileOutcome] = field(default_factory=dict)

    def _with(self, *outcomes: FileOutcome) -> list[str]:
        return [path for path, outcome in self.files.items() if outcome in outcomes]

    @property
    def resolved(self) -> list[str]:
        return self._with(FileOutcome.RESOLVED, FileOutcome.TRIVIAL)

    @property
    def interrupted(self) -> list[str]:
        return self._with(FileOutcome.INTERRUPTED)

    @property
    def failed(self) -> list[str]:
        return self._with(FileOutcome.FAILED)

    @property
    def outcome(self) -> ResolutionOutcome:
        if not self.files:
            return ResolutionOutcome.NO_CONFLICTS
        if len(self.resolved) == len(self.files):
            return ResolutionOutcome.ALL_RESOLVED
        if self.resolved:
            return ResolutionOutcome.PARTIALLY_RESOLVED
        return ResolutionOutcome.NEEDS_ATTENTION

    def summary(self) -> str:
        match self.outcome:
            case ResolutionOutcome.NO_CONFLICTS:
                return "No conflicted files found."
            case ResolutionOutcome.ALL_RESOLVED:
                return f"Resolved all {len(self.files)} conflicted files."
            case ResolutionOutcome.PARTIALLY_RESOLVED:
                return (
                    f"Resolved {len(self.resolved)} of {len(self.files)} conflicted files; "
                    f"{len(self.interrupted)} interrupted, {len(self.failed)} failed."
                )
            case ResolutionOutcome.NEEDS_ATTENTION:
                return "Conflicts need manual attention."


LogCallback = Callable[[LogLevel, str, PromptContext | None], None]


class ConflictResolutionCoordinator:
    """Resolves every unmerged file of a worktree concurrently.

    Args:
        manager: Worktree manager used for git reads and staging
        resolver: Resolver for files the whitespace fast path cannot handle
        interrupts: Shared table of abort events keyed by interrupt id
        log: Optional callback for per-file progress entries
    """

    def __init__(
        self,
        manager: WorktreeManager,
        resolver: ConflictResolver,
        interrupts: MutableMapping[str, asyncio.Event],
        log: LogCallback | None = None,
    ) -> None:
        self.manager = manager
        self.resolver = resolver
        self.interrupts = interrupts
        self.log = log

    def _log(self, level: LogLevel, message: str, prompt_context: PromptContext | None) -> None:
        if self.log is not None:
            self.log(level, message, prompt_context)

    async def resolve_all(self, repo_path: Path, worktree_path: Path) -> ResolutionReport:
        files = await self.manager.get_unmerged_files(worktree_path)
        report = ResolutionReport()
        if not files:
            return report

        logger.info("Resolving %d conflicted files in %s", len(files), worktree_path)
        outcomes = await asyncio.gather(
            *(self._resolve_file(repo_path, worktree_path, file_path) for file_path in files)
        )
        report.files = dict(zip(files, outcomes, strict=True))
        return report

    async def _resolve_file(
        self, repo_path: Path, worktree_path: Path, file_path: str
    ) -> FileOutcome:
        interrupt_id = new_id()
        abort_signal = asyncio.Event()
        self.interrupts[interrupt_id] = abort_signal
        prompt_context = PromptContext(
            group=PromptGroup(name=f"Resolving {file_path}", interrupt_id=interrupt_id)
        )
        temp_dir = self.manager.tmp_dir(repo_path) / "conflicts" / interrupt_id
        self._log(LogLevel.LOADING, f"Resolving conflicts in {file_path}", prompt_context)

        try:
            outcome = await self._resolve(worktree_path, file_path, temp_dir, prompt_context, abort_signal)
        except (TaskDeskError, ProviderError, OSError) as exc:
            logger.error("Failed to resolve %s: %s", file_path, exc)
            outcome = FileOutcome.FAILED
        finally:
            self.interrupts.pop(interrupt_id, None)
            await asyncio.to_thread(shutil.rmtree, temp_dir, True)

        finished = prompt_context.model_copy(deep=True)
        if finished.group is not None:
            finished.group.finished = True
        match outcome:
            case FileOutcome.RESOLVED | FileOutcome.TRIVIAL:
                self._log(LogLevel.INFO, f"Resolved {file_path}", finished)
            case FileOutcome.INTERRUPTED:
                self._log(LogLevel.WARNING, f"Resolution of {file_path} interrupted", finished)
            case FileOutcome.FAILED:
                self._log(LogLevel.ERROR, f"Could not resolve {file_path}", finished)
        return outcome

    async def _resolve(
        self,
        worktree_path: Path,
        file_path: str,
        temp_dir: Path,
        prompt_context: PromptContext,
        abort_signal: asyncio.Event,
    ) -> FileOutcome:
        context = await self.manager.collect_conflict_context(worktree_path, file_path)

        if context.current is not None:
            merged = resolve_trivially(context.current)
            if merged is not None:
                await _write_resolution(worktree_path, file_path, merged)
                await self.manager.stage_resolved_file(worktree_path, file_path)
                logger.info("Resolved whitespace-only conflict in %s", file_path)
                return FileOutcome.TRIVIAL

        temp_files = await asyncio.to_thread(_write_temp_files, temp_dir, context)
        resolved = await self.resolver.resolve(
            context, temp_files, worktree_path, prompt_context, abort_signal
        )
        if abort_signal.is_set():
            return FileOutcome.INTERRUPTED
        if not resolved:
            return FileOutcome.FAILED

        await self.manager.stage_resolved_file(worktree_path, file_path)
        return FileOutcome.RESOLVED


def _write_temp_files(temp_dir: Path, context: ConflictFileContext) -> ConflictTempFiles:
    temp_dir.mkdir(parents=True, exist_ok=True)
    name = Path(context.file_path).name
    files = ConflictTempFiles(
        base=temp_dir / f"{name}.base",
        ours=temp_dir / f"{name}.ours",
        theirs=temp_dir / f"{name}.theirs",
    )
    files.base.write_text(context.base or "", encoding="utf-8")
    files.ours.write_text(context.ours or "", encoding="utf-8")
    files.theirs.write_text(context.theirs or "", encoding="utf-8")
    return files


__all__ = [
    "AgentConflictResolver",
    "ConflictRegion",
    "ConflictResolutionCoordinator",
    "ConflictResolver",
    "ConflictTempFiles",
    "FileOutcome",
    "RESOLVED_ACTION_IDS",
    "ResolutionOutcome",
    "ResolutionReport",
    "TextGenerationResolver",
    "extract_file_content",
    "has_conflict_markers",
    "parse_conflict_regions",
    "resolve_trivially",
]
