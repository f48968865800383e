"""Tests for conflict marker handling and the per-file resolution coordinator."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from taskdesk.core.locks import LockRegistry
from taskdesk.tasks.conflicts import (
    ConflictResolutionCoordinator,
    ConflictTempFiles,
    FileOutcome,
    ResolutionOutcome,
    ResolutionReport,
    TextGenerationResolver,
    extract_file_content,
    has_conflict_markers,
    parse_conflict_regions,
    resolve_trivially,
)
from taskdesk.tasks.models import LogLevel, PromptContext
from taskdesk.worktrees import ConflictFileContext, WorktreeManager
from tests.helpers import commit_file, git
from tests.mocks.mock_provider import StallingTextGenerator, StaticTextGenerator

CONFLICTED = """\
header
<<<<<<< HEAD
ours line
||||||| base
base line
=======
theirs line
>>>>>>> feature
footer"""


class TestMarkers:
    def test_parse_diff3_region(self) -> None:
        [region] = parse_conflict_regions(CONFLICTED)
        assert region.start_line == 1
        assert region.end_line == 7
        assert region.ours == "ours line"
        assert region.base == "base line"
        assert region.theirs == "theirs line"

    def test_parse_without_base(self) -> None:
        content = "<<<<<<< a\nx\n=======\ny\n>>>>>>> b\n"
        [region] = parse_conflict_regions(content)
        assert region.base is None
        assert (region.ours, region.theirs) == ("x", "y")

    def test_unterminated_region_is_ignored(self) -> None:
        assert parse_conflict_regions("<<<<<<< a\nx\n=======\ny\n") == []
        assert not has_conflict_markers("plain text")

    def test_whitespace_only_conflict_resolves_to_ours(self) -> None:
        content = "a\n<<<<<<< HEAD\nvalue = 1   \n=======\nvalue  =  1\n>>>>>>> b\nz"
        assert resolve_trivially(content) == "a\nvalue = 1\nz"

    def test_real_conflict_is_not_trivial(self) -> None:
        assert resolve_trivially(CONFLICTED) is None
        assert resolve_trivially("no markers") is None

    def test_extract_file_content(self) -> None:
        reply = "Here you go:\n```python\nfirst\n```\nand finally\n```python\nresolved = True\n```"
        assert extract_file_content(reply) == "resolved = True\n"
        assert extract_file_content("bare content") == "bare content\n"
        assert extract_file_content(f"```\n{CONFLICTED}\n```") is None
        assert extract_file_content("   ") is None


class TestReport:
    def test_outcomes(self) -> None:
        assert ResolutionReport().outcome is ResolutionOutcome.NO_CONFLICTS

        report = ResolutionReport({"a": FileOutcome.RESOLVED, "b": FileOutcome.TRIVIAL})
        assert report.outcome is ResolutionOutcome.ALL_RESOLVED

        report = ResolutionReport({"a": FileOutcome.RESOLVED, "b": FileOutcome.INTERRUPTED})
        assert report.outcome is ResolutionOutcome.PARTIALLY_RESOLVED
        assert report.interrupted == ["b"]
        assert "1 interrupted" in report.summary()

        report = ResolutionReport({"a": FileOutcome.FAILED})
        assert report.outcome is ResolutionOutcome.NEEDS_ATTENTION
        assert report.failed == ["a"]


class WritingResolver:
    """Writes a fixed resolution; files listed in ``hold`` wait for their abort."""

    def __init__(self, hold: set[str] | None = None, fail: set[str] | None = None) -> None:
        self.hold = hold or set()
        self.fail = fail or set()
        self.waiting: dict[str, asyncio.Event] = {}
        self.seen: dict[str, ConflictTempFiles] = {}

    async def resolve(
        self,
        context: ConflictFileContext,
        temp_files: ConflictTempFiles,
        worktree_path: Path,
        prompt_context: PromptContext,
        abort_signal: asyncio.Event,
    ) -> bool:
        self.seen[context.file_path] = temp_files
        assert temp_files.ours.read_text() == (context.ours or "")
        if context.file_path in self.hold:
            self.waiting[context.file_path] = abort_signal
            await abort_signal.wait()
            return False
        if context.file_path in self.fail:
            return False
        (worktree_path / context.file_path).write_text(f"resolved {context.file_path}\n")
        return True


async def _conflicted_worktree(repo: Path, files: dict[str, tuple[str, str]]) -> tuple[WorktreeManager, Path]:
    """Rebase a worktree onto main so that every file in ``files`` conflicts."""
    manager = WorktreeManager(".taskdesk", LockRegistry())
    for name in files:
        commit_file(repo, name, "base\n", f"Add {name}")
    worktree = await manager.create_worktree(repo, "task-1", "feature")
    wt_path = Path(worktree.path)
    for name, (ours, theirs) in files.items():
        (wt_path / name).write_text(theirs)
        (repo / name).write_text(ours)
    for path, label in ((wt_path, "Worktree"), (repo, "Main")):
        git(path, "add", *files)
        git(path, "commit", "-q", "-m", f"{label} changes")
    outcome = await manager.rebase_main_into_worktree(wt_path, "main")
    assert outcome.conflict
    return manager, wt_path


class TestCoordinator:
    @pytest.mark.asyncio
    async def test_resolves_and_stages_each_file(self, git_repo: Path) -> None:
        manager, wt_path = await _conflicted_worktree(
            git_repo,
            {"a.txt": ("main a\n", "wt a\n"), "b.txt": ("value = 1\n", "value  =  1\n")},
        )
        resolver = WritingResolver()
        interrupts: dict[str, asyncio.Event] = {}
        logs: list[tuple[LogLevel, str]] = []
        coordinator = ConflictResolutionCoordinator(
            manager, resolver, interrupts, log=lambda level, message, ctx: logs.append((level, message))
        )

        report = await coordinator.resolve_all(git_repo, wt_path)

        assert report.files == {"a.txt": FileOutcome.RESOLVED, "b.txt": FileOutcome.TRIVIAL}
        assert (wt_path / "a.txt").read_text() == "resolved a.txt\n"
        assert (wt_path / "b.txt").read_text() == "value = 1\n"
        assert await manager.get_unmerged_files(wt_path) == []
        assert interrupts == {}
        assert (LogLevel.INFO, "Resolved a.txt") in logs
        assert not resolver.seen["a.txt"].base.exists()

    @pytest.mark.asyncio
    async def test_interrupting_one_file_leaves_siblings(self, git_repo: Path) -> None:
        manager, wt_path = await _conflicted_worktree(
            git_repo,
            {"a.txt": ("main a\n", "wt a\n"), "b.txt": ("main b\n", "wt b\n")},
        )
        resolver = WritingResolver(hold={"a.txt"})
        interrupts: dict[str, asyncio.Event] = {}
        coordinator = ConflictResolutionCoordinator(manager, resolver, interrupts)

        run = asyncio.ensure_future(coordinator.resolve_all(git_repo, wt_path))
        while "a.txt" not in resolver.waiting:
            await asyncio.sleep(0.01)
        [interrupt_id] = [key for key, event in interrupts.items() if event is resolver.waiting["a.txt"]]
        interrupts.pop(interrupt_id).set()
        report = await asyncio.wait_for(run, timeout=10)

        assert report.files == {"a.txt": FileOutcome.INTERRUPTED, "b.txt": FileOutcome.RESOLVED}
        assert report.outcome is ResolutionOutcome.PARTIALLY_RESOLVED
        assert await manager.get_unmerged_files(wt_path) == ["a.txt"]

    @pytest.mark.asyncio
    async def test_failed_file_stays_unmerged(self, git_repo: Path) -> None:
        manager, wt_path = await _conflicted_worktree(git_repo, {"a.txt": ("main a\n", "wt a\n")})
        coordinator = ConflictResolutionCoordinator(manager, WritingResolver(fail={"a.txt"}), {})

        report = await coordinator.resolve_all(git_repo, wt_path)

        assert report.outcome is ResolutionOutcome.NEEDS_ATTENTION
        assert "a.txt" in git(wt_path, "diff", "--name-only", "--diff-filter=U")

    @pytest.mark.asyncio
    async def test_text_generation_resolver(self, git_repo: Path) -> None:
        manager, wt_path = await _conflicted_worktree(git_repo, {"a.txt": ("main a\n", "wt a\n")})
        generator = StaticTextGenerator("```\nmain a\nwt a\n```")
        coordinator = ConflictResolutionCoordinator(manager, TextGenerationResolver(generator), {})

        report = await coordinator.resolve_all(git_repo, wt_path)

        assert report.outcome is ResolutionOutcome.ALL_RESOLVED
        assert (wt_path / "a.txt").read_text() == "main a\nwt a\n"
        assert "a.txt" in generator.calls[0][1]

    @pytest.mark.asyncio
    async def test_interrupt_cancels_stalled_generation(self, git_repo: Path) -> None:
        manager, wt_path = await _conflicted_worktree(git_repo, {"a.txt": ("main a\n", "wt a\n")})
        generator = StallingTextGenerator()
        interrupts: dict[str, asyncio.Event] = {}
        coordinator = ConflictResolutionCoordinator(manager, TextGenerationResolver(generator), interrupts)

        run = asyncio.ensure_future(coordinator.resolve_all(git_repo, wt_path))
        await asyncio.wait_for(generator.started.wait(), timeout=5)
        for signal in interrupts.values():
            signal.set()
        report = await asyncio.wait_for(run, timeout=1)

        assert generator.cancelled
        assert report.files == {"a.txt": FileOutcome.INTERRUPTED}
        assert await manager.get_unmerged_files(wt_path) == ["a.txt"]
