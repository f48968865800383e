"""Tests for the taskdesk command line."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest
from rich.console import Console
from typer.testing import CliRunner

import taskdesk.commands.ui as commands_ui
from taskdesk import __version__
from taskdesk.main import app
from taskdesk.project import Project
from taskdesk.tasks.models import TaskData
from taskdesk.tasks.store import TaskStore
from tests.helpers import commit_file, git
from tests.mocks.mock_provider import ScriptedAgentExecutor


def _tasks(repo: Path) -> list[TaskData]:
    return asyncio.run(TaskStore(repo.resolve()).list_tasks())


def _create(runner: CliRunner, repo: Path, name: str, *extra: str) -> TaskData:
    result = runner.invoke(app, ["tasks", "create", name, "--repo", str(repo), *extra])
    assert result.exit_code == 0, result.output
    [task] = [task for task in _tasks(repo) if task.name == name]
    return task


@pytest.fixture
def scripted_projects(monkeypatch: Any) -> None:
    """Open projects with a scripted agent instead of the Anthropic one."""

    def factory(repo: Path, config: Any) -> Project:
        return Project(repo, config, agent_executor=ScriptedAgentExecutor(replies=["All done."]))

    monkeypatch.setattr(commands_ui, "Project", factory)


class TestRootCommands:
    def test_version(self, runner: CliRunner, capture_console: Console) -> None:
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert __version__ in capture_console.export_text()

    def test_config_lists_sections(self, runner: CliRunner, capture_console: Console) -> None:
        result = runner.invoke(app, ["config"])

        assert result.exit_code == 0
        output = capture_console.export_text()
        assert "task.smart_task_state" in output
        assert "worktree.tasks_dir" in output
        assert "File loaded: no" in output

    def test_config_error_falls_back(
        self, runner: CliRunner, capture_console: Console, isolate_config: Path
    ) -> None:
        isolate_config.write_text("task = [broken\n")

        result = runner.invoke(app, ["config"])

        assert result.exit_code == 0
        output = capture_console.export_text()
        assert "Configuration Error - Using Defaults" in output
        assert "Syntax error in" in output


class TestTaskCommands:
    def test_list_empty(self, runner: CliRunner, git_repo: Path, capture_console: Console) -> None:
        result = runner.invoke(app, ["tasks", "list", "--repo", str(git_repo)])

        assert result.exit_code == 0
        assert "No tasks found." in capture_console.export_text()

    def test_create_list_and_show(
        self, runner: CliRunner, git_repo: Path, capture_console: Console
    ) -> None:
        task = _create(runner, git_repo, "Fix login", "--file", "src/login.py")

        assert task.context_files == ["src/login.py"]
        assert runner.invoke(app, ["tasks", "list", "--repo", str(git_repo)]).exit_code == 0
        assert runner.invoke(app, ["tasks", "show", task.id, "--repo", str(git_repo)]).exit_code == 0

        output = capture_console.export_text()
        assert f"Created task {task.id}" in output
        assert "Fix login" in output
        assert "src/login.py" in output

    def test_create_in_worktree(
        self, runner: CliRunner, git_repo: Path, capture_console: Console
    ) -> None:
        task = _create(runner, git_repo, "Isolated work", "--worktree")

        assert task.worktree is not None
        assert Path(task.worktree.path).is_dir()
        assert "Worktree:" in capture_console.export_text()

    def test_show_unknown_task(
        self, runner: CliRunner, git_repo: Path, capture_console: Console
    ) -> None:
        result = runner.invoke(app, ["tasks", "show", "missing", "--repo", str(git_repo)])

        assert result.exit_code == 1
        assert "Unknown task missing" in capture_console.export_text()

    @pytest.mark.usefixtures("scripted_projects")
    def test_run_prompt(self, runner: CliRunner, git_repo: Path, capture_console: Console) -> None:
        task = _create(runner, git_repo, "Say hello")

        result = runner.invoke(app, ["tasks", "run", task.id, "hello", "--repo", str(git_repo)])

        assert result.exit_code == 0, result.output
        assert "All done." in capture_console.export_text()
        [stored] = _tasks(git_repo)
        assert stored.state == "READY_FOR_REVIEW"

    def test_delete(self, runner: CliRunner, git_repo: Path, capture_console: Console) -> None:
        task = _create(runner, git_repo, "Short lived", "--worktree")

        result = runner.invoke(app, ["tasks", "delete", task.id, "--yes", "--repo", str(git_repo)])

        assert result.exit_code == 0
        assert _tasks(git_repo) == []
        assert f"Deleted task {task.id}" in capture_console.export_text()

    def test_delete_requires_confirmation(self, runner: CliRunner, git_repo: Path) -> None:
        task = _create(runner, git_repo, "Keep me")

        result = runner.invoke(
            app, ["tasks", "delete", task.id, "--repo", str(git_repo)], input="n\n"
        )

        assert result.exit_code == 1
        assert [t.id for t in _tasks(git_repo)] == [task.id]


class TestWorktreeCommands:
    def test_status_without_worktree(
        self, runner: CliRunner, git_repo: Path, capture_console: Console
    ) -> None:
        task = _create(runner, git_repo, "Local only")

        result = runner.invoke(app, ["worktree", "status", task.id, "--repo", str(git_repo)])

        assert result.exit_code == 0
        assert "has no worktree" in capture_console.export_text()

    def test_create_status_and_remove(
        self, runner: CliRunner, git_repo: Path, capture_console: Console
    ) -> None:
        task = _create(runner, git_repo, "Move me")

        created = runner.invoke(app, ["worktree", "create", task.id, "--repo", str(git_repo)])
        assert created.exit_code == 0, created.output
        [stored] = _tasks(git_repo)
        assert stored.worktree is not None
        wt_path = Path(stored.worktree.path)
        commit_file(wt_path, "feature.txt", "feature\n", "Add feature")

        status = runner.invoke(app, ["worktree", "status", task.id, "--repo", str(git_repo)])
        assert status.exit_code == 0
        output = capture_console.export_text()
        assert "Worktree ready" in output
        assert "Integration with main" in output
        assert "Add feature" in output

        removed = runner.invoke(app, ["worktree", "remove", task.id, "--repo", str(git_repo)])
        assert removed.exit_code == 0
        assert not wt_path.exists()

    def test_merge(self, runner: CliRunner, git_repo: Path, capture_console: Console) -> None:
        task = _create(runner, git_repo, "Ship it", "--worktree")
        assert task.worktree is not None
        commit_file(Path(task.worktree.path), "shipped.txt", "yes\n", "Add shipped")

        result = runner.invoke(
            app, ["worktree", "merge", task.id, "-m", "feat: ship it", "--repo", str(git_repo)]
        )

        assert result.exit_code == 0, result.output
        assert "Successfully squashed and merged worktree to main branch" in capture_console.export_text()
        assert git(git_repo, "log", "-1", "--pretty=%s").strip() == "feat: ship it"
        [stored] = _tasks(git_repo)
        assert stored.last_merge_state is not None

    def test_revert_without_merge_fails(
        self, runner: CliRunner, git_repo: Path, capture_console: Console
    ) -> None:
        task = _create(runner, git_repo, "Nothing merged", "--worktree")

        result = runner.invoke(app, ["worktree", "revert", task.id, "--repo", str(git_repo)])

        assert result.exit_code == 1
        assert "No merge state found to revert" in capture_console.export_text()

    def test_unknown_task(self, runner: CliRunner, git_repo: Path, capture_console: Console) -> None:
        result = runner.invoke(app, ["worktree", "abort", "missing", "--repo", str(git_repo)])

        assert result.exit_code == 1
        assert "Unknown task missing" in capture_console.export_text()
