from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any

import pytest
from rich.console import Console
from typer.testing import CliRunner

# Detect CI environment (GitHub Actions sets CI=true)
IS_CI = os.environ.get("CI", "").lower() == "true"


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "local_only: marks tests that require local environment (skip in CI)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip local_only tests when running in CI."""
    if not IS_CI:
        return
    skip_ci = pytest.mark.skip(reason="Skipped in CI (requires local environment)")
    for item in items:
        if "local_only" in item.keywords:
            item.add_marker(skip_ci)


ROOT = Path(__file__).resolve().parent.parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tests.helpers import init_repo  # noqa: E402


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a temporary git repository on ``main`` with one commit."""
    return init_repo(tmp_path / "repo")


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def isolate_config(tmp_path: Path, monkeypatch: Any) -> Path:
    """Point config to a temp path so tests don't touch user state."""
    cfg_path = tmp_path / "config.toml"
    monkeypatch.setenv("TASKDESK_CONFIG", str(cfg_path))
    for name in list(os.environ):
        if name.startswith("TASKDESK_") and name != "TASKDESK_CONFIG":
            monkeypatch.delenv(name)
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test-key")
    return cfg_path


@pytest.fixture(autouse=True)
def capture_console(monkeypatch: Any) -> Console:
    """Use an in-memory Rich console during tests."""
    test_console = Console(record=True, width=200)
    import taskdesk.commands.tasks as tasks_commands
    import taskdesk.commands.ui as commands_ui
    import taskdesk.commands.worktree as worktree_commands
    import taskdesk.core.console as core_console
    import taskdesk.core.decorators as decorators
    import taskdesk.main as td_main

    for module in (
        core_console,
        decorators,
        td_main,
        commands_ui,
        tasks_commands,
        worktree_commands,
    ):
        monkeypatch.setattr(module, "console", test_console)
    return test_console
