"""Git fixtures shared by the test suite."""

from __future__ import annotations

import subprocess
from pathlib import Path


def git(path: Path, *args: str) -> str:
    """Run git for test setup and return stdout."""
    result = subprocess.run(
        ["git", *args], cwd=path, check=True, capture_output=True, text=True
    )
    return result.stdout


def commit_file(path: Path, name: str, content: str, message: str | None = None) -> str:
    """Write a file, commit it and return the new HEAD."""
    target = path / name
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content)
    git(path, "add", name)
    git(path, "commit", "-q", "-m", message or f"Update {name}")
    return head(path)


def head(path: Path, ref: str = "HEAD") -> str:
    return git(path, "rev-parse", ref).strip()


def init_repo(path: Path) -> Path:
    """Create a repository on ``main`` with a committed README."""
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init", "-q")
    git(path, "symbolic-ref", "HEAD", "refs/heads/main")
    git(path, "config", "user.email", "test@test.com")
    git(path, "config", "user.name", "Test User")
    git(path, "config", "commit.gpgsign", "false")
    commit_file(path, "README.md", "# Test Repo\n", "Initial commit")
    return path
