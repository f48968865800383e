"""Git command execution.

This package provides async git plumbing:
    - run_git: one git invocation returning a Result
    - GitSession: a recorded multi-step command sequence that raises
      GitCommandError with the full transcript
    - AsyncRepo: Result-returning repository queries
    - is_conflict_failure: classifier for conflict failures
"""

from __future__ import annotations

from .client import (
    UNMERGED_CODES,
    AsyncRepo,
    GitCommandError,
    GitSession,
    StatusEntry,
    WorktreeInfo,
    format_command,
    is_conflict_failure,
    run_git,
)

__all__ = [
    "AsyncRepo",
    "GitCommandError",
    "GitSession",
    "StatusEntry",
    "UNMERGED_CODES",
    "WorktreeInfo",
    "format_command",
    "is_conflict_failure",
    "run_git",
]
