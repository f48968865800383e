"""CLI command modules for taskdesk.

    - tasks: List, inspect, create, run and delete tasks
    - worktree: Worktree lifecycle and integration (merge, rebase, revert)
"""

from __future__ import annotations

from . import tasks, ui, worktree

__all__ = ["tasks", "ui", "worktree"]
