"""taskdesk - orchestration of interruptible AI coding tasks over git worktrees.

This package provides the task orchestrator, the worktree integration engine,
and the `taskdesk` command-line tool built on top of them.

Exports:
    __version__: Package version string.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.3.0"
