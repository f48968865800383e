"""Branch names derived from task names."""

from __future__ import annotations

import re

MAX_WORDS = 7

_DISALLOWED = re.compile(r"[^a-z0-9\s-]")
_DASHES = re.compile(r"-{2,}")


def generate_branch_name(task_name: str, task_id: str) -> str:
    """Return a git-safe branch name for a task.

    Uses the first seven words of the name, lowercased, with anything
    outside ``[a-z0-9 -]`` removed and runs of dashes collapsed. Falls back
    to the task id when nothing usable is left.

    >>> generate_branch_name("Fix the Login bug!", "t1")
    'fix-the-login-bug'
    """
    words = task_name.split()[:MAX_WORDS]
    cleaned = _DISALLOWED.sub("", " ".join(words).lower())
    name = "-".join(cleaned.split())
    name = _DASHES.sub("-", name).lstrip(".-").rstrip("-")
    return name or task_id


__all__ = ["MAX_WORDS", "generate_branch_name"]
