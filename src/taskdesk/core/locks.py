"""Named mutual-exclusion regions for git sequences.

Mutating git operations on the same worktree must never interleave. Each
operation acquires a lock named after the operation kind and the canonical
path it touches, e.g. ``git-merge-worktree-/repo/.taskdesk/tasks/t1/worktree``.
Locks for different names are independent, so separate worktrees proceed in
parallel.

Usage:
    registry = LockRegistry()
    async with registry.hold(f"git-rebase-{path}"):
        ...
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    lock: asyncio.Lock
    users: int = 0


class LockRegistry:
    """Registry of ``asyncio.Lock`` objects keyed by name.

    Entries are created on first use and discarded once no coroutine holds or
    waits for them, so the registry does not grow with the number of tasks.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}

    @staticmethod
    def key(prefix: str, *parts: str | Path) -> str:
        """Build a lock name from a prefix and canonicalized path parts."""
        rendered = [
            str(Path(part).expanduser().resolve()) if isinstance(part, Path) else part
            for part in parts
        ]
        return "-".join([prefix, *rendered])

    def is_locked(self, name: str) -> bool:
        entry = self._entries.get(name)
        return entry is not None and entry.lock.locked()

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[None]:
        """Hold the named lock for the duration of the block."""
        entry = self._entries.get(name)
        if entry is None:
            entry = _Entry(lock=asyncio.Lock())
            self._entries[name] = entry

        entry.users += 1
        try:
            if entry.lock.locked():
                logger.debug("Waiting for lock %s", name)
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(name) is entry:
                del self._entries[name]


default_registry = LockRegistry()


__all__ = ["LockRegistry", "default_registry"]
