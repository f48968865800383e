"""Stash entries addressed by a caller-chosen identifier.

``git stash`` refers to entries positionally (``stash@{N}``), which shifts as
other stashes are pushed or dropped. Each entry created here embeds a unique
id in its message and is looked up by that id when applied or dropped. Stash
refs are shared by every worktree of a repository, so an entry pushed in a
worktree can be applied in the main checkout and vice versa.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

from taskdesk.core.result import Err, Ok
from taskdesk.git import GitSession, run_git

logger = logging.getLogger(__name__)


def stash_id(kind: str, task_id: str, purpose: str, timestamp_ms: int) -> str:
    """Build a stash identifier such as ``worktree-<tail>-merge-<ms>``.

    Long task ids are shortened to their tail so messages stay readable.
    """
    tail = task_id[24:] if len(task_id) > 24 else task_id
    return f"{kind}-{tail}-{purpose}-{timestamp_ms}"


async def has_uncommitted_changes(path: Path) -> bool:
    match await run_git(path, "status", "--porcelain=v1"):
        case Ok(output):
            return bool(output.strip())
        case Err(err):
            logger.warning("Could not read status of %s: %s", path, err)
            return False


async def find_stash_ref(path: Path, identifier: str) -> str | None:
    match await run_git(path, "stash", "list"):
        case Ok(output):
            for line in output.splitlines():
                if identifier in line:
                    return line.split(":", 1)[0]
            return None
        case Err(err):
            logger.warning("Could not list stashes in %s: %s", path, err)
            return None


async def _folders_with_untracked_files(path: Path, folders: Sequence[str]) -> list[str]:
    if not folders:
        return []
    match await run_git(path, "ls-files", "--others", "--exclude-standard"):
        case Ok(output):
            untracked = [line.strip().replace("\\", "/") for line in output.splitlines() if line.strip()]
        case Err(err):
            logger.warning("Could not list untracked files in %s: %s", path, err)
            return []

    excluded: list[str] = []
    for folder in folders:
        prefix = folder.rstrip("/")
        if any(item == prefix or item.startswith(f"{prefix}/") for item in untracked):
            logger.debug("Excluding folder %s from stash (has untracked files)", prefix)
            excluded.append(prefix)
    return excluded


async def stash_changes(
    session: GitSession,
    path: Path,
    identifier: str,
    message: str,
    symlink_folders: Sequence[str] = (),
) -> str | None:
    """Stash tracked and untracked changes under ``identifier``.

    Shared folders holding untracked content are left out of the stash.

    Returns:
        The identifier when something was stashed, None for a clean tree.

    Raises:
        GitCommandError: If ``git stash push`` fails.
    """
    if not await has_uncommitted_changes(path):
        return None

    excluded = await _folders_with_untracked_files(path, symlink_folders)
    args = ["stash", "push", "-u", "-m", f"{identifier}: {message}"]
    if excluded:
        args.extend(["--", ".", *(f":(exclude){folder}" for folder in excluded)])

    await session.run(path, *args, error_message="Failed to stash uncommitted changes")
    if await find_stash_ref(path, identifier) is None:
        # Only excluded content was dirty, so git created no entry.
        return None
    logger.info("Stashed changes in %s with id %s", path, identifier)
    return identifier


async def apply_stash(session: GitSession, path: Path, identifier: str) -> bool:
    """Apply the stash entry carrying ``identifier`` without dropping it.

    Returns:
        False when no such entry exists.

    Raises:
        GitCommandError: If the entry exists but cannot be applied.
    """
    ref = await find_stash_ref(path, identifier)
    if ref is None:
        logger.warning("Stash with id %s not found, skipping apply", identifier)
        return False
    await session.run(path, "stash", "apply", ref, error_message=f"Failed to apply stash {identifier}")
    logger.info("Applied stash %s (%s) in %s", identifier, ref, path)
    return True


async def drop_stash(session: GitSession, path: Path, identifier: str) -> None:
    """Drop the entry carrying ``identifier``; failures are logged only."""
    ref = await find_stash_ref(path, identifier)
    if ref is None:
        logger.warning("Stash with id %s not found, skipping drop", identifier)
        return
    match await session.attempt(path, "stash", "drop", ref):
        case Ok(_):
            logger.info("Dropped stash %s (%s)", identifier, ref)
        case Err(err):
            logger.error("Failed to drop stash %s: %s", identifier, err)


__all__ = [
    "apply_stash",
    "drop_stash",
    "find_stash_ref",
    "has_uncommitted_changes",
    "stash_changes",
    "stash_id",
]
