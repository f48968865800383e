"""Git worktree management for task isolation and integration.

Each task that runs in worktree mode gets its own checkout at
``<repo>/<tasks_dir>/tasks/<task_id>/worktree``. This module creates and
removes those checkouts, reports how far they diverge from a target branch,
and integrates them back with merge, squash, rebase and revert transactions.

Mutating sequences run under a named lock keyed by the worktree path and use
a ``GitSession`` so that a failure carries every command attempted. Read-only
queries take no lock and fail open to an empty result.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from collections.abc import Sequence
from pathlib import Path

from taskdesk.core.locks import LockRegistry, default_registry
from taskdesk.core.result import Err, Ok
from taskdesk.git import AsyncRepo, GitCommandError, GitSession, is_conflict_failure, run_git
from taskdesk.worktrees.models import (
    ConflictFileContext,
    ConflictPrediction,
    MergeState,
    RebaseOutcome,
    RebaseState,
    UnmergedWork,
    UpdatedFile,
    Worktree,
)
from taskdesk.worktrees.stash import (
    apply_stash,
    drop_stash,
    has_uncommitted_changes,
    stash_changes,
    stash_id,
)

logger = logging.getLogger(__name__)

TEMP_COMMIT_PREFIX = "TEMP_UNCOMMITTED_"
DETACHED_HEAD = "DETACHED HEAD"

# Messages from `git worktree remove` meaning the worktree is already gone.
_ALREADY_REMOVED = ("is not a working tree", "does not exist", "No such file or directory")


def _now_ms() -> int:
    return int(time.time() * 1000)


class WorktreeManager:
    """Creates, inspects and integrates per-task git worktrees.

    Attributes:
        tasks_dir: Directory under the repository root that holds task data
        locks: Lock registry shared with other managers in the process
    """

    def __init__(self, tasks_dir: str = ".taskdesk", locks: LockRegistry | None = None) -> None:
        self.tasks_dir = tasks_dir
        self.locks = locks or default_registry

    # -------------------------------------------------------------------------
    # Layout
    # -------------------------------------------------------------------------

    def tasks_root(self, repo_path: Path) -> Path:
        return repo_path / self.tasks_dir / "tasks"

    def worktree_path(self, repo_path: Path, task_id: str) -> Path:
        return self.tasks_root(repo_path) / task_id / "worktree"

    def tmp_dir(self, repo_path: Path) -> Path:
        return repo_path / self.tasks_dir / "tmp"

    async def initialize(self, repo_path: Path) -> None:
        """Create the tasks directory and keep it out of git status.

        The tasks directory is listed in ``info/exclude`` so that stashing
        untracked files in the main checkout never captures task records or
        nested worktrees.
        """
        await asyncio.to_thread(self.tasks_root(repo_path).mkdir, parents=True, exist_ok=True)
        await self.ensure_excluded(repo_path)

    async def ensure_excluded(self, repo_path: Path) -> None:
        match await AsyncRepo(repo_path).git_path("info/exclude"):
            case Ok(exclude_path):
                pass
            case Err(err):
                logger.debug("Not excluding %s: %s", self.tasks_dir, err)
                return

        pattern = f"/{self.tasks_dir.strip('/')}/"

        def _append() -> None:
            existing = exclude_path.read_text(encoding="utf-8") if exclude_path.exists() else ""
            if pattern in existing.splitlines():
                return
            exclude_path.parent.mkdir(parents=True, exist_ok=True)
            separator = "" if not existing or existing.endswith("\n") else "\n"
            exclude_path.write_text(f"{existing}{separator}{pattern}\n", encoding="utf-8")

        await asyncio.to_thread(_append)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def create_worktree(
        self,
        repo_path: Path,
        task_id: str,
        branch: str | None = None,
        base_ref: str = "HEAD",
    ) -> Worktree:
        """Create (or recreate) the worktree for ``task_id``.

        Args:
            repo_path: Repository root
            task_id: Task owning the worktree; determines its path
            branch: Branch to check out. Attached when it exists, created
                from ``base_ref`` otherwise. None creates a detached worktree.
            base_ref: Start point for new branches and detached worktrees

        Returns:
            The created Worktree

        Raises:
            GitCommandError: If any git step fails
        """
        lock_name = LockRegistry.key("worktree-create", repo_path, task_id)
        async with self.locks.hold(lock_name):
            path = self.worktree_path(repo_path, task_id)
            session = GitSession(repo_path)

            await self._ensure_repository(session, repo_path)
            await self.initialize(repo_path)
            await self._ensure_initial_commit(session, repo_path)
            await self._discard_stale(repo_path, path)
            await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)

            repo = AsyncRepo(repo_path)
            created_branch: str | None = None
            if branch and await repo.branch_exists(branch):
                await session.run(repo_path, "worktree", "add", str(path), branch)
                base_commit = (await session.run(repo_path, "rev-parse", branch)).strip()
                base_branch = branch
            elif branch:
                if base_ref != "HEAD" and not await repo.branch_exists(base_ref):
                    raise session.error(f"Base branch '{base_ref}' does not exist")
                base_commit = (await session.run(repo_path, "rev-parse", base_ref)).strip()
                await session.run(repo_path, "worktree", "add", "-b", branch, str(path), base_ref)
                base_branch = branch
                created_branch = branch
            else:
                await session.run(repo_path, "worktree", "add", "--detach", str(path), base_ref)
                base_commit = (await session.run(repo_path, "rev-parse", base_ref)).strip()
                base_branch = await self._detached_label(repo_path, base_ref)
                logger.info("Worktree created in detached mode from %s", base_commit)

            logger.info("Worktree for task %s created at %s", task_id, path)
            return Worktree(
                path=str(path),
                base_branch=base_branch,
                base_commit=base_commit,
                branch=created_branch,
            )

    async def _ensure_repository(self, session: GitSession, repo_path: Path) -> None:
        if (await run_git(repo_path, "rev-parse", "--is-inside-work-tree")).is_err():
            await session.run(repo_path, "init")

    async def _ensure_initial_commit(self, session: GitSession, repo_path: Path) -> None:
        if (await run_git(repo_path, "rev-parse", "HEAD")).is_err():
            await session.attempt(repo_path, "add", "-A")
            await session.run(repo_path, "commit", "--allow-empty", "-m", "Initial commit")

    async def _discard_stale(self, repo_path: Path, path: Path) -> None:
        await AsyncRepo(repo_path).worktree_remove(path, force=True)
        if path.exists():
            await asyncio.to_thread(shutil.rmtree, path, True)
        await AsyncRepo(repo_path).worktree_prune()

    async def _detached_label(self, repo_path: Path, base_ref: str) -> str:
        if base_ref != "HEAD":
            return f"{base_ref} (DETACHED)"
        match await run_git(repo_path, "rev-parse", "--abbrev-ref", "HEAD"):
            case Ok(output) if output.strip() and output.strip() != "HEAD":
                return output.strip()
            case _:
                return DETACHED_HEAD

    async def create_symlinks(
        self, repo_path: Path, worktree_path: Path, folders: Sequence[str]
    ) -> list[Path]:
        """Link shared, untracked folders from the repository into a worktree.

        Folders that are missing, already present in the worktree, or tracked
        by git are skipped.
        """
        created: list[Path] = []
        for folder in folders:
            source = repo_path / folder
            target = worktree_path / folder
            if not source.is_dir():
                logger.debug("Symlink source %s is not a directory", source)
                continue
            if target.exists() or target.is_symlink():
                logger.debug("Symlink target %s already exists", target)
                continue
            match await run_git(repo_path, "ls-files", folder):
                case Ok(output) if output.strip():
                    logger.debug("Folder %s is tracked by git, not linking", folder)
                    continue
                case _:
                    pass
            try:
                await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
                await asyncio.to_thread(target.symlink_to, source, True)
            except OSError as exc:
                logger.warning("Failed to create symlink for %s: %s", folder, exc)
                continue
            logger.info("Created symlink %s -> %s", target, source)
            created.append(target)
        return created

    async def remove_worktree(self, repo_path: Path, worktree: Worktree) -> None:
        """Remove a worktree registration and the branch created for it.

        A worktree that is already gone counts as removed.

        Raises:
            GitCommandError: For any other removal failure
        """
        lock_name = LockRegistry.key("worktree-remove", repo_path, Path(worktree.path))
        async with self.locks.hold(lock_name):
            session = GitSession(repo_path)
            match await session.attempt(repo_path, "worktree", "remove", "--force", worktree.path):
                case Ok(_):
                    pass
                case Err(err) if any(marker in err.message for marker in _ALREADY_REMOVED):
                    logger.debug("Worktree %s already removed", worktree.path)
                    return
                case Err(err):
                    raise session.error("Failed to remove worktree", repo_path, err)

            if worktree.branch:
                match await AsyncRepo(repo_path).delete_branch(worktree.branch, force=True):
                    case Ok(_):
                        logger.info("Deleted task branch %s", worktree.branch)
                    case Err(err):
                        logger.debug("Could not delete branch %s: %s", worktree.branch, err)

    async def list_worktrees(self, repo_path: Path) -> list[Worktree]:
        match await AsyncRepo(repo_path).worktree_list():
            case Ok(infos):
                return [
                    Worktree(
                        path=str(info.path),
                        base_branch=info.branch,
                        base_commit=info.commit or None,
                        prunable=info.prunable,
                    )
                    for info in infos
                ]
            case Err(err):
                logger.warning("Failed to list worktrees in %s: %s", repo_path, err)
                return []

    async def get_worktree(self, repo_path: Path, task_id: str) -> Worktree | None:
        """Return the registered worktree for a task, if git knows about it."""
        expected = self.worktree_path(repo_path, task_id).resolve()
        for worktree in await self.list_worktrees(repo_path):
            if Path(worktree.path).resolve() == expected:
                return worktree
        return None

    async def close(self, repo_path: Path) -> int:
        """Remove prunable task worktrees; returns how many were removed."""
        tasks_root = self.tasks_root(repo_path).resolve()
        repo = AsyncRepo(repo_path)
        removed = 0
        for worktree in await self.list_worktrees(repo_path):
            path = Path(worktree.path)
            if not worktree.prunable or not path.resolve().is_relative_to(tasks_root):
                continue
            match await repo.worktree_remove(path, force=True):
                case Ok(_):
                    removed += 1
                case Err(err):
                    logger.warning("Failed to prune worktree %s: %s", path, err)
                    await asyncio.to_thread(shutil.rmtree, path, True)
        await repo.worktree_prune()
        return removed

    # -------------------------------------------------------------------------
    # Read-only status
    # -------------------------------------------------------------------------

    async def get_project_main_branch(self, repo_path: Path) -> str:
        """Return the branch checked out in the repository.

        Raises:
            GitCommandError: On a detached HEAD or git failure
        """
        session = GitSession(repo_path)
        branch = (await session.run(repo_path, "branch", "--show-current")).strip()
        if not branch:
            raise session.error("Repository is in detached HEAD state; no main branch to target")
        return branch

    async def list_branches(self, repo_path: Path) -> list[str]:
        return (await AsyncRepo(repo_path).list_branches()).unwrap_or([])

    async def has_uncommitted_changes(self, path: Path) -> bool:
        return await has_uncommitted_changes(path)

    async def get_uncommitted_files(self, path: Path) -> list[str]:
        match await AsyncRepo(path).status_entries():
            case Ok(entries):
                return [entry.path for entry in entries]
            case Err(err):
                logger.warning("Failed to read uncommitted files in %s: %s", path, err)
                return []

    async def get_ahead_commits(self, worktree_path: Path, target_branch: str) -> list[str]:
        match await AsyncRepo(worktree_path).log_oneline(f"{target_branch}..HEAD"):
            case Ok(commits):
                return commits
            case Err(err):
                logger.warning("Failed to list commits ahead of %s: %s", target_branch, err)
                return []

    async def check_worktree_for_unmerged_work(
        self, repo_path: Path, worktree_path: Path, target_branch: str | None = None
    ) -> UnmergedWork:
        try:
            target = target_branch or await self.get_project_main_branch(repo_path)
        except GitCommandError as exc:
            logger.warning("Failed to check worktree for unmerged work: %s", exc)
            return UnmergedWork()

        uncommitted = await self.get_uncommitted_files(worktree_path)
        commits = await self.get_ahead_commits(worktree_path, target)
        return UnmergedWork(
            has_uncommitted_changes=bool(uncommitted),
            has_unmerged_commits=bool(commits),
            unmerged_commit_count=len(commits),
            unmerged_commits=commits,
            uncommitted_files=uncommitted,
        )

    async def has_changes_to_rebase(self, worktree_path: Path, target_branch: str) -> bool:
        match await run_git(worktree_path, "rev-list", "--count", f"HEAD..{target_branch}"):
            case Ok(output):
                return output.strip() not in ("", "0")
            case Err(err):
                logger.debug("Could not count commits on %s: %s", target_branch, err)
                return False

    async def check_for_rebase_conflicts(
        self, worktree_path: Path, target_branch: str
    ) -> ConflictPrediction:
        """Predict whether rebasing the worktree onto ``target_branch`` conflicts.

        Runs a three-way ``git merge-tree`` dry run against the merge base.
        When merge-tree is unavailable, every file changed on both sides is
        reported as conflicting.
        """
        if not await self.has_changes_to_rebase(worktree_path, target_branch):
            return ConflictPrediction()

        repo = AsyncRepo(worktree_path)
        match await repo.merge_base("HEAD", target_branch):
            case Ok(base):
                pass
            case Err(err):
                logger.warning("Failed to find merge base with %s: %s", target_branch, err)
                return ConflictPrediction(can_auto_merge=False)

        match await run_git(worktree_path, "merge-tree", base, "HEAD", target_branch):
            case Ok(output) if "<<<<<<< " not in output:
                return ConflictPrediction()
            case Ok(_):
                conflicting = await self._files_changed_on_both_sides(repo, base, target_branch)
                has_conflicts = True
            case Err(err):
                logger.debug("merge-tree unavailable, comparing changed files: %s", err)
                conflicting = await self._files_changed_on_both_sides(repo, base, target_branch)
                has_conflicts = bool(conflicting)

        if not has_conflicts:
            return ConflictPrediction()

        return ConflictPrediction(
            has_conflicts=True,
            conflicting_files=conflicting,
            can_auto_merge=False,
            worktree_commits=(await repo.log_oneline(f"{base}..HEAD")).unwrap_or([]),
            target_commits=(await repo.log_oneline(f"{base}..{target_branch}")).unwrap_or([]),
        )

    async def _files_changed_on_both_sides(
        self, repo: AsyncRepo, base: str, target_branch: str
    ) -> list[str]:
        ours = (await repo.changed_files(f"{base}...HEAD")).unwrap_or(set())
        theirs = (await repo.changed_files(f"{base}...{target_branch}")).unwrap_or(set())
        return sorted(ours & theirs)

    async def get_updated_files(self, path: Path) -> list[UpdatedFile]:
        """Return files changed against HEAD, including untracked files."""
        files: list[UpdatedFile] = []
        match await run_git(path, "diff", "--numstat", "HEAD"):
            case Ok(output):
                pass
            case Err(err):
                logger.warning("Failed to read updated files in %s: %s", path, err)
                return []

        for line in output.splitlines():
            parts = line.split("\t")
            if len(parts) < 3:
                continue
            added, deleted, file_path = parts[0], parts[1], parts[2]
            diff = (await run_git(path, "diff", "--unified=3", "HEAD", "--", file_path)).unwrap_or("")
            files.append(
                UpdatedFile(
                    path=file_path,
                    additions=int(added) if added.isdigit() else 0,
                    deletions=int(deleted) if deleted.isdigit() else 0,
                    diff=diff,
                )
            )

        untracked = (await run_git(path, "ls-files", "--others", "--exclude-standard")).unwrap_or("")
        for file_path in (line.strip() for line in untracked.splitlines() if line.strip()):
            target = path / file_path
            if not target.is_file():
                continue
            text = await asyncio.to_thread(target.read_text, "utf-8", "replace")
            files.append(UpdatedFile(path=file_path, additions=len(text.splitlines())))
        return files

    async def get_rebase_state(self, path: Path) -> RebaseState:
        repo = AsyncRepo(path)
        unmerged = await self.get_unmerged_files(path)
        in_progress = False
        for name in ("rebase-merge", "rebase-apply"):
            match await repo.git_path(name):
                case Ok(git_path) if git_path.exists():
                    in_progress = True
                case _:
                    pass
        return RebaseState(
            in_progress=in_progress,
            has_unmerged_paths=bool(unmerged),
            unmerged_files=unmerged,
        )

    async def get_unmerged_files(self, path: Path) -> list[str]:
        match await AsyncRepo(path).status_entries():
            case Ok(entries):
                return [entry.path for entry in entries if entry.is_unmerged]
            case Err(err):
                logger.warning("Failed to read unmerged files in %s: %s", path, err)
                return []

    async def collect_conflict_context(self, path: Path, file_path: str) -> ConflictFileContext:
        repo = AsyncRepo(path)
        stages: dict[int, str | None] = {}
        for stage in (1, 2, 3):
            stages[stage] = (await repo.show_stage(stage, file_path)).unwrap_or(None)

        working_copy = path / file_path
        current = None
        if working_copy.is_file():
            current = await asyncio.to_thread(working_copy.read_text, "utf-8", "replace")

        return ConflictFileContext(
            file_path=file_path,
            base=stages[1],
            ours=stages[2],
            theirs=stages[3],
            current=current,
        )

    async def stage_resolved_file(self, path: Path, file_path: str) -> None:
        # Files are resolved concurrently; git allows one index writer at a time.
        async with self.locks.hold(LockRegistry.key("git-index", path)):
            session = GitSession(path)
            await session.run(
                path, "add", "--", file_path, error_message=f"Failed to stage {file_path}"
            )

    async def get_changes_diff(self, worktree_path: Path, target_branch: str) -> str:
        """Return the committed diff of the worktree since it forked from the target."""
        match await AsyncRepo(worktree_path).merge_base(target_branch, "HEAD"):
            case Ok(base):
                return (await run_git(worktree_path, "diff", f"{base}..HEAD")).unwrap_or("")
            case Err(err):
                logger.warning("Failed to compute changes diff: %s", err)
                return ""

    # -------------------------------------------------------------------------
    # Rebase lifecycle
    # -------------------------------------------------------------------------

    async def rebase_main_into_worktree(
        self, worktree_path: Path, target_branch: str
    ) -> RebaseOutcome:
        """Rebase the worktree onto ``target_branch``.

        Uncommitted work is wrapped in a temporary commit first and unwound
        after a successful rebase. A failed rebase is left in progress so the
        caller can choose between abort and resolution.
        """
        async with self.locks.hold(LockRegistry.key("git-rebase", worktree_path)):
            session = GitSession(worktree_path)
            has_temp_commit = False
            try:
                if await has_uncommitted_changes(worktree_path):
                    await session.run(worktree_path, "add", "-A")
                    await session.run(
                        worktree_path,
                        "commit",
                        "--no-verify",
                        "-m",
                        f"{TEMP_COMMIT_PREFIX}{_now_ms()}",
                    )
                    has_temp_commit = True

                await session.run(
                    worktree_path,
                    "rebase",
                    target_branch,
                    error_message=f"Failed to rebase worktree onto {target_branch}",
                )
            except GitCommandError as exc:
                logger.warning("Rebase onto %s failed: %s", target_branch, exc.message)
                return RebaseOutcome(
                    success=False,
                    has_temp_commit=has_temp_commit,
                    error=exc.details(),
                    conflict=is_conflict_failure(exc),
                )

            await self._reset_temp_commit(session, worktree_path)
            return RebaseOutcome(success=True, has_temp_commit=has_temp_commit)

    async def continue_rebase(self, path: Path) -> None:
        """Continue an in-progress rebase after conflicts were staged.

        Raises:
            GitCommandError: If git refuses to continue
        """
        async with self.locks.hold(LockRegistry.key("git-rebase", path)):
            session = GitSession(path)
            await session.run(
                path,
                "rebase",
                "--continue",
                env={"GIT_EDITOR": "true"},
                error_message="Failed to continue rebase",
            )
            await self._reset_temp_commit(session, path)

    async def abort_rebase(self, path: Path) -> None:
        async with self.locks.hold(LockRegistry.key("git-rebase", path)):
            session = GitSession(path)
            await session.run(path, "rebase", "--abort", error_message="Failed to abort rebase")
            await self._reset_temp_commit(session, path)

    async def _reset_temp_commit(self, session: GitSession, path: Path) -> None:
        match await run_git(path, "log", "-1", "--pretty=format:%s"):
            case Ok(subject) if subject.startswith(TEMP_COMMIT_PREFIX):
                await session.run(path, "reset", "--mixed", "HEAD^")
                logger.info("Restored uncommitted changes from temporary commit")
            case _:
                pass

    # -------------------------------------------------------------------------
    # Integration
    # -------------------------------------------------------------------------

    async def squash_and_merge_worktree_to_main(
        self, repo_path: Path, worktree_path: Path, target_branch: str, commit_message: str
    ) -> None:
        async with self.locks.hold(LockRegistry.key("git-merge-worktree", worktree_path)):
            await self._squash(GitSession(repo_path), repo_path, worktree_path, target_branch, commit_message)

    async def merge_worktree_to_main(
        self, repo_path: Path, worktree_path: Path, target_branch: str
    ) -> None:
        async with self.locks.hold(LockRegistry.key("git-merge-worktree", worktree_path)):
            await self._fast_forward(GitSession(repo_path), repo_path, worktree_path, target_branch)

    async def _rebase_before_integration(
        self, session: GitSession, worktree_path: Path, target_branch: str
    ) -> bool:
        """Rebase the worktree onto the target; False when nothing is ahead."""
        ahead = await session.run(worktree_path, "log", "--oneline", f"{target_branch}..HEAD")
        if not ahead.strip():
            logger.info("No commits ahead of %s, nothing to integrate", target_branch)
            return False

        match await session.attempt(worktree_path, "rebase", target_branch):
            case Ok(_):
                pass
            case Err(err):
                await session.attempt(worktree_path, "rebase", "--abort")
                raise session.error(
                    f"Failed to rebase worktree onto {target_branch}. "
                    "Conflicts must be resolved first.",
                    worktree_path,
                    err,
                )

        ahead = await session.run(worktree_path, "log", "--oneline", f"{target_branch}..HEAD")
        return bool(ahead.strip())

    async def _squash(
        self,
        session: GitSession,
        repo_path: Path,
        worktree_path: Path,
        target_branch: str,
        commit_message: str,
    ) -> None:
        if not await self._rebase_before_integration(session, worktree_path, target_branch):
            return

        head = (await session.run(worktree_path, "rev-parse", "HEAD")).strip()
        await session.run(repo_path, "checkout", target_branch)
        await session.run(repo_path, "merge", "--squash", head)

        match await session.attempt(repo_path, "diff", "--cached", "--quiet"):
            case Ok(_):
                logger.info("Squash of %s produced no changes; skipping commit", head[:8])
                return
            case Err(err) if err.context.get("returncode") == 1:
                pass
            case Err(err):
                raise session.error("Failed to inspect staged changes", repo_path, err)

        await session.run(repo_path, "commit", "-m", commit_message)
        logger.info("Squash-merged worktree into %s", target_branch)

    async def _fast_forward(
        self, session: GitSession, repo_path: Path, worktree_path: Path, target_branch: str
    ) -> None:
        if not await self._rebase_before_integration(session, worktree_path, target_branch):
            return

        head = (await session.run(worktree_path, "rev-parse", "HEAD")).strip()
        await session.run(repo_path, "checkout", target_branch)
        match await session.attempt(repo_path, "merge", "--ff-only", head):
            case Ok(_):
                logger.info("Fast-forwarded %s to %s", target_branch, head[:8])
            case Err(err):
                raise session.error(
                    f"Cannot fast-forward {target_branch} to the worktree head {head[:8]}: "
                    f"{target_branch} has diverged. Rebase the worktree onto {target_branch} "
                    "and try again.",
                    repo_path,
                    err,
                )

    async def merge_worktree_to_main_with_uncommitted(
        self,
        repo_path: Path,
        task_id: str,
        worktree_path: Path,
        squash: bool,
        commit_message: str | None = None,
        target_branch: str | None = None,
        symlink_folders: Sequence[str] = (),
    ) -> MergeState:
        """Integrate the worktree while keeping uncommitted work on both sides.

        Uncommitted worktree changes end up uncommitted in both the target
        checkout and the worktree. The target checkout's own uncommitted
        changes are restored and their stash is kept for ``revert_merge``.

        Returns:
            MergeState describing how to undo the integration

        Raises:
            GitCommandError: After best-effort stash recovery
        """
        if squash and not commit_message:
            raise ValueError("Commit message is required for squash merge")

        async with self.locks.hold(LockRegistry.key("git-merge-worktree", worktree_path)):
            session = GitSession(repo_path)
            target = target_branch or await self.get_project_main_branch(repo_path)
            timestamp = _now_ms()
            worktree_stash_id = stash_id("worktree", task_id, "merge", timestamp)
            main_stash_id = stash_id("main", task_id, "merge", timestamp)
            worktree_stash: str | None = None
            main_stash: str | None = None
            worktree_restored = False
            main_restored = False

            logger.info(
                "Starting %s of %s into %s", "squash" if squash else "merge", worktree_path, target
            )
            try:
                before = (await session.run(repo_path, "rev-parse", target)).strip()
                worktree_head = (await session.run(worktree_path, "rev-parse", "HEAD")).strip()

                worktree_stash = await stash_changes(
                    session,
                    worktree_path,
                    worktree_stash_id,
                    "Worktree uncommitted changes before merge",
                    symlink_folders,
                )
                main_stash = await stash_changes(
                    session, repo_path, main_stash_id, "Main branch uncommitted changes before merge"
                )

                if squash:
                    await self._squash(
                        session, repo_path, worktree_path, target, commit_message or ""
                    )
                else:
                    await self._fast_forward(session, repo_path, worktree_path, target)

                if worktree_stash:
                    await apply_stash(session, repo_path, worktree_stash)
                    await apply_stash(session, worktree_path, worktree_stash)
                    worktree_restored = True
                    await drop_stash(session, worktree_path, worktree_stash)

                if main_stash:
                    # Kept in the stash list; revert_merge needs it verbatim.
                    await apply_stash(session, repo_path, main_stash)
                    main_restored = True
            except Exception:
                logger.error("Merge of %s failed, restoring stashes", worktree_path)
                if worktree_stash and not worktree_restored:
                    await self._recover_stash(session, worktree_path, worktree_stash)
                if main_stash and not main_restored:
                    await self._recover_stash(session, repo_path, main_stash)
                raise

            logger.info("Merge of %s into %s completed", worktree_path, target)
            return MergeState(
                before_merge_commit_hash=before,
                worktree_branch_commit_hash=worktree_head,
                main_original_stash_id=main_stash,
                target_branch=target,
                timestamp=timestamp,
            )

    async def apply_uncommitted_changes_to_main(
        self,
        repo_path: Path,
        task_id: str,
        worktree_path: Path,
        target_branch: str | None = None,
        symlink_folders: Sequence[str] = (),
    ) -> bool:
        """Copy the worktree's uncommitted changes onto the target checkout.

        Returns:
            False when the worktree had nothing to apply.
        """
        async with self.locks.hold(LockRegistry.key("git-apply-uncommitted", worktree_path)):
            session = GitSession(repo_path)
            identifier = stash_id("worktree", task_id, "uncommitted", _now_ms())
            stashed: str | None = None
            restored = False
            try:
                stashed = await stash_changes(
                    session,
                    worktree_path,
                    identifier,
                    "Uncommitted changes to apply to main",
                    symlink_folders,
                )
                if stashed is None:
                    logger.info("No uncommitted changes to apply")
                    return False

                target = target_branch or await self.get_project_main_branch(repo_path)
                await session.run(repo_path, "checkout", target)
                await apply_stash(session, repo_path, stashed)
                await apply_stash(session, worktree_path, stashed)
                restored = True
                await drop_stash(session, worktree_path, stashed)
            except Exception:
                logger.error("Applying uncommitted changes from %s failed", worktree_path)
                if stashed and not restored:
                    await self._recover_stash(session, worktree_path, stashed)
                raise

            logger.info("Applied uncommitted changes to %s", target)
            return True

    async def revert_merge(
        self,
        repo_path: Path,
        task_id: str,
        worktree_path: Path,
        merge_state: MergeState,
        symlink_folders: Sequence[str] = (),
    ) -> None:
        """Undo the integration described by ``merge_state``.

        Changes made in either checkout after the merge are stashed first.
        The worktree's are restored afterwards; the target side's are
        discarded because they contain the merged work being undone.

        Raises:
            GitCommandError: After best-effort stash recovery
        """
        async with self.locks.hold(LockRegistry.key("git-revert-merge", worktree_path)):
            session = GitSession(repo_path)
            timestamp = _now_ms()
            worktree_stash: str | None = None
            main_stash: str | None = None
            worktree_restored = False

            logger.info("Reverting merge %s", merge_state.model_dump())
            try:
                worktree_stash = await stash_changes(
                    session,
                    worktree_path,
                    stash_id("worktree", task_id, "revert", timestamp),
                    "Current uncommitted changes before revert",
                    symlink_folders,
                )
                main_stash = await stash_changes(
                    session,
                    repo_path,
                    stash_id("main", task_id, "revert", timestamp),
                    "Current uncommitted changes before revert",
                )

                target = merge_state.target_branch or await self.get_project_main_branch(repo_path)
                await session.run(repo_path, "checkout", target)
                await session.run(repo_path, "reset", "--hard", merge_state.before_merge_commit_hash)
                await session.run(
                    worktree_path, "reset", "--hard", merge_state.worktree_branch_commit_hash
                )

                if merge_state.main_original_stash_id:
                    await apply_stash(session, repo_path, merge_state.main_original_stash_id)
                    await drop_stash(session, repo_path, merge_state.main_original_stash_id)

                if worktree_stash:
                    await apply_stash(session, worktree_path, worktree_stash)
                    worktree_restored = True
                    await drop_stash(session, worktree_path, worktree_stash)

                if main_stash:
                    await drop_stash(session, repo_path, main_stash)
            except Exception:
                logger.error("Reverting merge in %s failed, restoring stashes", worktree_path)
                if worktree_stash and not worktree_restored:
                    await self._recover_stash(session, worktree_path, worktree_stash)
                if main_stash:
                    await self._recover_stash(session, repo_path, main_stash)
                raise

            logger.info("Merge revert completed")

    async def discard_merge_state(self, repo_path: Path, merge_state: MergeState) -> None:
        """Drop the target-side stash kept for reverting ``merge_state``.

        Called when a merge state is replaced or forgotten without a revert.
        """
        if not merge_state.main_original_stash_id:
            return
        await drop_stash(GitSession(repo_path), repo_path, merge_state.main_original_stash_id)

    async def _recover_stash(self, session: GitSession, path: Path, identifier: str) -> None:
        try:
            if await apply_stash(session, path, identifier):
                await drop_stash(session, path, identifier)
        except GitCommandError as exc:
            logger.error("Failed to recover stash %s in %s: %s", identifier, path, exc.message)


__all__ = [
    "DETACHED_HEAD",
    "TEMP_COMMIT_PREFIX",
    "WorktreeManager",
]
