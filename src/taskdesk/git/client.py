from __future__ import annotations

import asyncio
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from taskdesk.core.result import Err, GitError, Ok, Result


@dataclass
class WorktreeInfo:
    """Information about a git worktree."""

    path: Path
    branch: str | None
    commit: str
    is_locked: bool
    prunable: bool
    detached: bool = False


@dataclass
class StatusEntry:
    """One line of ``git status --porcelain=v1``."""

    code: str
    path: str

    @property
    def is_unmerged(self) -> bool:
        return self.code in UNMERGED_CODES


UNMERGED_CODES = frozenset({"UU", "AA", "DD", "AU", "UA", "DU", "UD"})

# Substrings git prints when a merge or rebase stops on conflicting content.
_CONFLICT_MARKERS = (
    "CONFLICT",
    "could not apply",
    "Resolve all conflicts manually",
    "needs merge",
    "unmerged files",
    "Merge conflict in",
    "Conflicts must be resolved first",
)


class GitCommandError(GitError):
    """A multi-step git operation failed.

    Carries the commands attempted so far, the raw git output collected along
    the way, the working directory of the failing command and the project
    root, so that a human can recover manually.
    """

    def __init__(
        self,
        message: str,
        *,
        commands: Sequence[str] = (),
        output: str = "",
        cwd: Path | str | None = None,
        project_path: Path | str | None = None,
        original: BaseException | None = None,
    ) -> None:
        context: dict[str, object] = {}
        if cwd is not None:
            context["cwd"] = str(cwd)
        super().__init__(message, context=context)
        self.commands = list(commands)
        self.output = output
        self.cwd = str(cwd) if cwd is not None else None
        self.project_path = str(project_path) if project_path is not None else None
        self.original = original

    def details(self) -> str:
        lines = [self.message]
        if self.commands:
            lines.append("Commands:")
            lines.extend(f"  {command}" for command in self.commands)
        if self.output.strip():
            lines.append("Output:")
            lines.append(self.output.strip())
        if self.cwd:
            lines.append(f"Working directory: {self.cwd}")
        if self.project_path and self.project_path != self.cwd:
            lines.append(f"Project: {self.project_path}")
        if self.original is not None and str(self.original) not in self.output:
            lines.append(f"Cause: {self.original}")
        return "\n".join(lines)


def is_conflict_failure(error: BaseException | str) -> bool:
    """Return True when a git failure was caused by conflicting content.

    This is the only place that inspects git output for conflict wording.
    """
    if isinstance(error, GitCommandError):
        text = f"{error.message}\n{error.output}\n{error.original or ''}"
    else:
        text = str(error)
    return any(marker in text for marker in _CONFLICT_MARKERS)


def format_command(args: Sequence[str]) -> str:
    return " ".join(["git", *args])


async def run_git(
    cwd: Path, *args: str, env: Mapping[str, str] | None = None
) -> Result[str, GitError]:
    """Run git with asyncio and return stdout as text, wrapping failures."""
    if not cwd.exists():
        return Err(GitError("Repository path does not exist", context={"cwd": str(cwd)}))

    process_env = {**os.environ, **env} if env else None
    try:
        process = await asyncio.create_subprocess_exec(
            "git",
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
            cwd=cwd,
            env=process_env,
        )
    except FileNotFoundError:
        return Err(GitError("git executable not found on PATH", context={"cwd": str(cwd)}))
    except OSError as exc:
        return Err(
            GitError(
                "Failed to start git",
                context={"cwd": str(cwd), "args": list(args), "error": str(exc)},
            )
        )

    stdout, stderr = await process.communicate()
    if process.returncode != 0:
        message = stderr.decode("utf-8", errors="replace").strip()
        stdout_text = stdout.decode("utf-8", errors="replace").strip()
        detail = "\n".join(part for part in (stdout_text, message) if part)
        return Err(
            GitError(
                detail or f"{format_command(args)} failed",
                context={"cwd": str(cwd), "args": list(args), "returncode": process.returncode},
            )
        )

    return Ok(stdout.decode("utf-8", errors="replace"))


@dataclass
class GitSession:
    """Runs a sequence of git commands and records a transcript.

    Every command is appended to ``commands`` and its output to the
    transcript; the first failure raises ``GitCommandError`` carrying the
    whole sequence so far.
    """

    project_path: Path
    commands: list[str] = field(default_factory=list)
    _output: list[str] = field(default_factory=list)

    @property
    def output(self) -> str:
        return "\n".join(chunk for chunk in self._output if chunk)

    async def run(
        self,
        cwd: Path,
        *args: str,
        env: Mapping[str, str] | None = None,
        error_message: str | None = None,
    ) -> str:
        self.commands.append(format_command(args))
        match await run_git(cwd, *args, env=env):
            case Ok(stdout):
                self._output.append(stdout.strip())
                return stdout
            case Err(err):
                self._output.append(err.message)
                raise self.error(error_message or f"{format_command(args)} failed", cwd, err)

    async def attempt(self, cwd: Path, *args: str) -> Result[str, GitError]:
        """Run a command whose failure the caller handles; still recorded."""
        self.commands.append(format_command(args))
        result = await run_git(cwd, *args)
        match result:
            case Ok(stdout):
                self._output.append(stdout.strip())
            case Err(err):
                self._output.append(err.message)
        return result

    def error(
        self, message: str, cwd: Path | None = None, original: BaseException | None = None
    ) -> GitCommandError:
        return GitCommandError(
            message,
            commands=self.commands,
            output=self.output,
            cwd=cwd or self.project_path,
            project_path=self.project_path,
            original=original,
        )


def _parse_status_porcelain(output: str) -> list[StatusEntry]:
    entries: list[StatusEntry] = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        entries.append(StatusEntry(code=line[:2], path=path.strip('"')))
    return entries


def _parse_worktree_list(output: str) -> list[WorktreeInfo]:
    """Parse `git worktree list --porcelain` output."""
    worktrees: list[WorktreeInfo] = []
    current: dict[str, str] = {}

    def _flush() -> None:
        if not current:
            return
        branch = current.get("branch")
        worktrees.append(
            WorktreeInfo(
                path=Path(current.get("worktree", "")),
                branch=branch.removeprefix("refs/heads/") if branch else None,
                commit=current.get("HEAD", ""),
                is_locked="locked" in current,
                prunable="prunable" in current,
                detached="detached" in current,
            )
        )
        current.clear()

    for line in output.splitlines():
        if not line.strip():
            _flush()
            continue

        key, _, value = line.partition(" ")
        if key in {"worktree", "HEAD", "branch"}:
            current[key] = value
        elif key in {"locked", "prunable", "detached", "bare"}:
            current[key] = value or "true"

    _flush()
    return worktrees


class AsyncRepo:
    """Async git wrapper built on subprocess plumbing.

    Methods return ``Result`` values; callers decide whether a failure is
    benign (status queries) or fatal (transactions).
    """

    def __init__(self, root: Path) -> None:
        self._root = root

    @property
    def path(self) -> Path:
        return self._root

    @classmethod
    async def open(cls, path: Path | str = ".") -> Result[AsyncRepo, GitError]:
        root = Path(path).expanduser()
        match await run_git(root, "rev-parse", "--show-toplevel"):
            case Ok(raw):
                return Ok(cls(Path(raw.strip()).resolve()))
            case Err(err):
                return Err(err)

    async def run_git(self, *args: str) -> Result[str, GitError]:
        """Public wrapper around git subprocess execution."""
        return await run_git(self._root, *args)

    async def status_entries(self) -> Result[list[StatusEntry], GitError]:
        match await run_git(self._root, "status", "--porcelain=v1"):
            case Ok(output):
                return Ok(_parse_status_porcelain(output))
            case Err(err):
                return Err(err)

    async def is_dirty(self) -> Result[bool, GitError]:
        return (await self.status_entries()).map(bool)

    async def rev_parse(self, ref: str = "HEAD") -> Result[str, GitError]:
        return (await run_git(self._root, "rev-parse", ref)).map(str.strip)

    async def current_branch(self) -> Result[str, GitError]:
        """Return the checked-out branch name, or "" on a detached HEAD."""
        return (await run_git(self._root, "branch", "--show-current")).map(str.strip)

    async def branch_exists(self, branch: str) -> bool:
        result = await run_git(self._root, "show-ref", "--verify", "--quiet", f"refs/heads/{branch}")
        return result.is_ok()

    async def list_branches(self) -> Result[list[str], GitError]:
        match await run_git(self._root, "branch", "--format=%(refname:short)"):
            case Ok(output):
                return Ok([line.strip() for line in output.splitlines() if line.strip()])
            case Err(err):
                return Err(err)

    async def log_oneline(self, ref_range: str) -> Result[list[str], GitError]:
        match await run_git(self._root, "log", "--oneline", ref_range):
            case Ok(output):
                return Ok([line.strip() for line in output.splitlines() if line.strip()])
            case Err(err):
                return Err(err)

    async def changed_files(self, ref_range: str) -> Result[set[str], GitError]:
        match await run_git(self._root, "diff", "--name-only", ref_range):
            case Ok(output):
                return Ok({line.strip() for line in output.splitlines() if line.strip()})
            case Err(err):
                return Err(err)

    async def merge_base(self, left: str, right: str) -> Result[str, GitError]:
        return (await run_git(self._root, "merge-base", left, right)).map(str.strip)

    async def git_path(self, name: str) -> Result[Path, GitError]:
        """Resolve a path inside the git directory (works for linked worktrees)."""
        match await run_git(self._root, "rev-parse", "--git-path", name):
            case Ok(output):
                resolved = Path(output.strip())
                if not resolved.is_absolute():
                    resolved = self._root / resolved
                return Ok(resolved)
            case Err(err):
                return Err(err)

    async def stash_list(self) -> Result[list[str], GitError]:
        match await run_git(self._root, "stash", "list"):
            case Ok(output):
                return Ok([line for line in output.splitlines() if line.strip()])
            case Err(err):
                return Err(err)

    async def show_stage(self, stage: int, file_path: str) -> Result[str, GitError]:
        """Return the content of ``file_path`` at index stage 1/2/3."""
        return await run_git(self._root, "show", f":{stage}:{file_path}")

    async def add(self, *paths: str) -> Result[None, GitError]:
        if not paths:
            return Ok(None)
        return (await run_git(self._root, "add", "--", *paths)).map(lambda _: None)

    async def worktree_list(self) -> Result[list[WorktreeInfo], GitError]:
        """List all worktrees registered for this repository."""
        match await run_git(self._root, "worktree", "list", "--porcelain"):
            case Ok(output):
                return Ok(_parse_worktree_list(output))
            case Err(err):
                return Err(err)

    async def worktree_remove(self, path: Path, *, force: bool = False) -> Result[None, GitError]:
        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args.append(str(path))
        return (await run_git(self._root, *args)).map(lambda _: None)

    async def worktree_prune(self) -> Result[None, GitError]:
        """Prune stale worktree references."""
        return (await run_git(self._root, "worktree", "prune")).map(lambda _: None)

    async def delete_branch(self, branch: str, *, force: bool = False) -> Result[None, GitError]:
        flag = "-D" if force else "-d"
        return (await run_git(self._root, "branch", flag, branch)).map(lambda _: None)


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
