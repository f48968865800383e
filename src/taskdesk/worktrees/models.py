"""Records produced and consumed by the worktree integration engine."""

from __future__ import annotations

from pydantic import BaseModel, Field


class Worktree(BaseModel):
    """Isolated checkout owned by one task."""

    path: str
    base_branch: str | None = None
    base_commit: str | None = None
    prunable: bool = False
    branch: str | None = Field(
        default=None, description="Branch created for the task; deleted with the worktree."
    )


class MergeState(BaseModel):
    """Everything needed to undo the most recent integration."""

    before_merge_commit_hash: str
    worktree_branch_commit_hash: str
    main_original_stash_id: str | None = None
    target_branch: str | None = None
    timestamp: int = Field(description="Milliseconds since the epoch when the merge finished.")


class RebaseState(BaseModel):
    in_progress: bool = False
    has_unmerged_paths: bool = False
    unmerged_files: list[str] = Field(default_factory=list)


class ConflictPrediction(BaseModel):
    """Outcome of a dry-run rebase of the worktree onto its target."""

    has_conflicts: bool = False
    conflicting_files: list[str] = Field(default_factory=list)
    can_auto_merge: bool = True
    worktree_commits: list[str] = Field(default_factory=list)
    target_commits: list[str] = Field(default_factory=list)


class UnmergedWork(BaseModel):
    has_uncommitted_changes: bool = False
    has_unmerged_commits: bool = False
    unmerged_commit_count: int = 0
    unmerged_commits: list[str] = Field(default_factory=list)
    uncommitted_files: list[str] = Field(default_factory=list)


class UpdatedFile(BaseModel):
    path: str
    additions: int = 0
    deletions: int = 0
    diff: str = ""


class ConflictFileContext(BaseModel):
    """Three-way content of one conflicted file.

    ``base``/``ours``/``theirs`` are index stages 1/2/3; ``current`` is the
    working copy with conflict markers. A side is None when the file does not
    exist on it.
    """

    file_path: str
    base: str | None = None
    ours: str | None = None
    theirs: str | None = None
    current: str | None = None


class RebaseOutcome(BaseModel):
    success: bool
    has_temp_commit: bool = False
    error: str | None = None
    conflict: bool = False


class IntegrationStatus(BaseModel):
    """Aggregate shown to a user before merging a worktree."""

    target_branch: str | None = None
    ahead_commits: list[str] = Field(default_factory=list)
    uncommitted_files: list[str] = Field(default_factory=list)
    conflicts: ConflictPrediction = Field(default_factory=ConflictPrediction)
    rebase_state: RebaseState = Field(default_factory=RebaseState)


__all__ = [
    "ConflictFileContext",
    "ConflictPrediction",
    "IntegrationStatus",
    "MergeState",
    "RebaseOutcome",
    "RebaseState",
    "UnmergedWork",
    "UpdatedFile",
    "Worktree",
]
