"""Worktree isolation and integration engine."""

from __future__ import annotations

from .manager import DETACHED_HEAD, TEMP_COMMIT_PREFIX, WorktreeManager
from .models import (
    ConflictFileContext,
    ConflictPrediction,
    IntegrationStatus,
    MergeState,
    RebaseOutcome,
    RebaseState,
    UnmergedWork,
    UpdatedFile,
    Worktree,
)

__all__ = [
    "ConflictFileContext",
    "ConflictPrediction",
    "DETACHED_HEAD",
    "IntegrationStatus",
    "MergeState",
    "RebaseOutcome",
    "RebaseState",
    "TEMP_COMMIT_PREFIX",
    "UnmergedWork",
    "UpdatedFile",
    "Worktree",
    "WorktreeManager",
]
