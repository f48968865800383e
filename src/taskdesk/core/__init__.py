"""Core infrastructure shared by the task and worktree layers."""
