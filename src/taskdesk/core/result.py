"""
Result types and error hierarchy for taskdesk.

This module provides:
1. Result[T, E] type for explicit error handling on low-level calls
2. Domain-specific exception hierarchy

Usage:
    from taskdesk.core.result import Ok, Err, Result, GitError

    async def read_head(path: Path) -> Result[str, GitError]:
        ...

    match await read_head(path):
        case Ok(sha):
            print(sha)
        case Err(err):
            print(err)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

T = TypeVar("T")
U = TypeVar("U")
E = TypeVar("E", bound=Exception)
F = TypeVar("F", bound=Exception)


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Represents a successful result containing a value."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        """Return the contained value."""
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value

    def map(self, fn: Callable[[T], U]) -> Ok[U]:
        """Apply a function to the contained value."""
        return Ok(fn(self.value))

    def map_err(self, fn: Callable[[E], F]) -> Ok[T]:
        return self


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """Represents a failed result containing an error."""

    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> Any:
        """Raise the contained error."""
        raise self.error

    def unwrap_or(self, default: T) -> T:
        return default

    def map(self, fn: Callable[[T], U]) -> Err[E]:
        return self

    def map_err(self, fn: Callable[[E], F]) -> Err[F]:
        """Apply a function to the contained error."""
        return Err(fn(self.error))


Result = Ok[T] | Err[E]


# ---------------------------------------------------------------------------
# Domain-specific error hierarchy
# ---------------------------------------------------------------------------


class TaskDeskError(Exception):
    """Base exception for all taskdesk errors.

    Carries a human message plus a context mapping that is rendered as
    ``message [key=value, ...]``.
    """

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{ctx_str}]"
        return self.message


class GitError(TaskDeskError):
    """Raised when a git invocation fails.

    The runner attaches ``cwd``, ``args`` and ``returncode`` to the context.
    Multi-step operations wrap these in ``GitCommandError`` which also records
    the full command sequence.
    """


class NotFoundError(TaskDeskError):
    """Raised when a required resource is missing.

    Examples:
    - Task has no worktree
    - No merge state to revert
    - Unknown task id
    """


__all__ = [
    # Result types
    "Ok",
    "Err",
    "Result",
    # Error hierarchy
    "TaskDeskError",
    "GitError",
    "NotFoundError",
]
