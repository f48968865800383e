"""JSON persistence for task records and conversation context.

Layout under the repository root::

    <tasks_dir>/tasks/<task_id>/settings.json   task record
    <tasks_dir>/tasks/<task_id>/context.json    conversation messages

Writes go to a temporary sibling first and are moved into place with
``os.replace`` so a crash never leaves a half-written file behind.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from taskdesk.tasks.models import (
    INTERNAL_TASK_ID,
    ContextMessage,
    TaskData,
    context_messages_adapter,
)

logger = logging.getLogger(__name__)

SETTINGS_FILE = "settings.json"
CONTEXT_FILE = "context.json"


def _write_atomic(path: Path, payload: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    tmp_path.write_text(payload, encoding="utf-8")
    os.replace(tmp_path, path)


def is_transient(task: TaskData) -> bool:
    """Tasks without a creation time, and the internal task, are never written."""
    return task.created_at is None or task.id == INTERNAL_TASK_ID


class TaskStore:
    """Loads and saves tasks of one repository."""

    def __init__(self, repo_path: Path, tasks_dir: str = ".taskdesk") -> None:
        self.repo_path = repo_path
        self.tasks_dir = tasks_dir

    @property
    def root(self) -> Path:
        return self.repo_path / self.tasks_dir / "tasks"

    def task_dir(self, task_id: str) -> Path:
        return self.root / task_id

    async def save(self, task: TaskData) -> bool:
        """Persist ``task``; returns False for transient tasks."""
        if is_transient(task):
            return False
        path = self.task_dir(task.id) / SETTINGS_FILE
        await asyncio.to_thread(_write_atomic, path, task.model_dump_json(indent=2))
        return True

    async def load(self, task_id: str) -> TaskData | None:
        path = self.task_dir(task_id) / SETTINGS_FILE
        if not path.is_file():
            return None
        raw = await asyncio.to_thread(path.read_text, "utf-8")
        try:
            return TaskData.model_validate_json(raw)
        except PydanticValidationError as exc:
            logger.warning("Ignoring unreadable task record %s: %s", path, exc)
            return None

    async def list_tasks(self) -> list[TaskData]:
        if not self.root.is_dir():
            return []
        entries = await asyncio.to_thread(lambda: sorted(self.root.iterdir()))
        tasks: list[TaskData] = []
        for entry in entries:
            if not entry.is_dir():
                continue
            task = await self.load(entry.name)
            if task is not None:
                tasks.append(task)
        return tasks

    async def delete(self, task_id: str) -> None:
        """Remove the task directory, including a worktree left inside it."""
        path = self.task_dir(task_id)
        if path.exists():
            await asyncio.to_thread(shutil.rmtree, path, True)

    async def save_context(self, task_id: str, messages: list[ContextMessage]) -> None:
        if task_id == INTERNAL_TASK_ID:
            return
        path = self.task_dir(task_id) / CONTEXT_FILE
        payload = context_messages_adapter.dump_json(messages, indent=2).decode("utf-8")
        await asyncio.to_thread(_write_atomic, path, payload)

    async def load_context(self, task_id: str) -> list[ContextMessage]:
        path = self.task_dir(task_id) / CONTEXT_FILE
        if not path.is_file():
            return []
        raw = await asyncio.to_thread(path.read_text, "utf-8")
        try:
            return context_messages_adapter.validate_json(raw)
        except PydanticValidationError as exc:
            logger.warning("Ignoring unreadable context %s: %s", path, exc)
            return []


__all__ = ["CONTEXT_FILE", "SETTINGS_FILE", "TaskStore", "is_transient"]
