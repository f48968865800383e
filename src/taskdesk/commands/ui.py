from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, TypeVar

from rich.markup import escape

from taskdesk.core.console import console
from taskdesk.project import Project
from taskdesk.tasks.events import Event, EventKind
from taskdesk.tasks.models import LogLevel, TaskState
from taskdesk.tasks.orchestrator import TaskOrchestrator

T = TypeVar("T")

LEVEL_STYLES = {
    LogLevel.INFO: "green",
    LogLevel.WARNING: "yellow",
    LogLevel.ERROR: "red",
    LogLevel.LOADING: "dim",
}

STATE_STYLES = {
    TaskState.TODO: "white",
    TaskState.IN_PROGRESS: "cyan",
    TaskState.INTERRUPTED: "yellow",
    TaskState.MORE_INFO_NEEDED: "magenta",
    TaskState.READY_FOR_REVIEW: "green",
    TaskState.READY_FOR_IMPLEMENTATION: "blue",
    TaskState.DONE: "dim",
}


def styled_state(state: TaskState) -> str:
    style = STATE_STYLES.get(state, "white")
    return f"[{style}]{state.value}[/{style}]"


def print_log_events(events: list[Event]) -> None:
    """Print log events; entries with recovery actions list them."""
    for event in events:
        if event.kind is not EventKind.LOG or not isinstance(event.payload, dict):
            continue
        message = str(event.payload.get("message") or "").strip()
        if not message:
            continue
        level = LogLevel(event.payload.get("level", LogLevel.INFO))
        style = LEVEL_STYLES[level]
        console.print(f"[{style}]{escape(message)}[/{style}]", highlight=False)
        actions = event.payload.get("action_ids") or []
        if actions:
            console.print(f"[dim]Next steps: {', '.join(actions)}[/dim]")


@asynccontextmanager
async def open_project(state: Any, repo: Path) -> AsyncIterator[Project]:
    """Load the project at ``repo`` and close it afterwards."""
    project = Project(repo, state.config)
    await project.init()
    try:
        yield project
    finally:
        await project.close()


async def run_on_task(
    state: Any,
    repo: Path,
    task_id: str,
    operation: Callable[[TaskOrchestrator], Awaitable[T]],
) -> T:
    """Run ``operation`` on a task and print the log entries it produced."""
    async with open_project(state, repo) as project:
        orchestrator = project.get_task(task_id)
        subscription = project.subscribe(EventKind.LOG, task_id=task_id)
        try:
            return await operation(orchestrator)
        finally:
            print_log_events(subscription.drain())
            subscription.close()
