"""Task management commands.

Provides CLI commands for:
    - Listing and inspecting the tasks of a repository
    - Creating tasks, optionally in their own worktree
    - Running a prompt on a task
    - Deleting tasks together with their worktrees
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich import box
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from taskdesk.commands.ui import open_project, run_on_task, styled_state
from taskdesk.core.console import console
from taskdesk.core.decorators import handle_exceptions
from taskdesk.core.result import NotFoundError
from taskdesk.tasks.models import Mode, TaskData, WorkingMode, message_text
from taskdesk.tasks.store import TaskStore

app = typer.Typer(help="Manage the tasks of a repository.")

RepoOption = typer.Option(Path("."), "--repo", "-r", help="Repository root.")


def _store(ctx: typer.Context, repo: Path) -> TaskStore:
    return TaskStore(repo.expanduser().resolve(), ctx.obj.config.worktree.tasks_dir)


def _summary_table(task: TaskData) -> Table:
    table = Table(box=box.SIMPLE, show_header=False)
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")
    table.add_row("Name", escape(task.name or "(unnamed)"))
    table.add_row("State", styled_state(task.state))
    table.add_row("Mode", f"{task.working_mode.value} / {task.current_mode.value}")
    if task.worktree is not None:
        table.add_row("Worktree", task.worktree.path)
        table.add_row("Base", f"{task.worktree.base_branch} @ {(task.worktree.base_commit or '')[:8]}")
    if task.last_merge_state is not None:
        table.add_row("Last merge", f"into {task.last_merge_state.target_branch}")
    if task.parent_id:
        table.add_row("Parent", task.parent_id)
    table.add_row("Cost", f"${task.total_cost:.4f}")
    table.add_row("Context files", ", ".join(task.context_files) or "none")
    table.add_row("Created", task.created_at or "")
    table.add_row("Updated", task.updated_at or "")
    return table


@app.command("list")
@handle_exceptions
def list_tasks(
    ctx: typer.Context,
    repo: Path = RepoOption,
    all_tasks: bool = typer.Option(False, "--all", "-a", help="Include archived tasks."),
) -> None:
    """List the tasks stored in a repository."""
    tasks = asyncio.run(_store(ctx, repo).list_tasks())
    if not all_tasks:
        tasks = [task for task in tasks if not task.archived]
    if not tasks:
        console.print("[yellow]No tasks found.[/yellow]")
        return

    table = Table(title=f"Tasks in {repo}", box=box.SIMPLE_HEAVY, expand=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name", style="white")
    table.add_column("State", no_wrap=True)
    table.add_column("Mode", style="white", no_wrap=True)
    table.add_column("Branch", style="white", no_wrap=True)
    table.add_column("Updated", style="dim", no_wrap=True)

    for task in sorted(tasks, key=lambda t: t.updated_at or "", reverse=True):
        branch = task.worktree.base_branch if task.worktree else ""
        table.add_row(
            task.id,
            escape(task.name),
            styled_state(task.state),
            task.working_mode.value,
            branch or "",
            (task.updated_at or "")[:19],
        )
    console.print(table)


@app.command("show")
@handle_exceptions
def show_task(ctx: typer.Context, task_id: str, repo: Path = RepoOption) -> None:
    """Show one task and its conversation."""
    store = _store(ctx, repo)

    async def _load() -> tuple[TaskData, list[str]]:
        task = await store.load(task_id)
        if task is None:
            raise NotFoundError(f"Unknown task {task_id}", context={"repo": str(repo)})
        messages = await store.load_context(task_id)
        return task, [f"{m.role}: {message_text(m)}" for m in messages if message_text(m)]

    task, lines = asyncio.run(_load())
    console.print(Panel(_summary_table(task), title=f"Task {task.id}", box=box.SIMPLE))
    for line in lines:
        console.print(escape(line), highlight=False)


@app.command("create")
@handle_exceptions
def create_task(
    ctx: typer.Context,
    name: str,
    repo: Path = RepoOption,
    worktree: bool = typer.Option(False, "--worktree", "-w", help="Work in an isolated worktree."),
    files: list[str] | None = typer.Option(None, "--file", "-f", help="Context file to add."),
) -> None:
    """Create a task."""
    mode = WorkingMode.WORKTREE if worktree else WorkingMode.LOCAL

    async def _create() -> TaskData:
        async with open_project(ctx.obj, repo) as project:
            orchestrator = await project.create_task(
                name, working_mode=mode, context_files=files or ()
            )
            return orchestrator.task

    task = asyncio.run(_create())
    console.print(f"[green]Created task[/green] {task.id}")
    if task.worktree is not None:
        console.print(f"Worktree: {task.worktree.path}")


@app.command("run")
@handle_exceptions
def run_prompt(
    ctx: typer.Context,
    task_id: str,
    prompt: str,
    repo: Path = RepoOption,
    mode: Mode = typer.Option(Mode.AGENT, "--mode", "-m", help="Prompt mode."),
) -> None:
    """Run a prompt on a task and print the responses."""
    responses = asyncio.run(
        run_on_task(ctx.obj, repo, task_id, lambda task: task.run_prompt(prompt, mode))
    )
    for response in responses:
        console.print(escape(response.content), highlight=False)


@app.command("delete")
@handle_exceptions
def delete_task(
    ctx: typer.Context,
    task_id: str,
    repo: Path = RepoOption,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Delete a task, its worktree and its conversation."""
    if not yes and not typer.confirm(f"Delete task {task_id}?"):
        raise typer.Exit(code=1)

    async def _delete() -> None:
        async with open_project(ctx.obj, repo) as project:
            await project.delete_task(task_id)

    asyncio.run(_delete())
    console.print(f"[green]Deleted task[/green] {task_id}")
