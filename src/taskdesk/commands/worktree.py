"""Worktree integration commands.

Every command loads the repository's tasks, runs one worktree operation on
the named task and prints the log entries it produced.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich import box
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from taskdesk.commands.ui import run_on_task
from taskdesk.core.console import console
from taskdesk.core.decorators import handle_exceptions
from taskdesk.tasks.models import TaskData, WorkingMode
from taskdesk.tasks.orchestrator import TaskOrchestrator
from taskdesk.worktrees.models import IntegrationStatus

app = typer.Typer(help="Create, inspect and integrate task worktrees.")

RepoOption = typer.Option(Path("."), "--repo", "-r", help="Repository root.")
TargetOption = typer.Option(
    None, "--target", "-t", help="Target branch (defaults to the checked-out branch)."
)


def _render_status(status: IntegrationStatus) -> Table:
    table = Table(
        title=f"Integration with {status.target_branch}", box=box.SIMPLE_HEAVY, expand=True
    )
    table.add_column("Check", style="cyan", no_wrap=True)
    table.add_column("Result", style="white")

    table.add_row("Ahead commits", str(len(status.ahead_commits)))
    for commit in status.ahead_commits:
        table.add_row("", escape(commit))
    table.add_row("Uncommitted files", str(len(status.uncommitted_files)))
    for path in status.uncommitted_files:
        table.add_row("", escape(path))

    prediction = status.conflicts
    if prediction.has_conflicts:
        table.add_row(
            "Predicted conflicts",
            "[red]" + escape(", ".join(prediction.conflicting_files) or "yes") + "[/red]",
        )
    else:
        table.add_row("Predicted conflicts", "[green]none[/green]")

    rebase = status.rebase_state
    if rebase.in_progress:
        unmerged = ", ".join(rebase.unmerged_files) or "none"
        table.add_row("Rebase", f"[yellow]in progress[/yellow] (unmerged: {escape(unmerged)})")
    return table


@app.command("create")
@handle_exceptions
def create(ctx: typer.Context, task_id: str, repo: Path = RepoOption) -> None:
    """Move a task into its own worktree."""

    async def _switch(task: TaskOrchestrator) -> TaskData:
        return await task.update_task({"working_mode": WorkingMode.WORKTREE})

    updated = asyncio.run(run_on_task(ctx.obj, repo, task_id, _switch))
    worktree = updated.worktree
    if worktree is not None:
        console.print(
            f"[green]Worktree ready[/green] {worktree.path} "
            f"({worktree.base_branch} @ {(worktree.base_commit or '')[:8]})"
        )


@app.command("remove")
@handle_exceptions
def remove(ctx: typer.Context, task_id: str, repo: Path = RepoOption) -> None:
    """Remove a task's worktree and move the task back to the repository."""

    async def _switch(task: TaskOrchestrator) -> TaskData:
        return await task.update_task({"working_mode": WorkingMode.LOCAL})

    asyncio.run(run_on_task(ctx.obj, repo, task_id, _switch))
    console.print(f"[green]Removed worktree of task[/green] {task_id}")


@app.command("status")
@handle_exceptions
def status(
    ctx: typer.Context,
    task_id: str,
    repo: Path = RepoOption,
    target: str | None = TargetOption,
) -> None:
    """Show ahead commits, uncommitted files and predicted conflicts."""
    result = asyncio.run(
        run_on_task(
            ctx.obj, repo, task_id, lambda task: task.get_worktree_integration_status(target)
        )
    )
    if result is None:
        console.print(Panel(f"Task {task_id} has no worktree.", border_style="yellow"))
        return
    console.print(_render_status(result))


@app.command("merge")
@handle_exceptions
def merge(
    ctx: typer.Context,
    task_id: str,
    repo: Path = RepoOption,
    target: str | None = TargetOption,
    squash: bool = typer.Option(True, "--squash/--no-squash", help="Squash into one commit."),
    message: str | None = typer.Option(
        None, "--message", "-m", help="Commit message for squash merges."
    ),
) -> None:
    """Integrate the worktree into the target branch."""
    asyncio.run(
        run_on_task(
            ctx.obj,
            repo,
            task_id,
            lambda task: task.merge_worktree_to_main(squash, target, message),
        )
    )


@app.command("apply")
@handle_exceptions
def apply(
    ctx: typer.Context, task_id: str, repo: Path = RepoOption, target: str | None = TargetOption
) -> None:
    """Copy the worktree's uncommitted changes onto the target branch."""
    asyncio.run(
        run_on_task(ctx.obj, repo, task_id, lambda task: task.apply_uncommitted_changes(target))
    )


@app.command("revert")
@handle_exceptions
def revert(ctx: typer.Context, task_id: str, repo: Path = RepoOption) -> None:
    """Undo the last merge of the worktree."""
    asyncio.run(run_on_task(ctx.obj, repo, task_id, lambda task: task.revert_last_merge()))


@app.command("rebase")
@handle_exceptions
def rebase(
    ctx: typer.Context,
    task_id: str,
    repo: Path = RepoOption,
    branch: str | None = typer.Option(None, "--from", help="Branch to rebase onto."),
) -> None:
    """Rebase the worktree onto a branch."""
    asyncio.run(
        run_on_task(ctx.obj, repo, task_id, lambda task: task.rebase_worktree_from_branch(branch))
    )


@app.command("continue")
@handle_exceptions
def continue_rebase(ctx: typer.Context, task_id: str, repo: Path = RepoOption) -> None:
    """Continue a rebase after conflicts were resolved."""
    asyncio.run(run_on_task(ctx.obj, repo, task_id, lambda task: task.continue_worktree_rebase()))


@app.command("abort")
@handle_exceptions
def abort_rebase(ctx: typer.Context, task_id: str, repo: Path = RepoOption) -> None:
    """Abort an in-progress rebase."""
    asyncio.run(run_on_task(ctx.obj, repo, task_id, lambda task: task.abort_worktree_rebase()))


@app.command("resolve")
@handle_exceptions
def resolve(ctx: typer.Context, task_id: str, repo: Path = RepoOption) -> None:
    """Resolve conflicted files with the agent."""
    report = asyncio.run(
        run_on_task(ctx.obj, repo, task_id, lambda task: task.resolve_conflicts_with_agent())
    )
    for path, outcome in report.files.items():
        console.print(f"{escape(path)}: {outcome.name.lower()}")
