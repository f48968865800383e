"""Project aggregate: the tasks of one repository.

A ``Project`` owns everything shared by the tasks of a repository: the task
store, the event bus, the hook manager and the worktree manager. Tasks are
registered here under their id; ``init`` loads the persisted ones and
``close`` shuts them down, dropping tasks that never received any content.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from taskdesk.core.config import AppConfig
from taskdesk.core.locks import LockRegistry
from taskdesk.core.result import NotFoundError
from taskdesk.providers import get_provider
from taskdesk.tasks.agent import ProviderAgentExecutor
from taskdesk.tasks.events import EventBus, EventKind, Subscription, TaskEvents
from taskdesk.tasks.executors import AgentExecutor, LineEditExecutor, TextGenerator
from taskdesk.tasks.hooks import HookManager
from taskdesk.tasks.models import Mode, TaskData, WorkingMode
from taskdesk.tasks.orchestrator import TaskOrchestrator
from taskdesk.tasks.store import TaskStore
from taskdesk.worktrees.manager import WorktreeManager

logger = logging.getLogger(__name__)


class Project:
    """Registry and shared services for the tasks of one repository.

    Args:
        base_dir: Repository root
        config: Application configuration
        bus: Event bus; a private one is created when None
        hooks: Hook manager; a private one is created when None
        locks: Lock registry for git operations; the process default when None
        agent_executor: Executor for agent modes; provider-backed when None
        line_edit_executor: Executor for line-edit modes, if any
        text_generator: Text generator used outside agent modes, if any
    """

    def __init__(
        self,
        base_dir: Path,
        config: AppConfig,
        *,
        bus: EventBus | None = None,
        hooks: HookManager | None = None,
        locks: LockRegistry | None = None,
        agent_executor: AgentExecutor | None = None,
        line_edit_executor: LineEditExecutor | None = None,
        text_generator: TextGenerator | None = None,
    ) -> None:
        self.base_dir = base_dir.expanduser().resolve()
        self.config = config
        self.bus = bus or EventBus()
        self.hooks = hooks or HookManager()
        self.store = TaskStore(self.base_dir, config.worktree.tasks_dir)
        self.manager = WorktreeManager(config.worktree.tasks_dir, locks)
        self.agent_executor = agent_executor or ProviderAgentExecutor(get_provider(config), config)
        self.line_edit_executor = line_edit_executor
        self.text_generator = text_generator
        self._tasks: dict[str, TaskOrchestrator] = {}

    @property
    def tasks(self) -> list[TaskOrchestrator]:
        return list(self._tasks.values())

    def subscribe(self, *kinds: EventKind, task_id: str | None = None) -> Subscription:
        """Subscribe to this project's events, optionally narrowed to one task."""
        return self.bus.subscribe(kinds, base_dir=self.base_dir, task_id=task_id)

    def _attach(self, task: TaskData) -> TaskOrchestrator:
        orchestrator = TaskOrchestrator(
            task,
            config=self.config,
            bus=self.bus,
            store=self.store,
            manager=self.manager,
            hooks=self.hooks,
            agent_executor=self.agent_executor,
            line_edit_executor=self.line_edit_executor,
            text_generator=self.text_generator,
            project=self,
        )
        self._tasks[task.id] = orchestrator
        return orchestrator

    async def init(self) -> list[TaskOrchestrator]:
        """Load and initialize every persisted task."""
        await self.manager.initialize(self.base_dir)
        for task in await self.store.list_tasks():
            if task.id in self._tasks:
                continue
            if task.base_dir != str(self.base_dir):
                task = task.model_copy(update={"base_dir": str(self.base_dir)})
            await self._attach(task).init()
        logger.info("Project %s loaded %d tasks", self.base_dir, len(self._tasks))
        return self.tasks

    async def close(self) -> None:
        for orchestrator in self.tasks:
            if await orchestrator.close():
                orchestrator.events.send_task_deleted()
        self._tasks.clear()
        pruned = await self.manager.close(self.base_dir)
        if pruned:
            logger.info("Pruned %d stale worktrees in %s", pruned, self.base_dir)

    async def create_task(
        self,
        name: str = "",
        *,
        parent_id: str | None = None,
        working_mode: WorkingMode = WorkingMode.LOCAL,
        context_files: Iterable[str] = (),
    ) -> TaskOrchestrator:
        """Create a task; it is persisted once it has a name."""
        task = TaskData(
            base_dir=str(self.base_dir),
            parent_id=parent_id,
            current_mode=Mode(self.config.task.default_mode),
        )
        orchestrator = self._attach(task)
        orchestrator.events.send_task_created(task)
        if name:
            await orchestrator.update_task({"name": name})
        if working_mode is not WorkingMode.LOCAL:
            await orchestrator.update_task({"working_mode": working_mode})
        for path in context_files:
            await orchestrator.add_context_file(path)
        logger.info("Created task %s in %s", task.id, self.base_dir)
        return orchestrator

    def get_task(self, task_id: str) -> TaskOrchestrator:
        """Return a registered task.

        Raises:
            NotFoundError: If no task with ``task_id`` is registered
        """
        try:
            return self._tasks[task_id]
        except KeyError:
            raise NotFoundError(
                f"Unknown task {task_id}", context={"base_dir": str(self.base_dir)}
            ) from None

    async def delete_task(self, task_id: str) -> None:
        """Stop a task, remove its worktree and delete its records."""
        orchestrator = self._tasks.get(task_id)
        if orchestrator is not None:
            if orchestrator.is_busy:
                await orchestrator.interrupt_response()
            worktree = orchestrator.task.worktree
            merge_state = orchestrator.task.last_merge_state
        else:
            stored = await self.store.load(task_id)
            if stored is None:
                raise NotFoundError(
                    f"Unknown task {task_id}", context={"base_dir": str(self.base_dir)}
                )
            worktree = stored.worktree
            merge_state = stored.last_merge_state

        if merge_state is not None:
            await self.manager.discard_merge_state(self.base_dir, merge_state)
        if worktree is not None:
            await self.manager.remove_worktree(self.base_dir, worktree)
        await self.store.delete(task_id)
        self._tasks.pop(task_id, None)
        TaskEvents(self.bus, self.base_dir, task_id).send_task_deleted()
        logger.info("Deleted task %s", task_id)


__all__ = ["Project"]
