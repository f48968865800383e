"""Task orchestration.

Key classes:
- TaskOrchestrator: Per-task state machine, prompt runs and worktree operations
- TaskStore: JSON persistence of task records and conversations
- EventBus / TaskEvents: Typed in-process publish/subscribe
- HookManager: Extension hooks fired at lifecycle points
- ConflictResolutionCoordinator: Concurrent per-file conflict resolution
"""

from taskdesk.tasks.chunks import ResponseChunkAggregator
from taskdesk.tasks.conflicts import (
    ConflictResolutionCoordinator,
    ResolutionOutcome,
    ResolutionReport,
)
from taskdesk.tasks.events import Event, EventBus, EventKind, TaskEvents
from taskdesk.tasks.executors import AgentExecutor, AgentProfile, LineEditExecutor, TextGenerator
from taskdesk.tasks.hooks import HookManager, HookName, HookResult
from taskdesk.tasks.models import Mode, TaskData, TaskState, WorkingMode
from taskdesk.tasks.orchestrator import TaskOrchestrator
from taskdesk.tasks.store import TaskStore

__all__ = [
    "AgentExecutor",
    "AgentProfile",
    "ConflictResolutionCoordinator",
    "Event",
    "EventBus",
    "EventKind",
    "HookManager",
    "HookName",
    "HookResult",
    "LineEditExecutor",
    "Mode",
    "ResolutionOutcome",
    "ResolutionReport",
    "ResponseChunkAggregator",
    "TaskData",
    "TaskEvents",
    "TaskOrchestrator",
    "TaskState",
    "TaskStore",
    "TextGenerator",
    "WorkingMode",
]
