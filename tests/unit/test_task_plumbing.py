"""Tests for the event bus, hooks, chunk coalescing and task persistence."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from taskdesk.tasks.chunks import ResponseChunkAggregator
from taskdesk.tasks.events import Event, EventBus, EventKind, TaskEvents
from taskdesk.tasks.hooks import HookManager, HookName
from taskdesk.tasks.models import (
    INTERNAL_TASK_ID,
    AssistantMessage,
    LogLevel,
    ReasoningPart,
    ResponseMessage,
    TaskData,
    TaskState,
    TextPart,
    ToolMessage,
    UserMessage,
    message_text,
    reasoning_text,
)
from taskdesk.tasks.store import TaskStore, is_transient


class TestEventBus:
    def test_filters_by_kind_repo_and_task(self) -> None:
        bus = EventBus()
        logs = bus.subscribe([EventKind.LOG])
        repo_a = bus.subscribe(base_dir="/repo-a")
        task_1 = bus.subscribe(base_dir="/repo-a", task_id="t1")

        bus.publish(Event(EventKind.LOG, "/repo-a", "t1", {"message": "one"}))
        bus.publish(Event(EventKind.TASK_UPDATED, "/repo-a", "t2"))
        bus.publish(Event(EventKind.LOG, "/repo-b", "t1"))

        assert [e.base_dir for e in logs.drain()] == ["/repo-a", "/repo-b"]
        assert [e.task_id for e in repo_a.drain()] == ["t1", "t2"]
        assert [e.kind for e in task_1.drain()] == [EventKind.LOG]

    def test_close_unsubscribes(self) -> None:
        bus = EventBus()
        subscription = bus.subscribe()
        assert bus.subscriber_count == 1

        subscription.close()
        bus.publish(Event(EventKind.LOG, "/repo"))

        assert bus.subscriber_count == 0
        assert subscription.drain() == []

    def test_publish_without_subscribers(self) -> None:
        EventBus().publish(Event(EventKind.LOG, "/repo"))

    def test_task_events_payloads(self) -> None:
        bus = EventBus()
        subscription = bus.subscribe()
        events = TaskEvents(bus, Path("/repo"), "t1")

        events.send_log(LogLevel.ERROR, "failed", finished=True, action_ids=["rebase-worktree"])
        events.send_tokens_info(42)
        events.send_task_deleted()

        log, tokens, deleted = subscription.drain()
        assert log.base_dir == "/repo"
        assert log.payload["level"] == "error"
        assert log.payload["action_ids"] == ["rebase-worktree"]
        assert tokens.payload == {"context_tokens": 42}
        assert deleted.payload == {"id": "t1"}

    @pytest.mark.asyncio
    async def test_async_iteration(self) -> None:
        bus = EventBus()
        subscription = bus.subscribe([EventKind.NOTIFICATION])
        TaskEvents(bus, "/repo", "t1").send_notification("Task", "done")

        event = await asyncio.wait_for(anext(aiter(subscription)), timeout=1)
        assert event.payload == {"title": "Task", "body": "done"}


class TestHooks:
    @pytest.mark.asyncio
    async def test_mappings_merge_in_order(self) -> None:
        hooks = HookManager()

        async def rewrite(event: dict[str, Any], task: Any) -> dict[str, Any]:
            return {"prompt": event["prompt"].upper()}

        async def annotate(event: dict[str, Any], task: Any) -> dict[str, Any]:
            return {"seen": event["prompt"]}

        hooks.register(HookName.ON_PROMPT_SUBMITTED, rewrite)
        hooks.register(HookName.ON_PROMPT_SUBMITTED, annotate)

        outcome = await hooks.trigger(HookName.ON_PROMPT_SUBMITTED, {"prompt": "fix it"})

        assert not outcome.blocked
        assert outcome.event == {"prompt": "FIX IT", "seen": "FIX IT"}
        assert outcome.result == {"prompt": "FIX IT", "seen": "FIX IT"}

    @pytest.mark.asyncio
    async def test_false_blocks_and_stops(self) -> None:
        hooks = HookManager()
        calls: list[str] = []

        async def block(event: dict[str, Any], task: Any) -> bool:
            calls.append("block")
            return False

        async def never(event: dict[str, Any], task: Any) -> None:
            calls.append("never")

        hooks.register(HookName.ON_FILE_ADDED, block)
        hooks.register(HookName.ON_FILE_ADDED, never)

        outcome = await hooks.trigger(HookName.ON_FILE_ADDED, {"path": "a.py"})

        assert outcome.blocked
        assert calls == ["block"]

    @pytest.mark.asyncio
    async def test_failing_hook_is_skipped(self) -> None:
        hooks = HookManager()

        async def broken(event: dict[str, Any], task: Any) -> None:
            raise RuntimeError("hook bug")

        async def later(event: dict[str, Any], task: Any) -> dict[str, Any]:
            return {"ok": True}

        hooks.register(HookName.ON_TASK_INITIALIZED, broken)
        hooks.register(HookName.ON_TASK_INITIALIZED, later)

        outcome = await hooks.trigger(HookName.ON_TASK_INITIALIZED)

        assert not outcome.blocked
        assert outcome.result == {"ok": True}

    def test_unregister(self) -> None:
        hooks = HookManager()

        async def hook(event: dict[str, Any], task: Any) -> None:
            return None

        hooks.register(HookName.ON_TASK_CLOSED, hook)
        assert hooks.has_hooks(HookName.ON_TASK_CLOSED)
        hooks.unregister(HookName.ON_TASK_CLOSED, hook)
        assert not hooks.has_hooks(HookName.ON_TASK_CLOSED)


class TestChunkAggregator:
    @pytest.mark.asyncio
    async def test_first_fragment_immediate_rest_batched(self) -> None:
        delivered: list[str] = []
        aggregator = ResponseChunkAggregator(lambda m: delivered.append(m.content), interval=0.02)

        aggregator.add(ResponseMessage(id="m1", content="Hel"))
        assert delivered == ["Hel"]

        aggregator.add(ResponseMessage(id="m1", content="lo "))
        aggregator.add(ResponseMessage(id="m1", content="world"))
        assert delivered == ["Hel"]

        await asyncio.sleep(0.05)
        assert delivered == ["Hel", "lo world"]

    @pytest.mark.asyncio
    async def test_quiet_stream_is_forgotten(self) -> None:
        aggregator = ResponseChunkAggregator(lambda m: None, interval=0.01)
        aggregator.add(ResponseMessage(id="m1", content="a"))
        assert aggregator.active_ids == ["m1"]

        await asyncio.sleep(0.05)
        assert aggregator.active_ids == []

    @pytest.mark.asyncio
    async def test_finish_drops_buffered_fragments(self) -> None:
        delivered: list[str] = []
        aggregator = ResponseChunkAggregator(lambda m: delivered.append(m.content), interval=0.02)
        aggregator.add(ResponseMessage(id="m1", content="a"))
        aggregator.add(ResponseMessage(id="m1", content="b"))

        aggregator.finish("m1")
        await asyncio.sleep(0.05)

        assert delivered == ["a"]
        assert aggregator.active_ids == []

    @pytest.mark.asyncio
    async def test_late_fragment_after_finish_is_dropped(self) -> None:
        delivered: list[str] = []
        aggregator = ResponseChunkAggregator(lambda m: delivered.append(m.content), interval=0.01)
        aggregator.add(ResponseMessage(id="m1", content="He"))
        aggregator.add(ResponseMessage(id="m2", content="x"))

        aggregator.finish("m1")
        aggregator.add(ResponseMessage(id="m1", content="llo"))
        aggregator.cancel_all()
        aggregator.add(ResponseMessage(id="m2", content="y"))
        await asyncio.sleep(0.05)

        assert delivered == ["He", "x"]
        assert aggregator.active_ids == []

    @pytest.mark.asyncio
    async def test_messages_are_independent(self) -> None:
        delivered: list[tuple[str, str]] = []
        aggregator = ResponseChunkAggregator(
            lambda m: delivered.append((m.id, m.content)), interval=0.02
        )
        aggregator.add(ResponseMessage(id="m1", content="a"))
        aggregator.add(ResponseMessage(id="m2", content="x"))

        aggregator.cancel_all()

        assert delivered == [("m1", "a"), ("m2", "x")]
        assert aggregator.active_ids == []


class TestMessages:
    def test_text_helpers(self) -> None:
        assistant = AssistantMessage(
            content=[ReasoningPart(text="thinking"), TextPart(text="answer")]
        )
        assert message_text(UserMessage(content="question")) == "question"
        assert message_text(assistant) == "answer"
        assert reasoning_text(assistant) == "thinking"
        assert message_text(ToolMessage()) == ""


class TestTaskStore:
    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path: Path) -> None:
        store = TaskStore(tmp_path)
        task = TaskData(base_dir=str(tmp_path), name="Fix login", created_at="2026-01-01T00:00:00+00:00")

        assert await store.save(task)
        assert (tmp_path / ".taskdesk" / "tasks" / task.id / "settings.json").is_file()
        assert await store.load(task.id) == task
        assert [t.id for t in await store.list_tasks()] == [task.id]

        messages = [UserMessage(content="hi"), AssistantMessage.from_text("hello")]
        await store.save_context(task.id, messages)
        assert await store.load_context(task.id) == messages

        await store.delete(task.id)
        assert await store.load(task.id) is None
        assert await store.list_tasks() == []

    @pytest.mark.asyncio
    async def test_transient_tasks_are_not_written(self, tmp_path: Path) -> None:
        store = TaskStore(tmp_path)
        unnamed = TaskData(base_dir=str(tmp_path))
        internal = TaskData(id=INTERNAL_TASK_ID, base_dir=str(tmp_path), created_at="now")

        assert is_transient(unnamed) and is_transient(internal)
        assert not await store.save(unnamed)
        assert not await store.save(internal)
        await store.save_context(INTERNAL_TASK_ID, [UserMessage(content="hi")])
        assert not (tmp_path / ".taskdesk").exists()

    @pytest.mark.asyncio
    async def test_unreadable_records_are_skipped(self, tmp_path: Path) -> None:
        store = TaskStore(tmp_path)
        broken = store.task_dir("broken")
        broken.mkdir(parents=True)
        (broken / "settings.json").write_text("{not json")
        (broken / "context.json").write_text("[{}]")

        assert await store.list_tasks() == []
        assert await store.load_context("broken") == []

    @pytest.mark.asyncio
    async def test_unknown_fields_are_ignored(self, tmp_path: Path) -> None:
        store = TaskStore(tmp_path)
        path = store.task_dir("t1")
        path.mkdir(parents=True)
        (path / "settings.json").write_text(
            '{"id": "t1", "baseDir": "x", "base_dir": "/repo", "state": "DONE", "legacy": 1}'
        )

        task = await store.load("t1")
        assert task is not None
        assert task.state is TaskState.DONE
