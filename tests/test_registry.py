"""TaskRegistry + DependencyResolver 测试

测试内容：
1. 创建校验（ValidationError 不创建任务）、ULID、事件发布
2. 状态流转与时间戳/attempts/last_error
3. 重试与周期任务的流转约束
4. 依赖检查、扇出候选、依赖环检测
"""

from datetime import UTC, datetime

import pytest
from taskmaster.core.exceptions import (
    ExecutorRuntimeError,
    InvalidTransitionError,
    TaskNotFoundError,
    ValidationError,
)
from taskmaster.core.models import EventType, Task, TaskStatus
from taskmaster.engine.registry import TaskRegistry
from taskmaster.engine.resolver import DependencyResolver


@pytest.fixture
def registry(hub) -> TaskRegistry:
    return TaskRegistry(hub, retry_attempts=3)


@pytest.fixture
def resolver(registry) -> DependencyResolver:
    return DependencyResolver(registry)


class TestCreate:
    def test_create_pending_with_ulid(self, registry, hub):
        queue = hub.subscribe(EventType.TASK_CREATED)

        task = registry.create({"title": "Book venue", "priority": "high"})

        assert task.status == TaskStatus.PENDING
        assert len(task.task_id) == 26
        assert registry.get(task.task_id) == task
        event = queue.get_nowait()
        assert event.task_id == task.task_id
        assert event.payload["title"] == "Book venue"

    def test_ids_are_unique(self, registry):
        ids = {registry.create({"title": f"t{i}"}).task_id for i in range(20)}
        assert len(ids) == 20

    def test_invalid_input_creates_nothing(self, registry):
        with pytest.raises(ValidationError) as exc_info:
            registry.create({"title": ""})
        assert exc_info.value.errors
        assert len(registry) == 0

    def test_unparseable_condition_rejected(self, registry):
        with pytest.raises(ValidationError):
            registry.create(
                {
                    "title": "x",
                    "automation": {
                        "enabled": True,
                        "executor": "default",
                        "conditions": ["guests >"],
                    },
                }
            )

    def test_enricher_applied(self, registry):
        task = registry.create(
            {"title": "x"},
            enricher=lambda t: t.model_copy(update={"priority_score": 42}),
        )
        assert registry.get(task.task_id).priority_score == 42

    def test_get_missing(self, registry):
        with pytest.raises(TaskNotFoundError):
            registry.get("missing")

    def test_update_rejects_status(self, registry):
        task = registry.create({"title": "x"})
        with pytest.raises(ValueError):
            registry.update(task.task_id, status=TaskStatus.COMPLETED)
        assert registry.update(task.task_id, assignee="rui").assignee == "rui"


class TestTransition:
    def test_complete_records_result_and_time(self, registry, hub):
        queue = hub.subscribe(EventType.TASK_COMPLETED)
        task = registry.create({"title": "x"})

        registry.transition(task.task_id, TaskStatus.IN_PROGRESS)
        done = registry.transition(task.task_id, TaskStatus.COMPLETED, result={"ok": True})

        assert done.result == {"ok": True}
        assert done.completed_at is not None
        assert done.execution_time_ms is not None
        assert queue.get_nowait().payload["from_status"] == "in_progress"

    def test_failure_counts_attempt_and_keeps_trace(self, registry):
        task = registry.create({"title": "x"})
        registry.transition(task.task_id, TaskStatus.IN_PROGRESS)

        try:
            raise KeyError("guest list")
        except KeyError as e:
            error = ExecutorRuntimeError("lookup failed", original_error=e)
        failed = registry.transition(task.task_id, TaskStatus.FAILED, error=error)

        assert failed.attempts == 1
        assert failed.last_error.message == "lookup failed"
        assert failed.last_error.error_type == "ExecutorRuntimeError"
        assert "KeyError" in failed.last_error.trace

    def test_failure_without_consuming_attempt(self, registry):
        task = registry.create({"title": "x"})
        failed = registry.transition(task.task_id, TaskStatus.FAILED, consume_attempt=False)
        assert failed.attempts == 0

    def test_illegal_transition(self, registry):
        task = registry.create({"title": "x"})
        with pytest.raises(InvalidTransitionError):
            registry.transition(task.task_id, TaskStatus.COMPLETED)

    def test_retry_blocked_after_max_attempts(self, registry):
        task = registry.create({"title": "x"})
        for _ in range(3):
            registry.transition(task.task_id, TaskStatus.IN_PROGRESS)
            registry.transition(task.task_id, TaskStatus.FAILED)

        assert registry.get(task.task_id).attempts == 3
        with pytest.raises(InvalidTransitionError):
            registry.transition(task.task_id, TaskStatus.IN_PROGRESS)

        registry.reset_attempts(task.task_id)
        assert registry.transition(task.task_id, TaskStatus.IN_PROGRESS).status == "in_progress"

    def test_completed_restart_only_when_recurring(self, registry):
        one_off = registry.create({"title": "x"})
        registry.transition(one_off.task_id, TaskStatus.IN_PROGRESS)
        registry.transition(one_off.task_id, TaskStatus.COMPLETED)
        with pytest.raises(InvalidTransitionError):
            registry.transition(one_off.task_id, TaskStatus.IN_PROGRESS)

        recurring = registry.create(
            {
                "title": "daily digest",
                "automation": {"enabled": True, "executor": "default", "schedule": "0 9 * * *"},
            }
        )
        registry.transition(recurring.task_id, TaskStatus.IN_PROGRESS)
        registry.transition(recurring.task_id, TaskStatus.FAILED)
        registry.transition(recurring.task_id, TaskStatus.IN_PROGRESS)
        done = registry.transition(recurring.task_id, TaskStatus.COMPLETED)
        assert done.attempts == 0
        assert registry.transition(recurring.task_id, TaskStatus.IN_PROGRESS).status == (
            TaskStatus.IN_PROGRESS
        )

    def test_evict_publishes_event(self, registry, hub):
        queue = hub.subscribe(EventType.TASK_EVICTED)
        task = registry.create({"title": "x"})

        assert registry.evict(task.task_id) is not None
        assert task.task_id not in registry
        assert queue.get_nowait().task_id == task.task_id
        assert registry.evict(task.task_id) is None


class TestResolver:
    def test_unmet_and_satisfied(self, registry, resolver):
        a = registry.create({"title": "a"})
        b = registry.create({"title": "b", "automation": {"dependencies": [a.task_id, "ghost"]}})

        assert resolver.unmet(b) == [a.task_id, "ghost"]
        assert resolver.missing(b) == ["ghost"]
        assert not resolver.is_satisfied(b)

        registry.transition(a.task_id, TaskStatus.IN_PROGRESS)
        registry.transition(a.task_id, TaskStatus.COMPLETED)
        assert resolver.unmet(registry.get(b.task_id)) == ["ghost"]

    def test_dependents_ready(self, registry, resolver):
        a = registry.create({"title": "a"})
        c = registry.create({"title": "c"})
        b = registry.create({"title": "b", "automation": {"dependencies": [a.task_id]}})
        d = registry.create(
            {"title": "d", "automation": {"dependencies": [a.task_id, c.task_id]}}
        )

        registry.transition(a.task_id, TaskStatus.IN_PROGRESS)
        registry.transition(a.task_id, TaskStatus.COMPLETED)

        ready = resolver.dependents_ready(a.task_id)
        assert [t.task_id for t in ready] == [b.task_id]
        assert d.task_id not in {t.task_id for t in ready}

    def test_no_cycle_in_registry(self, registry, resolver):
        a = registry.create({"title": "a"})
        registry.create({"title": "b", "automation": {"dependencies": [a.task_id]}})
        assert resolver.find_cycle() is None

    def test_candidate_closing_cycle(self, registry, resolver):
        a = registry.create({"title": "a"})
        b = registry.create({"title": "b", "automation": {"dependencies": [a.task_id]}})

        # 外部同步把 a 改为依赖 b
        now = datetime.now(UTC)
        replacement = Task.model_validate(
            {
                **a.model_dump(),
                "automation": {"dependencies": [b.task_id]},
                "updated_at": now,
            }
        )

        cycle = resolver.find_cycle(candidate=replacement)
        assert cycle is not None
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {a.task_id, b.task_id}
