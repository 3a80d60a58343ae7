"""TaskRegistry -- 任务的内存权威存储与状态机

所有状态变更经 transition() 完成，变更后发布对应生命周期事件。
task_id 使用 ULID，不复用。
"""

import traceback
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from typing import Any

import pydantic
import structlog
from ulid import ULID

from taskmaster.core.exceptions import (
    InvalidTransitionError,
    TaskNotFoundError,
    ValidationError,
)
from taskmaster.core.models import (
    EventType,
    Task,
    TaskError,
    TaskSpec,
    TaskStatus,
    validate_transition,
)

from .conditions import validate_condition
from .hub import EventHub

log = structlog.get_logger()

Enricher = Callable[[Task], Task]

_TRANSITION_EVENTS = {
    TaskStatus.IN_PROGRESS: EventType.TASK_STARTED,
    TaskStatus.COMPLETED: EventType.TASK_COMPLETED,
    TaskStatus.FAILED: EventType.TASK_FAILED,
}


def parse_task_spec(spec: TaskSpec | dict[str, Any]) -> TaskSpec:
    """校验创建输入，pydantic 错误转换为 ValidationError"""
    if isinstance(spec, TaskSpec):
        parsed = spec
    else:
        try:
            parsed = TaskSpec.model_validate(spec)
        except pydantic.ValidationError as e:
            errors = [
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
                for err in e.errors()
            ]
            raise ValidationError("Invalid task spec", errors) from e

    if parsed.automation.enabled:
        errors = []
        for condition in parsed.automation.conditions:
            problem = validate_condition(condition)
            if problem is not None:
                errors.append(f"automation.conditions: {condition!r}: {problem}")
        if errors:
            raise ValidationError("Invalid task spec", errors)
    return parsed


class TaskRegistry:
    """任务注册表"""

    def __init__(self, hub: EventHub, retry_attempts: int = 3) -> None:
        self._tasks: dict[str, Task] = {}
        self._hub = hub
        self._retry_attempts = retry_attempts

    def create(
        self,
        spec: TaskSpec | dict[str, Any],
        enricher: Enricher | None = None,
    ) -> Task:
        """校验输入并创建 pending 任务

        Raises:
            ValidationError: 输入不合法，不创建任务
        """
        parsed = parse_task_spec(spec)
        now = datetime.now(UTC)
        task = Task(
            task_id=str(ULID()),
            created_at=now,
            updated_at=now,
            status=TaskStatus.PENDING,
            **parsed.model_dump(),
        )
        if enricher is not None:
            task = enricher(task)

        self._tasks[task.task_id] = task
        log.info("task_created", task_id=task.task_id, title=task.title)
        self._hub.publish(
            EventType.TASK_CREATED,
            task_id=task.task_id,
            payload={"title": task.title, "priority_score": task.priority_score},
        )
        return task

    def get(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def find(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def put(self, task: Task) -> None:
        """直接替换任务记录（仅供持久化同步使用，不发布事件）"""
        self._tasks[task.task_id] = task

    def update(self, task_id: str, **changes: Any) -> Task:
        """更新非状态字段"""
        task = self.get(task_id)
        if "status" in changes:
            raise ValueError("status must be changed through transition()")
        task = task.model_copy(update={**changes, "updated_at": datetime.now(UTC)})
        self._tasks[task_id] = task
        return task

    def can_transition(self, task: Task, to_status: TaskStatus) -> bool:
        """在状态机之外叠加重试次数与周期任务约束"""
        if not validate_transition(task.status, to_status):
            return False
        if task.status == TaskStatus.FAILED and to_status == TaskStatus.IN_PROGRESS:
            return task.attempts < self._retry_attempts
        if task.status == TaskStatus.COMPLETED and to_status == TaskStatus.IN_PROGRESS:
            return task.is_recurring
        return True

    def transition(
        self,
        task_id: str,
        to_status: TaskStatus,
        *,
        result: Any = None,
        error: BaseException | None = None,
        consume_attempt: bool = True,
    ) -> Task:
        """执行状态流转并发布事件

        Args:
            task_id: 任务 ID
            to_status: 目标状态
            result: 完成结果（COMPLETED）
            error: 失败原因（FAILED）
            consume_attempt: 失败时是否计入 attempts

        Raises:
            TaskNotFoundError: 任务不存在
            InvalidTransitionError: 非法流转
        """
        task = self.get(task_id)
        if not self.can_transition(task, to_status):
            raise InvalidTransitionError(task_id, task.status.value, to_status.value)

        now = datetime.now(UTC)
        changes: dict[str, Any] = {"status": to_status, "updated_at": now}
        payload: dict[str, Any] = {"from_status": task.status.value}

        if to_status == TaskStatus.IN_PROGRESS:
            changes["started_at"] = now
        elif to_status == TaskStatus.COMPLETED:
            changes["completed_at"] = now
            changes["result"] = result
            if task.is_recurring:
                changes["attempts"] = 0
            if task.started_at is not None:
                changes["execution_time_ms"] = int((now - task.started_at).total_seconds() * 1000)
                payload["execution_time_ms"] = changes["execution_time_ms"]
        elif to_status == TaskStatus.FAILED:
            changes["failed_at"] = now
            if consume_attempt:
                changes["attempts"] = task.attempts + 1
            if error is not None:
                cause = getattr(error, "original_error", None) or error
                changes["last_error"] = TaskError(
                    message=str(error),
                    error_type=type(error).__name__,
                    trace="".join(traceback.format_exception(cause)),
                    timestamp=now,
                )
                payload["error"] = str(error)
                payload["error_type"] = type(error).__name__
            payload["attempts"] = changes.get("attempts", task.attempts)

        task = task.model_copy(update=changes)
        self._tasks[task_id] = task
        log.debug(
            "task_transition",
            task_id=task_id,
            from_status=payload["from_status"],
            to_status=to_status.value,
        )
        self._hub.publish(_TRANSITION_EVENTS[to_status], task_id=task_id, payload=payload)
        return task

    def reset_attempts(self, task_id: str) -> Task:
        """人工干预：清零失败次数，使重试耗尽的任务可以再次执行"""
        task = self.get(task_id)
        task = task.model_copy(update={"attempts": 0, "updated_at": datetime.now(UTC)})
        self._tasks[task_id] = task
        log.info("task_attempts_reset", task_id=task_id)
        return task

    def evict(self, task_id: str) -> Task | None:
        """移出注册表，发布 task:evicted"""
        task = self._tasks.pop(task_id, None)
        if task is None:
            return None
        log.info("task_evicted", task_id=task_id, status=task.status.value)
        self._hub.publish(
            EventType.TASK_EVICTED,
            task_id=task_id,
            payload={"status": task.status.value},
        )
        return task

    def list(
        self,
        status: TaskStatus | None = None,
        owner_entity_id: str | None = None,
    ) -> list[Task]:
        return [
            task
            for task in self._tasks.values()
            if (status is None or task.status == status)
            and (owner_entity_id is None or task.owner_entity_id == owner_entity_id)
        ]

    def count(self, status: TaskStatus) -> int:
        return sum(1 for task in self._tasks.values() if task.status == status)

    def snapshot(self) -> dict[str, Task]:
        return dict(self._tasks)

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._tasks

    def __iter__(self) -> Iterator[Task]:
        return iter(list(self._tasks.values()))

    def __len__(self) -> int:
        return len(self._tasks)
