"""PriorityAdvisor -- 创建时的启发式评估

为新任务计算优先级评分（0-100）、时长估算（分钟）与建议列表，
并检测同一负责人同一天的任务过载。纯规则计算，不依赖外部服务。
"""

from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from taskmaster.core.models import Suggestion, Task

from .registry import TaskRegistry
from .resolver import DependencyResolver

log = structlog.get_logger()

# (距截止天数上限, 加分)，按顺序取第一个满足的区间
URGENCY_BANDS: list[tuple[float, int]] = [(1, 100), (7, 50), (30, 20)]

CATEGORY_WEIGHTS: dict[str, int] = {
    "ceremony": 80,
    "reception": 60,
    "vendor": 40,
}

DEPENDENCY_WEIGHT = 10
MAX_SCORE = 100

# 任务类型 -> 估算时长（分钟）
DURATION_TABLE: dict[str, int] = {
    "notification": 1,
    "email": 2,
    "vendor_contact": 15,
    "payment_processing": 5,
    "report_generation": 10,
}
DEFAULT_DURATION = 5

NEAR_DEADLINE_DAYS = 3
MANY_DEPENDENCIES = 3
SAME_DAY_OVERLOAD = 3


class PriorityAdvisor:
    """任务启发式评估"""

    def __init__(
        self,
        registry: TaskRegistry,
        resolver: DependencyResolver,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._registry = registry
        self._resolver = resolver
        self._clock = clock

    def _days_until(self, task: Task) -> float | None:
        if task.due_date is None:
            return None
        return (task.due_date - self._clock()).total_seconds() / 86400

    def score(self, task: Task) -> int:
        total = 0
        days = self._days_until(task)
        if days is not None:
            for limit, points in URGENCY_BANDS:
                if days <= limit:
                    total += points
                    break
        total += CATEGORY_WEIGHTS.get(task.category, 0)
        total += DEPENDENCY_WEIGHT * len(task.dependencies)
        return max(0, min(MAX_SCORE, total))

    @staticmethod
    def estimate_duration(task: Task) -> int:
        return DURATION_TABLE.get(task.type, DEFAULT_DURATION)

    def suggestions(self, task: Task) -> list[Suggestion]:
        suggestions: list[Suggestion] = []
        days = self._days_until(task)
        if days is not None:
            if days < 0:
                suggestions.append(Suggestion(type="urgent", message="Task is overdue"))
            elif days <= NEAR_DEADLINE_DAYS:
                suggestions.append(
                    Suggestion(type="warning", message="Deadline is near, prioritise this task")
                )

        if len(task.dependencies) > MANY_DEPENDENCIES:
            suggestions.append(
                Suggestion(type="info", message="Many dependencies, consider parallelising")
            )
        return suggestions

    def same_day_count(self, task: Task) -> int:
        """已注册任务中与 task 同一天截止且负责人相同的数量"""
        if task.due_date is None or task.assignee is None:
            return 0
        day = task.due_date.astimezone(UTC).date()
        return sum(
            1
            for other in self._registry
            if other.task_id != task.task_id
            and other.due_date is not None
            and other.assignee == task.assignee
            and other.due_date.astimezone(UTC).date() == day
        )

    def conflicts(self, task: Task) -> list[str]:
        conflicts = []
        if self.same_day_count(task) > SAME_DAY_OVERLOAD:
            conflicts.append(f"{task.assignee} has too many tasks due on the same day")
        return conflicts

    def enrich(self, task: Task) -> Task:
        """返回带启发式字段的任务副本"""
        suggestions = self.suggestions(task)

        conflicts = self.conflicts(task)
        if conflicts:
            suggestions.append(
                Suggestion(
                    type="warning",
                    message=f"Potential conflicts detected: {', '.join(conflicts)}",
                )
            )

        task = task.model_copy(
            update={
                "priority_score": self.score(task),
                "estimated_duration": self.estimate_duration(task),
                "suggestions": suggestions,
            }
        )
        return self.flag_missing(task)

    def flag_missing(self, task: Task) -> Task:
        """未知依赖 ID 追加告警建议（关闭启发式评估时也会调用）"""
        missing = self._resolver.missing(task)
        if not missing:
            return task
        log.warning("task_unknown_dependencies", task_id=task.task_id, missing=missing)
        suggestion = Suggestion(
            type="warning",
            message=f"Unknown dependencies will never be satisfied: {', '.join(missing)}",
        )
        return task.model_copy(update={"suggestions": [*task.suggestions, suggestion]})
