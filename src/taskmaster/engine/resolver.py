"""DependencyResolver -- 任务依赖图检查

依赖检查从不抛异常：未满足时由执行路径返回 waiting。
未知依赖 ID 永远不满足，创建时以告警建议的形式提示。
"""

from collections.abc import Mapping

from taskmaster.core.models import Task, TaskStatus

from .registry import TaskRegistry


class DependencyResolver:
    def __init__(self, registry: TaskRegistry) -> None:
        self._registry = registry

    def unmet(self, task: Task) -> list[str]:
        """尚未完成（或不存在）的依赖 ID"""
        unmet = []
        for dep_id in task.dependencies:
            dep = self._registry.find(dep_id)
            if dep is None or dep.status != TaskStatus.COMPLETED:
                unmet.append(dep_id)
        return unmet

    def is_satisfied(self, task: Task) -> bool:
        return not self.unmet(task)

    def missing(self, task: Task) -> list[str]:
        """注册表中不存在的依赖 ID"""
        return [dep_id for dep_id in task.dependencies if dep_id not in self._registry]

    def dependents_ready(self, completed_id: str) -> list[Task]:
        """依赖 completed_id 且全部依赖已满足的 pending 任务"""
        return [
            task
            for task in self._registry.list(status=TaskStatus.PENDING)
            if completed_id in task.dependencies and self.is_satisfied(task)
        ]

    def find_cycle(
        self,
        candidate: Task | None = None,
        tasks: Mapping[str, Task] | None = None,
    ) -> list[str] | None:
        """检测依赖环

        Args:
            candidate: 待加入（或替换）的任务，优先于注册表中的同 ID 记录
            tasks: 任务集合，默认使用注册表当前内容

        Returns:
            环上的任务 ID 序列（首尾相同），无环时返回 None
        """
        graph = dict(tasks if tasks is not None else self._registry.snapshot())
        if candidate is not None:
            graph[candidate.task_id] = candidate

        # 0 = 未访问, 1 = 在栈上, 2 = 已完成
        state: dict[str, int] = {}
        path: list[str] = []

        def visit(task_id: str) -> list[str] | None:
            state[task_id] = 1
            path.append(task_id)
            for dep_id in graph[task_id].dependencies:
                if dep_id not in graph:
                    continue
                if state.get(dep_id) == 1:
                    return path[path.index(dep_id):] + [dep_id]
                if state.get(dep_id) is None:
                    found = visit(dep_id)
                    if found:
                        return found
            path.pop()
            state[task_id] = 2
            return None

        for task_id in graph:
            if state.get(task_id) is None:
                found = visit(task_id)
                if found:
                    return found
        return None
