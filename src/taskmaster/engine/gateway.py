"""PersistenceGateway -- 持久化协调与推送同步

职责：
- 通过 DurableStore 协议 upsert 任务、工作流、执行记录与指标样本
- 按实体 ID 的读穿透缓存
- 执行历史追加，只保留最近 history_limit 条
- 外部变更推送：publish() 写入有界 asyncio.Queue，由单一消费循环
  串行应用到 TaskRegistry（单写者）

存储异常统一包装为 PersistenceError 抛给调用方；
调用前已发生的内存状态变更不回滚。
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

import pydantic
import structlog

from taskmaster.core.exceptions import PersistenceError
from taskmaster.core.models import (
    ChangeNotification,
    ChangeType,
    EngineMetrics,
    Task,
    TaskStatus,
    Workflow,
    WorkflowExecution,
)
from taskmaster.core.store import DurableStore

from .registry import TaskRegistry
from .resolver import DependencyResolver

log = structlog.get_logger()

T = TypeVar("T")


class PersistenceGateway:
    """持久化网关"""

    def __init__(
        self,
        store: DurableStore,
        registry: TaskRegistry,
        resolver: DependencyResolver,
        history_limit: int = 50,
        queue_size: int = 100,
        on_task_synced: Callable[[Task], None] | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._resolver = resolver
        self._history_limit = history_limit
        self._cache: dict[str, Any] = {}
        self._changes: asyncio.Queue[ChangeNotification] = asyncio.Queue(maxsize=queue_size)
        self._consumer: asyncio.Task | None = None
        self._on_task_synced = on_task_synced

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except Exception as e:
            log.error(
                "persistence_operation_failed",
                operation=operation,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise PersistenceError(operation, e) from e

    # ---- tasks ----

    async def save_task(self, task: Task) -> None:
        await self._call("save_task", self._store.upsert_task(task))
        self._cache[f"task:{task.task_id}"] = task

    async def get_task(self, task_id: str) -> Task | None:
        """读穿透：先查缓存，未命中再查存储"""
        key = f"task:{task_id}"
        if key in self._cache:
            return self._cache[key]
        task = await self._call("get_task", self._store.get_task(task_id))
        if task is not None:
            self._cache[key] = task
        return task

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        payload: Any = None,
    ) -> list[dict[str, Any]]:
        """写入任务最新记录并追加执行历史

        Returns:
            截断后的执行历史
        """
        task = self._registry.find(task_id)
        if task is not None:
            await self.save_task(task)

        history = await self._call(
            "get_execution_history",
            self._store.get_execution_history(task_id),
        )
        history.append(
            {
                "timestamp": datetime.now(UTC).isoformat(),
                "status": status.value,
                "result": payload,
            }
        )
        history = history[-self._history_limit :]
        await self._call(
            "set_execution_history",
            self._store.set_execution_history(task_id, history),
        )
        return history

    def forget_task(self, task_id: str) -> None:
        """任务被移出注册表后丢弃其缓存，之后的读取回到存储"""
        self._cache.pop(f"task:{task_id}", None)

    async def get_execution_history(self, task_id: str) -> list[dict[str, Any]]:
        return await self._call(
            "get_execution_history",
            self._store.get_execution_history(task_id),
        )

    async def load_tasks(
        self,
        owner_entity_id: str | None = None,
        statuses: list[TaskStatus] | None = None,
    ) -> list[Task]:
        """从存储加载未结束的任务到注册表（会闭合依赖环的任务被跳过）"""
        wanted = statuses or [TaskStatus.PENDING, TaskStatus.IN_PROGRESS]
        tasks = await self._call(
            "load_tasks",
            self._store.list_tasks(owner_entity_id, [s.value for s in wanted]),
        )
        loaded = []
        for task in tasks:
            if self._apply_upsert(task):
                loaded.append(task)
        log.info("tasks_loaded", count=len(loaded), owner_entity_id=owner_entity_id)
        return loaded

    # ---- workflows ----

    async def save_workflow(self, workflow: Workflow, active: bool = True) -> None:
        await self._call("save_workflow", self._store.upsert_workflow(workflow, active))
        self._cache[f"workflow:{workflow.workflow_id}"] = workflow

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        key = f"workflow:{workflow_id}"
        if key in self._cache:
            return self._cache[key]
        workflow = await self._call("get_workflow", self._store.get_workflow(workflow_id))
        if workflow is not None:
            self._cache[key] = workflow
        return workflow

    async def load_workflows(self) -> list[Workflow]:
        workflows = await self._call("load_workflows", self._store.list_workflows(True))
        for workflow in workflows:
            self._cache[f"workflow:{workflow.workflow_id}"] = workflow
        log.info("workflows_loaded", count=len(workflows))
        return workflows

    async def save_execution(self, execution: WorkflowExecution) -> None:
        await self._call("save_execution", self._store.upsert_execution(execution))
        self._cache[f"execution:{execution.execution_id}"] = execution

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        key = f"execution:{execution_id}"
        if key in self._cache:
            return self._cache[key]
        execution = await self._call("get_execution", self._store.get_execution(execution_id))
        if execution is not None:
            self._cache[key] = execution
        return execution

    # ---- metrics ----

    async def save_metrics(
        self,
        metrics: EngineMetrics,
        owner_entity_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self._call(
            "save_metrics",
            self._store.insert_metric(
                "engine",
                metrics.model_dump(by_alias=True),
                owner_entity_id,
                metadata,
            ),
        )

    async def list_metrics(self, limit: int = 100) -> list[dict[str, Any]]:
        return await self._call("list_metrics", self._store.list_metrics("engine", limit))

    # ---- push notifications ----

    async def publish(self, notification: ChangeNotification | dict[str, Any]) -> None:
        """推送一条外部变更（队列满时等待）"""
        if not isinstance(notification, ChangeNotification):
            notification = ChangeNotification.model_validate(notification)
        await self._changes.put(notification)

    def start(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume(), name="change-consumer")

    async def drain(self) -> None:
        """等待已入队的变更全部应用"""
        await self._changes.join()

    async def stop(self) -> None:
        self._cache.clear()
        if self._consumer is None:
            return
        self._consumer.cancel()
        try:
            await self._consumer
        except asyncio.CancelledError:
            pass
        self._consumer = None

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    async def _consume(self) -> None:
        while True:
            notification = await self._changes.get()
            try:
                self.apply(notification)
            except Exception as e:
                log.error(
                    "change_notification_failed",
                    change_type=notification.type.value,
                    task_id=notification.task_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
            finally:
                self._changes.task_done()

    def apply(self, notification: ChangeNotification) -> None:
        """把一条变更应用到注册表（由消费循环调用）"""
        if notification.type == ChangeType.DELETE:
            task_id = notification.task_id
            if task_id is None:
                log.warning("change_notification_missing_id", change_type="DELETE")
                return
            self.forget_task(task_id)
            self._registry.evict(task_id)
            return

        try:
            task = Task.model_validate(notification.record)
        except pydantic.ValidationError as e:
            log.warning(
                "change_notification_invalid",
                change_type=notification.type.value,
                task_id=notification.task_id,
                errors=e.error_count(),
            )
            return
        self._apply_upsert(task)

    def _apply_upsert(self, task: Task) -> bool:
        cycle = self._resolver.find_cycle(candidate=task)
        if cycle is not None:
            log.warning("task_dependency_cycle_rejected", task_id=task.task_id, cycle=cycle)
            return False
        self._registry.put(task)
        self._cache[f"task:{task.task_id}"] = task
        if self._on_task_synced is not None:
            self._on_task_synced(task)
        return True
