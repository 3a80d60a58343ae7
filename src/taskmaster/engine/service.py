"""TaskmasterService -- 引擎门面与统一执行入口

引擎全部可变状态归属于一个 TaskmasterService 实例：
任务注册表、executor 注册表、cron 调度、重试队列、并发槽位、
FIFO 启动队列与工作流。手动调用、cron 触发、依赖扇出、重试、
工作流步骤都经由 execute_task() 进入，受相同的依赖检查与并发上限约束。

execute_task 流程：
1. 已在执行 -> waiting(in_progress)；已完成的非周期任务直接返回结果
2. 重试已耗尽 -> failed(retries_exhausted)
3. 依赖未满足 -> waiting(dependencies)，不占槽位
4. executor 未注册 -> failed(executor_not_found)，不计入 attempts
5. 槽位已满 -> queued(concurrency_limit)，进入 FIFO 队列
6. 占用槽位（检查与占用之间无 await），在超时约束下运行 executor
7. 释放槽位后记录结果、扇出依赖任务、安排重试
"""

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from functools import partial
from typing import Any

import structlog

from taskmaster.core.config import EngineConfig, get_db_path, load_engine_config
from taskmaster.core.exceptions import (
    ExecutorNotFoundError,
    PersistenceError,
    TaskmasterError,
    TaskNotFoundError,
    ValidationError,
)
from taskmaster.core.logging_config import task_trace
from taskmaster.core.models import (
    EngineMetrics,
    Event,
    EventType,
    ExecutionOutcome,
    ExecutionStatus,
    Task,
    TaskSpec,
    TaskStatus,
    Workflow,
    WorkflowExecution,
    WorkflowSpec,
)
from taskmaster.core.store import DurableStore, create_durable_store

from .advisor import PriorityAdvisor
from .conditions import evaluate_conditions
from .executors import ExecutionContext, Executor, ExecutorRegistry, Services
from .gateway import PersistenceGateway
from .hub import EventHub
from .monitor import HealthMonitor
from .registry import TaskRegistry
from .resolver import DependencyResolver
from .retry import RetryQueue
from .scheduler import CronScheduler, ScheduledJob
from .workflow import WorkflowEngine

log = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TaskmasterService:
    """任务编排引擎"""

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        services: Services | None = None,
        store: DurableStore | None = None,
        hub: EventHub | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """
        Args:
            config: 引擎配置，默认 EngineConfig()
            services: 注入给 executor 的外部能力
            store: DurableStore，提供时启用持久化网关
            hub: 事件广播器
            sleep: cron 与重试使用的等待函数（测试可替换）
            clock: 当前时间（测试可替换）
        """
        self.config = config or EngineConfig()
        self.services = services or Services()
        self.hub = hub or EventHub()

        self.registry = TaskRegistry(self.hub, retry_attempts=self.config.retry_attempts)
        self.resolver = DependencyResolver(self.registry)
        self.executors = ExecutorRegistry()
        self.scheduler = CronScheduler(sleep=sleep, clock=clock)
        self.retries = RetryQueue(sleep=sleep)
        self.advisor = PriorityAdvisor(self.registry, self.resolver, clock=clock)

        self._store = store
        self._owns_store = False
        self.gateway: PersistenceGateway | None = None
        if store is not None:
            self.gateway = PersistenceGateway(
                store,
                self.registry,
                self.resolver,
                history_limit=self.config.history_limit,
                queue_size=self.config.change_queue_size,
                on_task_synced=self._on_task_synced,
            )

        self.workflows = WorkflowEngine(
            self.hub,
            create_task=partial(self.create_task, auto_execute=False),
            run_task=self.run_until_settled,
            gateway=self.gateway,
        )
        self.monitor = HealthMonitor(
            self.registry,
            self.hub,
            metrics=self.get_metrics,
            evict=self.evict_task,
            config=self.config,
            clock=clock,
        )

        # 执行状态
        self._running: set[str] = set()
        self._reserved = 0
        self._start_queue: deque[str] = deque()
        # 排队中的任务 ID -> 调用方传入的 options
        self._queued: dict[str, dict[str, Any]] = {}
        self._settlements: dict[str, asyncio.Future] = {}
        self._background: set[asyncio.Task] = set()

        # 计数器
        self._tasks_created = 0
        self._tasks_completed = 0
        self._tasks_failed = 0
        self._total_execution_ms = 0

        self.hub.add_listener(EventType.TASK_EVICTED, self._on_task_evicted)

    @classmethod
    async def create(
        cls,
        config: EngineConfig | None = None,
        **kwargs: Any,
    ) -> "TaskmasterService":
        """按配置创建引擎

        enable_persistence 为真且未传入 store 时打开 get_db_path() 指向的 SQLite，
        该连接在 shutdown() 时关闭。
        """
        config = config or load_engine_config()
        owns_store = False
        if config.enable_persistence and kwargs.get("store") is None:
            kwargs["store"] = await create_durable_store(get_db_path())
            owns_store = True
        service = cls(config, **kwargs)
        service._owns_store = owns_store
        return service

    # ============================================================
    # 生命周期
    # ============================================================

    def start(self, monitor: bool = True) -> None:
        """启动推送消费循环与健康监控"""
        if self.gateway is not None:
            self.gateway.start()
        if monitor:
            self.monitor.start()
        log.info(
            "taskmaster_started",
            max_concurrent_tasks=self.config.max_concurrent_tasks,
            persistence=self.gateway is not None,
        )

    async def wait_idle(self) -> None:
        """等待后台扇出、排队启动与待执行的重试全部结束"""
        while self._background or len(self.retries):
            if self._background:
                await asyncio.gather(*list(self._background), return_exceptions=True)
            await self.retries.wait()

    async def shutdown(self) -> None:
        """停止所有后台活动，取消超时后仍在运行的 executor"""
        await self.monitor.stop()
        if self.gateway is not None:
            await self.gateway.stop()
        await self.scheduler.shutdown()
        await self.retries.shutdown()

        # 取消后台任务前清空排队，避免 _start_reserved 的 finally 再启动新执行
        self._start_queue.clear()
        self._queued.clear()
        background = list(self._background)
        for job in background:
            job.cancel()
        if background:
            await asyncio.gather(*background, return_exceptions=True)

        abandoned = await self.executors.cancel_abandoned()
        if self._owns_store and self._store is not None:
            await self._store.close()
        for future in self._settlements.values():
            if not future.done():
                future.cancel()
        self._settlements.clear()
        log.info(
            "taskmaster_shutdown",
            abandoned_cancelled=abandoned,
            abandoned_total=self.executors.abandoned_total,
        )

    # ============================================================
    # 任务
    # ============================================================

    async def create_task(
        self,
        spec: TaskSpec | dict[str, Any],
        *,
        auto_execute: bool = True,
    ) -> Task:
        """创建任务

        自动化启用且条件满足时立即尝试执行（后台进行，依赖未满足则等待扇出）。

        Raises:
            ValidationError: 输入不合法，不创建任务
            PersistenceError: 启用持久化且写入失败（内存中的任务保留）
        """
        enricher = self.advisor.enrich if self.config.enable_advisor else self.advisor.flag_missing
        task = self.registry.create(spec, enricher)
        self._tasks_created += 1

        try:
            if self.gateway is not None:
                await self.gateway.save_task(task)
        finally:
            if task.is_recurring:
                self._arm_schedule(task)
            if auto_execute and task.automation.enabled and self._conditions_pass(task):
                self._spawn(self.execute_task(task.task_id), f"auto:{task.task_id}")
        return task

    def get_task(self, task_id: str) -> Task:
        return self.registry.get(task_id)

    def list_tasks(
        self,
        status: TaskStatus | None = None,
        owner_entity_id: str | None = None,
    ) -> list[Task]:
        return self.registry.list(status=status, owner_entity_id=owner_entity_id)

    def evict_task(self, task_id: str) -> Task | None:
        """移除任务（其 cron 触发器与待执行重试随之取消）"""
        return self.registry.evict(task_id)

    def reset_task(self, task_id: str) -> Task:
        """人工干预：清零重试次数，取消待执行的重试"""
        self.retries.cancel(task_id)
        return self.registry.reset_attempts(task_id)

    def _conditions_pass(self, task: Task) -> bool:
        context = {**task.automation.params, "task": task.model_dump(mode="json")}
        return evaluate_conditions(task.automation.conditions, context)

    # ============================================================
    # 执行入口
    # ============================================================

    async def execute_task(
        self,
        task_id: str,
        options: dict[str, Any] | None = None,
    ) -> ExecutionOutcome:
        """统一执行入口

        Args:
            task_id: 任务 ID
            options: 合并进 executor params；timeout_s 覆盖超时

        Returns:
            ExecutionOutcome（waiting/queued 不是错误）

        Raises:
            TaskNotFoundError: 任务不存在
        """
        task = self.registry.get(task_id)

        if task_id in self._running or task.status == TaskStatus.IN_PROGRESS:
            return self._outcome(task_id, ExecutionStatus.WAITING, reason="in_progress")
        if task.status == TaskStatus.COMPLETED and not task.is_recurring:
            return self._outcome(
                task_id,
                ExecutionStatus.COMPLETED,
                reason="already_completed",
                result=task.result,
            )
        if task.status == TaskStatus.FAILED and not self.registry.can_transition(
            task, TaskStatus.IN_PROGRESS
        ):
            return self._outcome(
                task_id,
                ExecutionStatus.FAILED,
                reason="retries_exhausted",
                error=task.last_error.message if task.last_error else None,
            )

        unmet = self.resolver.unmet(task)
        if unmet:
            log.info("task_waiting_dependencies", task_id=task_id, unmet=unmet)
            return self._outcome(task_id, ExecutionStatus.WAITING, reason="dependencies")

        executor_name = task.automation.executor or "default"
        if executor_name not in self.executors:
            return await self._fail_missing_executor(task, executor_name)

        if len(self._running) + self._reserved >= self.config.max_concurrent_tasks:
            if task_id not in self._queued:
                self._start_queue.append(task_id)
            self._queued[task_id] = dict(options or {})
            log.info("task_queued", task_id=task_id, queued=len(self._start_queue))
            return self._outcome(task_id, ExecutionStatus.QUEUED, reason="concurrency_limit")

        # 检查与占用之间没有 await
        self._running.add(task_id)
        try:
            task = self.registry.transition(task_id, TaskStatus.IN_PROGRESS)
        except TaskmasterError:
            self._running.discard(task_id)
            raise
        # 手动或 cron 提前开始时，已排定的重试作废
        self.retries.cancel(task_id)

        options = dict(options or {})
        timeout_s = (
            options.get("timeout_s")
            or task.automation.timeout_s
            or self.config.default_timeout_s
        )
        params = {**task.automation.params, **options}
        params.pop("timeout_s", None)
        context = ExecutionContext(
            task=task,
            params=params,
            services=self.services,
            emit=partial(self._emit_progress, task_id),
        )

        error: TaskmasterError | None = None
        result: Any = None
        try:
            with task_trace(task_id):
                result = await self.executors.run(executor_name, context, timeout_s)
        except TaskmasterError as e:
            error = e
        finally:
            self._running.discard(task_id)
            self._drain_start_queue()

        if task_id not in self.registry:
            log.warning("task_evicted_during_execution", task_id=task_id)
            return self._outcome(task_id, ExecutionStatus.FAILED, reason="evicted")
        if error is None:
            return await self._on_success(task_id, result)
        return await self._on_failure(task_id, error, options)

    async def _on_success(self, task_id: str, result: Any) -> ExecutionOutcome:
        task = self.registry.transition(task_id, TaskStatus.COMPLETED, result=result)
        self._tasks_completed += 1
        self._total_execution_ms += task.execution_time_ms or 0
        log.info("task_completed", task_id=task_id, execution_time_ms=task.execution_time_ms)

        await self._record(task_id, TaskStatus.COMPLETED, result)
        self._settle(task_id)

        for dependent in self.resolver.dependents_ready(task_id):
            self._spawn(self.execute_task(dependent.task_id), f"fanout:{dependent.task_id}")
        return self._outcome(task_id, ExecutionStatus.COMPLETED, result=result)

    async def _on_failure(
        self,
        task_id: str,
        error: TaskmasterError,
        options: dict[str, Any],
    ) -> ExecutionOutcome:
        task = self.registry.transition(task_id, TaskStatus.FAILED, error=error)
        self._tasks_failed += 1
        log.warning(
            "task_failed",
            task_id=task_id,
            attempts=task.attempts,
            error_type=type(error).__name__,
            error=str(error),
        )
        await self._record(
            task_id,
            TaskStatus.FAILED,
            {"message": str(error), "error_type": type(error).__name__},
        )

        if task.attempts < self.config.retry_attempts:
            delay_s = self.config.retry_base_delay_s * task.attempts
            self.retries.schedule(
                task_id,
                task.attempts + 1,
                delay_s,
                partial(self._retry, task_id, options),
            )
            self.hub.publish(
                EventType.TASK_RETRY_SCHEDULED,
                task_id=task_id,
                payload={"attempt": task.attempts + 1, "delay_s": delay_s},
            )
            reason = "retry_scheduled"
        else:
            log.error("task_retries_exhausted", task_id=task_id, attempts=task.attempts)
            self._settle(task_id)
            reason = "retries_exhausted"
        return self._outcome(task_id, ExecutionStatus.FAILED, reason=reason, error=str(error))

    async def _fail_missing_executor(self, task: Task, executor_name: str) -> ExecutionOutcome:
        error = ExecutorNotFoundError(executor_name)
        log.error("executor_not_found", task_id=task.task_id, executor=executor_name)
        if self.registry.can_transition(task, TaskStatus.FAILED):
            self.registry.transition(
                task.task_id,
                TaskStatus.FAILED,
                error=error,
                consume_attempt=False,
            )
        self._tasks_failed += 1
        await self._record(
            task.task_id,
            TaskStatus.FAILED,
            {"message": str(error), "error_type": type(error).__name__},
        )
        self._settle(task.task_id)
        return self._outcome(
            task.task_id,
            ExecutionStatus.FAILED,
            reason="executor_not_found",
            error=str(error),
        )

    async def _retry(self, task_id: str, options: dict[str, Any]) -> None:
        if task_id not in self.registry:
            return
        await self.execute_task(task_id, options)

    def _drain_start_queue(self) -> None:
        """按 FIFO 顺序为排队任务预留空出的槽位"""
        while (
            self._start_queue
            and len(self._running) + self._reserved < self.config.max_concurrent_tasks
        ):
            task_id = self._start_queue.popleft()
            options = self._queued.pop(task_id, {})
            if task_id not in self.registry:
                continue
            self._reserved += 1
            self._spawn(self._start_reserved(task_id, options), f"queued:{task_id}")

    async def _start_reserved(self, task_id: str, options: dict[str, Any]) -> None:
        self._reserved -= 1
        try:
            if task_id in self.registry:
                await self.execute_task(task_id, options)
        finally:
            # 预留的启动没有真正运行 executor 时（等待、失败、已移除），空位交给下一个
            self._drain_start_queue()

    async def run_until_settled(self, task_id: str) -> Task:
        """经统一入口执行任务并等待其结算（完成，或失败且不再重试）

        执行本身在后台进行：等待方被取消（如工作流 Level 超时）时，
        执行继续走完自身的超时与重试流程。

        Raises:
            TaskNotFoundError: 任务不存在或在结算前被移除
        """
        future = self._settlements.get(task_id)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._settlements[task_id] = future
        self._spawn(self._execute_for_settlement(task_id), f"settle:{task_id}")
        return await asyncio.shield(future)

    async def _execute_for_settlement(self, task_id: str) -> None:
        try:
            outcome = await self.execute_task(task_id)
        except TaskmasterError as e:
            future = self._settlements.pop(task_id, None)
            if future is not None and not future.done():
                future.set_exception(e)
            return
        if outcome.settled:
            self._settle(task_id)

    def _settle(self, task_id: str) -> None:
        future = self._settlements.pop(task_id, None)
        if future is not None and not future.done():
            future.set_result(self.registry.get(task_id))

    async def _record(self, task_id: str, status: TaskStatus, payload: Any) -> None:
        """执行路径上的持久化失败只记录日志，不中断执行"""
        if self.gateway is None:
            return
        try:
            await self.gateway.update_task_status(task_id, status, payload)
        except PersistenceError as e:
            log.error("task_status_persist_failed", task_id=task_id, error=str(e))

    def _emit_progress(self, task_id: str, event: str, data: Any = None) -> None:
        log.info("task_progress", task_id=task_id, progress_event=event, data=data)

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        job = asyncio.ensure_future(coro)
        job.set_name(name)
        self._background.add(job)
        job.add_done_callback(self._background_done)
        return job

    def _background_done(self, job: asyncio.Task) -> None:
        self._background.discard(job)
        if not job.cancelled() and job.exception() is not None:
            error = job.exception()
            log.error(
                "background_execution_failed",
                job=job.get_name(),
                error_type=type(error).__name__,
                error=str(error),
            )

    @staticmethod
    def _outcome(
        task_id: str,
        status: ExecutionStatus,
        *,
        reason: str | None = None,
        result: Any = None,
        error: str | None = None,
    ) -> ExecutionOutcome:
        return ExecutionOutcome(
            task_id=task_id,
            status=status,
            reason=reason,
            result=result,
            error=error,
        )

    # ============================================================
    # 调度
    # ============================================================

    def schedule_task(self, task_id: str, expression: str | None = None) -> ScheduledJob:
        """为任务安装（或替换）cron 触发器

        Raises:
            TaskNotFoundError: 任务不存在
            ValidationError: 没有可用的 cron 表达式，或表达式不合法
        """
        task = self.registry.get(task_id)
        expression = expression or task.automation.schedule
        if not expression:
            raise ValidationError(f"Task {task_id} has no schedule")
        if expression != task.automation.schedule:
            try:
                automation = task.automation.model_validate(
                    {**task.automation.model_dump(), "schedule": expression}
                )
            except ValueError as e:
                raise ValidationError(f"Invalid schedule for task {task_id}", [str(e)]) from e
            task = self.registry.update(task_id, automation=automation)
        return self._arm_schedule(task)

    def unschedule_task(self, task_id: str) -> bool:
        return self.scheduler.cancel(task_id)

    def _arm_schedule(self, task: Task) -> ScheduledJob:
        return self.scheduler.schedule(
            task.task_id,
            task.automation.schedule,
            partial(self._fire_scheduled, task.task_id),
        )

    async def _fire_scheduled(self, task_id: str) -> None:
        if task_id not in self.registry:
            self.scheduler.cancel(task_id)
            return
        # 执行放到后台，触发器被替换时不会中断正在进行的执行
        self._spawn(self.execute_task(task_id), f"cron:{task_id}")

    # ============================================================
    # 工作流
    # ============================================================

    def register_template(self, name: str, spec: TaskSpec | dict[str, Any]) -> None:
        self.workflows.register_template(name, spec)

    async def create_workflow(self, spec: WorkflowSpec | dict[str, Any]) -> Workflow:
        return await self.workflows.create_workflow(spec)

    async def execute_workflow(
        self,
        workflow_id: str,
        context: dict[str, Any] | None = None,
    ) -> WorkflowExecution:
        return await self.workflows.execute_workflow(workflow_id, context)

    # ============================================================
    # executor
    # ============================================================

    def register_executor(
        self,
        name: str,
        executor: Executor | Callable[[ExecutionContext], Any],
    ) -> None:
        self.executors.register(name, executor)

    def unregister_executor(self, name: str) -> None:
        self.executors.unregister(name)

    # ============================================================
    # 指标与持久化
    # ============================================================

    def get_metrics(self) -> EngineMetrics:
        """聚合指标快照（无副作用，连续调用结果一致）"""
        average = (
            self._total_execution_ms / self._tasks_completed if self._tasks_completed else 0.0
        )
        return EngineMetrics(
            tasks_created=self._tasks_created,
            tasks_completed=self._tasks_completed,
            tasks_failed=self._tasks_failed,
            average_execution_time=average,
            workflows_executed=self.workflows.workflows_executed,
            active_tasks=len(self._running),
            pending_tasks=self.registry.count(TaskStatus.PENDING),
            scheduled_tasks=len(self.scheduler),
            workflows=len(self.workflows),
        )

    async def save_metrics(self, owner_entity_id: str | None = None) -> None:
        """记录一条指标样本

        Raises:
            TaskmasterError: 未启用持久化
            PersistenceError: 写入失败
        """
        if self.gateway is None:
            raise TaskmasterError("Persistence is not enabled")
        await self.gateway.save_metrics(self.get_metrics(), owner_entity_id)

    async def load_from_store(self, owner_entity_id: str | None = None) -> tuple[int, int]:
        """从存储预热引擎：加载未结束的任务（重新安装 cron）与活跃工作流

        Returns:
            (任务数, 工作流数)

        Raises:
            TaskmasterError: 未启用持久化
            PersistenceError: 读取失败
        """
        if self.gateway is None:
            raise TaskmasterError("Persistence is not enabled")
        tasks = await self.gateway.load_tasks(owner_entity_id)
        workflows = await self.gateway.load_workflows()
        for workflow in workflows:
            self.workflows.put_workflow(workflow)
        return len(tasks), len(workflows)

    def _on_task_synced(self, task: Task) -> None:
        """外部同步的任务：按 automation 调整 cron 触发器"""
        job = self.scheduler.get(task.task_id)
        if task.is_recurring:
            if job is None or job.expression != task.automation.schedule:
                self._arm_schedule(task)
        elif job is not None:
            self.scheduler.cancel(task.task_id)

    def _on_task_evicted(self, event: Event) -> None:
        task_id = event.task_id
        if task_id is None:
            return
        self.scheduler.cancel(task_id)
        self.retries.cancel(task_id)
        if task_id in self._queued:
            del self._queued[task_id]
            self._start_queue.remove(task_id)
        if self.gateway is not None:
            self.gateway.forget_task(task_id)
        future = self._settlements.pop(task_id, None)
        if future is not None and not future.done():
            future.set_exception(TaskNotFoundError(task_id))
