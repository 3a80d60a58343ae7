"""WorkflowEngine -- 工作流定义与分层执行

执行流程：
1. group_steps_by_level() 按 depends_on 把步骤分层
2. 逐层执行，同层步骤用 asyncio.gather 一起启动、一起等待
3. 每个步骤：条件不满足 -> skipped；否则由模板实例化任务，
   走与手动任务相同的执行路径，等待任务结算（完成或重试耗尽）
4. on_failure="stop" 的步骤失败时整个执行失败，后续层不再处理
"""

import asyncio
import copy
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import pydantic
import structlog
from ulid import ULID

from taskmaster.core.exceptions import (
    PersistenceError,
    TaskmasterError,
    ValidationError,
    WorkflowNotFoundError,
)
from taskmaster.core.models import (
    EventType,
    FailurePolicy,
    Step,
    StepResult,
    StepStatus,
    SuccessPolicy,
    Task,
    TaskSpec,
    TaskStatus,
    Workflow,
    WorkflowExecution,
    WorkflowSpec,
    WorkflowStatus,
)

from .conditions import evaluate_conditions, validate_condition
from .hub import EventHub

log = structlog.get_logger()

TaskFactory = Callable[[dict[str, Any]], Awaitable[Task]]
TaskRunner = Callable[[str], Awaitable[Task]]


def group_steps_by_level(steps: list[Step]) -> list[list[Step]]:
    """按依赖分层：每层是前置步骤均已处理的最大步骤集合

    Raises:
        ValueError: 存在依赖环或未知依赖，无法分层
    """
    levels: list[list[Step]] = []
    processed: set[str] = set()
    remaining = list(steps)

    while remaining:
        level = [step for step in remaining if all(dep in processed for dep in step.depends_on)]
        if not level:
            names = ", ".join(step.name for step in remaining)
            raise ValueError(f"Steps cannot be leveled (cycle or unknown dependency): {names}")
        levels.append(level)
        processed.update(step.step_id for step in level)
        remaining = [step for step in remaining if step.step_id not in processed]

    return levels


def _parse_workflow_spec(spec: WorkflowSpec | dict[str, Any]) -> WorkflowSpec:
    if isinstance(spec, WorkflowSpec):
        return spec
    try:
        return WorkflowSpec.model_validate(spec)
    except pydantic.ValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise ValidationError("Invalid workflow spec", errors) from e


class WorkflowEngine:
    """工作流引擎"""

    def __init__(
        self,
        hub: EventHub,
        create_task: TaskFactory,
        run_task: TaskRunner,
        gateway=None,
        execution_limit: int = 100,
    ) -> None:
        """
        Args:
            hub: 生命周期事件广播器
            create_task: 由任务定义创建任务（不自动执行）
            run_task: 通过统一执行入口运行任务并等待其结算
            gateway: 可选的 PersistenceGateway
            execution_limit: 内存中保留的已结束执行数（更早的只在存储中）
        """
        self._hub = hub
        self._create_task = create_task
        self._run_task = run_task
        self._gateway = gateway
        self._workflows: dict[str, Workflow] = {}
        self._executions: dict[str, WorkflowExecution] = {}
        self._finished: deque[str] = deque()
        self._execution_limit = execution_limit
        self._templates: dict[str, dict[str, Any]] = {}
        self._workflows_executed = 0

    # ---- 模板目录 ----

    def register_template(self, name: str, spec: TaskSpec | dict[str, Any]) -> None:
        """注册任务模板（同名覆盖）

        Raises:
            ValidationError: 模板不是合法的任务定义
        """
        if isinstance(spec, TaskSpec):
            template = spec.model_dump(exclude_unset=True)
        else:
            template = copy.deepcopy(spec)
            try:
                TaskSpec.model_validate({"title": name, **template})
            except pydantic.ValidationError as e:
                raise ValidationError(f"Invalid task template {name}", [str(e)]) from e
        self._templates[name] = template

    # ---- 定义 ----

    async def create_workflow(self, spec: WorkflowSpec | dict[str, Any]) -> Workflow:
        """校验并创建工作流

        Raises:
            ValidationError: 步骤名重复、依赖不存在、依赖成环或条件无法解析
            PersistenceError: 启用持久化且写入失败（内存中的工作流保留）
        """
        parsed = _parse_workflow_spec(spec)

        errors: list[str] = []
        names = [step.name for step in parsed.steps]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            errors.append(f"duplicate step names: {', '.join(duplicates)}")
        for step in parsed.steps:
            for dep in step.depends_on:
                if dep not in names:
                    errors.append(f"step {step.name}: unknown dependency {dep}")
                elif dep == step.name:
                    errors.append(f"step {step.name}: depends on itself")
            for condition in step.conditions:
                problem = validate_condition(condition)
                if problem is not None:
                    errors.append(f"step {step.name}: condition {condition!r}: {problem}")
        if errors:
            raise ValidationError("Invalid workflow spec", errors)

        ids = {step.name: str(ULID()) for step in parsed.steps}
        steps: list[Step] = []
        for index, step in enumerate(parsed.steps):
            depends_on = [ids[dep] for dep in step.depends_on]
            # 未声明依赖的非并行步骤按顺序排在前一步之后
            if not depends_on and not step.parallel and index > 0:
                depends_on = [ids[parsed.steps[index - 1].name]]
            steps.append(
                Step(
                    step_id=ids[step.name],
                    name=step.name,
                    task_template=step.task_template,
                    conditions=step.conditions,
                    on_success=step.on_success,
                    on_failure=step.on_failure,
                    parallel=step.parallel,
                    depends_on=depends_on,
                )
            )
        try:
            group_steps_by_level(steps)
        except ValueError as e:
            raise ValidationError("Invalid workflow spec", [str(e)]) from e

        workflow = Workflow(
            workflow_id=str(ULID()),
            name=parsed.name,
            description=parsed.description,
            steps=steps,
            timeout_s=parsed.timeout_s,
            created_at=datetime.now(UTC),
        )
        self._workflows[workflow.workflow_id] = workflow
        log.info("workflow_created", workflow_id=workflow.workflow_id, steps=len(steps))
        self._hub.publish(
            EventType.WORKFLOW_CREATED,
            workflow_id=workflow.workflow_id,
            payload={"name": workflow.name, "steps": len(steps)},
        )

        if self._gateway is not None:
            await self._gateway.save_workflow(workflow)
        return workflow

    def get_workflow(self, workflow_id: str) -> Workflow:
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    def put_workflow(self, workflow: Workflow) -> None:
        """从持久化加载的工作流直接放入内存"""
        self._workflows[workflow.workflow_id] = workflow

    def list_workflows(self) -> list[Workflow]:
        return list(self._workflows.values())

    def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        return self._executions.get(execution_id)

    @property
    def workflows_executed(self) -> int:
        return self._workflows_executed

    def __len__(self) -> int:
        return len(self._workflows)

    # ---- 执行 ----

    async def execute_workflow(
        self,
        workflow_id: str,
        context: dict[str, Any] | None = None,
    ) -> WorkflowExecution:
        """分层执行工作流

        失败不抛异常，结果体现在返回的 WorkflowExecution.status 中。

        Raises:
            WorkflowNotFoundError: 工作流不存在
        """
        workflow = self.get_workflow(workflow_id)
        execution = WorkflowExecution(
            execution_id=str(ULID()),
            workflow_id=workflow_id,
            context=dict(context or {}),
            started_at=datetime.now(UTC),
        )
        self._executions[execution.execution_id] = execution
        log.info(
            "workflow_started",
            workflow_id=workflow_id,
            execution_id=execution.execution_id,
        )
        self._hub.publish(
            EventType.WORKFLOW_STARTED,
            workflow_id=workflow_id,
            payload={"execution_id": execution.execution_id},
        )

        step_statuses: dict[str, str] = {}
        error: str | None = None

        for level in group_steps_by_level(workflow.steps):
            visible = dict(step_statuses)
            try:
                async with asyncio.timeout(workflow.timeout_s):
                    results = await asyncio.gather(
                        *(self._run_step(workflow, execution, step, visible) for step in level)
                    )
            except TimeoutError:
                error = f"Level timed out after {workflow.timeout_s:g}s"
                log.warning(
                    "workflow_level_timeout",
                    workflow_id=workflow_id,
                    execution_id=execution.execution_id,
                    steps=[step.name for step in level],
                )
                break

            finish_early = False
            for step, result in zip(level, results, strict=True):
                execution.results[step.step_id] = result
                step_statuses[step.name] = result.status.value
                if result.status == StepStatus.COMPLETED:
                    execution.completed_steps.append(step.step_id)
                    if step.on_success == SuccessPolicy.COMPLETE:
                        finish_early = True
                elif (
                    result.status == StepStatus.FAILED
                    and step.on_failure == FailurePolicy.STOP
                    and error is None
                ):
                    error = f"Step {step.name} failed: {result.error}"

            if error is not None or finish_early:
                break

        if error is None:
            await self._complete(workflow, execution)
        else:
            await self._fail(workflow, execution, error)
        return execution

    async def _run_step(
        self,
        workflow: Workflow,
        execution: WorkflowExecution,
        step: Step,
        step_statuses: dict[str, str],
    ) -> StepResult:
        condition_context = {**execution.context, "steps": step_statuses}
        if step.conditions and not evaluate_conditions(step.conditions, condition_context):
            log.info(
                "workflow_step_skipped",
                execution_id=execution.execution_id,
                step=step.name,
            )
            return StepResult(step_id=step.step_id, status=StepStatus.SKIPPED)

        try:
            spec = self._build_task_spec(workflow, execution, step)
            task = await self._create_task(spec)
        except (TaskmasterError, KeyError) as e:
            message = e.args[0] if isinstance(e, KeyError) else str(e)
            log.warning(
                "workflow_step_instantiation_failed",
                execution_id=execution.execution_id,
                step=step.name,
                error=message,
            )
            return StepResult(step_id=step.step_id, status=StepStatus.FAILED, error=message)

        try:
            task = await self._run_task(task.task_id)
        except TaskmasterError as e:
            return StepResult(
                step_id=step.step_id,
                status=StepStatus.FAILED,
                task_id=task.task_id,
                error=str(e),
            )
        if task.status == TaskStatus.COMPLETED:
            return StepResult(
                step_id=step.step_id,
                status=StepStatus.COMPLETED,
                task_id=task.task_id,
                result=task.result,
            )
        return StepResult(
            step_id=step.step_id,
            status=StepStatus.FAILED,
            task_id=task.task_id,
            error=task.last_error.message if task.last_error else "failed",
        )

    def _build_task_spec(
        self,
        workflow: Workflow,
        execution: WorkflowExecution,
        step: Step,
    ) -> dict[str, Any]:
        """模板 + 执行上下文 -> 任务定义"""
        if isinstance(step.task_template, str):
            if step.task_template not in self._templates:
                raise KeyError(f"Unknown task template {step.task_template}")
            spec = copy.deepcopy(self._templates[step.task_template])
        else:
            spec = copy.deepcopy(step.task_template)

        spec.setdefault("title", step.name)
        automation = spec.setdefault("automation", {})
        automation["params"] = {**automation.get("params", {}), **execution.context}
        spec["metadata"] = {
            **spec.get("metadata", {}),
            "workflow_id": workflow.workflow_id,
            "execution_id": execution.execution_id,
            "step_id": step.step_id,
        }
        return spec

    async def _complete(self, workflow: Workflow, execution: WorkflowExecution) -> None:
        now = datetime.now(UTC)
        execution.status = WorkflowStatus.COMPLETED
        execution.completed_at = now
        workflow.executions += 1
        workflow.last_executed = now
        self._workflows_executed += 1
        log.info(
            "workflow_completed",
            workflow_id=workflow.workflow_id,
            execution_id=execution.execution_id,
        )
        self._hub.publish(
            EventType.WORKFLOW_COMPLETED,
            workflow_id=workflow.workflow_id,
            payload={
                "execution_id": execution.execution_id,
                "completed_steps": len(execution.completed_steps),
            },
        )
        self._retire(execution)
        await self._persist(workflow, execution)

    async def _fail(self, workflow: Workflow, execution: WorkflowExecution, error: str) -> None:
        execution.status = WorkflowStatus.FAILED
        execution.failed_at = datetime.now(UTC)
        execution.error = error
        workflow.last_executed = execution.failed_at
        log.warning(
            "workflow_failed",
            workflow_id=workflow.workflow_id,
            execution_id=execution.execution_id,
            error=error,
        )
        self._hub.publish(
            EventType.WORKFLOW_FAILED,
            workflow_id=workflow.workflow_id,
            payload={"execution_id": execution.execution_id, "error": error},
        )
        self._retire(execution)
        await self._persist(workflow, execution)

    def _retire(self, execution: WorkflowExecution) -> None:
        """已结束的执行只保留最近 execution_limit 条"""
        self._finished.append(execution.execution_id)
        while len(self._finished) > self._execution_limit:
            self._executions.pop(self._finished.popleft(), None)

    async def _persist(self, workflow: Workflow, execution: WorkflowExecution) -> None:
        if self._gateway is None:
            return
        try:
            await self._gateway.save_execution(execution)
            await self._gateway.save_workflow(workflow)
        except PersistenceError as e:
            log.error(
                "workflow_persist_failed",
                workflow_id=workflow.workflow_id,
                execution_id=execution.execution_id,
                error=str(e),
            )
