"""Workflow Domain Model

Workflow 由有序 Step 组成；执行时按依赖分层（Level），
每个 Step 实例化为一个 Task，执行记录保存在 WorkflowExecution。
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .enums import FailurePolicy, StepStatus, SuccessPolicy, WorkflowStatus


class StepSpec(BaseModel):
    """Step 定义输入"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str
    task_template: str | dict[str, Any] = Field(
        description="模板名称（查模板目录）或内联任务定义",
    )
    conditions: list[str] = Field(default_factory=list)
    on_success: SuccessPolicy = SuccessPolicy.NEXT
    on_failure: FailurePolicy = FailurePolicy.STOP
    parallel: bool = False
    depends_on: list[str] = Field(default_factory=list, description="前置步骤名称")

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("step name must not be empty")
        return value


class WorkflowSpec(BaseModel):
    """Workflow 定义输入"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str
    description: str = ""
    steps: list[StepSpec] = Field(min_length=1)
    timeout_s: float = Field(default=3600.0, gt=0, description="单个 Level 的超时")


class Step(BaseModel):
    step_id: str
    name: str
    task_template: str | dict[str, Any]
    conditions: list[str] = Field(default_factory=list)
    on_success: SuccessPolicy = SuccessPolicy.NEXT
    on_failure: FailurePolicy = FailurePolicy.STOP
    parallel: bool = False
    depends_on: list[str] = Field(default_factory=list, description="前置步骤 ID")


class Workflow(BaseModel):
    workflow_id: str
    name: str
    description: str = ""
    steps: list[Step]
    timeout_s: float = 3600.0
    created_at: datetime
    last_executed: datetime | None = None
    executions: int = Field(default=0, description="成功完成的执行次数")


class StepResult(BaseModel):
    step_id: str
    status: StepStatus
    task_id: str | None = None
    result: Any = None
    error: str | None = None


class WorkflowExecution(BaseModel):
    execution_id: str
    workflow_id: str
    status: WorkflowStatus = WorkflowStatus.RUNNING
    context: dict[str, Any] = Field(default_factory=dict)
    completed_steps: list[str] = Field(default_factory=list)
    results: dict[str, StepResult] = Field(default_factory=dict, description="step_id -> 结果")
    started_at: datetime
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    error: str | None = None
