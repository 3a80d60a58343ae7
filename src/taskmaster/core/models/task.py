"""Task Domain Model

TaskSpec 是创建入口的输入（兼容 camelCase 字段名），
Task 是内存注册表与持久化记录共享的任务实体。
"""

from datetime import UTC, datetime
from typing import Any

from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .enums import ExecutionStatus, TaskPriority, TaskStatus


def _ensure_aware(value: datetime | None) -> datetime | None:
    """无时区的时间按 UTC 处理"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class AutomationSpec(BaseModel):
    """自动化描述"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    enabled: bool = Field(default=False, description="是否自动执行")
    executor: str | None = Field(default=None, description="executor 名称")
    params: dict[str, Any] = Field(default_factory=dict, description="executor 参数")
    schedule: str | None = Field(default=None, description="cron 表达式")
    conditions: list[str] = Field(default_factory=list, description="触发条件表达式")
    dependencies: list[str] = Field(default_factory=list, description="依赖任务 ID")
    timeout_s: float | None = Field(default=None, gt=0, description="单次执行超时（秒）")

    @field_validator("schedule")
    @classmethod
    def _check_schedule(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        value = value.strip()
        if not croniter.is_valid(value):
            raise ValueError(f"invalid cron expression: {value!r}")
        return value

    @field_validator("dependencies")
    @classmethod
    def _dedupe_dependencies(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))

    @model_validator(mode="after")
    def _check_enabled_fields(self) -> "AutomationSpec":
        if self.enabled and not (self.executor and self.executor.strip()):
            raise ValueError("automation.executor is required when automation is enabled")
        return self


class TaskSpec(BaseModel):
    """任务创建输入"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    title: str = Field(description="任务标题（必填）")
    description: str = Field(default="", description="任务描述")
    type: str = Field(default="manual", description="任务类型（影响时长估算）")
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM, description="优先级")
    category: str = Field(default="general", description="分类（影响优先级评分）")
    owner_entity_id: str | None = Field(default=None, description="所属实体 ID")
    assignee: str | None = Field(default=None, description="负责人")
    due_date: datetime | None = Field(default=None, description="截止时间")
    automation: AutomationSpec = Field(default_factory=AutomationSpec)
    metadata: dict[str, Any] = Field(default_factory=dict, description="上下文元数据")

    @field_validator("title")
    @classmethod
    def _check_title(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("title must not be empty")
        return value

    @field_validator("due_date")
    @classmethod
    def _aware_due_date(cls, value: datetime | None) -> datetime | None:
        return _ensure_aware(value)


class TaskError(BaseModel):
    """最近一次失败信息"""

    message: str
    error_type: str
    trace: str = Field(default="", description="异常堆栈")
    timestamp: datetime


class Suggestion(BaseModel):
    """启发式建议"""

    type: str = Field(description="urgent / warning / info")
    message: str


class Task(BaseModel):
    """Task 数据模型

    状态只能经由执行路径（TaskRegistry.transition）改变。
    """

    task_id: str = Field(description="唯一标识，ULID 格式，不复用")
    title: str
    description: str = ""
    type: str = "manual"
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = Field(default=TaskStatus.PENDING, description="当前状态")
    category: str = "general"
    owner_entity_id: str | None = None
    assignee: str | None = None
    due_date: datetime | None = None
    automation: AutomationSpec = Field(default_factory=AutomationSpec)

    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None

    attempts: int = Field(default=0, ge=0, description="失败次数")
    last_error: TaskError | None = None
    result: Any = None
    execution_time_ms: int | None = None

    # 启发式字段
    priority_score: int | None = Field(default=None, ge=0, le=100)
    estimated_duration: int | None = Field(default=None, description="估算时长（分钟）")
    suggestions: list[Suggestion] = Field(default_factory=list)

    metadata: dict[str, Any] = Field(default_factory=dict, description="工作流关联等元数据")

    @property
    def dependencies(self) -> list[str]:
        return self.automation.dependencies

    @property
    def is_recurring(self) -> bool:
        return self.automation.enabled and bool(self.automation.schedule)


class ExecutionOutcome(BaseModel):
    """execute_task 的返回值"""

    task_id: str
    status: ExecutionStatus
    reason: str | None = Field(default=None, description="waiting/queued/failed 的原因")
    result: Any = None
    error: str | None = None

    @property
    def settled(self) -> bool:
        """是否为最终结果（不会再有重试或排队执行）"""
        return self.status == ExecutionStatus.COMPLETED or (
            self.status == ExecutionStatus.FAILED and self.reason != "retry_scheduled"
        )
