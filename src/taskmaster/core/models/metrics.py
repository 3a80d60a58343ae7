"""指标与健康快照模型

EngineMetrics 通过 model_dump(by_alias=True) 输出 camelCase 字段
（tasksCreated、averageExecutionTime 等），供宿主应用展示。
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .enums import HealthStatus


class EngineMetrics(BaseModel):
    """聚合指标快照"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    tasks_created: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    average_execution_time: float = Field(default=0.0, description="平均执行耗时（毫秒）")
    workflows_executed: int = 0
    active_tasks: int = 0
    pending_tasks: int = 0
    scheduled_tasks: int = 0
    workflows: int = 0


class HealthSnapshot(BaseModel):
    """单次监控采样结果"""

    status: HealthStatus = HealthStatus.HEALTHY
    issues: list[str] = Field(default_factory=list)
    stuck_task_ids: list[str] = Field(default_factory=list)
    failure_rate: float = 0.0
    evicted: int = Field(default=0, description="本次清理的过期任务数")
    metrics: EngineMetrics
    ts: datetime
