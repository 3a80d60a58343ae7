"""Taskmaster Core Domain Models -- 公共类型导出

所有公共模型类型从此入口导入。
"""

from .enums import (
    VALID_TRANSITIONS,
    BuiltinExecutor,
    ChangeType,
    EventType,
    ExecutionStatus,
    FailurePolicy,
    HealthStatus,
    StepStatus,
    SuccessPolicy,
    TaskPriority,
    TaskStatus,
    WorkflowStatus,
    validate_transition,
)
from .event import ChangeNotification, Event
from .metrics import EngineMetrics, HealthSnapshot
from .task import AutomationSpec, ExecutionOutcome, Suggestion, Task, TaskError, TaskSpec
from .workflow import (
    Step,
    StepResult,
    StepSpec,
    Workflow,
    WorkflowExecution,
    WorkflowSpec,
)

__all__ = [
    # 枚举
    "TaskStatus",
    "TaskPriority",
    "EventType",
    "ExecutionStatus",
    "WorkflowStatus",
    "StepStatus",
    "SuccessPolicy",
    "FailurePolicy",
    "ChangeType",
    "HealthStatus",
    "BuiltinExecutor",
    # 状态机
    "VALID_TRANSITIONS",
    "validate_transition",
    # Task
    "Task",
    "TaskSpec",
    "AutomationSpec",
    "TaskError",
    "Suggestion",
    "ExecutionOutcome",
    # Workflow
    "Workflow",
    "WorkflowSpec",
    "Step",
    "StepSpec",
    "StepResult",
    "WorkflowExecution",
    # Event
    "Event",
    "ChangeNotification",
    # 指标
    "EngineMetrics",
    "HealthSnapshot",
]
