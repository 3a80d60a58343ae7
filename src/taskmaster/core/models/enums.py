"""枚举定义

包含 TaskStatus 状态机、TaskPriority、EventType、工作流/步骤状态、
推送通知类型、健康状态、内置 executor，以及 VALID_TRANSITIONS 合法流转映射。
"""

from enum import StrEnum


class TaskStatus(StrEnum):
    """Task 状态机"""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskPriority(StrEnum):
    """任务优先级"""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"
    CRITICAL = "critical"


# 合法状态流转
#   PENDING -> FAILED: executor 未注册，开始前中止
#   FAILED -> IN_PROGRESS: 重试（还需满足 attempts < retry_attempts）
#   COMPLETED -> IN_PROGRESS: 仅周期任务（cron 触发新一轮执行）
VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS, TaskStatus.FAILED},
    TaskStatus.IN_PROGRESS: {TaskStatus.COMPLETED, TaskStatus.FAILED},
    TaskStatus.FAILED: {TaskStatus.IN_PROGRESS},
    TaskStatus.COMPLETED: {TaskStatus.IN_PROGRESS},
}


class EventType(StrEnum):
    """生命周期事件类型"""

    TASK_CREATED = "task:created"
    TASK_STARTED = "task:started"
    TASK_COMPLETED = "task:completed"
    TASK_FAILED = "task:failed"
    TASK_RETRY_SCHEDULED = "task:retry_scheduled"
    TASK_EVICTED = "task:evicted"
    WORKFLOW_CREATED = "workflow:created"
    WORKFLOW_STARTED = "workflow:started"
    WORKFLOW_COMPLETED = "workflow:completed"
    WORKFLOW_FAILED = "workflow:failed"
    HEALTH = "health"
    METRICS = "metrics"


class ExecutionStatus(StrEnum):
    """execute_task 返回的结果状态（waiting/queued 非错误）"""

    COMPLETED = "completed"
    FAILED = "failed"
    WAITING = "waiting"
    QUEUED = "queued"


class WorkflowStatus(StrEnum):
    """WorkflowExecution 状态"""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(StrEnum):
    """工作流步骤结果状态"""

    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class SuccessPolicy(StrEnum):
    NEXT = "next"
    COMPLETE = "complete"


class FailurePolicy(StrEnum):
    STOP = "stop"
    CONTINUE = "continue"


class ChangeType(StrEnum):
    """持久化层推送的变更类型"""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class BuiltinExecutor(StrEnum):
    """内置 executor 名称"""

    NOTIFICATION = "notification"
    WEBHOOK = "webhook"
    COMMAND = "command"
    DATABASE = "database"
    DEFAULT = "default"


def validate_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    """验证状态流转是否合法（不含重试次数、周期任务等上下文约束）

    Args:
        from_status: 当前状态
        to_status: 目标状态

    Returns:
        True 如果流转合法，否则 False
    """
    allowed = VALID_TRANSITIONS.get(from_status, set())
    return to_status in allowed
