"""Taskmaster Engine -- 执行路径、调度、工作流与健康监控

TaskmasterService 是唯一的引擎状态持有者，其余组件由它组装。
"""

from .advisor import PriorityAdvisor
from .conditions import (
    ConditionSyntaxError,
    evaluate_condition,
    evaluate_conditions,
    validate_condition,
)
from .executors import (
    AiosqliteQueryRunner,
    ExecutionContext,
    Executor,
    ExecutorRegistry,
    FunctionExecutor,
    Services,
    run_shell,
)
from .gateway import PersistenceGateway
from .hub import ALL_EVENTS, EventHub
from .monitor import HealthMonitor
from .registry import TaskRegistry
from .resolver import DependencyResolver
from .retry import RetryQueue
from .scheduler import CronScheduler, ScheduledJob
from .service import TaskmasterService
from .workflow import WorkflowEngine, group_steps_by_level

__all__ = [
    "TaskmasterService",
    # 组件
    "TaskRegistry",
    "ExecutorRegistry",
    "DependencyResolver",
    "CronScheduler",
    "ScheduledJob",
    "RetryQueue",
    "PriorityAdvisor",
    "WorkflowEngine",
    "PersistenceGateway",
    "HealthMonitor",
    "EventHub",
    "ALL_EVENTS",
    # executor
    "Executor",
    "FunctionExecutor",
    "ExecutionContext",
    "Services",
    "AiosqliteQueryRunner",
    "run_shell",
    # 条件表达式
    "ConditionSyntaxError",
    "evaluate_condition",
    "evaluate_conditions",
    "validate_condition",
    "group_steps_by_level",
]
