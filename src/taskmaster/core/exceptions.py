"""Taskmaster 异常体系

ValidationError 同步拒绝创建；ExecutorNotFoundError 直接失败不重试；
ExecutionTimeoutError 与 ExecutorRuntimeError 走同一重试策略；
PersistenceError 抛给持久化调用方，不回滚内存状态。
"""


class TaskmasterError(Exception):
    """Taskmaster 基础异常"""

    def __init__(self, message: str, recoverable: bool = False) -> None:
        """
        Args:
            message: 错误描述
            recoverable: 是否可通过重试恢复
        """
        super().__init__(message)
        self.recoverable = recoverable


class ValidationError(TaskmasterError):
    """创建输入不合法（任务或工作流），不会创建任何实体"""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message, recoverable=False)
        self.errors = errors or [message]


class TaskNotFoundError(TaskmasterError):
    """任务不存在"""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class WorkflowNotFoundError(TaskmasterError):
    """工作流不存在"""

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow {workflow_id} not found")
        self.workflow_id = workflow_id


class InvalidTransitionError(TaskmasterError):
    """非法状态流转"""

    def __init__(self, task_id: str, from_status: str, to_status: str) -> None:
        super().__init__(f"Task {task_id}: cannot transition from {from_status} to {to_status}")
        self.task_id = task_id
        self.from_status = from_status
        self.to_status = to_status


class ExecutorNotFoundError(TaskmasterError):
    """executor 未注册 -- 执行立即中止，不占用重试次数"""

    def __init__(self, name: str) -> None:
        super().__init__(f"Executor {name} not found", recoverable=False)
        self.name = name


class ExecutorRuntimeError(TaskmasterError):
    """executor 执行时抛出的错误（原始异常保存在 original_error）"""

    def __init__(self, message: str, original_error: BaseException | None = None) -> None:
        super().__init__(message, recoverable=True)
        self.original_error = original_error


class ExecutionTimeoutError(TaskmasterError):
    """executor 超时 -- 放弃等待结果，底层操作不保证停止"""

    def __init__(self, executor: str, timeout_s: float) -> None:
        super().__init__(
            f"Executor {executor} timed out after {timeout_s:g}s",
            recoverable=True,
        )
        self.executor = executor
        self.timeout_s = timeout_s


class PersistenceError(TaskmasterError):
    """持久化失败 -- 不回滚先前的内存状态变更"""

    def __init__(self, operation: str, original_error: Exception) -> None:
        super().__init__(
            f"Persistence operation {operation} failed: {original_error}",
            recoverable=True,
        )
        self.operation = operation
        self.original_error = original_error
