"""Store Protocol 接口定义

定义持久化网关依赖的 DurableStore 抽象接口，
使用 Python Protocol 实现结构化子类型（duck typing）。
具体存储技术可替换，仓库内提供 SQLite 参考实现。
"""

from typing import Any, Protocol

from ..models.task import Task
from ..models.workflow import Workflow, WorkflowExecution


class DurableStore(Protocol):
    """持久化存储接口"""

    async def upsert_task(self, task: Task) -> None:
        """插入或更新任务记录（保留已有执行历史）"""
        ...

    async def get_task(self, task_id: str) -> Task | None:
        """根据 task_id 查询任务"""
        ...

    async def list_tasks(
        self,
        owner_entity_id: str | None = None,
        statuses: list[str] | None = None,
    ) -> list[Task]:
        """查询任务列表，支持按所属实体和状态筛选"""
        ...

    async def delete_task(self, task_id: str) -> None:
        """删除任务记录"""
        ...

    async def get_execution_history(self, task_id: str) -> list[dict[str, Any]]:
        """读取任务执行历史"""
        ...

    async def set_execution_history(
        self,
        task_id: str,
        history: list[dict[str, Any]],
    ) -> None:
        """覆盖写入任务执行历史"""
        ...

    async def upsert_workflow(self, workflow: Workflow, active: bool = True) -> None:
        """插入或更新工作流定义"""
        ...

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """根据 workflow_id 查询工作流"""
        ...

    async def list_workflows(self, active_only: bool = True) -> list[Workflow]:
        """查询工作流列表"""
        ...

    async def upsert_execution(self, execution: WorkflowExecution) -> None:
        """插入或更新工作流执行记录"""
        ...

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """根据 execution_id 查询执行记录"""
        ...

    async def insert_metric(
        self,
        metric_type: str,
        value: dict[str, Any],
        owner_entity_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """追加一条指标采样"""
        ...

    async def list_metrics(
        self,
        metric_type: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """查询指标采样，按时间倒序"""
        ...

    async def close(self) -> None:
        """关闭底层连接"""
        ...
