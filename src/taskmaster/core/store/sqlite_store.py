"""DurableStore SQLite 实现

每个写操作单独提交；失败时回滚并把原始异常抛给调用方
（由 PersistenceGateway 包装为 PersistenceError）。
"""

import json
from datetime import UTC, datetime
from typing import Any

import aiosqlite

from ..models.task import Task
from ..models.workflow import Workflow, WorkflowExecution


class SqliteDurableStore:
    """DurableStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    @property
    def conn(self) -> aiosqlite.Connection:
        return self._conn

    async def _write(self, sql: str, params: tuple) -> None:
        try:
            await self._conn.execute(sql, params)
            await self._conn.commit()
        except Exception:
            await self._conn.rollback()
            raise

    # ---- tasks ----

    async def upsert_task(self, task: Task) -> None:
        """插入或更新任务（冲突时保留 execution_history）"""
        await self._write(
            """
            INSERT INTO tasks (task_id, owner_entity_id, status, assignee, due_date,
                               created_at, updated_at, data)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(task_id) DO UPDATE SET
                owner_entity_id = excluded.owner_entity_id,
                status = excluded.status,
                assignee = excluded.assignee,
                due_date = excluded.due_date,
                updated_at = excluded.updated_at,
                data = excluded.data
            """,
            (
                task.task_id,
                task.owner_entity_id,
                task.status.value,
                task.assignee,
                task.due_date.isoformat() if task.due_date else None,
                task.created_at.isoformat(),
                task.updated_at.isoformat(),
                task.model_dump_json(),
            ),
        )

    async def get_task(self, task_id: str) -> Task | None:
        """根据 task_id 查询任务"""
        cursor = await self._conn.execute(
            "SELECT data FROM tasks WHERE task_id = ?",
            (task_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return Task.model_validate_json(row[0])

    async def list_tasks(
        self,
        owner_entity_id: str | None = None,
        statuses: list[str] | None = None,
    ) -> list[Task]:
        """查询任务列表，按 due_date 正序（无截止时间的排在最后）"""
        clauses: list[str] = []
        params: list[Any] = []
        if owner_entity_id is not None:
            clauses.append("owner_entity_id = ?")
            params.append(owner_entity_id)
        if statuses:
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(statuses)

        sql = "SELECT data FROM tasks"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY due_date IS NULL, due_date ASC, created_at ASC"

        cursor = await self._conn.execute(sql, tuple(params))
        rows = await cursor.fetchall()
        return [Task.model_validate_json(row[0]) for row in rows]

    async def delete_task(self, task_id: str) -> None:
        await self._write("DELETE FROM tasks WHERE task_id = ?", (task_id,))

    async def get_execution_history(self, task_id: str) -> list[dict[str, Any]]:
        cursor = await self._conn.execute(
            "SELECT execution_history FROM tasks WHERE task_id = ?",
            (task_id,),
        )
        row = await cursor.fetchone()
        if row is None or not row[0]:
            return []
        return json.loads(row[0])

    async def set_execution_history(
        self,
        task_id: str,
        history: list[dict[str, Any]],
    ) -> None:
        await self._write(
            "UPDATE tasks SET execution_history = ? WHERE task_id = ?",
            (json.dumps(history, ensure_ascii=False, default=str), task_id),
        )

    # ---- workflows ----

    async def upsert_workflow(self, workflow: Workflow, active: bool = True) -> None:
        await self._write(
            """
            INSERT INTO workflows (workflow_id, name, is_active, created_at, data)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(workflow_id) DO UPDATE SET
                name = excluded.name,
                is_active = excluded.is_active,
                data = excluded.data
            """,
            (
                workflow.workflow_id,
                workflow.name,
                1 if active else 0,
                workflow.created_at.isoformat(),
                workflow.model_dump_json(),
            ),
        )

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        cursor = await self._conn.execute(
            "SELECT data FROM workflows WHERE workflow_id = ?",
            (workflow_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return Workflow.model_validate_json(row[0])

    async def list_workflows(self, active_only: bool = True) -> list[Workflow]:
        sql = "SELECT data FROM workflows"
        if active_only:
            sql += " WHERE is_active = 1"
        sql += " ORDER BY created_at DESC"
        cursor = await self._conn.execute(sql)
        rows = await cursor.fetchall()
        return [Workflow.model_validate_json(row[0]) for row in rows]

    # ---- workflow executions ----

    async def upsert_execution(self, execution: WorkflowExecution) -> None:
        await self._write(
            """
            INSERT INTO workflow_executions (execution_id, workflow_id, status,
                                             started_at, data)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(execution_id) DO UPDATE SET
                status = excluded.status,
                data = excluded.data
            """,
            (
                execution.execution_id,
                execution.workflow_id,
                execution.status.value,
                execution.started_at.isoformat(),
                execution.model_dump_json(),
            ),
        )

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        cursor = await self._conn.execute(
            "SELECT data FROM workflow_executions WHERE execution_id = ?",
            (execution_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return WorkflowExecution.model_validate_json(row[0])

    # ---- metrics ----

    async def insert_metric(
        self,
        metric_type: str,
        value: dict[str, Any],
        owner_entity_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self._write(
            """
            INSERT INTO metrics (metric_type, metric_value, owner_entity_id, metadata, ts)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                metric_type,
                json.dumps(value, ensure_ascii=False, default=str),
                owner_entity_id,
                json.dumps(metadata or {}, ensure_ascii=False, default=str),
                datetime.now(UTC).isoformat(),
            ),
        )

    async def list_metrics(
        self,
        metric_type: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        if metric_type:
            cursor = await self._conn.execute(
                """
                SELECT metric_type, metric_value, owner_entity_id, metadata, ts
                FROM metrics WHERE metric_type = ?
                ORDER BY metric_id DESC LIMIT ?
                """,
                (metric_type, limit),
            )
        else:
            cursor = await self._conn.execute(
                """
                SELECT metric_type, metric_value, owner_entity_id, metadata, ts
                FROM metrics ORDER BY metric_id DESC LIMIT ?
                """,
                (limit,),
            )
        rows = await cursor.fetchall()
        return [
            {
                "metric_type": row[0],
                "metric_value": json.loads(row[1]),
                "owner_entity_id": row[2],
                "metadata": json.loads(row[3]),
                "ts": datetime.fromisoformat(row[4]),
            }
            for row in rows
        ]

    async def close(self) -> None:
        await self._conn.close()
