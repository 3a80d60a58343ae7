"""Executor 注册表与内置 executor

executor 是任务自动化的执行单元：`async execute(context) -> result`。
内置 executor 的名称是封闭枚举（BuiltinExecutor），宿主应用可通过
register() 注册任意名称的扩展 executor，同名后注册者生效。

所有调用都经过 ExecutorRegistry.run()：
1. 按名称查找 executor（不存在抛 ExecutorNotFoundError）
2. 以独立 asyncio.Task 运行，并用 asyncio.wait 施加超时
3. 超时后放弃等待（不取消底层任务），记入 abandoned 集合
4. 非 Taskmaster 异常统一包装为 ExecutorRuntimeError
"""

import asyncio
import inspect
import os
import shlex
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

import aiosqlite
import httpx
import structlog

from taskmaster.core.exceptions import (
    ExecutionTimeoutError,
    ExecutorNotFoundError,
    ExecutorRuntimeError,
    TaskmasterError,
)
from taskmaster.core.models import BuiltinExecutor, Task

log = structlog.get_logger()


class NotificationSender(Protocol):
    """通知发送能力"""

    async def send(self, message: dict[str, Any]) -> Any: ...


class QueryRunner(Protocol):
    """数据库查询能力，返回行列表"""

    async def query(self, sql: str, values: list[Any] | None = None) -> list[dict[str, Any]]: ...


ShellRunner = Callable[[str, str | None, dict[str, str] | None], Awaitable[dict[str, Any]]]


async def run_shell(
    command: str,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
) -> dict[str, Any]:
    """以子进程运行命令（不经过 shell），非零退出码视为失败"""
    proc = await asyncio.create_subprocess_exec(
        *shlex.split(command),
        cwd=cwd,
        env={**os.environ, **(env or {})},
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    result = {
        "stdout": stdout.decode("utf-8", errors="replace"),
        "stderr": stderr.decode("utf-8", errors="replace"),
        "returncode": proc.returncode,
    }
    if proc.returncode != 0:
        raise ExecutorRuntimeError(
            f"Command exited with code {proc.returncode}: {result['stderr'].strip()}"
        )
    return result


class AiosqliteQueryRunner:
    """基于 aiosqlite 连接的 QueryRunner"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def query(self, sql: str, values: list[Any] | None = None) -> list[dict[str, Any]]:
        cursor = await self._conn.execute(sql, tuple(values or ()))
        rows = await cursor.fetchall()
        columns = [col[0] for col in cursor.description or ()]
        await self._conn.commit()
        return [dict(zip(columns, row, strict=False)) for row in rows]


@dataclass
class Services:
    """注入给 executor 的外部能力（按能力而非具体实现注入）"""

    notification: NotificationSender | None = None
    http: httpx.AsyncClient | None = None
    shell: ShellRunner = run_shell
    query: QueryRunner | None = None


@dataclass
class ExecutionContext:
    """单次执行上下文"""

    task: Task
    params: dict[str, Any] = field(default_factory=dict)
    services: Services = field(default_factory=Services)
    emit: Callable[[str, Any], None] = lambda event, data: None


class Executor(Protocol):
    """executor 接口"""

    async def execute(self, context: ExecutionContext) -> Any: ...


class FunctionExecutor:
    """把普通（异步）函数适配为 Executor"""

    def __init__(self, func: Callable[[ExecutionContext], Any]) -> None:
        self._func = func

    async def execute(self, context: ExecutionContext) -> Any:
        outcome = self._func(context)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return outcome


# ============================================================
# 内置 executor
# ============================================================


class NotificationExecutor:
    async def execute(self, context: ExecutionContext) -> dict[str, Any]:
        sender = context.services.notification
        if sender is None:
            raise ExecutorRuntimeError("Notification service is not configured")
        task, params = context.task, context.params
        await sender.send(
            {
                "to": params.get("recipient") or task.assignee,
                "subject": params.get("subject") or task.title,
                "message": params.get("message") or task.description,
                "type": params.get("type", "task"),
            }
        )
        return {"sent": True, "timestamp": datetime.now(UTC).isoformat()}


class WebhookExecutor:
    """调用外部 HTTP 接口，返回状态码和响应体"""

    async def execute(self, context: ExecutionContext) -> dict[str, Any]:
        params = context.params
        url = params.get("url")
        if not url:
            raise ExecutorRuntimeError("Webhook executor requires params.url")

        client = context.services.http
        if client is None:
            async with httpx.AsyncClient() as own_client:
                return await self._send(own_client, url, params)
        return await self._send(client, url, params)

    @staticmethod
    async def _send(client: httpx.AsyncClient, url: str, params: dict[str, Any]) -> dict[str, Any]:
        response = await client.request(
            params.get("method", "POST"),
            url,
            headers={"Content-Type": "application/json", **params.get("headers", {})},
            json=params.get("body"),
        )
        try:
            body: Any = response.json()
        except ValueError:
            body = response.text
        return {"status": response.status_code, "body": body}


class CommandExecutor:
    async def execute(self, context: ExecutionContext) -> dict[str, Any]:
        command = context.params.get("command")
        if not command:
            raise ExecutorRuntimeError("Command executor requires params.command")
        return await context.services.shell(
            command,
            context.params.get("cwd"),
            context.params.get("env"),
        )


class DatabaseExecutor:
    async def execute(self, context: ExecutionContext) -> dict[str, Any]:
        runner = context.services.query
        if runner is None:
            raise ExecutorRuntimeError("Query runner is not configured")
        query = context.params.get("query")
        if not query:
            raise ExecutorRuntimeError("Database executor requires params.query")
        rows = await runner.query(query, context.params.get("values"))
        return {"rows": rows, "row_count": len(rows)}


class DefaultExecutor:
    async def execute(self, context: ExecutionContext) -> dict[str, Any]:
        log.info("default_executor_ran", task_id=context.task.task_id, title=context.task.title)
        return {"executed": True}


_BUILTINS: dict[BuiltinExecutor, type] = {
    BuiltinExecutor.NOTIFICATION: NotificationExecutor,
    BuiltinExecutor.WEBHOOK: WebhookExecutor,
    BuiltinExecutor.COMMAND: CommandExecutor,
    BuiltinExecutor.DATABASE: DatabaseExecutor,
    BuiltinExecutor.DEFAULT: DefaultExecutor,
}


class ExecutorRegistry:
    """executor 名称 -> 实现"""

    def __init__(self, register_builtins: bool = True) -> None:
        self._executors: dict[str, Executor] = {}
        self._abandoned: set[asyncio.Task] = set()
        self._abandoned_total = 0
        if register_builtins:
            self.register_builtins()

    def register_builtins(self) -> None:
        for name, executor_cls in _BUILTINS.items():
            self._executors[name.value] = executor_cls()

    def register(self, name: str, executor: Executor | Callable[[ExecutionContext], Any]) -> None:
        """注册 executor，同名覆盖

        Args:
            name: executor 名称
            executor: 具有 execute(context) 方法的对象，或普通（异步）函数
        """
        if not hasattr(executor, "execute"):
            if not callable(executor):
                raise TypeError(f"Executor {name} must be callable or define execute()")
            executor = FunctionExecutor(executor)
        if name in self._executors:
            log.info("executor_replaced", executor=name)
        self._executors[name] = executor

    def unregister(self, name: str) -> None:
        self._executors.pop(name, None)

    def get(self, name: str) -> Executor:
        try:
            return self._executors[name]
        except KeyError:
            raise ExecutorNotFoundError(name) from None

    def __contains__(self, name: str) -> bool:
        return name in self._executors

    @property
    def names(self) -> list[str]:
        return sorted(self._executors)

    @property
    def abandoned_total(self) -> int:
        """累计因超时被放弃的执行数"""
        return self._abandoned_total

    @property
    def abandoned_running(self) -> int:
        """仍在后台运行的被放弃执行数"""
        return len(self._abandoned)

    async def run(self, name: str, context: ExecutionContext, timeout_s: float) -> Any:
        """在超时约束下运行 executor

        Raises:
            ExecutorNotFoundError: executor 未注册
            ExecutionTimeoutError: 超时（底层执行被放弃但不取消）
            ExecutorRuntimeError: executor 抛出的其他异常
        """
        executor = self.get(name)
        job = asyncio.ensure_future(executor.execute(context))
        try:
            done, _ = await asyncio.wait({job}, timeout=timeout_s)
        except asyncio.CancelledError:
            job.cancel()
            raise

        if not done:
            self._abandoned.add(job)
            self._abandoned_total += 1
            job.add_done_callback(self._abandoned_done)
            log.warning(
                "executor_timeout_abandoned",
                task_id=context.task.task_id,
                executor=name,
                timeout_s=timeout_s,
                abandoned_running=len(self._abandoned),
            )
            raise ExecutionTimeoutError(name, timeout_s)

        try:
            return job.result()
        except TaskmasterError:
            raise
        except Exception as e:
            raise ExecutorRuntimeError(str(e) or type(e).__name__, original_error=e) from e

    def _abandoned_done(self, job: asyncio.Task) -> None:
        self._abandoned.discard(job)
        if not job.cancelled() and job.exception() is not None:
            log.info(
                "abandoned_execution_failed",
                error_type=type(job.exception()).__name__,
            )

    async def cancel_abandoned(self) -> int:
        """取消所有仍在运行的被放弃执行（仅在关闭时调用）"""
        jobs = list(self._abandoned)
        for job in jobs:
            job.cancel()
        if jobs:
            await asyncio.gather(*jobs, return_exceptions=True)
        self._abandoned.clear()
        return len(jobs)
