"""CLI 入口模块 -- python -m taskmaster.core <command>

支持的命令：
  init-db                    初始化 SQLite 数据库
  list-tasks [owner_id]      列出未结束的任务
  metrics                    显示最近的指标样本
"""

import asyncio
import sys

from .config import get_db_path
from .logging_config import setup_logging
from .models import TaskStatus

_USAGE = """用法: python -m taskmaster.core <command>
命令:
  init-db                    初始化 SQLite 数据库
  list-tasks [owner_id]      列出未结束的任务
  metrics                    显示最近的指标样本"""


def main() -> None:
    """CLI 主入口"""
    setup_logging()
    if len(sys.argv) < 2:
        print(_USAGE)
        sys.exit(1)

    command = sys.argv[1]

    if command == "init-db":
        asyncio.run(init_database())
    elif command == "list-tasks":
        owner = sys.argv[2] if len(sys.argv) > 2 else None
        asyncio.run(list_tasks(owner))
    elif command == "metrics":
        asyncio.run(show_metrics())
    else:
        print(f"未知命令: {command}")
        print("可用命令: init-db, list-tasks, metrics")
        sys.exit(1)


async def init_database() -> None:
    from .store import create_durable_store, verify_wal_mode

    db_path = get_db_path()
    print(f"数据库路径: {db_path}")
    store = await create_durable_store(db_path)
    try:
        wal = await verify_wal_mode(store.conn)
        print(f"初始化完成（WAL: {'on' if wal else 'off'}）")
    finally:
        await store.close()


async def list_tasks(owner_entity_id: str | None = None) -> None:
    """列出 pending / in_progress 任务"""
    from .store import create_durable_store

    store = await create_durable_store(get_db_path())
    try:
        tasks = await store.list_tasks(
            owner_entity_id,
            [TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value],
        )
    finally:
        await store.close()

    if not tasks:
        print("没有未结束的任务")
        return
    for task in tasks:
        due = task.due_date.isoformat() if task.due_date else "-"
        status = task.status.value
        print(f"{task.task_id}  {status:<12} {task.priority.value:<8} {due}  {task.title}")
    print(f"共 {len(tasks)} 个任务")


async def show_metrics(limit: int = 10) -> None:
    from .store import create_durable_store

    store = await create_durable_store(get_db_path())
    try:
        samples = await store.list_metrics("engine", limit)
    finally:
        await store.close()

    if not samples:
        print("没有指标样本")
        return
    for sample in samples:
        value = sample["metric_value"]
        print(
            f"{sample['ts'].isoformat()}  "
            f"created={value.get('tasksCreated', 0)} "
            f"completed={value.get('tasksCompleted', 0)} "
            f"failed={value.get('tasksFailed', 0)} "
            f"avg_ms={value.get('averageExecutionTime', 0):.1f}"
        )


if __name__ == "__main__":
    main()
