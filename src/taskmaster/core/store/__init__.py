"""Taskmaster Core Store -- SQLite 持久化参考实现

提供工厂函数创建已初始化的 DurableStore。
"""

from pathlib import Path

import aiosqlite

from .protocols import DurableStore
from .sqlite_init import init_db, verify_wal_mode
from .sqlite_store import SqliteDurableStore


async def create_durable_store(db_path: str) -> SqliteDurableStore:
    """创建 SQLite DurableStore

    Args:
        db_path: SQLite 数据库文件路径

    Returns:
        SqliteDurableStore 实例
    """
    # 确保数据库目录存在
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = await aiosqlite.connect(db_path)
    conn.row_factory = aiosqlite.Row
    await init_db(conn)

    return SqliteDurableStore(conn)


__all__ = [
    "DurableStore",
    "SqliteDurableStore",
    "create_durable_store",
    "init_db",
    "verify_wal_mode",
]
