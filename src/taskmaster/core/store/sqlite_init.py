"""SQLite 数据库初始化

PRAGMA 配置 + 四张表 DDL + 索引创建。
使用 aiosqlite 异步操作。
"""

import aiosqlite

# tasks 表 DDL（data 列保存完整 Task JSON，其余列用于筛选）
_TASKS_DDL = """
CREATE TABLE IF NOT EXISTS tasks (
    task_id           TEXT PRIMARY KEY,
    owner_entity_id   TEXT,
    status            TEXT NOT NULL DEFAULT 'pending',
    assignee          TEXT,
    due_date          TEXT,
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL,
    data              TEXT NOT NULL DEFAULT '{}',
    execution_history TEXT NOT NULL DEFAULT '[]'
);
"""

_TASKS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_tasks_owner ON tasks(owner_entity_id);",
    "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);",
    "CREATE INDEX IF NOT EXISTS idx_tasks_due_date ON tasks(due_date);",
]

# workflows 表 DDL
_WORKFLOWS_DDL = """
CREATE TABLE IF NOT EXISTS workflows (
    workflow_id  TEXT PRIMARY KEY,
    name         TEXT NOT NULL DEFAULT '',
    is_active    INTEGER NOT NULL DEFAULT 1,
    created_at   TEXT NOT NULL,
    data         TEXT NOT NULL DEFAULT '{}'
);
"""

# workflow_executions 表 DDL
_EXECUTIONS_DDL = """
CREATE TABLE IF NOT EXISTS workflow_executions (
    execution_id  TEXT PRIMARY KEY,
    workflow_id   TEXT NOT NULL,
    status        TEXT NOT NULL,
    started_at    TEXT NOT NULL,
    data          TEXT NOT NULL DEFAULT '{}'
);
"""

_EXECUTIONS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_executions_workflow ON workflow_executions(workflow_id);",
]

# metrics 表 DDL（append-only）
_METRICS_DDL = """
CREATE TABLE IF NOT EXISTS metrics (
    metric_id        INTEGER PRIMARY KEY AUTOINCREMENT,
    metric_type      TEXT NOT NULL,
    metric_value     TEXT NOT NULL DEFAULT '{}',
    owner_entity_id  TEXT,
    metadata         TEXT NOT NULL DEFAULT '{}',
    ts               TEXT NOT NULL
);
"""

_METRICS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_metrics_type_ts ON metrics(metric_type, ts DESC);",
]


async def init_db(conn: aiosqlite.Connection) -> None:
    """初始化数据库：设置 PRAGMA + 创建表 + 创建索引

    Args:
        conn: aiosqlite 数据库连接
    """
    await conn.execute("PRAGMA journal_mode = WAL;")
    await conn.execute("PRAGMA busy_timeout = 5000;")

    await conn.execute(_TASKS_DDL)
    await conn.execute(_WORKFLOWS_DDL)
    await conn.execute(_EXECUTIONS_DDL)
    await conn.execute(_METRICS_DDL)

    for idx_sql in _TASKS_INDEXES + _EXECUTIONS_INDEXES + _METRICS_INDEXES:
        await conn.execute(idx_sql)

    await conn.commit()


async def verify_wal_mode(conn: aiosqlite.Connection) -> bool:
    """验证 WAL 模式是否生效"""
    cursor = await conn.execute("PRAGMA journal_mode;")
    row = await cursor.fetchone()
    return row is not None and row[0].lower() == "wal"
