"""配置模块 -- 可通过环境变量覆盖

包含数据库路径，以及引擎运行参数（并发上限、重试、超时、监控阈值等）。
"""

import os
from pathlib import Path

import structlog
from pydantic import BaseModel, Field

log = structlog.get_logger()


def _get_base_dir() -> Path:
    """获取项目 data 基础目录"""
    return Path(os.environ.get("TASKMASTER_DATA_DIR", "data"))


def get_db_path() -> str:
    """获取 SQLite 数据库路径"""
    return os.environ.get(
        "TASKMASTER_DB_PATH",
        str(_get_base_dir() / "sqlite" / "taskmaster.db"),
    )


class EngineConfig(BaseModel):
    """引擎配置 -- 从环境变量加载

    环境变量:
        TASKMASTER_MAX_CONCURRENT_TASKS: 全局并发槽位数（默认 10）
        TASKMASTER_RETRY_ATTEMPTS: 最大执行次数（默认 3）
        TASKMASTER_RETRY_BASE_DELAY_S: 线性退避基数（秒，默认 5）
        TASKMASTER_DEFAULT_TIMEOUT_S: executor 默认超时（秒，默认 300）
        TASKMASTER_ENABLE_ADVISOR: 创建时是否启用启发式评估（默认 true）
        TASKMASTER_ENABLE_PERSISTENCE: 是否启用持久化网关（默认 false）
        TASKMASTER_MONITOR_INTERVAL_S: 监控采样间隔（秒，默认 60）
        TASKMASTER_STUCK_THRESHOLD_S: 卡住任务阈值（秒，默认 3600）
        TASKMASTER_FAILURE_RATE_THRESHOLD: 失败率告警阈值（默认 0.1）
        TASKMASTER_RETENTION_DAYS: 已完成任务保留天数（默认 30）
        TASKMASTER_HISTORY_LIMIT: 执行历史保留条数（默认 50）
        TASKMASTER_CHANGE_QUEUE_SIZE: 推送通知队列容量（默认 100）
    """

    max_concurrent_tasks: int = Field(default=10, ge=1, description="全局并发槽位数")
    retry_attempts: int = Field(default=3, ge=1, description="单个任务最大执行次数")
    retry_base_delay_s: float = Field(default=5.0, ge=0.0, description="重试退避基数（秒）")
    default_timeout_s: float = Field(default=300.0, gt=0.0, description="executor 默认超时")
    enable_advisor: bool = Field(default=True, description="创建时启用启发式评估")
    enable_persistence: bool = Field(default=False, description="启用持久化网关")
    monitor_interval_s: float = Field(default=60.0, gt=0.0, description="监控采样间隔")
    stuck_threshold_s: float = Field(default=3600.0, gt=0.0, description="卡住任务阈值")
    failure_rate_threshold: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="失败率告警阈值",
    )
    retention_days: int = Field(default=30, ge=1, description="已完成任务保留天数")
    history_limit: int = Field(default=50, ge=1, description="执行历史保留条数")
    change_queue_size: int = Field(default=100, ge=1, description="推送通知队列容量")


# 环境变量 -> (字段名, 类型转换)
_ENV_FIELDS: dict[str, tuple[str, type]] = {
    "TASKMASTER_MAX_CONCURRENT_TASKS": ("max_concurrent_tasks", int),
    "TASKMASTER_RETRY_ATTEMPTS": ("retry_attempts", int),
    "TASKMASTER_RETRY_BASE_DELAY_S": ("retry_base_delay_s", float),
    "TASKMASTER_DEFAULT_TIMEOUT_S": ("default_timeout_s", float),
    "TASKMASTER_MONITOR_INTERVAL_S": ("monitor_interval_s", float),
    "TASKMASTER_STUCK_THRESHOLD_S": ("stuck_threshold_s", float),
    "TASKMASTER_FAILURE_RATE_THRESHOLD": ("failure_rate_threshold", float),
    "TASKMASTER_RETENTION_DAYS": ("retention_days", int),
    "TASKMASTER_HISTORY_LIMIT": ("history_limit", int),
    "TASKMASTER_CHANGE_QUEUE_SIZE": ("change_queue_size", int),
}

_BOOL_ENV_FIELDS: dict[str, str] = {
    "TASKMASTER_ENABLE_ADVISOR": "enable_advisor",
    "TASKMASTER_ENABLE_PERSISTENCE": "enable_persistence",
}


def load_engine_config() -> EngineConfig:
    """从环境变量加载引擎配置

    数值非法时记录告警并使用默认值，不阻塞启动。

    Returns:
        EngineConfig 实例
    """
    kwargs: dict = {}

    for env_var, (field_name, cast) in _ENV_FIELDS.items():
        val = os.environ.get(env_var)
        if not val:
            continue
        try:
            kwargs[field_name] = cast(val)
        except ValueError:
            log.warning(
                "invalid_engine_config",
                env_var=env_var,
                value=val,
                fallback=EngineConfig.model_fields[field_name].default,
            )

    for env_var, field_name in _BOOL_ENV_FIELDS.items():
        if val := os.environ.get(env_var):
            kwargs[field_name] = val.strip().lower() in ("1", "true", "yes", "on")

    return EngineConfig(**kwargs)
