"""structlog 配置模块

dev 模式：ConsoleRenderer 可读输出
json 模式：结构化 JSON 输出（每行一个事件）

执行路径通过 task_trace() 绑定 trace_id，executor 内部的日志自动携带。
"""

import logging
import os
from contextlib import AbstractContextManager

import structlog

# 第三方库只保留 WARNING 以上
_QUIET_LOGGERS = ("aiosqlite", "httpx", "httpcore", "asyncio")


def _renderer(log_format: str) -> structlog.types.Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer(ensure_ascii=False)
    return structlog.dev.ConsoleRenderer()


def setup_logging(log_format: str | None = None, log_level: str | None = None) -> None:
    """初始化 structlog 与标准库 logging

    Args:
        log_format: "json" 或 "dev"，默认读取 TASKMASTER_LOG_FORMAT
        log_level: 日志级别名，默认读取 TASKMASTER_LOG_LEVEL（INFO）
    """
    log_format = log_format or os.environ.get("TASKMASTER_LOG_FORMAT", "dev")
    log_level = (log_level or os.environ.get("TASKMASTER_LOG_LEVEL", "INFO")).upper()
    level = logging.getLevelName(log_level)
    if not isinstance(level, int):
        level = logging.INFO

    shared: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=_renderer(log_format),
            foreign_pre_chain=shared,
        )
    )
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def task_trace(task_id: str) -> AbstractContextManager:
    """在上下文中绑定 trace_id=trace-<task_id>"""
    return structlog.contextvars.bound_contextvars(trace_id=f"trace-{task_id}")
