"""Taskmaster -- 任务/工作流编排引擎

core: 数据模型、配置、异常、持久化存储
engine: 执行路径、依赖解析、定时调度、工作流、健康监控
"""

__version__ = "0.1.0"
