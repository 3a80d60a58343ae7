"""Taskmaster Core -- 数据模型、配置、异常与持久化存储"""
