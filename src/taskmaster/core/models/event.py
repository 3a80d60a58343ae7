"""Event / ChangeNotification Domain Model

Event: 引擎对外发布的生命周期事件（task:*、workflow:*、health、metrics）。
ChangeNotification: 持久化层推送进来的外部变更（INSERT/UPDATE/DELETE）。
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .enums import ChangeType, EventType


class Event(BaseModel):
    """生命周期事件"""

    event_id: str = Field(description="唯一标识，ULID 格式，时间有序")
    type: EventType = Field(description="事件类型")
    ts: datetime = Field(description="事件时间戳")
    task_id: str | None = Field(default=None, description="关联的 Task ID")
    workflow_id: str | None = Field(default=None, description="关联的 Workflow ID")
    payload: dict[str, Any] = Field(default_factory=dict, description="结构化 payload")


class ChangeNotification(BaseModel):
    """外部变更通知

    record 为持久化记录（与 Task 同形），DELETE 时至少包含 task_id。
    """

    type: ChangeType
    record: dict[str, Any]
    old_record: dict[str, Any] | None = None

    @property
    def task_id(self) -> str | None:
        return self.record.get("task_id") or (self.old_record or {}).get("task_id")
