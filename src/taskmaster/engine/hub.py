"""EventHub -- 内存中生命周期事件广播器

两种订阅方式：
- subscribe(): 返回 asyncio.Queue，事件被推入队列（队列满时该订阅者被移除）
- add_listener(): 注册回调，事件发布后依次调用（异步回调作为后台任务运行）

发布与状态变更解耦：TaskRegistry 等组件在完成变更后调用 publish。
"""

import asyncio
import inspect
from collections import defaultdict
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog
from ulid import ULID

from taskmaster.core.models import Event, EventType

log = structlog.get_logger()

ALL_EVENTS = "*"

Listener = Callable[[Event], Any]


class EventHub:
    """生命周期事件广播器 -- 基于 asyncio.Queue 的发布/订阅模式"""

    def __init__(self, queue_maxsize: int = 100) -> None:
        # event type（或 "*"）-> set of asyncio.Queue
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._queue_maxsize = queue_maxsize
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, event_type: EventType | str = ALL_EVENTS) -> asyncio.Queue:
        """订阅指定类型的事件

        Args:
            event_type: 事件类型，"*" 表示全部

        Returns:
            asyncio.Queue 实例，新事件会被推送到此队列
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_maxsize)
        self._subscribers[str(event_type)].add(queue)
        return queue

    def unsubscribe(self, event_type: EventType | str, queue: asyncio.Queue) -> None:
        key = str(event_type)
        self._subscribers[key].discard(queue)
        if not self._subscribers[key]:
            del self._subscribers[key]

    def add_listener(self, event_type: EventType | str, listener: Listener) -> None:
        """注册回调（同步或异步）"""
        self._listeners[str(event_type)].append(listener)

    def remove_listener(self, event_type: EventType | str, listener: Listener) -> None:
        key = str(event_type)
        if listener in self._listeners.get(key, []):
            self._listeners[key].remove(listener)

    def publish(
        self,
        event_type: EventType,
        *,
        task_id: str | None = None,
        workflow_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> Event:
        """构建并广播事件

        Returns:
            已广播的 Event
        """
        event = Event(
            event_id=str(ULID()),
            type=event_type,
            ts=datetime.now(UTC),
            task_id=task_id,
            workflow_id=workflow_id,
            payload=payload or {},
        )
        for key in (str(event_type), ALL_EVENTS):
            self._deliver(key, event)
        return event

    def _deliver(self, key: str, event: Event) -> None:
        dead_queues = []
        for queue in self._subscribers.get(key, set()):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                dead_queues.append(queue)

        # 清理已满的队列
        for q in dead_queues:
            log.warning("event_subscriber_dropped", event_type=key)
            self._subscribers[key].discard(q)
        if key in self._subscribers and not self._subscribers[key]:
            del self._subscribers[key]

        for listener in list(self._listeners.get(key, [])):
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    task = asyncio.ensure_future(outcome)
                    self._pending.add(task)
                    task.add_done_callback(self._listener_done)
            except Exception as e:
                log.error(
                    "event_listener_failed",
                    event_type=key,
                    error_type=type(e).__name__,
                    error=str(e),
                )

    def _listener_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            error = task.exception()
            log.error(
                "event_listener_failed",
                error_type=type(error).__name__,
                error=str(error),
            )
