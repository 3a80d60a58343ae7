"""RetryQueue -- 可取消的延迟重试队列

每个任务最多一个待执行的重试条目；条目在延迟结束后调用回调
（回到统一执行入口），等待期间不占用并发槽位。
任务被移除或引擎关闭时，条目随之取消。
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

import structlog

log = structlog.get_logger()


class RetryEntry:
    def __init__(self, task_id: str, attempt: int, delay_s: float) -> None:
        self.task_id = task_id
        self.attempt = attempt
        self.delay_s = delay_s
        self.due_at = datetime.now(UTC) + timedelta(seconds=delay_s)
        self.handle: asyncio.Task | None = None


class RetryQueue:
    def __init__(self, sleep: Callable[[float], Awaitable[object]] = asyncio.sleep) -> None:
        self._sleep = sleep
        self._entries: dict[str, RetryEntry] = {}

    def schedule(
        self,
        task_id: str,
        attempt: int,
        delay_s: float,
        callback: Callable[[], Awaitable[object]],
    ) -> RetryEntry:
        """安排一次重试，同一任务已有条目时替换"""
        self.cancel(task_id)
        entry = RetryEntry(task_id, attempt, delay_s)
        entry.handle = asyncio.create_task(self._fire(entry, callback), name=f"retry:{task_id}")
        self._entries[task_id] = entry
        log.info("retry_scheduled", task_id=task_id, attempt=attempt, delay_s=delay_s)
        return entry

    async def _fire(self, entry: RetryEntry, callback: Callable[[], Awaitable[object]]) -> None:
        await self._sleep(entry.delay_s)
        if self._entries.get(entry.task_id) is entry:
            del self._entries[entry.task_id]
        try:
            await callback()
        except Exception as e:
            log.error(
                "retry_callback_failed",
                task_id=entry.task_id,
                error_type=type(e).__name__,
                error=str(e),
            )

    def cancel(self, task_id: str) -> bool:
        entry = self._entries.pop(task_id, None)
        if entry is None:
            return False
        if entry.handle is not None and not entry.handle.done():
            entry.handle.cancel()
        log.info("retry_cancelled", task_id=task_id)
        return True

    def pending(self, task_id: str) -> RetryEntry | None:
        return self._entries.get(task_id)

    def __len__(self) -> int:
        return len(self._entries)

    async def wait(self) -> None:
        """等待当前所有条目触发完成"""
        handles = [e.handle for e in self._entries.values() if e.handle is not None]
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)

    async def shutdown(self) -> None:
        handles = [e.handle for e in self._entries.values() if e.handle is not None]
        for task_id in list(self._entries):
            self.cancel(task_id)
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)
