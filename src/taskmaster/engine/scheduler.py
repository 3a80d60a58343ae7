"""CronScheduler -- 每个 key 一个 cron 周期触发器

每个 job 是一个 asyncio.Task：用 croniter 计算下一次触发时间，
sleep 到点后调用回调。回调内部的异常只记录日志，不终止 job。
sleep 与 clock 可注入，测试中无需真实等待。
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

import structlog
from croniter import croniter

log = structlog.get_logger()

Callback = Callable[[], Awaitable[object]]
Sleep = Callable[[float], Awaitable[object]]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ScheduledJob:
    """单个周期触发器"""

    def __init__(self, key: str, expression: str) -> None:
        self.key = key
        self.expression = expression
        self.fire_count = 0
        self.next_fire_at: datetime | None = None
        self._task: asyncio.Task | None = None

    @property
    def cancelled(self) -> bool:
        return self._task is not None and (self._task.cancelled() or self._task.cancelling() > 0)

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()


class CronScheduler:
    """cron 调度器，schedule/cancel 是唯一对外接口"""

    def __init__(self, sleep: Sleep = asyncio.sleep, clock: Clock = _utcnow) -> None:
        self._sleep = sleep
        self._clock = clock
        self._jobs: dict[str, ScheduledJob] = {}

    def schedule(self, key: str, expression: str, callback: Callback) -> ScheduledJob:
        """安装 key 的周期触发器，已存在时先取消原触发器

        Raises:
            ValueError: cron 表达式不合法
        """
        if not croniter.is_valid(expression):
            raise ValueError(f"invalid cron expression: {expression!r}")

        previous = self._jobs.pop(key, None)
        if previous is not None:
            previous.cancel()
            log.info(
                "schedule_replaced",
                key=key,
                old_expression=previous.expression,
                new_expression=expression,
            )

        job = ScheduledJob(key, expression)
        job._task = asyncio.create_task(self._run(job, callback), name=f"cron:{key}")
        self._jobs[key] = job
        log.info("schedule_installed", key=key, expression=expression)
        return job

    async def _run(self, job: ScheduledJob, callback: Callback) -> None:
        last = self._clock()
        while True:
            base = max(last, self._clock())
            fire_at = croniter(job.expression, base).get_next(datetime)
            job.next_fire_at = fire_at
            await self._sleep(max(0.0, (fire_at - self._clock()).total_seconds()))
            last = fire_at
            job.fire_count += 1
            log.debug("schedule_fired", key=job.key, fire_count=job.fire_count)
            try:
                await callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error(
                    "scheduled_callback_failed",
                    key=job.key,
                    error_type=type(e).__name__,
                    error=str(e),
                )

    def cancel(self, key: str) -> bool:
        """取消 key 的触发器，返回是否存在"""
        job = self._jobs.pop(key, None)
        if job is None:
            return False
        job.cancel()
        log.info("schedule_cancelled", key=key)
        return True

    def is_scheduled(self, key: str) -> bool:
        return key in self._jobs

    def get(self, key: str) -> ScheduledJob | None:
        return self._jobs.get(key)

    def __len__(self) -> int:
        return len(self._jobs)

    async def shutdown(self) -> None:
        jobs = list(self._jobs.values())
        self._jobs.clear()
        tasks = [job._task for job in jobs if job._task is not None]
        for job in jobs:
            job.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
