"""HealthMonitor -- 周期采样聚合指标与健康状态

每个 tick：
1. 采样 EngineMetrics，发布 metrics 事件
2. 检查卡在 in_progress 超过阈值的任务（warning）
3. 计算失败率 tasks_failed / tasks_created，超过阈值为 critical
4. 移除完成时间超过保留期的任务
5. 发布 health 事件并返回 HealthSnapshot
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog

from taskmaster.core.config import EngineConfig
from taskmaster.core.models import (
    EngineMetrics,
    EventType,
    HealthSnapshot,
    HealthStatus,
    TaskStatus,
)

from .hub import EventHub
from .registry import TaskRegistry

log = structlog.get_logger()


class HealthMonitor:
    def __init__(
        self,
        registry: TaskRegistry,
        hub: EventHub,
        metrics: Callable[[], EngineMetrics],
        evict: Callable[[str], object],
        config: EngineConfig,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        """
        Args:
            registry: 任务注册表
            hub: 事件广播器
            metrics: 指标采样函数
            evict: 移除任务（同时取消其调度与重试）
            config: 阈值与采样间隔
            clock: 当前时间
        """
        self._registry = registry
        self._hub = hub
        self._metrics = metrics
        self._evict = evict
        self._config = config
        self._clock = clock
        self._loop_task: asyncio.Task | None = None
        self.last_snapshot: HealthSnapshot | None = None

    def stuck_tasks(self) -> list[str]:
        threshold = self._clock() - timedelta(seconds=self._config.stuck_threshold_s)
        return [
            task.task_id
            for task in self._registry.list(status=TaskStatus.IN_PROGRESS)
            if task.started_at is not None and task.started_at < threshold
        ]

    def evict_expired(self) -> int:
        """移除完成时间早于保留期的任务"""
        cutoff = self._clock() - timedelta(days=self._config.retention_days)
        expired = [
            task.task_id
            for task in self._registry.list(status=TaskStatus.COMPLETED)
            if task.completed_at is not None and task.completed_at < cutoff
        ]
        for task_id in expired:
            self._evict(task_id)
        if expired:
            log.info("expired_tasks_evicted", count=len(expired))
        return len(expired)

    def tick(self) -> HealthSnapshot:
        metrics = self._metrics()
        self._hub.publish(EventType.METRICS, payload=metrics.model_dump(by_alias=True))

        evicted = self.evict_expired()

        status = HealthStatus.HEALTHY
        issues: list[str] = []

        stuck = self.stuck_tasks()
        if stuck:
            status = HealthStatus.WARNING
            issues.append(f"{len(stuck)} tasks stuck in progress")

        failure_rate = (
            metrics.tasks_failed / metrics.tasks_created if metrics.tasks_created else 0.0
        )
        if failure_rate > self._config.failure_rate_threshold:
            status = HealthStatus.CRITICAL
            issues.append(f"High failure rate: {failure_rate * 100:.1f}%")

        snapshot = HealthSnapshot(
            status=status,
            issues=issues,
            stuck_task_ids=stuck,
            failure_rate=failure_rate,
            evicted=evicted,
            metrics=metrics,
            ts=self._clock(),
        )
        if status != HealthStatus.HEALTHY:
            log.warning("health_degraded", status=status.value, issues=issues)
        self._hub.publish(EventType.HEALTH, payload=snapshot.model_dump(mode="json"))
        self.last_snapshot = snapshot
        return snapshot

    def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._loop(), name="health-monitor")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.monitor_interval_s)
            try:
                self.tick()
            except Exception as e:
                log.error("health_tick_failed", error_type=type(e).__name__, error=str(e))

    async def stop(self) -> None:
        if self._loop_task is None:
            return
        self._loop_task.cancel()
        try:
            await self._loop_task
        except asyncio.CancelledError:
            pass
        self._loop_task = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()
