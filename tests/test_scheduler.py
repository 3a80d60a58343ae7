"""CronScheduler + RetryQueue 测试

sleep 由 ManualSleep 控制，测试中没有真实等待。
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest
from taskmaster.engine.retry import RetryQueue
from taskmaster.engine.scheduler import CronScheduler

FIXED_NOW = datetime(2026, 3, 2, 8, 59, 30, tzinfo=UTC)


@pytest.fixture
def scheduler(manual_sleep):
    return CronScheduler(sleep=manual_sleep, clock=lambda: FIXED_NOW)


class TestCronScheduler:
    async def test_fires_repeatedly(self, scheduler, manual_sleep):
        callback = AsyncMock()
        job = scheduler.schedule("t1", "0 9 * * *", callback)
        await manual_sleep.settle()

        assert job.next_fire_at == datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
        assert manual_sleep.calls == [30.0]

        for _ in range(3):
            await manual_sleep.release()

        assert callback.await_count == 3
        assert job.fire_count == 3
        # 下一次触发从上一次触发时间推算，不重复同一时刻
        assert job.next_fire_at == datetime(2026, 3, 5, 9, 0, tzinfo=UTC)
        await scheduler.shutdown()

    async def test_reschedule_cancels_exactly_one_job(self, scheduler, manual_sleep):
        first_cb = AsyncMock()
        second_cb = AsyncMock()
        first = scheduler.schedule("t1", "*/5 * * * *", first_cb)
        await manual_sleep.settle()

        second = scheduler.schedule("t1", "0 * * * *", second_cb)
        await manual_sleep.settle()

        assert first.cancelled
        assert not second.cancelled
        assert len(scheduler) == 1
        assert scheduler.get("t1") is second

        await manual_sleep.release()
        first_cb.assert_not_awaited()
        second_cb.assert_awaited_once()
        await scheduler.shutdown()

    async def test_independent_keys(self, scheduler, manual_sleep):
        scheduler.schedule("a", "* * * * *", AsyncMock())
        scheduler.schedule("b", "* * * * *", AsyncMock())
        await manual_sleep.settle()

        assert scheduler.cancel("a") is True
        assert scheduler.cancel("a") is False
        assert scheduler.is_scheduled("b")
        await scheduler.shutdown()
        assert len(scheduler) == 0

    async def test_callback_error_does_not_stop_job(self, scheduler, manual_sleep):
        callback = AsyncMock(side_effect=[RuntimeError("smtp down"), None])
        job = scheduler.schedule("t1", "* * * * *", callback)
        await manual_sleep.settle()

        await manual_sleep.release()
        await manual_sleep.release()

        assert callback.await_count == 2
        assert not job.cancelled
        await scheduler.shutdown()

    def test_invalid_expression(self, scheduler):
        with pytest.raises(ValueError):
            scheduler.schedule("t1", "not a cron", AsyncMock())


class TestRetryQueue:
    async def test_fires_after_delay(self, manual_sleep):
        queue = RetryQueue(sleep=manual_sleep)
        callback = AsyncMock()

        entry = queue.schedule("t1", attempt=2, delay_s=10.0, callback=callback)
        await manual_sleep.settle()

        assert queue.pending("t1") is entry
        assert manual_sleep.calls == [10.0]
        callback.assert_not_awaited()

        await manual_sleep.release()
        callback.assert_awaited_once()
        assert len(queue) == 0

    async def test_cancel(self, manual_sleep):
        queue = RetryQueue(sleep=manual_sleep)
        callback = AsyncMock()
        queue.schedule("t1", attempt=2, delay_s=5.0, callback=callback)
        await manual_sleep.settle()

        assert queue.cancel("t1") is True
        assert queue.cancel("t1") is False
        await manual_sleep.release()
        callback.assert_not_awaited()

    async def test_reschedule_replaces_entry(self, manual_sleep):
        queue = RetryQueue(sleep=manual_sleep)
        first = AsyncMock()
        second = AsyncMock()
        queue.schedule("t1", attempt=2, delay_s=5.0, callback=first)
        queue.schedule("t1", attempt=3, delay_s=10.0, callback=second)
        await manual_sleep.settle()

        assert len(queue) == 1
        assert queue.pending("t1").attempt == 3
        await manual_sleep.release()
        first.assert_not_awaited()
        second.assert_awaited_once()

    async def test_shutdown_cancels_all(self, manual_sleep):
        queue = RetryQueue(sleep=manual_sleep)
        callback = AsyncMock()
        queue.schedule("a", attempt=2, delay_s=1.0, callback=callback)
        queue.schedule("b", attempt=2, delay_s=1.0, callback=callback)
        await manual_sleep.settle()

        await queue.shutdown()
        assert len(queue) == 0
        callback.assert_not_awaited()
