"""TaskmasterService 执行路径测试

测试内容：
1. 创建时自动执行（条件满足才执行）
2. 依赖未满足返回 waiting，计数器不变；前置完成后自动扇出
3. 并发上限不被突破，超出的执行排队并按 FIFO 启动
4. 重试次数上限、重试耗尽后保持 failed、人工重置
5. executor 未注册 / 超时
6. 周期任务触发与重新调度
7. 指标快照幂等
"""

import asyncio

import pytest
from taskmaster.core.config import EngineConfig
from taskmaster.core.exceptions import TaskmasterError, TaskNotFoundError, ValidationError
from taskmaster.core.models import EventType, ExecutionStatus, TaskStatus
from taskmaster.engine import TaskmasterService


def _automated(title: str, executor: str = "default", **automation) -> dict:
    return {
        "title": title,
        "automation": {"enabled": True, "executor": executor, **automation},
    }


class TestCreateAndAutoExecute:
    async def test_executes_at_creation(self, service):
        task = await service.create_task(_automated("send invites"))
        await service.wait_idle()

        done = service.get_task(task.task_id)
        assert done.status == TaskStatus.COMPLETED
        assert done.result == {"executed": True}
        assert service.get_metrics().tasks_completed == 1

    async def test_conditions_gate_auto_execution(self, service):
        task = await service.create_task(
            _automated("big party", conditions=["guests > 100"], params={"guests": 40})
        )
        await service.wait_idle()
        assert service.get_task(task.task_id).status == TaskStatus.PENDING

    async def test_conditions_see_task_fields(self, service):
        task = await service.create_task(
            {**_automated("x", conditions=["task.priority == 'high'"]), "priority": "high"}
        )
        await service.wait_idle()
        assert service.get_task(task.task_id).status == TaskStatus.COMPLETED

    async def test_manual_task_not_executed(self, service):
        task = await service.create_task({"title": "call florist"})
        await service.wait_idle()
        assert service.get_task(task.task_id).status == TaskStatus.PENDING

    async def test_invalid_spec(self, service):
        with pytest.raises(ValidationError):
            await service.create_task({"description": "no title"})
        assert service.get_metrics().tasks_created == 0

    async def test_params_and_options_merged(self, service):
        seen = {}

        def capture(ctx):
            seen.update(ctx.params)
            return "ok"

        service.register_executor("capture", capture)
        task = await service.create_task(
            {"title": "x", "automation": {"executor": "capture", "params": {"a": 1, "b": 1}}}
        )
        outcome = await service.execute_task(task.task_id, {"b": 2, "timeout_s": 5})

        assert outcome.status == ExecutionStatus.COMPLETED
        assert seen == {"a": 1, "b": 2}


class TestDependencies:
    async def test_waiting_leaves_counters_unchanged(self, service):
        a = await service.create_task({"title": "A"})
        b = await service.create_task({"title": "B", "automation": {"dependencies": [a.task_id]}})
        before = service.get_metrics()

        outcome = await service.execute_task(b.task_id)

        assert outcome.status == ExecutionStatus.WAITING
        assert outcome.reason == "dependencies"
        after = service.get_metrics()
        assert after.tasks_completed == before.tasks_completed
        assert after.tasks_failed == before.tasks_failed

    async def test_dependent_runs_after_prerequisite(self, service):
        """B 在 A 完成前执行返回 waiting；A 完成后 B 自动执行"""
        a = await service.create_task({"title": "A"})
        b = await service.create_task(_automated("B", dependencies=[a.task_id]))

        outcome = await service.execute_task(b.task_id)
        assert (outcome.status, outcome.reason) == (ExecutionStatus.WAITING, "dependencies")

        await service.execute_task(a.task_id)
        await service.wait_idle()

        assert service.get_task(b.task_id).status == TaskStatus.COMPLETED

    async def test_fan_out_waits_for_all_prerequisites(self, service):
        a = await service.create_task({"title": "A"})
        c = await service.create_task({"title": "C"})
        b = await service.create_task(_automated("B", dependencies=[a.task_id, c.task_id]))

        await service.execute_task(a.task_id)
        await service.wait_idle()
        assert service.get_task(b.task_id).status == TaskStatus.PENDING

        await service.execute_task(c.task_id)
        await service.wait_idle()
        assert service.get_task(b.task_id).status == TaskStatus.COMPLETED

    async def test_completed_task_not_rerun(self, service):
        calls = []
        service.register_executor("count", lambda ctx: calls.append(1) or len(calls))
        task = await service.create_task({"title": "x", "automation": {"executor": "count"}})

        await service.execute_task(task.task_id)
        again = await service.execute_task(task.task_id)

        assert again.reason == "already_completed"
        assert again.result == 1
        assert len(calls) == 1

    async def test_unknown_task(self, service):
        with pytest.raises(TaskNotFoundError):
            await service.execute_task("missing")


class TestConcurrency:
    async def test_in_flight_never_exceeds_limit(self):
        service = TaskmasterService(EngineConfig(max_concurrent_tasks=2, retry_base_delay_s=0))
        gate = asyncio.Event()
        active = 0
        peak = 0
        order: list[str] = []

        async def gated(ctx):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            order.append(ctx.task.title)
            await gate.wait()
            active -= 1
            return ctx.task.title

        service.register_executor("gated", gated)
        tasks = [
            await service.create_task({"title": f"t{i}", "automation": {"executor": "gated"}})
            for i in range(5)
        ]

        jobs = [asyncio.ensure_future(service.execute_task(t.task_id)) for t in tasks]
        for _ in range(10):
            await asyncio.sleep(0)

        assert service.get_metrics().active_tasks == 2
        queued = [job.result() for job in jobs if job.done()]
        assert len(queued) == 3
        assert all(o.status == ExecutionStatus.QUEUED for o in queued)
        assert all(o.reason == "concurrency_limit" for o in queued)

        gate.set()
        await asyncio.gather(*jobs)
        await service.wait_idle()

        assert peak == 2
        assert order == ["t0", "t1", "t2", "t3", "t4"]
        assert all(service.get_task(t.task_id).status == TaskStatus.COMPLETED for t in tasks)
        await service.shutdown()

    async def test_queue_advances_when_reserved_start_aborts(self):
        """排队任务启动时 executor 已被注销：失败后空位交给下一个排队任务"""
        service = TaskmasterService(EngineConfig(max_concurrent_tasks=1, retry_base_delay_s=0))
        gate = asyncio.Event()

        async def blocker(ctx):
            await gate.wait()

        service.register_executor("blocker", blocker)
        service.register_executor("doomed", lambda ctx: "never")
        service.register_executor("fast", lambda ctx: "done")
        x = await service.create_task({"title": "x", "automation": {"executor": "blocker"}})
        y = await service.create_task({"title": "y", "automation": {"executor": "doomed"}})
        z = await service.create_task({"title": "z", "automation": {"executor": "fast"}})

        running = asyncio.ensure_future(service.execute_task(x.task_id))
        await asyncio.sleep(0)
        assert (await service.execute_task(y.task_id)).status == ExecutionStatus.QUEUED
        assert (await service.execute_task(z.task_id)).status == ExecutionStatus.QUEUED

        service.unregister_executor("doomed")
        gate.set()
        await running
        await service.wait_idle()

        assert service.get_task(y.task_id).last_error.error_type == "ExecutorNotFoundError"
        assert service.get_task(z.task_id).status == TaskStatus.COMPLETED
        assert service.get_task(z.task_id).result == "done"
        await service.shutdown()

    async def test_queued_start_keeps_options(self):
        service = TaskmasterService(
            EngineConfig(max_concurrent_tasks=1, retry_attempts=1, retry_base_delay_s=0)
        )
        gate = asyncio.Event()
        seen = {}

        async def blocker(ctx):
            await gate.wait()

        def capture(ctx):
            seen.update(ctx.params)
            return "sent"

        async def hang(ctx):
            await asyncio.Event().wait()

        service.register_executor("blocker", blocker)
        service.register_executor("capture", capture)
        service.register_executor("hang", hang)
        x = await service.create_task({"title": "x", "automation": {"executor": "blocker"}})
        y = await service.create_task(
            {"title": "y", "automation": {"executor": "capture", "params": {"channel": "sms"}}}
        )
        z = await service.create_task({"title": "z", "automation": {"executor": "hang"}})

        running = asyncio.ensure_future(service.execute_task(x.task_id))
        await asyncio.sleep(0)
        queued = await service.execute_task(y.task_id, {"recipient": "alice"})
        assert queued.status == ExecutionStatus.QUEUED
        await service.execute_task(z.task_id, {"timeout_s": 0.01})

        gate.set()
        await running
        await service.wait_idle()

        assert seen == {"channel": "sms", "recipient": "alice"}
        assert service.get_task(z.task_id).last_error.error_type == "ExecutionTimeoutError"
        await service.shutdown()


class TestRetries:
    async def test_retry_cap_then_permanently_failed(self, service):
        calls = []

        async def flaky(ctx):
            calls.append(ctx.task.attempts)
            raise RuntimeError("vendor api down")

        service.register_executor("flaky", flaky)
        retries = service.hub.subscribe(EventType.TASK_RETRY_SCHEDULED)
        task = await service.create_task({"title": "x", "automation": {"executor": "flaky"}})

        first = await service.execute_task(task.task_id)
        assert (first.status, first.reason) == (ExecutionStatus.FAILED, "retry_scheduled")

        await service.wait_idle()

        failed = service.get_task(task.task_id)
        assert failed.status == TaskStatus.FAILED
        assert failed.attempts == 3
        assert failed.last_error.message == "vendor api down"
        assert calls == [0, 1, 2]
        assert retries.qsize() == 2
        assert service.get_metrics().tasks_failed == 3

        again = await service.execute_task(task.task_id)
        assert again.reason == "retries_exhausted"
        assert len(calls) == 3

    async def test_reset_allows_manual_retry(self, service):
        outcomes = iter([RuntimeError("boom")] * 3 + [None])

        async def recovering(ctx):
            error = next(outcomes)
            if error is not None:
                raise error
            return "recovered"

        service.register_executor("recovering", recovering)
        task = await service.create_task({"title": "x", "automation": {"executor": "recovering"}})
        await service.execute_task(task.task_id)
        await service.wait_idle()
        assert service.get_task(task.task_id).attempts == 3

        service.reset_task(task.task_id)
        outcome = await service.execute_task(task.task_id)

        assert outcome.status == ExecutionStatus.COMPLETED
        assert service.get_task(task.task_id).result == "recovered"

    async def test_linear_backoff(self, manual_sleep):
        service = TaskmasterService(
            EngineConfig(retry_base_delay_s=5.0, retry_attempts=3),
            sleep=manual_sleep,
        )

        async def boom(ctx):
            raise RuntimeError("boom")

        service.register_executor("boom", boom)
        task = await service.create_task({"title": "x", "automation": {"executor": "boom"}})

        await service.execute_task(task.task_id)
        await manual_sleep.settle()
        await manual_sleep.release()
        await manual_sleep.release()

        assert manual_sleep.calls == [5.0, 10.0]
        assert service.get_task(task.task_id).attempts == 3
        await service.shutdown()


class TestExecutorFailures:
    async def test_executor_not_found(self, service):
        task = await service.create_task({"title": "x", "automation": {"executor": "ghost"}})

        outcome = await service.execute_task(task.task_id)

        assert (outcome.status, outcome.reason) == (ExecutionStatus.FAILED, "executor_not_found")
        failed = service.get_task(task.task_id)
        assert failed.status == TaskStatus.FAILED
        assert failed.attempts == 0
        assert failed.last_error.error_type == "ExecutorNotFoundError"
        assert len(service.retries) == 0
        assert service.get_metrics().tasks_failed == 1

    async def test_timeout_is_retried_like_any_failure(self):
        service = TaskmasterService(EngineConfig(retry_attempts=2, retry_base_delay_s=0))
        calls = []

        async def hang(ctx):
            calls.append(1)
            await asyncio.Event().wait()

        service.register_executor("hang", hang)
        task = await service.create_task(
            {"title": "x", "automation": {"executor": "hang", "timeoutS": 0.01}}
        )

        await service.execute_task(task.task_id)
        await service.wait_idle()

        failed = service.get_task(task.task_id)
        assert failed.status == TaskStatus.FAILED
        assert failed.attempts == 2
        assert failed.last_error.error_type == "ExecutionTimeoutError"
        assert len(calls) == 2
        assert service.executors.abandoned_running == 2

        await service.shutdown()
        assert service.executors.abandoned_running == 0


class TestSchedules:
    async def test_recurring_fires_until_rescheduled(self, manual_sleep):
        service = TaskmasterService(EngineConfig(retry_base_delay_s=0), sleep=manual_sleep)
        runs = []
        service.register_executor("digest", lambda ctx: runs.append(1))

        task = await service.create_task(_automated("digest", "digest", schedule="* * * * *"))
        await service.wait_idle()
        await manual_sleep.settle()
        first_job = service.scheduler.get(task.task_id)
        assert len(runs) == 1

        for _ in range(3):
            await manual_sleep.release()
            await service.wait_idle()
        assert len(runs) == 4
        assert first_job.fire_count == 3

        second_job = service.schedule_task(task.task_id, "*/5 * * * *")
        await manual_sleep.settle()
        assert first_job.cancelled
        assert not second_job.cancelled
        assert len(service.scheduler) == 1
        assert service.get_task(task.task_id).automation.schedule == "*/5 * * * *"

        await manual_sleep.release()
        await service.wait_idle()
        assert first_job.fire_count == 3
        assert second_job.fire_count == 1
        assert len(runs) == 5
        await service.shutdown()

    async def test_schedule_requires_expression(self, service):
        task = await service.create_task({"title": "x"})
        with pytest.raises(ValidationError):
            service.schedule_task(task.task_id)
        with pytest.raises(ValidationError):
            service.schedule_task(task.task_id, "every day")

    async def test_evict_cancels_schedule(self, service):
        task = await service.create_task(_automated("x", schedule="0 9 * * *"))
        assert service.scheduler.is_scheduled(task.task_id)

        service.evict_task(task.task_id)

        assert not service.scheduler.is_scheduled(task.task_id)
        with pytest.raises(TaskNotFoundError):
            service.get_task(task.task_id)


class TestMetrics:
    async def test_idempotent_snapshot(self, service):
        await service.create_task(_automated("x"))
        await service.wait_idle()

        assert service.get_metrics() == service.get_metrics()
        dumped = service.get_metrics().model_dump(by_alias=True)
        assert dumped["tasksCreated"] == 1
        assert dumped["tasksCompleted"] == 1

    async def test_persistence_disabled(self, service):
        with pytest.raises(TaskmasterError, match="Persistence is not enabled"):
            await service.save_metrics()
