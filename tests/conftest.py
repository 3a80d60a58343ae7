"""Taskmaster 测试配置 -- 引擎、存储与可控 sleep 的 fixture"""

import asyncio
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from taskmaster.core.config import EngineConfig
from taskmaster.core.store import SqliteDurableStore, create_durable_store
from taskmaster.engine import EventHub, TaskmasterService


class ManualSleep:
    """可控的 sleep：调用者挂起，直到测试调用 release()"""

    def __init__(self) -> None:
        self.calls: list[float] = []
        self._waiters: list[asyncio.Future] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        future = asyncio.get_running_loop().create_future()
        self._waiters.append(future)
        await future

    @property
    def sleeping(self) -> int:
        return sum(1 for f in self._waiters if not f.done())

    async def release(self) -> None:
        """唤醒当前所有挂起的调用者，并让出若干轮事件循环"""
        waiters, self._waiters = self._waiters, []
        for future in waiters:
            if not future.done():
                future.set_result(None)
        await self.settle()

    @staticmethod
    async def settle(rounds: int = 20) -> None:
        """让出事件循环若干轮，使已就绪的后台任务推进"""
        for _ in range(rounds):
            await asyncio.sleep(0)


@pytest.fixture
def engine_config() -> EngineConfig:
    """重试不等待的引擎配置"""
    return EngineConfig(retry_base_delay_s=0.0, max_concurrent_tasks=10)


@pytest.fixture
def manual_sleep() -> ManualSleep:
    return ManualSleep()


@pytest.fixture
def hub() -> EventHub:
    return EventHub()


@pytest_asyncio.fixture
async def service(engine_config: EngineConfig) -> AsyncGenerator[TaskmasterService, None]:
    """无持久化的引擎实例，测试结束时关闭"""
    engine = TaskmasterService(engine_config)
    yield engine
    await engine.shutdown()


@pytest_asyncio.fixture
async def db_path(tmp_path: Path) -> Path:
    """临时数据库路径"""
    return tmp_path / "sqlite" / "taskmaster_test.db"


@pytest_asyncio.fixture
async def store(db_path: Path) -> AsyncGenerator[SqliteDurableStore, None]:
    """已初始化的 SQLite DurableStore"""
    durable = await create_durable_store(str(db_path))
    yield durable
    await durable.close()


@pytest_asyncio.fixture
async def persistent_service(
    engine_config: EngineConfig,
    store: SqliteDurableStore,
) -> AsyncGenerator[TaskmasterService, None]:
    """启用持久化网关的引擎实例"""
    engine = TaskmasterService(engine_config, store=store)
    engine.start(monitor=False)
    yield engine
    await engine.shutdown()
