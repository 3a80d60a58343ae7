"""CLI 命令测试"""

import pytest
from taskmaster.core import __main__ as cli
from taskmaster.core.models import TaskStatus
from taskmaster.core.store import create_durable_store
from taskmaster.engine import TaskmasterService


@pytest.fixture
def cli_db(tmp_path, monkeypatch):
    path = tmp_path / "sqlite" / "cli.db"
    monkeypatch.setenv("TASKMASTER_DB_PATH", str(path))
    return path


async def test_init_db(cli_db, capsys):
    await cli.init_database()

    out = capsys.readouterr().out
    assert str(cli_db) in out
    assert "WAL: on" in out
    assert cli_db.exists()


async def test_list_tasks(cli_db, capsys, engine_config):
    store = await create_durable_store(cli_db)
    service = TaskmasterService(engine_config, store=store)
    await service.create_task({"title": "Order cake", "ownerEntityId": "evt-1"})
    await service.create_task({"title": "Hire DJ", "ownerEntityId": "evt-2"})
    done = await service.create_task({"title": "Send invites", "ownerEntityId": "evt-1"})
    await service.execute_task(done.task_id)
    assert service.get_task(done.task_id).status == TaskStatus.COMPLETED
    await service.shutdown()
    await store.close()

    await cli.list_tasks("evt-1")

    out = capsys.readouterr().out
    assert "Order cake" in out
    assert "Hire DJ" not in out
    assert "Send invites" not in out
    assert "共 1 个任务" in out


async def test_list_tasks_empty(cli_db, capsys):
    await cli.list_tasks()
    assert "没有未结束的任务" in capsys.readouterr().out


def test_unknown_command(monkeypatch, capsys):
    monkeypatch.setattr(cli, "setup_logging", lambda: None)
    monkeypatch.setattr("sys.argv", ["taskmaster", "bogus"])
    with pytest.raises(SystemExit) as exc_info:
        cli.main()
    assert exc_info.value.code == 1
    assert "未知命令: bogus" in capsys.readouterr().out
