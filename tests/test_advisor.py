"""PriorityAdvisor 测试

测试内容：
1. 紧急度区间、分类权重、依赖加分与上限
2. 时长估算
3. 截止/依赖建议
4. 同一负责人同一天过载告警
5. 未知依赖告警（关闭启发式评估时同样生效）
"""

from datetime import UTC, datetime, timedelta

import pytest
from taskmaster.core.config import EngineConfig
from taskmaster.engine import TaskmasterService
from taskmaster.engine.advisor import PriorityAdvisor
from taskmaster.engine.registry import TaskRegistry
from taskmaster.engine.resolver import DependencyResolver

NOW = datetime(2026, 5, 10, 12, 0, tzinfo=UTC)


@pytest.fixture
def registry(hub) -> TaskRegistry:
    return TaskRegistry(hub)


@pytest.fixture
def advisor(registry) -> PriorityAdvisor:
    return PriorityAdvisor(registry, DependencyResolver(registry), clock=lambda: NOW)


def _create(registry, advisor, **spec):
    spec.setdefault("title", "task")
    return registry.create(spec, advisor.enrich)


class TestScore:
    def test_due_within_a_day_scores_above_90(self, registry, advisor):
        task = _create(
            registry,
            advisor,
            due_date=NOW + timedelta(hours=12),
            priority="urgent",
            category="venue",
        )
        assert task.priority_score > 90

    @pytest.mark.parametrize(
        "days,category,expected",
        [
            (5, "general", 50),
            (20, "general", 20),
            (60, "general", 0),
            (60, "ceremony", 80),
            (5, "reception", 100),
            (20, "vendor", 60),
        ],
    )
    def test_bands_and_categories(self, registry, advisor, days, category, expected):
        task = _create(registry, advisor, due_date=NOW + timedelta(days=days), category=category)
        assert task.priority_score == expected

    def test_dependencies_add_weight(self, registry, advisor):
        deps = [_create(registry, advisor).task_id for _ in range(2)]
        task = _create(registry, advisor, automation={"dependencies": deps})
        assert task.priority_score == 20

    def test_no_due_date(self, registry, advisor):
        assert _create(registry, advisor).priority_score == 0


class TestDurationAndSuggestions:
    @pytest.mark.parametrize(
        "task_type,minutes",
        [("notification", 1), ("vendor_contact", 15), ("report_generation", 10), ("other", 5)],
    )
    def test_duration_table(self, registry, advisor, task_type, minutes):
        assert _create(registry, advisor, type=task_type).estimated_duration == minutes

    def test_overdue(self, registry, advisor):
        task = _create(registry, advisor, due_date=NOW - timedelta(hours=1))
        assert [(s.type, s.message) for s in task.suggestions] == [("urgent", "Task is overdue")]

    def test_near_deadline(self, registry, advisor):
        task = _create(registry, advisor, due_date=NOW + timedelta(days=2))
        assert task.suggestions[0].type == "warning"
        assert "Deadline is near" in task.suggestions[0].message

    def test_many_dependencies(self, registry, advisor):
        deps = [_create(registry, advisor).task_id for _ in range(4)]
        task = _create(registry, advisor, automation={"dependencies": deps})
        assert any(s.type == "info" for s in task.suggestions)


class TestConflicts:
    def test_fifth_task_same_day_is_overloaded(self, registry, advisor):
        """同一负责人同一天第 5 个任务出现过载告警"""
        due = NOW + timedelta(days=10)
        tasks = [
            _create(
                registry,
                advisor,
                title=f"t{i}",
                assignee="ana",
                due_date=due + timedelta(hours=i),
            )
            for i in range(5)
        ]

        for task in tasks[:4]:
            assert not any("conflicts" in s.message for s in task.suggestions)
        assert any(
            s.message == "Potential conflicts detected: ana has too many tasks due on the same day"
            for s in tasks[4].suggestions
        )

    def test_other_assignee_not_counted(self, registry, advisor):
        due = NOW + timedelta(days=10)
        for i in range(4):
            _create(registry, advisor, title=f"t{i}", assignee="ana", due_date=due)
        task = _create(registry, advisor, assignee="rui", due_date=due)
        assert advisor.same_day_count(task) == 0
        assert advisor.conflicts(task) == []


class TestUnknownDependencies:
    def test_flagged_with_warning(self, registry, advisor):
        task = _create(registry, advisor, automation={"dependencies": ["ghost"]})
        assert any(
            s.message == "Unknown dependencies will never be satisfied: ghost"
            for s in task.suggestions
        )

    async def test_flagged_when_advisor_disabled(self):
        service = TaskmasterService(EngineConfig(enable_advisor=False))
        task = await service.create_task({"title": "x", "automation": {"dependencies": ["ghost"]}})

        assert task.priority_score is None
        assert [s.type for s in task.suggestions] == ["warning"]
        await service.shutdown()
