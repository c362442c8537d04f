"""Tests for concurrency expressions and target fan-out."""

import asyncio

import pytest

from core.exceptions import DefinitionError, StepExecutionFailure
from entities.basic import BasicEntity
from workflow.concurrency import parse_concurrency
from workflow.fanout import TargetScheduler, expand_targets, resolve_width


# ─── Concurrency expressions ───

@pytest.mark.unit
class TestConcurrencyExpressions:
    @pytest.mark.parametrize(
        "text,total,expected",
        [
            ("3", 10, 3.0),
            ("all", 7, 7.0),
            ("50%", 10, 5.0),
            ("-10", 25, 15.0),
            ("-10%", 50, 45.0),
            ("max(1, 50%)", 1, 1.0),
            ("min(4, all)", 10, 4.0),
            ("all - 2", 10, 8.0),
            ("max(1, 10%) + 1", 30, 4.0),
            ("max(50%,30%+1)", 10, 5.0),
            ("min(50%,30%+1)", 10, 4.0),
            ("max(1,min(-10,30%+1))", 20, 7.0),
            ("max(1,min(-10,30%+1))", 10, 1.0),
            ("max(1,min(-10,30%+1))", 15, 5.0),
            ("30%-2", 15, 2.5),
        ],
    )
    def test_apply(self, text, total, expected):
        assert parse_concurrency(text).apply(total) == pytest.approx(expected)

    def test_numbers(self):
        assert parse_concurrency(4).apply(10) == 4
        assert parse_concurrency(-2).apply(10) == 8

    def test_width_is_clamped(self):
        assert parse_concurrency("0").width(10) == 1
        assert parse_concurrency("25%").width(10) == 2
        assert parse_concurrency("20").width(10) == 10
        assert parse_concurrency("all").width(0) == 0

    @pytest.mark.parametrize("text", ["", "lots", "max(1)", "50%%", "min(1, 2", "1 +", True])
    def test_invalid(self, text):
        with pytest.raises(DefinitionError):
            parse_concurrency(text)


# ─── Targets ───

@pytest.mark.unit
class TestExpandTargets:
    def test_range(self):
        assert expand_targets("1..5", None) == [1, 2, 3, 4, 5]
        assert expand_targets("3..1", None) == [3, 2, 1]

    def test_children(self):
        parent = BasicEntity("p")
        first = parent.add_child("a")
        second = parent.add_child("b")
        assert expand_targets("children", parent) == [first, second]

    def test_children_without_entity(self):
        with pytest.raises(StepExecutionFailure):
            expand_targets("children", None)

    def test_other_values(self):
        assert expand_targets(["x", "y"], None) == ["x", "y"]
        assert expand_targets("single", None) == ["single"]
        assert expand_targets(None, None) == []

    def test_width(self):
        assert resolve_width(None, 4) == 4
        assert resolve_width("50%", 4) == 2
        assert resolve_width("max(1, 50%)", 0) == 0


# ─── Scheduler ───

@pytest.mark.unit
class TestTargetScheduler:
    @pytest.mark.asyncio
    async def test_results_in_target_order(self):
        async def run(target, index):
            await asyncio.sleep(0.001 * (5 - index))
            return target * 10

        scheduler = TargetScheduler([1, 2, 3, 4, 5], 5, run)
        assert await scheduler.run() == [10, 20, 30, 40, 50]

    @pytest.mark.asyncio
    async def test_active_never_exceeds_width(self):
        async def run(target, index):
            await asyncio.sleep(0.005)
            return target

        scheduler = TargetScheduler(list(range(9)), 3, run)
        await scheduler.run()
        assert scheduler.max_active == 3

    @pytest.mark.asyncio
    async def test_no_admission_after_failure(self):
        started = []

        async def run(target, index):
            started.append(target)
            if target == 0:
                await asyncio.sleep(0.005)
                raise StepExecutionFailure("first target broke")
            await asyncio.sleep(0.02)
            return target

        scheduler = TargetScheduler(list(range(6)), 2, run)
        with pytest.raises(StepExecutionFailure, match="first target broke"):
            await scheduler.run()
        assert started == [0, 1]

    @pytest.mark.asyncio
    async def test_running_targets_finish_after_failure(self):
        finished = []

        async def run(target, index):
            if target == 1:
                await asyncio.sleep(0.001)
                raise StepExecutionFailure("boom")
            await asyncio.sleep(0.02)
            finished.append(target)
            return target

        scheduler = TargetScheduler([0, 1, 2], 3, run)
        with pytest.raises(StepExecutionFailure):
            await scheduler.run()
        assert sorted(finished) == [0, 2]

    @pytest.mark.asyncio
    async def test_empty(self):
        async def run(target, index):
            return target

        assert await TargetScheduler([], 3, run).run() == []
