"""Tests for structured conditions."""

import pytest
from structlog.testing import capture_logs

from core.exceptions import (
    ConditionAssertionFailure,
    UnresolvableExpression,
    UnresolveableCondition,
)
from entities.basic import BasicEntity
from workflow.conditions import ConditionEvaluator, validate_condition
from workflow.expressions import ExpressionResolver, MappingLayer, Scope, found


def make_evaluator(values: dict, entity=None, subject=None) -> ConditionEvaluator:
    resolver = ExpressionResolver(Scope([MappingLayer(values)]))
    if subject is None:
        return ConditionEvaluator(resolver, entity)
    return ConditionEvaluator(resolver, entity, default_subject=found(subject))


@pytest.mark.unit
class TestChecks:
    @pytest.mark.asyncio
    async def test_none_always_holds(self):
        assert await make_evaluator({}).evaluate(None) is True

    @pytest.mark.asyncio
    async def test_equals_compares_rendered_scalars(self):
        evaluator = make_evaluator({"count": 5})
        assert await evaluator.evaluate({"target": "${count}", "equals": "5"})
        assert not await evaluator.evaluate({"target": "${count}", "equals": 6})

    @pytest.mark.asyncio
    async def test_booleans_only_equal_booleans(self):
        evaluator = make_evaluator({"flag": True})
        assert await evaluator.evaluate({"target": "${flag}", "equals": True})
        assert not await evaluator.evaluate({"target": "${flag}", "equals": 1})

    @pytest.mark.asyncio
    async def test_regex_must_match_whole_text(self):
        evaluator = make_evaluator({"host": "web-01"})
        assert await evaluator.evaluate({"target": "${host}", "regex": "web-\\d+"})
        assert not await evaluator.evaluate({"target": "${host}", "regex": "web"})

    @pytest.mark.asyncio
    async def test_comparisons(self):
        evaluator = make_evaluator({"n": 10})
        assert await evaluator.evaluate({"target": "${n}", "greater_than": 9, "less_than": "11"})
        assert not await evaluator.evaluate({"target": "${n}", "greater_than": 10})

    @pytest.mark.asyncio
    async def test_has_element(self):
        evaluator = make_evaluator({"tags": ["a", "b"]})
        assert await evaluator.evaluate({"target": "${tags}", "has_element": "b"})
        assert not await evaluator.evaluate({"target": "${tags}", "has_element": "c"})

    @pytest.mark.asyncio
    async def test_instance_of(self):
        evaluator = make_evaluator({"n": 3, "s": "3"})
        assert await evaluator.evaluate({"target": "${n}", "instanceof": "integer"})
        assert not await evaluator.evaluate({"target": "${s}", "instance_of": "integer"})

    @pytest.mark.asyncio
    async def test_subject_only_checks_truthiness(self):
        evaluator = make_evaluator({"on": "true", "off": "false"})
        assert await evaluator.evaluate({"target": "${on}"})
        assert not await evaluator.evaluate({"target": "${off}"})


@pytest.mark.unit
class TestCombinators:
    @pytest.mark.asyncio
    async def test_any_all_not_inherit_subject(self):
        evaluator = make_evaluator({"count": 0})
        condition = {
            "target": "${count}",
            "any": [{"equals": 0}, {"regex": "1.*"}],
            "not": {"equals": 5},
        }
        assert await evaluator.evaluate(condition)
        assert not await evaluator.evaluate({"target": "${count}", "all": [{"equals": 0}, {"equals": 1}]})

    @pytest.mark.asyncio
    async def test_bare_value_means_equals(self):
        evaluator = make_evaluator({"color": "red"})
        assert await evaluator.evaluate({"target": "${color}", "any": ["blue", "red"]})

    @pytest.mark.asyncio
    async def test_nested_target_overrides_subject(self):
        evaluator = make_evaluator({"a": 1, "b": 2})
        condition = {"target": "${a}", "equals": 1, "all": [{"target": "${b}", "equals": 2}]}
        assert await evaluator.evaluate(condition)

    @pytest.mark.asyncio
    async def test_assert_raises(self):
        evaluator = make_evaluator({"n": "x"})
        assert await evaluator.evaluate({"target": "${n}", "assert": {"regex": "x"}})
        with pytest.raises(ConditionAssertionFailure):
            await evaluator.evaluate({"target": "${n}", "assert": "integer"})


@pytest.mark.unit
class TestPresence:
    @pytest.mark.asyncio
    async def test_when_present(self):
        evaluator = make_evaluator({"x": None})
        assert await evaluator.evaluate({"target": "${x}", "when": "present"})
        assert not await evaluator.evaluate({"target": "${x}", "when": "present_non_null"})
        assert await evaluator.evaluate({"target": "${x}", "when": "absent_or_null"})

    @pytest.mark.asyncio
    async def test_absent_tolerates_unresolved_target(self):
        evaluator = make_evaluator({})
        assert await evaluator.evaluate({"target": "${missing}", "when": "absent"})

    @pytest.mark.asyncio
    async def test_unresolved_target_raises(self):
        evaluator = make_evaluator({})
        with pytest.raises(UnresolvableExpression, match="unresolveable"):
            await evaluator.evaluate({"target": "${missing}", "equals": 1})

    @pytest.mark.asyncio
    async def test_sensor_subject(self):
        entity = BasicEntity("e", attributes={"mode": "on"})
        evaluator = make_evaluator({}, entity=entity)
        assert await evaluator.evaluate({"sensor": "mode", "equals": "on"})
        assert not await evaluator.evaluate({"sensor": "not_exist"})

    @pytest.mark.asyncio
    async def test_default_subject(self):
        evaluator = make_evaluator({}, subject="connection refused")
        assert await evaluator.evaluate({"regex": "connection.*"})


@pytest.mark.unit
class TestValidation:
    def test_rejects_non_mapping(self):
        with pytest.raises(UnresolveableCondition, match="expected a mapping"):
            validate_condition([{"target": "x"}, {"equals": 1}])

    def test_rejects_unknown_key(self):
        with pytest.raises(UnresolveableCondition, match="unknown key 'bigger'"):
            validate_condition({"target": "x", "bigger": 1})

    @pytest.mark.parametrize("when", ["sometimes", "truthy", "always"])
    def test_rejects_invalid_when(self, when):
        with pytest.raises(UnresolveableCondition, match="invalid 'when'"):
            validate_condition({"when": when})

    def test_rejects_any_without_list(self):
        with pytest.raises(UnresolveableCondition, match="requires a list"):
            validate_condition({"any": {"equals": 1}})

    def test_accepts_aliases(self):
        validate_condition({"target": "${x}", "greaterThan": 1, "less-than": 5, "instanceOf": "integer"})


# ─── Conditions inside workflows ───

def color_loop(set_command: str, log_access: str, condition_access: dict) -> list:
    return [
        "log start",
        f"{set_command} color = blue",
        {"id": "log-color", "s": f"log color {log_access}"},
        {
            "s": "log not blue",
            "condition": {
                **condition_access,
                "assert": {"when": "present", "java-instance-of": "string"},
                "not": {"equals": "blue"},
            },
        },
        {"type": "no-op", "next": "make-red", "condition": {**condition_access, "equals": "blue"}},
        {"type": "no-op", "next": "log-end"},
        {"id": "make-red", "s": f"{set_command} color = red", "next": "log-color"},
        {"id": "log-end", "s": "log end"},
    ]


@pytest.mark.integration
class TestWorkflowConditions:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "set_command,log_access,condition_access",
        [
            ("let", "${color}", {"target": "${color}"}),
            ("set-sensor", "${entity.sensor.color}", {"sensor": "color"}),
        ],
    )
    async def test_condition_steers_loop(self, engine, entity, set_command, log_access, condition_access):
        messages = {"start", "color blue", "color red", "not blue", "end"}
        with capture_logs() as logs:
            await engine.invoke(entity, color_loop(set_command, log_access, condition_access))
        assert [e["event"] for e in logs if e["event"] in messages] == [
            "start", "color blue", "color red", "not blue", "end",
        ]

    @pytest.mark.asyncio
    async def test_assert_skips_step_when_subject_matches(self, engine, entity):
        steps = [
            "let color = blue",
            {
                "s": "return not blue",
                "condition": {
                    "target": "${color}",
                    "assert": {"when": "present", "java-instance-of": "string"},
                    "not": {"equals": "blue"},
                },
            },
            "return blue",
        ]
        assert await engine.invoke(entity, steps) == "blue"
