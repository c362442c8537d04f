"""Tests for triggers and the workflow initializers built on them."""

import asyncio

import pytest

from core.exceptions import DefinitionError, StepExecutionFailure
from tests.conftest import wait_until
from workflow.initializers import WorkflowEffector, WorkflowPolicy, WorkflowSensor

SENSOR_STEPS = [
    "let v = ${entity.sensor.myWorkflowSensor.v} + 1 ?? 0",
    "let map result = { foo: bar, v: ${v} }",
    "return ${result}",
]


# ─── Trigger manager ───

@pytest.mark.unit
class TestTriggerManager:
    @pytest.mark.asyncio
    async def test_unknown_type(self, triggers):
        async def callback(event):
            return None

        result = await triggers.start_trigger("t1", "cron", {}, callback)
        assert not result.success
        assert result.message == "Unknown trigger type: cron"

    @pytest.mark.asyncio
    async def test_invalid_condition(self, triggers, entity):
        async def callback(event):
            return None

        result = await triggers.start_trigger(
            "t1", "sensor", {"entity": entity, "triggers": "go"}, callback, condition={"bigger": 1}
        )
        assert not result.success
        assert result.message.startswith("Invalid condition")

    @pytest.mark.asyncio
    async def test_condition_gates_firing(self, triggers, entity):
        events = []

        async def callback(event):
            events.append(event)

        await triggers.start_trigger(
            "t1",
            "sensor",
            {"entity": entity, "triggers": "go"},
            callback,
            entity=entity,
            condition={"sensor": "enabled"},
        )
        result = await triggers.fire_trigger("t1")
        assert result.message == "Condition not met"

        entity.set_attribute("enabled", "yes")
        result = await triggers.fire_trigger("t1", {"reason": "manual"})
        assert result.success
        assert result.message == "Trigger fired successfully"
        await triggers.get_active_run("t1")
        assert events[0].payload == {"reason": "manual"}
        assert events[0].entity_id == "entity"

    @pytest.mark.asyncio
    async def test_sensor_publication_fires(self, triggers, entity):
        events = []

        async def callback(event):
            events.append(event.payload)

        await triggers.start_trigger("t1", "sensor", {"entity": entity, "triggers": ["a", "b"]}, callback)
        entity.set_attribute("b", 7)
        await wait_until(lambda: len(events) == 1)
        assert events[0] == {"reason": "sensor", "sensor": "b", "value": 7}

    @pytest.mark.asyncio
    async def test_stopped_trigger_does_not_fire(self, triggers, entity):
        async def callback(event):
            return None

        await triggers.start_trigger("t1", "sensor", {"entity": entity, "triggers": "go"}, callback)
        await triggers.stop_trigger("t1")
        result = await triggers.fire_trigger("t1")
        assert result.message == "Trigger not active"
        assert triggers.get_status()["active_triggers"] == 0

    @pytest.mark.asyncio
    async def test_period_validation(self, triggers):
        result = await triggers.test_trigger("period", {"period": "0s"})
        assert not result.success
        assert "Period must be positive" in result.message


# ─── Workflow sensor ───

@pytest.mark.integration
class TestWorkflowSensor:
    @pytest.mark.asyncio
    async def test_runs_on_start_and_on_trigger(self, engine, triggers, entity):
        sensor = WorkflowSensor("myWorkflowSensor", SENSOR_STEPS, triggers="theTrigger")
        await sensor.start(entity, engine, triggers)

        first = sensor.current_run()
        assert await first == {"foo": "bar", "v": 0}
        assert entity.get_attribute("myWorkflowSensor") == {"foo": "bar", "v": 0}

        entity.set_attribute("theTrigger", "go")
        await wait_until(lambda: entity.get_attribute("myWorkflowSensor")["v"] == 1)
        await sensor.current_run()

    @pytest.mark.asyncio
    async def test_condition_blocks_runs(self, engine, triggers, entity):
        sensor = WorkflowSensor(
            "myWorkflowSensor", SENSOR_STEPS, triggers="theTrigger", condition={"sensor": "not_exist"}
        )
        await sensor.start(entity, engine, triggers)
        entity.set_attribute("theTrigger", "go")
        await asyncio.sleep(0.05)

        assert sensor.current_run() is None
        assert not entity.has_attribute("myWorkflowSensor")

    @pytest.mark.asyncio
    async def test_declared_type(self, engine, triggers, entity):
        sensor = WorkflowSensor({"name": "count", "type": "integer"}, ["return 41 + 1"], triggers="go")
        await sensor.start(entity, engine, triggers)
        await sensor.current_run()
        assert entity.get_attribute("count") == 42

    def test_requires_name(self):
        with pytest.raises(DefinitionError, match="requires a sensor name"):
            WorkflowSensor({"type": "integer"}, ["return 1"])


# ─── Workflow policy ───

@pytest.mark.integration
class TestWorkflowPolicy:
    @pytest.mark.asyncio
    async def test_period(self, engine, triggers, entity):
        policy = WorkflowPolicy(
            ["let integer count = ${entity.sensor.count} + 1 ?? 0", "set-sensor count = ${count}"],
            period="50ms",
            name="counter",
        )
        await policy.start(entity, engine, triggers)
        assert policy.current_run() is None

        await wait_until(lambda: (entity.get_attribute("count") or 0) >= 1)
        await policy.stop()
        await policy.current_run()
        assert policy.policy_id == "counter"

    @pytest.mark.asyncio
    async def test_skips_firing_while_running(self, engine, triggers, entity):
        policy = WorkflowPolicy(["sleep 200ms"], triggers="go", name="slow")
        await policy.start(entity, engine, triggers)
        trigger_id = policy.trigger_ids[0]

        assert (await triggers.fire_trigger(trigger_id)).success
        second = await triggers.fire_trigger(trigger_id)
        assert not second.success
        assert second.message == "Previous run still active"
        await policy.current_run()

    @pytest.mark.asyncio
    async def test_invalid_period(self, engine, triggers, entity):
        policy = WorkflowPolicy(["no-op"], period="0s")
        with pytest.raises(DefinitionError, match="Cannot start period trigger"):
            await policy.start(entity, engine, triggers)

    @pytest.mark.asyncio
    async def test_invalid_steps(self, engine, triggers, entity):
        policy = WorkflowPolicy(["no-such-step"], triggers="go")
        with pytest.raises(DefinitionError, match="failed to resolve step"):
            await policy.start(entity, engine, triggers)


# ─── Workflow effector ───

@pytest.mark.integration
class TestWorkflowEffector:
    STEPS = [
        {"s": "set-sensor color_is_red = true", "condition": {"target": "${color}", "equals": "red"}},
        {"s": "set-sensor color_is_red = false", "condition": {"target": "${color}", "not": {"equals": "red"}}},
        "return ${color}",
    ]

    @pytest.mark.asyncio
    async def test_invocation_runs_workflow(self, engine, entity):
        WorkflowEffector("setColor", self.STEPS, parameters={"color": {"required": True}}).apply(entity, engine)

        assert await entity.invoke_action("setColor", {"color": "red"}) == "red"
        assert entity.get_attribute("color_is_red") == "true"
        assert await entity.invoke_action("setColor", {"color": "blue"}) == "blue"
        assert entity.get_attribute("color_is_red") == "false"

    @pytest.mark.asyncio
    async def test_parameter_default(self, engine, entity):
        WorkflowEffector("setColor", self.STEPS, parameters={"color": {"default": "red"}}).apply(entity, engine)
        assert await entity.invoke_action("setColor") == "red"

    @pytest.mark.asyncio
    async def test_missing_required_parameter(self, engine, entity):
        WorkflowEffector("setColor", self.STEPS, parameters={"color": {"required": True}}).apply(entity, engine)
        with pytest.raises(StepExecutionFailure, match="Missing required parameter 'color'"):
            await entity.invoke_action("setColor")

    def test_invalid_steps(self, engine, entity):
        with pytest.raises(DefinitionError):
            WorkflowEffector("broken", ["no-such-step"]).apply(entity, engine)
        assert not entity.has_action("broken")
