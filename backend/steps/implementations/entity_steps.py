"""Entity step implementations.

Steps that act on an entity: publish or clear attributes (sensors), set
config, and invoke actions (effectors). Each targets the workflow's entity
unless an ``entity`` is given.
"""

from typing import Any, Dict, Optional

import structlog

from core.exceptions import DefinitionError, StepExecutionFailure
from entities.base import Entity
from steps.base_step import BaseStep
from workflow.conditions import ConditionEvaluator, validate_condition
from workflow.expressions import ABSENT, coerce, found, unwrap

logger = structlog.get_logger(__name__)


def _named(spec: Any, kind: str) -> dict:
    """Normalize ``sensor: name`` and ``sensor: {name: ...}`` forms."""
    if isinstance(spec, dict):
        return dict(spec)
    if spec is None:
        raise StepExecutionFailure(f"Missing required input: {kind}")
    return {"name": spec}


async def _entity_for(instance, spec: dict) -> Entity:
    entity = spec.get("entity")
    if entity is None:
        entity = instance.entity
    entity = unwrap(entity)
    if not isinstance(entity, Entity):
        raise StepExecutionFailure(f"Cannot act on '{entity}': not an entity")
    return entity


class SetSensorStep(BaseStep):
    """Publish an attribute on an entity.

    Shorthand example::

        set-sensor integer count = ${workflow.scratch.next}

    Input:
        sensor: Name, or mapping with ``name``, optional ``type`` and ``entity``
        value: Value to publish
        require: Precondition on the current value; a mapping is a
            condition, anything else must equal the current value
    """

    step_type = "set-sensor"
    display_name = "Set Sensor"
    description = "Set an attribute on an entity"
    shorthand = "[ ${sensor.type} ] ${sensor.name} = ${value...}"

    async def execute(self, instance) -> Any:
        spec = _named(await instance.input("sensor", default=None), "sensor")
        name = spec.get("name")
        if not name:
            raise StepExecutionFailure("Missing required input: sensor.name")
        name = str(name)
        entity = await _entity_for(instance, spec)

        value = await instance.input("value", default=None)
        if spec.get("type") is not None:
            try:
                value = coerce(value, spec["type"])
            except Exception as e:
                raise StepExecutionFailure(f"Cannot convert value for sensor '{name}' to {spec['type']}: {e}", cause=e)

        if instance.has_input("require"):
            current = found(entity.get_attribute(name)) if entity.has_attribute(name) else ABSENT
            await self._check_requirement(instance, name, current)
            # Refuse the write if the attribute changed while the requirement was evaluated
            still = found(entity.get_attribute(name)) if entity.has_attribute(name) else ABSENT
            if still != current:
                raise StepExecutionFailure(f"Sensor '{name}' changed while checking its requirement")

        entity.set_attribute(name, value)
        logger.debug("sensor_set", entity=entity.entity_id, sensor=name, workflow_id=instance.context.workflow_id)
        return None

    async def _check_requirement(self, instance, name: str, current) -> None:
        requirement = instance.raw_input("require")
        if isinstance(requirement, dict):
            evaluator = ConditionEvaluator(instance.resolver, instance.entity, default_subject=current)
            holds = await evaluator.evaluate(requirement)
        else:
            expected = await instance.input("require")
            evaluator = ConditionEvaluator(instance.resolver, instance.entity, default_subject=current)
            holds = await evaluator.evaluate({"equals": expected}) if current.found else expected is None
        if not holds:
            raise StepExecutionFailure(
                f"Sensor '{name}' does not meet requirement (current value {current.value!r})",
                step_id=instance.step_id,
            )

    def validate_definition(self, definition, registry, depth: int = 0) -> None:
        requirement = definition.input.get("require")
        if isinstance(requirement, dict):
            validate_condition(requirement)


class ClearSensorStep(BaseStep):
    """Remove an attribute from an entity."""

    step_type = "clear-sensor"
    display_name = "Clear Sensor"
    description = "Remove an attribute from an entity"
    shorthand = "${sensor.name}"

    async def execute(self, instance) -> Any:
        spec = _named(await instance.input("sensor", default=None), "sensor")
        if not spec.get("name"):
            raise StepExecutionFailure("Missing required input: sensor.name")
        entity = await _entity_for(instance, spec)
        entity.clear_attribute(str(spec["name"]))
        return None


class SetConfigStep(BaseStep):
    """Set a config value on an entity."""

    step_type = "set-config"
    display_name = "Set Config"
    description = "Set a config value on an entity"
    shorthand = "[ ${config.type} ] ${config.name} = ${value...}"

    async def execute(self, instance) -> Any:
        spec = _named(await instance.input("config", default=None), "config")
        if not spec.get("name"):
            raise StepExecutionFailure("Missing required input: config.name")
        entity = await _entity_for(instance, spec)

        value = await instance.input("value", default=None)
        if spec.get("type") is not None:
            try:
                value = coerce(value, spec["type"])
            except Exception as e:
                raise StepExecutionFailure(f"Cannot convert value for config '{spec['name']}': {e}", cause=e)
        entity.set_config(str(spec["name"]), value)
        return None


class InvokeEffectorStep(BaseStep):
    """Invoke an action on an entity and wait for its result.

    Input:
        effector: Action name (required)
        args: Mapping of parameters passed to the action
        entity: Entity to invoke on (default: the workflow's entity)
    """

    step_type = "invoke-effector"
    display_name = "Invoke Effector"
    description = "Invoke an action on an entity"
    shorthand = "${effector}"

    async def execute(self, instance) -> Any:
        name = await instance.input("effector", "string", default=None)
        if not name:
            raise StepExecutionFailure("Missing required input: effector")
        args: Optional[Dict[str, Any]] = await instance.input("args", default=None) or {}
        if not isinstance(args, dict):
            raise StepExecutionFailure(f"Effector args must be a mapping, got {type(args).__name__}")

        entity = await _entity_for(instance, {"entity": await instance.input("entity", default=None)})
        if not entity.has_action(name):
            raise StepExecutionFailure(f"No effector '{name}' on {entity.entity_id}")

        logger.info("Invoking effector", entity=entity.entity_id, effector=name, workflow_id=instance.context.workflow_id)
        return await entity.invoke_action(name, args)

    def validate_definition(self, definition, registry, depth: int = 0) -> None:
        args = definition.input.get("args")
        if args is not None and not isinstance(args, (dict, str)):
            raise DefinitionError("invoke-effector args must be a mapping")


# Export for registry
ENTITY_STEP_TYPES = {
    "set-sensor": SetSensorStep,
    "clear-sensor": ClearSensorStep,
    "set-config": SetConfigStep,
    "invoke-effector": InvokeEffectorStep,
}
