"""Workflow initializers: attach workflows to entities.

- ``WorkflowEffector`` adds an action whose invocation runs a workflow
- ``WorkflowSensor`` runs a workflow on triggers/period and publishes its
  output as an attribute
- ``WorkflowPolicy`` runs a workflow on triggers/period

Example::

    sensor = WorkflowSensor(
        sensor="myWorkflowSensor",
        triggers="theTrigger",
        steps=[
            "let v = ${entity.sensor.myWorkflowSensor.v} + 1 ?? 0",
            "return ${v}",
        ],
    )
    await sensor.start(entity)
"""

from typing import Any, Optional

import structlog

from core.constants import WorkflowOrigin
from core.exceptions import DefinitionError, StepExecutionFailure
from entities.base import Entity
from steps.implementations.workflow_step import normalize_parameters
from steps.registry import get_step_registry
from triggers.base import TriggerEvent, TriggerTypeEnum
from triggers.manager import TriggerManager, get_trigger_manager
from workflow.engine import WorkflowEngine, get_workflow_engine
from workflow.expressions import coerce

logger = structlog.get_logger(__name__)


def apply_parameters(parameters: Any, args: Optional[dict], owner: str) -> dict:
    """Build workflow input from invocation args and declared parameters.

    Declared types are coerced, defaults filled in and required parameters
    enforced; undeclared args pass through unchanged.
    """
    values = dict(args or {})
    for name, spec in normalize_parameters(parameters).items():
        if name in values:
            if spec.get("type") is not None and values[name] is not None:
                try:
                    values[name] = coerce(values[name], spec["type"])
                except Exception as e:
                    raise StepExecutionFailure(f"Parameter '{name}' of {owner} must be {spec['type']}: {e}", cause=e)
        elif "default" in spec:
            values[name] = spec["default"]
        elif spec.get("required"):
            raise StepExecutionFailure(f"Missing required parameter '{name}' for {owner}")
    return values


# ─── Effector ──────────────────────────────────────────────────

class WorkflowEffector:
    """Adds an action to an entity that runs a workflow when invoked.

    Args:
        name: Action name
        steps: Workflow steps
        parameters: Declared parameters ``{name: {type, description, default, required}}``
        description: Shown alongside the action
    """

    def __init__(
        self,
        name: str,
        steps: list,
        parameters: Any = None,
        description: Optional[str] = None,
    ):
        if not name:
            raise DefinitionError("Workflow effector requires a name")
        self.name = name
        self.steps = list(steps or [])
        self.parameters = parameters
        self.description = description
        normalize_parameters(parameters)

    def apply(self, entity: Entity, engine: Optional[WorkflowEngine] = None) -> None:
        """Register the action on ``entity``."""
        engine = engine or get_workflow_engine()
        (engine.registry or get_step_registry()).parse_steps(self.steps)

        async def _invoke(target: Entity, args: dict) -> Any:
            input = apply_parameters(self.parameters, args, f"effector '{self.name}'")
            return await engine.invoke(
                target,
                self.steps,
                name=f"Workflow for effector {self.name}",
                input=input,
                origin=WorkflowOrigin.EFFECTOR,
            )

        entity.add_action(self.name, _invoke)
        logger.info("Workflow effector added", entity=entity.entity_id, effector=self.name)


# ─── Triggered workflows ──────────────────────────────────────

class _TriggeredWorkflow:
    """Workflow run on attribute triggers and/or a period."""

    origin = WorkflowOrigin.POLICY
    runs_on_start = False

    def __init__(
        self,
        steps: list,
        triggers: Any = None,
        period: Any = None,
        condition: Any = None,
        name: Optional[str] = None,
    ):
        self.steps = list(steps or [])
        self.triggers = triggers
        self.period = period
        self.condition = condition
        self.name = name
        self.entity: Optional[Entity] = None
        self._engine: Optional[WorkflowEngine] = None
        self._manager: Optional[TriggerManager] = None
        self._trigger_ids: list[str] = []

    @property
    def group(self) -> str:
        return f"{self.entity.entity_id}:{self.label}" if self.entity is not None else self.label

    @property
    def label(self) -> str:
        return self.name or type(self).__name__

    @property
    def trigger_ids(self) -> list[str]:
        return list(self._trigger_ids)

    async def start(
        self,
        entity: Entity,
        engine: Optional[WorkflowEngine] = None,
        manager: Optional[TriggerManager] = None,
    ) -> None:
        """Attach to ``entity`` and start listening for triggers.

        Raises:
            DefinitionError: If the steps or the trigger configuration are invalid
        """
        self.entity = entity
        self._engine = engine or get_workflow_engine()
        self._manager = manager or get_trigger_manager()
        (self._engine.registry or get_step_registry()).parse_steps(self.steps)

        if self.triggers:
            await self._start_trigger(TriggerTypeEnum.SENSOR, {"entity": entity, "triggers": self.triggers})
        if self.period is not None:
            await self._start_trigger(TriggerTypeEnum.PERIOD, {"period": self.period})

        logger.info(
            "Triggered workflow started",
            entity=entity.entity_id,
            name=self.label,
            triggers=self.triggers,
            period=self.period,
        )
        if self.runs_on_start and self._trigger_ids:
            await self._manager.fire_trigger(self._trigger_ids[0], {"reason": "start"})

    async def _start_trigger(self, trigger_type: TriggerTypeEnum, config: dict) -> None:
        trigger_id = f"{self.group}:{trigger_type.value}"
        result = await self._manager.start_trigger(
            trigger_id,
            trigger_type.value,
            config,
            self._on_trigger,
            entity=self.entity,
            condition=self.condition,
            group=self.group,
        )
        if not result.success:
            raise DefinitionError(f"Cannot start {trigger_type.value} trigger for {self.label}: {result.message}")
        self._trigger_ids.append(trigger_id)

    async def stop(self) -> None:
        """Stop listening; a run in progress is left to finish."""
        for trigger_id in self._trigger_ids:
            await self._manager.stop_trigger(trigger_id)
        self._trigger_ids = []

    def current_run(self):
        """Task of the latest run, if any."""
        if self._manager is None:
            return None
        return self._manager.get_active_run(self.group)

    async def _on_trigger(self, event: TriggerEvent) -> Any:
        return await self._engine.invoke(
            self.entity,
            self.steps,
            name=self.label,
            input={"trigger": event.payload},
            origin=self.origin,
        )


class WorkflowSensor(_TriggeredWorkflow):
    """Publishes a workflow's output as an attribute.

    Runs once at start (when it has triggers or a period), then on each
    admitted firing.

    Args:
        sensor: Attribute name, or ``{name, type}``
    """

    origin = WorkflowOrigin.SENSOR
    runs_on_start = True

    def __init__(self, sensor: Any, steps: list, **kwargs):
        spec = dict(sensor) if isinstance(sensor, dict) else {"name": sensor}
        if not spec.get("name"):
            raise DefinitionError("Workflow sensor requires a sensor name")
        self.sensor_name = str(spec["name"])
        self.sensor_type = spec.get("type")
        kwargs.setdefault("name", f"Workflow for sensor {self.sensor_name}")
        super().__init__(steps, **kwargs)

    async def _on_trigger(self, event: TriggerEvent) -> Any:
        output = await super()._on_trigger(event)
        if self.sensor_type is not None and output is not None:
            output = coerce(output, self.sensor_type)
        self.entity.set_attribute(self.sensor_name, output)
        return output


class WorkflowPolicy(_TriggeredWorkflow):
    """Runs a workflow on triggers/period only; never at start.

    Args:
        policy_id: Identifier of the policy (default: derived from the name)
    """

    def __init__(self, steps: list, policy_id: Optional[str] = None, **kwargs):
        super().__init__(steps, **kwargs)
        self.policy_id = policy_id or (self.name or "workflow-policy").lower().replace(" ", "-")

    @property
    def display_name(self) -> str:
        return self.label
