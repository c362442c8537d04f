"""Nested workflow and retry step implementations.

``workflow`` runs a list of steps in a child context, optionally once per
target with bounded concurrency. Registered custom workflow types expand
to this step with their ``parameters`` and ``output`` attached.

``retry`` is an error-handler directive: its output is the retry policy
the engine applies to the failed step.
"""

from typing import Any, Optional

import structlog

from app.config import get_settings
from core.exceptions import DefinitionError, StepExecutionFailure, WorkflowError
from entities.base import Entity
from steps.base_step import BaseStep
from workflow.concurrency import parse_concurrency
from workflow.expressions import coerce, has_placeholders
from workflow.fanout import run_fanout
from workflow.retry_strategies import RetryStrategy

logger = structlog.get_logger(__name__)

_RETRY_KEYS = ("from", "limit", "backoff", "policy")


def normalize_parameters(parameters: Any) -> dict:
    """Accept ``parameters`` as a mapping or as a list of names."""
    if parameters is None:
        return {}
    if isinstance(parameters, list):
        return {str(name): {} for name in parameters}
    if isinstance(parameters, dict):
        return {str(name): dict(spec or {}) for name, spec in parameters.items()}
    raise DefinitionError(f"Workflow parameters must be a mapping, got {type(parameters).__name__}")


class WorkflowStep(BaseStep):
    """Run nested steps in a child workflow.

    Definition:
        steps: Steps of the nested workflow (required)
        target: Run once per target (``children``, ``1..5``, a list)
        concurrency: How many targets run at once (default: all)

    The child shares the entity (or gets the target as its entity) but has
    its own scratch variables; its output is this step's output.
    """

    step_type = "workflow"
    display_name = "Workflow"
    description = "Run a nested workflow, optionally over targets"
    definition_fields = frozenset({"steps", "parameters", "workflow_output"})

    async def execute(self, instance) -> Any:
        definition = instance.definition
        steps = definition.extra("steps") or []
        child_input = await self._child_input(instance)
        name = definition.bean or definition.name or f"{instance.context.name} step {instance.step_id}"

        if definition.target is None:
            return await self._run_child(instance, steps, instance.entity, child_input, {}, name)

        target = await instance.resolve(definition.target)
        concurrency = definition.concurrency
        if has_placeholders(concurrency):
            concurrency = await instance.resolve(concurrency)

        async def _run_target(item: Any, index: int) -> Any:
            entity = item if isinstance(item, Entity) else instance.entity
            scratch = {"target": item, "target_index": index}
            return await self._run_child(instance, steps, entity, child_input, scratch, f"{name} [{index}]")

        return await run_fanout(target, concurrency, instance.entity, _run_target, label=name)

    async def _child_input(self, instance) -> dict:
        definition = instance.definition
        resolved = {key: await instance.input(key) for key in definition.input}

        parameters = normalize_parameters(definition.extra("parameters"))
        for param, spec in parameters.items():
            if param in resolved:
                if spec.get("type") is not None and resolved[param] is not None:
                    try:
                        resolved[param] = coerce(resolved[param], spec["type"])
                    except Exception as e:
                        raise StepExecutionFailure(
                            f"Parameter '{param}' of '{definition.bean}' must be {spec['type']}: {e}",
                            cause=e,
                            step_id=instance.step_id,
                        )
            elif "default" in spec:
                resolved[param] = await instance.resolve(spec["default"])
            elif spec.get("required"):
                raise StepExecutionFailure(
                    f"Missing required parameter '{param}' for '{definition.bean}'",
                    step_id=instance.step_id,
                )
        return resolved

    async def _run_child(
        self,
        instance,
        steps: list,
        entity: Optional[Entity],
        child_input: dict,
        scratch: dict,
        name: str,
    ) -> Any:
        child = instance.create_child(steps, entity=entity, input=child_input, scratch=scratch, name=name)
        try:
            result = await child.run()
        except DefinitionError:
            raise
        except WorkflowError as e:
            raise StepExecutionFailure(e.message, cause=e, step_id=instance.step_id)

        if "workflow_output" in instance.definition.extras:
            result = await child.evaluate_output(instance.definition.extra("workflow_output"), result)
        return result

    def validate_definition(self, definition, registry, depth: int = 0) -> None:
        steps = definition.extra("steps")
        if steps is None:
            raise DefinitionError(f"Workflow step '{definition.label}' requires 'steps'")
        if definition.extra("parameters") is not None and definition.bean is None:
            raise DefinitionError(
                f"Workflow step '{definition.label}' cannot declare 'parameters' where it is used; "
                "register it as a step type instead"
            )
        normalize_parameters(definition.extra("parameters"))
        registry.parse_nested(steps, depth)

        concurrency = definition.concurrency
        if concurrency is not None and not has_placeholders(concurrency):
            parse_concurrency(concurrency)


class RetryStep(BaseStep):
    """Retry the failed step; only valid under ``on-error``.

    Shorthand examples::

        retry
        retry limit 3
        retry from start limit 5 backoff 10ms increasing 2x up to 1s
    """

    step_type = "retry"
    display_name = "Retry"
    description = "Retry a failed step with optional backoff"
    shorthand = "[ from ${from} ] [ limit ${limit} ] [ backoff ${backoff...} ]"

    async def execute(self, instance) -> Any:
        if instance.error is None:
            raise StepExecutionFailure("retry can only be used as an error handler", step_id=instance.step_id)
        config = {}
        for key in _RETRY_KEYS:
            if instance.has_input(key):
                config[key] = await instance.input(key)
        return RetryStrategy.from_dict(config, default_backoff=get_settings().RETRY_DEFAULT_BACKOFF)

    def validate_definition(self, definition, registry, depth: int = 0) -> None:
        config = {key: definition.input[key] for key in _RETRY_KEYS if key in definition.input}
        if not has_placeholders(config):
            RetryStrategy.from_dict(config)


# Export for registry
WORKFLOW_STEP_TYPES = {
    "workflow": WorkflowStep,
    "retry": RetryStep,
}
