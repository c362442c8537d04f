"""Workflow Execution Engine: step-list workflow runner.

Runs a workflow, an ordered list of steps, against an entity, handling:

- Sequential execution with ``next`` jumps (``end`` stops the list)
- Conditions: a step whose condition does not hold is skipped
- Error handlers (``on-error``) including retry with backoff
- Timeout per step and per workflow
- ``return`` ending a workflow early with a value
- Nested workflows and fan-out over targets (see ``steps.implementations.workflow_step``)
- Checkpoint/resume after crash

Workflow definition::

    steps:
      - let count = ${entity.sensor.count} ?? 0
      - let inc = ${count} + 1
      - id: publish
        s: set-sensor integer count = ${inc}
        require: ${count}
        on-error:
          - retry from start limit 20 backoff 5ms increasing 2x
      - step: log updated count to ${inc}
        condition:
          target: ${inc}
          greater_than: 10
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

import structlog

from app.config import get_settings
from core.constants import END_STEP, WorkflowOrigin, WorkflowStatus
from core.exceptions import (
    DefinitionError,
    RetryLimitExceeded,
    StepExecutionFailure,
    StepTimeoutError,
    WorkflowError,
)
from core.utils import generate_id, parse_duration
from entities.base import Entity
from steps.base_step import WorkflowReturn
from steps.registry import StepTypeRegistry, get_step_registry
from workflow.checkpoint import CheckpointManager, CheckpointType, WorkflowSnapshot
from workflow.conditions import ConditionEvaluator
from workflow.definitions import StepDefinition, check_step_ids
from workflow.expressions import (
    ABSENT,
    EntityLayer,
    ExpressionResolver,
    InputLayer,
    LazyMappingLayer,
    LookupResult,
    MappingLayer,
    Scope,
    TemplateModel,
    coerce,
    found,
)
from workflow.retry_strategies import ReplayFrom, RetryStrategy

logger = structlog.get_logger(__name__)

_MISSING = object()


# ─── Step Status ──────────────────────────────────────────────

class StepStatus(str, Enum):
    """Status of a single workflow step execution."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    RETRYING = "retrying"


@dataclass
class StepResult:
    """Result of executing a single step."""
    step_id: str
    index: int
    step_type: str
    status: StepStatus
    output: Any = None
    error: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_ms: int = 0
    retry_count: int = 0


@dataclass
class _Transition:
    """Where the step loop goes after an error handler ran."""
    kind: str  # "goto", "continue" or "return"
    index: Optional[int] = None
    output: Any = None
    next: Optional[str] = None


# ─── Template Models ──────────────────────────────────────────

class _StepInputModel(TemplateModel):
    """``workflow.current_step.input.X``: the current step's resolved input."""

    def __init__(self, instance: "StepInstance"):
        self.instance = instance

    async def get(self, key: str) -> LookupResult:
        return await self.instance.input_layer.lookup(key)


class WorkflowModel(TemplateModel):
    """Expression view of a running workflow (``${workflow.*}``)."""

    def __init__(self, context: "WorkflowExecutionContext", instance: Optional["StepInstance"] = None):
        self.context = context
        self.instance = instance

    async def get(self, key: str) -> LookupResult:
        context = self.context
        if key == "id":
            return found(context.workflow_id)
        if key == "name":
            return found(context.name)
        if key == "status":
            return found(context.status.value)
        if key == "input":
            return found(context.input)
        if key in ("scratch", "vars", "variables"):
            return found(context.scratch)
        if key == "output":
            return found(context.output if context.status.is_terminal else context.previous_output)
        if key == "error":
            return found(context.error)
        if key in ("current_step", "currentStep"):
            if self.instance is None:
                return ABSENT
            return found(self.instance.describe())
        if key in ("previous_step", "previousStep"):
            if context.last_result is None:
                return ABSENT
            return found({
                "step_id": context.last_result.step_id,
                "index": context.last_result.index,
                "output": context.last_result.output,
            })
        if key == "step":
            return found({step_id: {"output": output} for step_id, output in context.step_outputs.items()})
        return ABSENT


# ─── Step Instance ────────────────────────────────────────────

class StepInstance:
    """One execution attempt of a step within a workflow context.

    Gives step implementations their resolved input, the expression
    resolver, the entity and access to the workflow context.
    """

    def __init__(
        self,
        context: "WorkflowExecutionContext",
        definition: StepDefinition,
        index: int,
        error: Optional[BaseException] = None,
        step_id: Optional[str] = None,
    ):
        self.context = context
        self.definition = definition
        self.index = index
        self.error = error
        self.step_id = step_id or definition.id or str(index + 1)
        self.input_layer = InputLayer(definition.input, context.resolver_settings)
        extra = {"error": error} if error is not None else None
        self.resolver = ExpressionResolver(context.scope_for(self, extra), context.resolver_settings)

    @property
    def entity(self) -> Optional[Entity]:
        return self.context.entity

    @property
    def name(self) -> Optional[str]:
        return self.definition.name

    def describe(self) -> dict:
        return {
            "name": self.definition.name,
            "step_id": self.step_id,
            "index": self.index,
            "type": self.definition.type,
            "input": _StepInputModel(self),
        }

    # ─── Input ─────────────────────────────────────────────────

    def has_input(self, name: str) -> bool:
        return name in self.definition.input

    def raw_input(self, name: str, default: Any = None) -> Any:
        """The input value as authored, unresolved."""
        return self.definition.input.get(name, default)

    async def input(self, name: str, type_name: Any = None, default: Any = _MISSING) -> Any:
        """Resolve an input, optionally coercing it to ``type_name``.

        Raises:
            StepExecutionFailure: If the input is missing and has no default,
                or cannot be coerced
        """
        result = await self.input_layer.lookup(name)
        if not result.found:
            if default is _MISSING:
                raise StepExecutionFailure(f"Missing required input: {name}", step_id=self.step_id)
            return default
        value = result.value
        if type_name is not None and value is not None:
            try:
                value = coerce(value, type_name)
            except Exception as e:
                raise StepExecutionFailure(f"Input '{name}' must be {type_name}: {e}", cause=e, step_id=self.step_id)
        return value

    async def resolve(self, value: Any, type_name: Any = None) -> Any:
        return await self.resolver.resolve(value, type_name)

    async def evaluate(self, value: Any, wait: bool = False, hide: Optional[str] = None) -> Any:
        """Evaluate a value expression such as ``${x} + 1 ?? 0``.

        Args:
            value: Expression text, or any value to resolve
            wait: Block until referenced sensors are ready
            hide: Input name hidden while evaluating (the one being computed)
        """
        resolver = self.resolver
        if wait:
            settings = dict(resolver.settings, sensor_wait=self.context.settings.ATTRIBUTE_READY_TIMEOUT)
            resolver = ExpressionResolver(resolver.scope, settings)
        if hide is None:
            return await resolver.evaluate(value)
        with self.input_layer.hiding(hide):
            return await resolver.evaluate(value)

    async def evaluate_input(self, name: str, wait: bool = False) -> Any:
        """Evaluate an input as a value expression."""
        return await self.evaluate(self.raw_input(name), wait=wait, hide=name)

    # ─── Nesting ───────────────────────────────────────────────

    def create_child(
        self,
        steps: list,
        entity: Optional[Entity] = None,
        input: Optional[dict] = None,
        scratch: Optional[dict] = None,
        name: Optional[str] = None,
    ) -> "WorkflowExecutionContext":
        """Create a nested context with its own scratch variables."""
        return self.context.create_child(steps, entity=entity, input=input, scratch=scratch, name=name)


# ─── Execution Context ────────────────────────────────────────

class WorkflowExecutionContext:
    """State of one workflow run and the step loop that drives it.

    Status goes PENDING -> RUNNING -> SUCCEEDED or FAILED. A snapshot is
    saved after every step transition when a checkpoint manager is set.

    Args:
        entity: Entity the workflow runs against
        steps: Authored steps (shorthand strings or mappings)
        name: Display name of the run
        workflow_id: Identifier; generated if omitted
        input: Workflow input, visible to expressions by name
        parent: Context of the step that started this nested run
        registry: Step type registry (default: the shared one)
        checkpoint_manager: Where snapshots are saved
        timeout: Limit for the whole run, as seconds or duration text
        scratch: Initial scratch variables
        depth: Nesting depth of this run
        origin: What started the run

    Raises:
        DefinitionError: If the steps do not parse
    """

    def __init__(
        self,
        entity: Optional[Entity],
        steps: Optional[list],
        name: Optional[str] = None,
        workflow_id: Optional[str] = None,
        input: Optional[dict] = None,
        parent: Optional["WorkflowExecutionContext"] = None,
        registry: Optional[StepTypeRegistry] = None,
        checkpoint_manager: Optional[CheckpointManager] = None,
        timeout: Any = None,
        scratch: Optional[dict] = None,
        depth: int = 0,
        origin: WorkflowOrigin = WorkflowOrigin.DIRECT,
    ):
        self.settings = get_settings()
        if depth > self.settings.WORKFLOW_MAX_NESTING_DEPTH:
            raise DefinitionError(f"Workflow nesting exceeds {self.settings.WORKFLOW_MAX_NESTING_DEPTH} levels")

        self.entity = entity
        self.raw_steps = list(steps or [])
        self.registry = registry or get_step_registry()
        self.steps = self.registry.parse_steps(self.raw_steps, depth)
        self.step_ids = check_step_ids(self.steps)

        self.workflow_id = workflow_id or generate_id("wf-")
        self.name = name or f"Workflow {self.workflow_id}"
        self.input = dict(input or {})
        self.parent = parent
        self.checkpoint_manager = checkpoint_manager
        try:
            self.timeout = parse_duration(timeout)
        except ValueError as e:
            raise DefinitionError(f"Invalid workflow timeout: {e}")
        self.depth = depth
        self.origin = origin

        self.status = WorkflowStatus.PENDING
        self.scratch: dict[str, Any] = dict(scratch or {})
        self.current_index = 0
        self.previous_output: Any = None
        self.output: Any = None
        self.error: Optional[BaseException] = None
        self.retry_counts: dict[str, int] = {}
        self.step_results: list[StepResult] = []
        self.step_outputs: dict[str, Any] = {}
        self.last_result: Optional[StepResult] = None
        self.started_at: Optional[datetime] = None
        self._resumed = False

        self.resolver_settings = {
            "sensor_wait": self.settings.SENSOR_READ_TIMEOUT,
            "ready_timeout": self.settings.ATTRIBUTE_READY_TIMEOUT,
        }

    # ─── Scope ─────────────────────────────────────────────────

    def scope_for(self, instance: Optional[StepInstance] = None, extra: Optional[dict] = None) -> Scope:
        """Variable scope for a step, in lookup order."""
        layers = []
        if extra:
            layers.append(MappingLayer(extra))
        if instance is not None:
            layers.append(instance.input_layer)
        layers.extend([
            MappingLayer(self.scratch),
            MappingLayer(self.input),
            LazyMappingLayer({
                "workflow": lambda: WorkflowModel(self, instance),
                "entity": lambda: self.entity,
            }),
            EntityLayer(self.entity),
            MappingLayer(self._metadata(instance)),
        ])
        return Scope(layers)

    def _metadata(self, instance: Optional[StepInstance]) -> dict:
        metadata = {"output": self.previous_output, "workflow_id": self.workflow_id}
        if self.error is not None:
            metadata["error"] = self.error
        if instance is not None:
            metadata.update(step_id=instance.step_id, index=instance.index)
            if instance.definition.name is not None:
                metadata["name"] = instance.definition.name
            if instance.error is not None:
                metadata["error"] = instance.error
        return metadata

    async def evaluate_output(self, expression: Any, result: Any) -> Any:
        """Evaluate an output remap against this run's final scope."""
        variables = dict(result) if isinstance(result, dict) else {}
        variables["output"] = result
        resolver = ExpressionResolver(self.scope_for().with_variables(variables), self.resolver_settings)
        return await resolver.resolve(expression)

    # ─── Lifecycle ─────────────────────────────────────────────

    def create_child(
        self,
        steps: list,
        entity: Optional[Entity] = None,
        input: Optional[dict] = None,
        scratch: Optional[dict] = None,
        name: Optional[str] = None,
    ) -> "WorkflowExecutionContext":
        """Create a nested context sharing the registry and checkpoint manager."""
        return WorkflowExecutionContext(
            entity=entity if entity is not None else self.entity,
            steps=steps,
            name=name,
            input=input,
            parent=self,
            registry=self.registry,
            checkpoint_manager=self.checkpoint_manager,
            scratch=scratch,
            depth=self.depth + 1,
            origin=WorkflowOrigin.NESTED,
        )

    async def run(self) -> Any:
        """Run the workflow to completion.

        Returns:
            The workflow output: the value of a ``return`` step, or the
            output of the last step executed

        Raises:
            WorkflowError: The failure no error handler dealt with
        """
        if self.status.is_terminal:
            raise WorkflowError(f"Workflow '{self.name}' has already run ({self.status.value})")

        self.status = WorkflowStatus.RUNNING
        self.started_at = self.started_at or datetime.now(timezone.utc)
        await self._checkpoint(
            CheckpointType.WORKFLOW_RESUMED if self._resumed else CheckpointType.WORKFLOW_STARTED
        )
        logger.info(
            "Workflow starting",
            workflow_id=self.workflow_id,
            name=self.name,
            entity=self.entity.entity_id if self.entity is not None else None,
            steps=len(self.steps),
            resumed=self._resumed,
        )
        start = time.monotonic()

        try:
            if self.timeout is not None:
                try:
                    output = await asyncio.wait_for(self._run_steps(), timeout=self.timeout)
                except asyncio.TimeoutError:
                    raise StepTimeoutError(f"Workflow '{self.name}' timed out after {self.timeout}s", self.timeout)
            else:
                output = await self._run_steps()
        except asyncio.CancelledError:
            self.status = WorkflowStatus.FAILED
            self.error = StepExecutionFailure(f"Workflow '{self.name}' was cancelled")
            logger.info("Workflow cancelled", workflow_id=self.workflow_id, name=self.name)
            await self._checkpoint(CheckpointType.WORKFLOW_FAILED, data={"error": "cancelled"})
            raise
        except WorkflowError as e:
            self.status = WorkflowStatus.FAILED
            self.error = e
            logger.info(
                "Workflow failed",
                workflow_id=self.workflow_id,
                name=self.name,
                error=e.message,
                duration_ms=round((time.monotonic() - start) * 1000, 2),
            )
            await self._checkpoint(CheckpointType.WORKFLOW_FAILED, data={"error": e.message})
            raise

        self.status = WorkflowStatus.SUCCEEDED
        self.output = output
        logger.info(
            "Workflow completed",
            workflow_id=self.workflow_id,
            name=self.name,
            duration_ms=round((time.monotonic() - start) * 1000, 2),
        )
        await self._checkpoint(CheckpointType.WORKFLOW_COMPLETED, data={"output": output})
        return output

    async def _run_steps(self) -> Any:
        while 0 <= self.current_index < len(self.steps):
            index = self.current_index
            instance = StepInstance(self, self.steps[index], index)
            await self._checkpoint(CheckpointType.STEP_STARTING, instance)
            started = datetime.now(timezone.utc)
            start = time.monotonic()

            try:
                if not await self._condition_holds(instance):
                    self._record(instance, StepStatus.SKIPPED, started, start)
                    logger.debug("Step skipped", workflow_id=self.workflow_id, step_id=instance.step_id)
                    await self._checkpoint(CheckpointType.STEP_SKIPPED, instance)
                    self.current_index = index + 1
                    continue
                output = await self._run_body(instance)
            except DefinitionError:
                raise
            except WorkflowError as error:
                self._record(instance, StepStatus.FAILED, started, start, error=error)
                await self._checkpoint(CheckpointType.STEP_FAILED, instance, {"error": error.message})
                transition = await self._handle_error(instance, error)
                if transition.kind == "return":
                    self.previous_output = transition.output
                    return transition.output
                if transition.kind == "goto":
                    self.current_index = transition.index
                    continue
                self._complete(instance, transition.output, started, start)
                next_id = transition.next or instance.definition.next
                self.current_index = self._successor(next_id, index)
                await self._checkpoint(CheckpointType.STEP_COMPLETED, instance, {"output": transition.output})
                continue

            if isinstance(output, WorkflowReturn):
                self._complete(instance, output.value, started, start)
                await self._checkpoint(CheckpointType.STEP_COMPLETED, instance, {"output": output.value})
                return output.value

            self._complete(instance, output, started, start)
            self.current_index = self._successor(instance.definition.next, index)
            await self._checkpoint(CheckpointType.STEP_COMPLETED, instance, {"output": output})

        return self.previous_output

    def _successor(self, next_id: Optional[str], index: int) -> int:
        if next_id is None:
            return index + 1
        if next_id == END_STEP:
            return len(self.steps)
        return self.step_ids[next_id]

    async def _condition_holds(self, instance: StepInstance, default_subject: LookupResult = ABSENT) -> bool:
        condition = instance.definition.condition
        if condition is None:
            return True
        evaluator = ConditionEvaluator(instance.resolver, self.entity, default_subject=default_subject)
        return await evaluator.evaluate(condition)

    async def _run_body(self, instance: StepInstance) -> Any:
        """Run a step's behavior with its timeout and apply its output remap."""
        definition = instance.definition
        step = self.registry.create_instance(definition.type)
        try:
            timeout = parse_duration(definition.timeout) if definition.timeout is not None else self.settings.WORKFLOW_STEP_TIMEOUT
        except ValueError as e:
            raise DefinitionError(f"Invalid timeout for step '{definition.label}': {e}")

        try:
            if timeout is not None:
                output = await asyncio.wait_for(step.run(instance), timeout=timeout)
            else:
                output = await step.run(instance)
        except asyncio.TimeoutError:
            raise StepTimeoutError(f"Step '{definition.label}' timed out after {timeout}s", timeout)
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and hasattr(task, "cancelling") and not task.cancelling():
                # Something the step awaited was cancelled, not this workflow
                raise StepExecutionFailure(f"Step '{definition.label}' was cancelled", step_id=instance.step_id)
            raise
        except WorkflowError:
            raise
        except Exception as e:
            raise StepExecutionFailure(str(e) or type(e).__name__, cause=e, step_id=instance.step_id)

        if definition.has_output and not isinstance(output, (WorkflowReturn, RetryStrategy)):
            variables = dict(output) if isinstance(output, dict) else {}
            variables["output"] = output
            output = await instance.resolver.with_variables(variables).resolve(definition.output)
        return output

    # ─── Error handling ────────────────────────────────────────

    async def _handle_error(self, instance: StepInstance, error: WorkflowError) -> _Transition:
        """Run the first matching error handler, or re-raise the error."""
        for position, handler in enumerate(instance.definition.on_error):
            handler_instance = StepInstance(
                self,
                handler,
                instance.index,
                error=error,
                step_id=f"{instance.step_id}-error-handler-{position + 1}",
            )
            if not await self._condition_holds(handler_instance, default_subject=found(error)):
                continue

            logger.info(
                "Running error handler",
                workflow_id=self.workflow_id,
                step_id=instance.step_id,
                handler=handler.type,
                error=error.message,
            )
            output = await self._run_body(handler_instance)

            if isinstance(output, RetryStrategy):
                return await self._retry(instance, position, output, error)
            if isinstance(output, WorkflowReturn):
                return _Transition("return", output=output.value)
            return _Transition("continue", output=output, next=handler.next)

        raise error

    async def _retry(
        self, instance: StepInstance, position: int, strategy: RetryStrategy, error: WorkflowError
    ) -> _Transition:
        key = f"{instance.step_id}:{position}"
        done = self.retry_counts.get(key, 0)
        if not strategy.should_retry(done):
            logger.info(
                "Retry limit reached",
                workflow_id=self.workflow_id,
                step_id=instance.step_id,
                limit=strategy.limit,
            )
            raise RetryLimitExceeded(error.message, cause=error, step_id=instance.step_id)

        self.retry_counts[key] = done + 1
        delay = strategy.compute_delay(done + 1)
        logger.info(
            "Retrying step",
            workflow_id=self.workflow_id,
            step_id=instance.step_id,
            attempt=done + 1,
            limit=strategy.limit,
            delay=delay,
            replay_from=strategy.replay_from.value,
        )
        await self._checkpoint(
            CheckpointType.STEP_RETRYING, instance, {"attempt": done + 1, "delay": delay, "error": error.message}
        )
        if delay > 0:
            await asyncio.sleep(delay)
        if strategy.replay_from == ReplayFrom.START:
            return _Transition("goto", index=0)
        return _Transition("goto", index=instance.index)

    # ─── Records ───────────────────────────────────────────────

    def _record(
        self,
        instance: StepInstance,
        status: StepStatus,
        started: datetime,
        start: float,
        output: Any = None,
        error: Optional[WorkflowError] = None,
    ) -> StepResult:
        result = StepResult(
            step_id=instance.step_id,
            index=instance.index,
            step_type=instance.definition.type,
            status=status,
            output=output,
            error=error.message if error is not None else None,
            started_at=started.isoformat(),
            completed_at=datetime.now(timezone.utc).isoformat(),
            duration_ms=int((time.monotonic() - start) * 1000),
            retry_count=sum(
                count for key, count in self.retry_counts.items()
                if key.startswith(f"{instance.step_id}:")
            ),
        )
        self.step_results.append(result)
        return result

    def _complete(self, instance: StepInstance, output: Any, started: datetime, start: float) -> None:
        self.last_result = self._record(instance, StepStatus.COMPLETED, started, start, output=output)
        self.previous_output = output
        self.step_outputs[instance.step_id] = output
        for key in [k for k in self.retry_counts if k.startswith(f"{instance.step_id}:")]:
            del self.retry_counts[key]

    # ─── Persistence ───────────────────────────────────────────

    def snapshot(self) -> WorkflowSnapshot:
        """Serializable state holding the unresolved steps."""
        snapshot = WorkflowSnapshot(self.workflow_id, self.name, self.raw_steps)
        snapshot.status = self.status.value
        snapshot.entity_id = self.entity.entity_id if self.entity is not None else None
        snapshot.parent_id = self.parent.workflow_id if self.parent is not None else None
        snapshot.origin = self.origin.value
        snapshot.input = dict(self.input)
        snapshot.scratch = dict(self.scratch)
        snapshot.current_index = self.current_index
        snapshot.previous_output = self.previous_output
        snapshot.step_outputs = dict(self.step_outputs)
        snapshot.retry_counts = dict(self.retry_counts)
        snapshot.output = self.output
        snapshot.error = getattr(self.error, "message", None) if self.error is not None else None
        snapshot.timeout = self.timeout
        snapshot.started_at = self.started_at
        return snapshot

    @classmethod
    def from_snapshot(
        cls,
        snapshot: WorkflowSnapshot,
        entity: Optional[Entity],
        registry: Optional[StepTypeRegistry] = None,
        checkpoint_manager: Optional[CheckpointManager] = None,
    ) -> "WorkflowExecutionContext":
        """Rebuild a context that continues from a snapshot's position."""
        context = cls(
            entity=entity,
            steps=snapshot.steps,
            name=snapshot.name,
            workflow_id=snapshot.workflow_id,
            input=snapshot.input,
            registry=registry,
            checkpoint_manager=checkpoint_manager,
            timeout=snapshot.timeout,
            scratch=snapshot.scratch,
            origin=WorkflowOrigin(snapshot.origin) if snapshot.origin else WorkflowOrigin.DIRECT,
        )
        context.current_index = snapshot.current_index
        context.previous_output = snapshot.previous_output
        context.step_outputs = dict(snapshot.step_outputs)
        context.retry_counts = dict(snapshot.retry_counts)
        context.started_at = snapshot.started_at
        context._resumed = True
        return context

    async def _checkpoint(
        self,
        checkpoint_type: CheckpointType,
        instance: Optional[StepInstance] = None,
        data: Optional[dict] = None,
    ) -> None:
        if self.checkpoint_manager is None:
            return
        await self.checkpoint_manager.save_checkpoint(
            self.snapshot(),
            checkpoint_type,
            step_id=instance.step_id if instance is not None else None,
            step_index=instance.index if instance is not None else None,
            data=data,
        )


# ─── Workflow Engine ───────────────────────────────────────────

class WorkflowEngine:
    """Starts, tracks and cancels top-level workflow runs."""

    def __init__(
        self,
        registry: Optional[StepTypeRegistry] = None,
        checkpoint_manager: Optional[CheckpointManager] = None,
        on_execution_complete: Optional[Callable] = None,
    ):
        self.registry = registry
        self.checkpoint_manager = checkpoint_manager
        self._on_execution_complete = on_execution_complete
        self._running_executions: dict[str, WorkflowExecutionContext] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def create_context(
        self,
        entity: Optional[Entity],
        steps: list,
        name: Optional[str] = None,
        input: Optional[dict] = None,
        timeout: Any = None,
        origin: WorkflowOrigin = WorkflowOrigin.DIRECT,
        workflow_id: Optional[str] = None,
    ) -> WorkflowExecutionContext:
        """Parse steps into a new context; raises DefinitionError if they are malformed."""
        return WorkflowExecutionContext(
            entity=entity,
            steps=steps,
            name=name,
            workflow_id=workflow_id,
            input=input,
            registry=self.registry,
            checkpoint_manager=self.checkpoint_manager,
            timeout=timeout,
            origin=origin,
        )

    async def invoke(
        self,
        entity: Optional[Entity],
        steps: list,
        name: Optional[str] = None,
        input: Optional[dict] = None,
        timeout: Any = None,
        origin: WorkflowOrigin = WorkflowOrigin.DIRECT,
    ) -> Any:
        """Run a workflow and return its output, or raise its failure."""
        context = self.create_context(entity, steps, name=name, input=input, timeout=timeout, origin=origin)
        return await self.execute(context)

    async def execute(self, context: WorkflowExecutionContext) -> Any:
        """Run a prepared context, tracking it while it runs."""
        self._running_executions[context.workflow_id] = context
        try:
            with structlog.contextvars.bound_contextvars(execution_id=context.workflow_id):
                return await context.run()
        finally:
            self._running_executions.pop(context.workflow_id, None)
            self._tasks.pop(context.workflow_id, None)
            if self._on_execution_complete:
                try:
                    result = self._on_execution_complete(context)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception as e:
                    logger.error("on_execution_complete callback failed", error=str(e))

    def start(
        self,
        entity: Optional[Entity],
        steps: list,
        name: Optional[str] = None,
        input: Optional[dict] = None,
        timeout: Any = None,
        origin: WorkflowOrigin = WorkflowOrigin.DIRECT,
    ) -> asyncio.Task:
        """Start a workflow in the background.

        The task is named after the workflow id, and resolves to the
        workflow output or raises its failure.
        """
        context = self.create_context(entity, steps, name=name, input=input, timeout=timeout, origin=origin)
        return self.start_context(context)

    def start_context(self, context: WorkflowExecutionContext) -> asyncio.Task:
        """Run a prepared context as a background task named after its id."""
        task = asyncio.get_running_loop().create_task(self.execute(context), name=context.workflow_id)
        self._tasks[context.workflow_id] = task
        return task

    async def cancel(self, workflow_id: str) -> bool:
        """Cancel a running workflow and everything it started.

        Returns:
            True if cancelled, False if not found
        """
        task = self._tasks.get(workflow_id)
        if task is None or task.done():
            return False
        task.cancel()
        logger.info("Workflow cancellation requested", workflow_id=workflow_id)
        try:
            await task
        except asyncio.CancelledError:
            pass
        except WorkflowError:
            pass
        return True

    def get_running_executions(self) -> dict[str, dict]:
        """Get status of all running workflows."""
        return {
            wid: {
                "name": ctx.name,
                "status": ctx.status.value,
                "origin": ctx.origin.value,
                "entity": ctx.entity.entity_id if ctx.entity is not None else None,
                "current_index": ctx.current_index,
                "steps_completed": sum(1 for r in ctx.step_results if r.status == StepStatus.COMPLETED),
                "steps_failed": sum(1 for r in ctx.step_results if r.status == StepStatus.FAILED),
            }
            for wid, ctx in self._running_executions.items()
        }

    async def resume(self, snapshot: WorkflowSnapshot, entity: Optional[Entity]) -> Any:
        """Continue an interrupted run from its snapshot."""
        context = WorkflowExecutionContext.from_snapshot(
            snapshot, entity, registry=self.registry, checkpoint_manager=self.checkpoint_manager
        )
        logger.info(
            "Resuming workflow",
            workflow_id=snapshot.workflow_id,
            name=snapshot.name,
            position=snapshot.current_index,
        )
        return await self.execute(context)


# ─── Singleton ─────────────────────────────────────────────────

_engine: Optional[WorkflowEngine] = None


def get_workflow_engine() -> WorkflowEngine:
    """Get or create the singleton WorkflowEngine."""
    global _engine
    if _engine is None:
        _engine = WorkflowEngine()
    return _engine
