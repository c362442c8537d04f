"""
Base step interface for all workflow step implementations.

Every step type (let, set-sensor, log, nested workflow, etc.) inherits
from BaseStep and implements the execute() method.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog

if TYPE_CHECKING:
    from steps.registry import StepTypeRegistry
    from workflow.definitions import StepDefinition
    from workflow.engine import StepInstance

logger = structlog.get_logger(__name__)


class WorkflowReturn:
    """Output marker ending the current workflow with ``value``."""

    __slots__ = ("value",)

    def __init__(self, value: Any):
        self.value = value

    def __repr__(self) -> str:
        return f"WorkflowReturn({self.value!r})"


class BaseStep(ABC):
    """
    Abstract base class for all step implementations.

    Subclasses must implement:
    - execute(instance) -> output
    - step_type (class property)
    - display_name (class property)

    Subclasses may declare a ``shorthand`` pattern for single-line syntax
    and ``definition_fields``: keys read from the definition itself
    rather than treated as input.
    """

    step_type: str = "base"
    display_name: str = "Base Step"
    description: str = "Abstract base step"
    shorthand: Optional[str] = None
    definition_fields: frozenset = frozenset()

    @abstractmethod
    async def execute(self, instance: "StepInstance") -> Any:
        """
        Execute the step.

        Args:
            instance: The step being run, giving access to its definition,
                resolved input, workflow context and entity

        Returns:
            The step's output
        """
        pass

    async def run(self, instance: "StepInstance") -> Any:
        """
        Run the step with timing and logging.

        This is the main entry point called by the workflow engine. Failures
        are logged and re-raised for the engine's on-error handling.
        """
        start = time.monotonic()
        logger.debug(
            "Step starting",
            step_type=self.step_type,
            step_id=instance.step_id,
            workflow_id=instance.context.workflow_id,
        )
        try:
            output = await self.execute(instance)
        except asyncio.CancelledError:
            logger.info(
                "Step cancelled",
                step_type=self.step_type,
                step_id=instance.step_id,
                workflow_id=instance.context.workflow_id,
            )
            raise
        except Exception as e:
            logger.info(
                "Step failed",
                step_type=self.step_type,
                step_id=instance.step_id,
                workflow_id=instance.context.workflow_id,
                error=str(e),
                duration_ms=round((time.monotonic() - start) * 1000, 2),
            )
            raise

        logger.debug(
            "Step completed",
            step_type=self.step_type,
            step_id=instance.step_id,
            workflow_id=instance.context.workflow_id,
            duration_ms=round((time.monotonic() - start) * 1000, 2),
        )
        return output

    def validate_definition(self, definition: "StepDefinition", registry: "StepTypeRegistry", depth: int = 0) -> None:
        """Check a parsed definition; raise DefinitionError if it is invalid."""

    @classmethod
    def get_input_schema(cls) -> Dict[str, Any]:
        """
        Return JSON schema for step input.

        Override in subclasses to define expected input shape.
        """
        return {"type": "object", "properties": {}}
