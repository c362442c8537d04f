"""Basic step implementations.

Steps with no side effects on entities: no-op, log, sleep, return, fail.
"""

import asyncio
from typing import Any, Dict

import structlog

from core.constants import LogLevel
from core.exceptions import DefinitionError, StepExecutionFailure
from core.utils import parse_duration
from steps.base_step import BaseStep, WorkflowReturn

logger = structlog.get_logger(__name__)

# Messages of the log step go to their own logger so they can be routed separately
workflow_log = structlog.get_logger("workflow.log")


class NoOpStep(BaseStep):
    """Does nothing; useful as a jump target or placeholder."""

    step_type = "no-op"
    display_name = "No-op"
    description = "Does nothing"

    async def execute(self, instance) -> Any:
        return None


class LogStep(BaseStep):
    """Log a message.

    Input:
        message: Text to log (required)
        level: debug, info, warning or error (default: info)
        category: Optional category included with the event
    """

    step_type = "log"
    display_name = "Log"
    description = "Write a message to the workflow log"
    shorthand = "${message...}"

    async def execute(self, instance) -> Any:
        if not instance.has_input("message"):
            raise StepExecutionFailure("Missing required input: message")
        message = await instance.input("message", "string")
        level = str(await instance.input("level", default=LogLevel.INFO.value)).strip().lower()
        try:
            level = LogLevel(level)
        except ValueError:
            raise StepExecutionFailure(f"Invalid log level '{level}'")

        fields = {"workflow_id": instance.context.workflow_id, "step_id": instance.step_id}
        if instance.has_input("category"):
            fields["category"] = await instance.input("category", "string")

        getattr(workflow_log, level.value)(message, **fields)
        return None

    @classmethod
    def get_input_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "message": {"type": "string"},
                "level": {"type": "string", "enum": [lvl.value for lvl in LogLevel]},
                "category": {"type": "string"},
            },
            "required": ["message"],
        }


class SleepStep(BaseStep):
    """Sleep for a duration such as ``500ms``, ``2s`` or ``1m``."""

    step_type = "sleep"
    display_name = "Sleep"
    description = "Pause the workflow for a duration"
    shorthand = "${duration}"

    async def execute(self, instance) -> Any:
        raw = await instance.input("duration", default=None)
        if raw is None:
            raise StepExecutionFailure("Missing required input: duration")
        try:
            seconds = parse_duration(raw)
        except ValueError as e:
            raise StepExecutionFailure(str(e))
        if seconds is None:
            raise StepExecutionFailure(f"Sleep duration must be finite, got '{raw}'")
        await asyncio.sleep(seconds)
        return None

    def validate_definition(self, definition, registry, depth: int = 0) -> None:
        duration = definition.input.get("duration")
        if isinstance(duration, str) and "${" not in duration:
            try:
                parse_duration(duration)
            except ValueError as e:
                raise DefinitionError(f"Invalid sleep duration: {e}")


class ReturnStep(BaseStep):
    """End the current workflow with a value."""

    step_type = "return"
    display_name = "Return"
    description = "End the workflow, returning a value"
    shorthand = "${value...}"

    async def execute(self, instance) -> Any:
        if not instance.has_input("value"):
            return WorkflowReturn(None)
        return WorkflowReturn(await instance.evaluate_input("value"))


class FailStep(BaseStep):
    """Fail the workflow, optionally with a message."""

    step_type = "fail"
    display_name = "Fail"
    description = "Fail the workflow with a message"
    shorthand = "[ message ${message...} ]"

    async def execute(self, instance) -> Any:
        message = "Fail step"
        if instance.has_input("message"):
            message = await instance.input("message", "string")
        raise StepExecutionFailure(message, step_id=instance.step_id)


# Export for registry
BASIC_STEP_TYPES = {
    "no-op": NoOpStep,
    "log": LogStep,
    "sleep": SleepStep,
    "return": ReturnStep,
    "fail": FailStep,
}
