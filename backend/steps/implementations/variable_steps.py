"""Workflow variable step implementations.

``let`` assigns a scratch variable from a value expression; ``transform``
does the same and then applies a pipeline of transforms to the value.
"""

import json
from typing import Any, Callable, Dict, Optional

import structlog
import yaml

from core.exceptions import DefinitionError, StepExecutionFailure
from steps.base_step import BaseStep
from workflow.expressions import coerce, find_placeholder_end, render_text, unwrap

logger = structlog.get_logger(__name__)


def assign_variable(scratch: dict, name: str, value: Any) -> None:
    """Set a scratch variable; ``a.b`` sets key ``b`` of map variable ``a``."""
    head, _, rest = name.partition(".")
    if not rest or head not in scratch or not isinstance(scratch[head], dict):
        scratch[name] = value
        return
    nested = dict(scratch[head])
    assign_variable(nested, rest, value)
    scratch[head] = nested


class LetStep(BaseStep):
    """Set a workflow scratch variable.

    Shorthand examples::

        let x = 1
        let integer count = ${count} + 1 ?? 0
        let trimmed map config = ${raw_yaml}

    Input:
        variable: Name of the variable (required)
        value: Value expression; omitted means null
        type: Optional type the value is coerced to
        trimmed: Strip whitespace from text before coercing
    """

    step_type = "let"
    display_name = "Let"
    description = "Set a workflow variable"
    shorthand = "[ ?${trimmed} trimmed ] [ ${type} ] ${variable} [ = ${value...} ]"

    async def execute(self, instance) -> Any:
        name = await _variable_name(instance)
        value = await instance.evaluate_input("value") if instance.has_input("value") else None

        type_name = await instance.input("type", default=None)
        trimmed = bool(await instance.input("trimmed", "boolean", default=False))
        if type_name is not None or trimmed:
            try:
                value = coerce(value, type_name, trim=trimmed)
            except Exception as e:
                raise StepExecutionFailure(
                    f"Cannot convert value for '{name}' to {type_name or 'trimmed text'}: {e}", cause=e
                )

        assign_variable(instance.context.scratch, name, value)
        logger.debug("variable_set", workflow_id=instance.context.workflow_id, variable=name)
        return value

    def validate_definition(self, definition, registry, depth: int = 0) -> None:
        if not definition.input.get("variable"):
            raise DefinitionError("let requires a variable name")


# ─── Transforms ───────────────────────────────────────────────

def _require_list(value: Any, op: str) -> list:
    value = unwrap(value)
    if isinstance(value, (list, tuple, set)):
        return list(value)
    raise StepExecutionFailure(f"Transform '{op}' requires a list, got {type(value).__name__}")


def _numbers(value: Any, op: str) -> list:
    items = _require_list(value, op)
    try:
        return [coerce(item, "number") if isinstance(item, str) else item for item in items]
    except Exception as e:
        raise StepExecutionFailure(f"Transform '{op}' requires numbers: {e}", cause=e)


def _transform_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise StepExecutionFailure(f"Transform 'json' could not parse text: {e}", cause=e)
    return json.dumps(value)


def _transform_yaml(value: Any) -> Any:
    if not isinstance(value, str):
        return yaml.safe_dump(value, default_flow_style=False)
    try:
        documents = list(yaml.safe_load_all(value))
    except yaml.YAMLError as e:
        raise StepExecutionFailure(f"Transform 'yaml' could not parse text: {e}", cause=e)
    return documents[-1] if documents else None


def _first(value: Any) -> Any:
    items = _require_list(value, "first")
    return items[0] if items else None


def _last(value: Any) -> Any:
    items = _require_list(value, "last")
    return items[-1] if items else None


def _size(value: Any) -> int:
    value = unwrap(value)
    if value is None:
        return 0
    if isinstance(value, (str, list, tuple, set, dict)):
        return len(value)
    raise StepExecutionFailure(f"Transform 'size' cannot measure {type(value).__name__}")


TRANSFORMS: Dict[str, Callable[[Any], Any]] = {
    "trim": lambda v: v.strip() if isinstance(v, str) else v,
    "json": _transform_json,
    "yaml": _transform_yaml,
    "max": lambda v: max(_numbers(v, "max")) if _numbers(v, "max") else None,
    "min": lambda v: min(_numbers(v, "min")) if _numbers(v, "min") else None,
    "sum": lambda v: sum(_numbers(v, "sum")),
    "size": _size,
    "first": _first,
    "last": _last,
    "to_string": render_text,
}

# Applied before the value is evaluated rather than to the result
WAIT_TRANSFORM = "wait"


def split_pipeline(text: str) -> list[str]:
    """Split ``value | op | op`` on bars outside placeholders and quotes."""
    parts: list[str] = []
    start = 0
    index = 0
    quote: Optional[str] = None
    while index < len(text):
        char = text[index]
        if quote:
            if char == "\\":
                index += 2
                continue
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
        elif text.startswith("${", index):
            end = find_placeholder_end(text, index)
            index = end + 1 if end >= 0 else len(text)
            continue
        elif char == "|":
            parts.append(text[start:index].strip())
            start = index + 1
        index += 1
    parts.append(text[start:].strip())
    return parts


class TransformStep(BaseStep):
    """Set a variable from a value passed through transforms.

    Shorthand example::

        transform integer total = ${workflow.scratch.sizes} | sum

    Transforms: trim, json, yaml, max, min, sum, size, first, last,
    to_string and wait (block until every referenced sensor is ready).
    """

    step_type = "transform"
    display_name = "Transform"
    description = "Set a workflow variable from transformed value"
    shorthand = "[ ${type} ] ${variable} = ${value...}"

    async def execute(self, instance) -> Any:
        name = await _variable_name(instance)
        raw_value = instance.raw_input("value")
        operations: list[str] = []
        if isinstance(raw_value, str):
            raw_value, *operations = split_pipeline(raw_value)
        operations.extend(_as_list(await instance.input("transform", default=None)))

        waiting = WAIT_TRANSFORM in operations
        value = await instance.evaluate(raw_value, wait=waiting, hide="value")

        for op in operations:
            if op == WAIT_TRANSFORM:
                continue
            if op not in TRANSFORMS:
                raise StepExecutionFailure(f"Unknown transform '{op}'")
            value = TRANSFORMS[op](unwrap(value))

        type_name = await instance.input("type", default=None)
        if type_name is not None:
            try:
                value = coerce(value, type_name)
            except Exception as e:
                raise StepExecutionFailure(f"Cannot convert value for '{name}' to {type_name}: {e}", cause=e)

        assign_variable(instance.context.scratch, name, value)
        return value

    def validate_definition(self, definition, registry, depth: int = 0) -> None:
        if not definition.input.get("variable"):
            raise DefinitionError("transform requires a variable name")
        operations = _as_list(definition.input.get("transform"))
        raw_value = definition.input.get("value")
        if isinstance(raw_value, str):
            operations.extend(split_pipeline(raw_value)[1:])
        for op in operations:
            if "${" not in op and op != WAIT_TRANSFORM and op not in TRANSFORMS:
                raise DefinitionError(f"Unknown transform '{op}'")


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part for part in split_pipeline(value) if part]
    return [str(part).strip() for part in value]


async def _variable_name(instance) -> str:
    name = await instance.input("variable", "string", default=None)
    if not name:
        raise StepExecutionFailure("Missing required input: variable")
    return name


# Export for registry
VARIABLE_STEP_TYPES = {
    "let": LetStep,
    "transform": TransformStep,
}
