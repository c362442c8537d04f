"""
Step Type Registry: central registry for all available workflow step types.

Maps step type names to built-in implementations or to registered custom
types ("beans"): reusable step templates with their own parameters,
shorthand and output. Also turns authored steps (shorthand strings or
mappings) into immutable StepDefinitions.
"""

import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Type, Union

import structlog
import yaml

from app.config import get_settings
from core.exceptions import DefinitionError
from core.utils import deep_merge
from steps.base_step import BaseStep
from steps.implementations.basic_steps import BASIC_STEP_TYPES
from steps.implementations.entity_steps import ENTITY_STEP_TYPES
from steps.implementations.variable_steps import VARIABLE_STEP_TYPES
from steps.implementations.workflow_step import WORKFLOW_STEP_TYPES
from workflow.concurrency import parse_concurrency
from workflow.conditions import validate_condition
from workflow.definitions import STRUCTURAL_KEYS, StepDefinition, check_step_ids
from workflow.shorthand import parse_shorthand

logger = structlog.get_logger(__name__)

_SHORTHAND_KEYS = ("s", "step")


@dataclass(frozen=True)
class BeanDefinition:
    """A registered custom step type."""

    name: str
    version: str
    plan: dict

    @property
    def base_type(self) -> str:
        return str(self.plan.get("type", "")).strip()

    @property
    def is_workflow(self) -> bool:
        return self.base_type == "workflow"


class StepTypeRegistry:
    """Central registry for all step type implementations."""

    def __init__(self):
        self._steps: Dict[str, Type[BaseStep]] = {}
        self._beans: Dict[str, Dict[str, BeanDefinition]] = {}
        self._latest: Dict[str, BeanDefinition] = {}
        self._lock = threading.Lock()
        self._register_builtin_steps()

    def _register_builtin_steps(self):
        """Register all built-in step types."""
        # no-op, log, sleep, fail, return
        for step_type, step_class in BASIC_STEP_TYPES.items():
            self.register(step_type, step_class)

        # let, transform
        for step_type, step_class in VARIABLE_STEP_TYPES.items():
            self.register(step_type, step_class)

        # set-sensor, clear-sensor, set-config, invoke-effector
        for step_type, step_class in ENTITY_STEP_TYPES.items():
            self.register(step_type, step_class)

        # workflow, retry
        for step_type, step_class in WORKFLOW_STEP_TYPES.items():
            self.register(step_type, step_class)

    # ─── Registration ──────────────────────────────────────────

    def register(self, step_type: str, step_class: Type[BaseStep]):
        """Register a built-in step type."""
        with self._lock:
            self._steps[step_type] = step_class

    def register_bean(self, name: str, version: str, plan: Union[str, dict]) -> BeanDefinition:
        """Register a custom step type.

        Args:
            name: Type name used in step definitions
            version: Version label; the most recent registration is used
            plan: Step or workflow definition, as a mapping or YAML text

        Raises:
            DefinitionError: If the plan is not a mapping with a type
        """
        if isinstance(plan, str):
            try:
                plan = yaml.safe_load(plan)
            except yaml.YAMLError as e:
                raise DefinitionError(f"Invalid plan for step type '{name}': {e}")
        if not isinstance(plan, dict) or not plan.get("type"):
            raise DefinitionError(f"Plan for step type '{name}' must be a mapping with a 'type'")

        bean = BeanDefinition(name=name, version=str(version), plan=dict(plan))
        with self._lock:
            self._beans.setdefault(name, {})[bean.version] = bean
            self._latest[name] = bean
        logger.info("Step type registered", step_type=name, version=bean.version, base_type=bean.base_type)
        return bean

    def unregister_bean(self, name: str) -> None:
        with self._lock:
            self._beans.pop(name, None)
            self._latest.pop(name, None)

    # ─── Lookup ────────────────────────────────────────────────

    def resolve(self, name: str) -> Optional[Union[Type[BaseStep], BeanDefinition]]:
        """Resolve a type name to a step class or a custom type."""
        if not isinstance(name, str):
            return None
        for candidate in (name, name.strip().lower().replace("_", "-")):
            if candidate in self._latest:
                return self._latest[candidate]
            if candidate in self._steps:
                return self._steps[candidate]
        return None

    def get(self, step_type: str) -> Optional[Type[BaseStep]]:
        """Get a built-in step class by type string."""
        resolved = self.resolve(step_type)
        return resolved if isinstance(resolved, type) else None

    def create_instance(self, step_type: str) -> BaseStep:
        """Create a new instance of a built-in step by type."""
        step_class = self.get(step_type)
        if step_class is None:
            raise DefinitionError(f"failed to resolve step: {step_type}")
        return step_class()

    def list_all(self) -> list:
        """List all registered step types with metadata."""
        builtin = [
            {
                "step_type": step_type,
                "display_name": cls.display_name,
                "description": cls.description,
                "shorthand": cls.shorthand,
                "input_schema": cls.get_input_schema(),
            }
            for step_type, cls in self._steps.items()
        ]
        custom = [
            {
                "step_type": bean.name,
                "version": bean.version,
                "base_type": bean.base_type,
                "shorthand": bean.plan.get("shorthand"),
                "parameters": bean.plan.get("parameters") or {},
            }
            for bean in self._latest.values()
        ]
        return builtin + custom

    @property
    def available_types(self) -> list:
        return list(self._steps.keys()) + list(self._latest.keys())

    # ─── Parsing ───────────────────────────────────────────────

    def parse_steps(self, raw_steps: Any, depth: int = 0) -> list[StepDefinition]:
        """Parse an authored step list.

        Raises:
            DefinitionError: On unknown types, bad shorthand, duplicate ids
                or ``next`` targets that do not exist
        """
        if raw_steps is None:
            return []
        if not isinstance(raw_steps, list):
            raise DefinitionError(f"Workflow steps must be a list, got {type(raw_steps).__name__}")
        steps = [self.parse_step(raw, depth) for raw in raw_steps]
        check_step_ids(steps)
        return steps

    def parse_step(self, raw: Any, depth: int = 0) -> StepDefinition:
        """Parse one authored step into a StepDefinition."""
        if depth > get_settings().WORKFLOW_MAX_NESTING_DEPTH:
            raise DefinitionError("Workflow definition is nested too deeply")

        mapping, shorthand_text = self._normalize(raw)
        mapping = self._expand(mapping, shorthand_text, depth)

        step_type = mapping["type"]
        step_class = self.get(step_type)
        if step_class is None:
            raise DefinitionError(f"failed to resolve step: {step_type}")

        fields: dict[str, Any] = {}
        extra_input: dict[str, Any] = {}
        for key, value in mapping.items():
            if key in STRUCTURAL_KEYS or key in step_class.definition_fields or key == "bean":
                fields[key] = value
            else:
                extra_input[key] = value
        if "on_error" in fields:
            fields["on-error"] = fields.pop("on_error")

        explicit_input = fields.get("input") or {}
        if not isinstance(explicit_input, dict):
            raise DefinitionError(f"Step '{step_type}' input must be a mapping")
        fields["input"] = deep_merge(extra_input, explicit_input)
        fields["type"] = step_type

        handlers = fields.get("on-error")
        if handlers is not None:
            if not isinstance(handlers, list):
                handlers = [handlers]
            fields["on-error"] = [self.parse_step(handler, depth + 1) for handler in handlers]

        definition = StepDefinition.model_validate(fields)
        self._validate(definition, step_class, depth)
        return definition

    def resolve_step(self, raw: Any, known_ids: Optional[set] = None, depth: int = 0) -> StepDefinition:
        """Parse a single step, checking its ``next`` targets against ``known_ids``."""
        definition = self.parse_step(raw, depth)
        if known_ids is not None:
            check_step_ids([definition], extra_targets=set(known_ids))
        return definition

    def _normalize(self, raw: Any) -> tuple[dict, Optional[str]]:
        """Turn the authored form into a mapping plus any unparsed shorthand."""
        if isinstance(raw, str):
            text = raw.strip()
            if not text:
                raise DefinitionError("failed to resolve step: empty step")
            step_type, _, rest = text.partition(" ")
            return {"type": step_type}, rest.strip() or None

        if not isinstance(raw, dict):
            raise DefinitionError(f"failed to resolve step: {raw!r}")

        mapping = dict(raw)
        shorthand_key = next((k for k in _SHORTHAND_KEYS if k in mapping), None)
        if shorthand_key is not None:
            text = str(mapping.pop(shorthand_key)).strip()
            step_type, _, rest = text.partition(" ")
            if "type" in mapping and mapping["type"] != step_type:
                raise DefinitionError(
                    f"Step shorthand '{text}' conflicts with type '{mapping['type']}'"
                )
            mapping["type"] = step_type
            return mapping, rest.strip() or None

        if not mapping.get("type"):
            raise DefinitionError(f"Step definition has no type: {raw!r}")
        return mapping, None

    def _expand(self, mapping: dict, shorthand_text: Optional[str], depth: int) -> dict:
        """Apply shorthand and custom-type plans until a built-in type remains."""
        step_type = str(mapping["type"]).strip()
        resolved = self.resolve(step_type)
        if resolved is None:
            raise DefinitionError(f"failed to resolve step: {step_type}")

        if isinstance(resolved, BeanDefinition):
            return self._expand_bean(resolved, mapping, shorthand_text, depth)

        mapping = dict(mapping)
        mapping["type"] = resolved.step_type
        if shorthand_text is not None:
            parsed = parse_shorthand(resolved.shorthand, shorthand_text, resolved.step_type)
            use_site = {k: v for k, v in mapping.items() if k != "type"}
            mapping = deep_merge({"type": resolved.step_type, "input": {}}, {"input": parsed})
            mapping = deep_merge(mapping, use_site)
        return mapping

    def _expand_bean(self, bean: BeanDefinition, mapping: dict, shorthand_text: Optional[str], depth: int) -> dict:
        if depth > get_settings().WORKFLOW_MAX_NESTING_DEPTH:
            raise DefinitionError(f"Custom step type '{bean.name}' expands too deeply")

        plan = dict(bean.plan)
        use_site = {k: v for k, v in mapping.items() if k != "type"}

        if bean.is_workflow:
            if "steps" in use_site:
                raise DefinitionError(
                    f"Custom workflow step '{bean.name}' does not allow 'steps' to be specified where it is used"
                )
            if "parameters" in use_site:
                raise DefinitionError(
                    f"Custom workflow step '{bean.name}' does not allow 'parameters' to be specified where it is used"
                )
            expanded: dict[str, Any] = {
                "type": "workflow",
                "bean": bean.name,
                "steps": plan.get("steps") or [],
                "parameters": plan.get("parameters") or {},
                "input": dict(plan.get("input") or {}),
            }
            if "output" in plan:
                expanded["workflow_output"] = plan["output"]
            for key in ("target", "concurrency", "timeout", "condition", "on-error"):
                if key in plan:
                    expanded[key] = plan[key]
            if shorthand_text is not None:
                parsed = parse_shorthand(plan.get("shorthand"), shorthand_text, bean.name)
                expanded["input"] = deep_merge(expanded["input"], parsed)
            return deep_merge(expanded, use_site)

        # Extending a plain step: the plan supplies defaults for the use site
        base = {k: v for k, v in plan.items() if k != "shorthand"}
        if shorthand_text is not None and plan.get("shorthand"):
            parsed = parse_shorthand(plan["shorthand"], shorthand_text, bean.name)
            base = deep_merge(base, {"input": parsed})
            shorthand_text = None
        merged = deep_merge(base, use_site)
        merged["type"] = bean.base_type
        return self._expand(merged, shorthand_text, depth + 1)

    def _validate(self, definition: StepDefinition, step_class: Type[BaseStep], depth: int) -> None:
        validate_condition(definition.condition)
        for handler in definition.on_error:
            validate_condition(handler.condition)

        if definition.concurrency is not None:
            if definition.target is None:
                raise DefinitionError(f"Step '{definition.label}' has concurrency but no target")
            if not (isinstance(definition.concurrency, str) and "${" in definition.concurrency):
                parse_concurrency(definition.concurrency)

        if definition.target is not None and step_class.step_type != "workflow":
            raise DefinitionError(
                f"Step '{definition.label}' of type '{definition.type}' cannot have a target; "
                "use a nested workflow step"
            )

        step_class().validate_definition(definition, self, depth=depth)

    def parse_nested(self, raw_steps: Any, depth: int) -> list[StepDefinition]:
        """Parse the steps of a nested workflow."""
        return self.parse_steps(raw_steps, depth + 1)


# Singleton
_registry: Optional[StepTypeRegistry] = None


def get_step_registry() -> StepTypeRegistry:
    """Get or create the singleton step registry."""
    global _registry
    if _registry is None:
        _registry = StepTypeRegistry()
    return _registry
