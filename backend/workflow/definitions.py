"""Typed, immutable step definitions.

Definitions are built by the step registry from the authored form (a
shorthand string or a mapping) and never mutated afterwards. The authored
form itself is kept by the execution context so that snapshots hold the
unresolved steps.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.constants import END_STEP
from core.exceptions import DefinitionError

# Keys interpreted by the engine on every step; anything else is step input
STRUCTURAL_KEYS = frozenset({
    "id",
    "name",
    "type",
    "input",
    "output",
    "condition",
    "next",
    "on-error",
    "on_error",
    "timeout",
    "target",
    "concurrency",
})


class StepDefinition(BaseModel):
    """One step of a workflow.

    ``input`` holds unresolved values; type-specific structural fields
    (such as a nested workflow's ``steps``) are kept as model extras.
    """

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    id: Optional[str] = None
    name: Optional[str] = None
    type: str
    input: dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    condition: Any = None
    next: Optional[str] = None
    on_error: list["StepDefinition"] = Field(default_factory=list, alias="on-error")
    timeout: Any = None
    target: Any = None
    concurrency: Any = None
    bean: Optional[str] = None

    @field_validator("id", "next", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if value is None:
            return None
        return str(value)

    @property
    def has_output(self) -> bool:
        """Whether an ``output`` remap was authored (even if null)."""
        return "output" in self.model_fields_set

    @property
    def extras(self) -> dict[str, Any]:
        return dict(self.model_extra or {})

    def extra(self, key: str, default: Any = None) -> Any:
        return (self.model_extra or {}).get(key, default)

    @property
    def label(self) -> str:
        return self.name or self.id or self.type


StepDefinition.model_rebuild()


def check_step_ids(steps: list[StepDefinition], extra_targets: Optional[set] = None) -> dict[str, int]:
    """Validate ids and ``next`` references of a step list.

    Returns:
        Mapping of step id to index

    Raises:
        DefinitionError: On duplicate ids or unknown ``next`` targets
    """
    index: dict[str, int] = {}
    for position, step in enumerate(steps):
        if step.id is None:
            continue
        if step.id == END_STEP:
            raise DefinitionError(f"Step id '{END_STEP}' is reserved")
        if step.id in index:
            raise DefinitionError(f"Duplicate step id '{step.id}'")
        index[step.id] = position

    known = set(index) | {END_STEP} | (extra_targets or set())
    for step in steps:
        if step.next is not None and step.next not in known:
            raise DefinitionError(f"Step '{step.label}' has next '{step.next}' which is not a step id")
        for handler in step.on_error:
            if handler.next is not None and handler.next not in known:
                raise DefinitionError(
                    f"Error handler of step '{step.label}' has next '{handler.next}' which is not a step id"
                )
    return index
