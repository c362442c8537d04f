"""Structured conditions gating steps, error handlers and triggers.

A condition is a mapping. ``target`` (an expression) or ``sensor`` (an
attribute name on the entity) selects the subject; every other key is a
check on that subject, and all checks must hold::

    condition:
      target: ${workflow.scratch.count}
      when: present_non_null
      any:
        - equals: 0
        - regex: "1.*"

Nested checks under ``not``, ``any``, ``all`` and ``assert`` inherit the
subject unless they select their own.
"""

import re
from typing import Any, Optional

import structlog

from core.constants import ConditionWhen
from core.exceptions import (
    ConditionAssertionFailure,
    DefinitionError,
    UnresolvableExpression,
    UnresolveableCondition,
)
from entities.base import Entity
from workflow.expressions import (
    ABSENT,
    ExpressionResolver,
    LookupResult,
    found,
    render_text,
    type_for_name,
    unwrap,
)

logger = structlog.get_logger(__name__)

SUBJECT_KEYS = {"target", "sensor"}

CHECK_KEYS = {
    "equals",
    "regex",
    "when",
    "assert",
    "not",
    "any",
    "all",
    "instance_of",
    "less_than",
    "greater_than",
    "has_element",
}

_KEY_ALIASES = {
    "instanceof": "instance_of",
    "javainstanceof": "instance_of",
    "lessthan": "less_than",
    "greaterthan": "greater_than",
    "haselement": "has_element",
}

_TOLERATES_ABSENCE = {ConditionWhen.ABSENT, ConditionWhen.ABSENT_OR_NULL}


def _normalize_key(key: Any) -> str:
    text = str(key).replace("-", "_")
    return _KEY_ALIASES.get(text.lower().replace("_", ""), text)


def validate_condition(condition: Any) -> None:
    """Check a condition's shape before it is ever evaluated.

    Raises:
        UnresolveableCondition: If the condition is not a mapping or uses an unknown key
    """
    if condition is None:
        return
    if isinstance(condition, str) and condition.strip().startswith("${"):
        return
    if not isinstance(condition, dict):
        raise UnresolveableCondition(
            f"Condition is unresolveable: expected a mapping with a target, got {_describe(condition)}",
            condition,
        )
    for key, value in condition.items():
        name = _normalize_key(key)
        if name in SUBJECT_KEYS:
            continue
        if name not in CHECK_KEYS:
            raise UnresolveableCondition(f"Condition is unresolveable: unknown key '{key}'", condition)
        if name == "when":
            try:
                ConditionWhen(str(value).strip().lower())
            except ValueError:
                raise UnresolveableCondition(
                    f"Condition is unresolveable: invalid 'when' value '{value}'", condition
                )
        elif name in ("any", "all"):
            if not isinstance(value, list):
                raise UnresolveableCondition(
                    f"Condition is unresolveable: '{key}' requires a list of conditions", condition
                )
            for nested in value:
                validate_condition(nested)
        elif name == "not" or (name == "assert" and isinstance(value, (dict, list))):
            validate_condition(value)


def _describe(condition: Any) -> str:
    if isinstance(condition, list):
        keys = [next(iter(item)) for item in condition if isinstance(item, dict) and item]
        if keys:
            return f"list with keys {', '.join(repr(k) for k in keys)}"
        return f"list {condition!r}"
    return repr(condition)


def _values_equal(actual: Any, expected: Any) -> bool:
    actual = unwrap(actual)
    expected = unwrap(expected)
    if actual == expected and type(actual) is not bool and type(expected) is not bool:
        return True
    if isinstance(actual, bool) or isinstance(expected, bool):
        if isinstance(actual, bool) and isinstance(expected, bool):
            return actual == expected
    if isinstance(actual, dict) and isinstance(expected, dict):
        return actual.keys() == expected.keys() and all(
            _values_equal(actual[k], expected[k]) for k in actual
        )
    if isinstance(actual, (list, tuple)) and isinstance(expected, (list, tuple)):
        return len(actual) == len(expected) and all(
            _values_equal(a, e) for a, e in zip(actual, expected)
        )
    scalars = (str, int, float, bool)
    if isinstance(actual, scalars) and isinstance(expected, scalars):
        return render_text(actual) == render_text(expected)
    if isinstance(actual, Entity) or isinstance(expected, Entity):
        return render_text(actual) == render_text(expected)
    return False


def _is_truthy(value: Any) -> bool:
    value = unwrap(value)
    if isinstance(value, str):
        return value.strip().lower() not in ("", "false", "no", "0", "null")
    return bool(value)


def _compare(actual: Any, expected: Any) -> Optional[int]:
    try:
        a, b = float(unwrap(actual)), float(unwrap(expected))
    except (TypeError, ValueError):
        a, b = render_text(actual), render_text(expected)
    if a < b:
        return -1
    if a > b:
        return 1
    return 0


class ConditionEvaluator:
    """Evaluates conditions using an expression resolver.

    Args:
        resolver: Resolver for ``target`` and check values
        entity: Entity whose attributes ``sensor`` refers to
        default_subject: Subject used when a condition selects none
            (the error, for on-error handlers)
    """

    def __init__(
        self,
        resolver: ExpressionResolver,
        entity: Optional[Entity] = None,
        default_subject: LookupResult = ABSENT,
    ):
        self.resolver = resolver
        self.entity = entity
        self.default_subject = default_subject

    async def evaluate(self, condition: Any) -> bool:
        """Evaluate a condition; None always holds."""
        if condition is None:
            return True
        if isinstance(condition, str) and condition.strip().startswith("${"):
            condition = await self.resolver.resolve(condition)
            if condition is None:
                return True
        validate_condition(condition)
        result = await self._evaluate(condition, self.default_subject, subject_is_unresolved=False)
        logger.debug("condition_evaluated", condition=condition, result=result)
        return result

    async def _select_subject(self, condition: dict, inherited: LookupResult) -> tuple[LookupResult, bool]:
        """Returns the subject and whether it came from an unresolvable expression."""
        for key, value in condition.items():
            name = _normalize_key(key)
            if name == "target":
                if isinstance(value, str) and "${" in value:
                    try:
                        result = await self.resolver.lookup(value)
                    except UnresolvableExpression:
                        return ABSENT, True
                    return result, not result.found
                return found(await self.resolver.resolve(value)), False
            if name == "sensor":
                return await self._sensor_subject(value), False
        return inherited, False

    async def _sensor_subject(self, spec: Any) -> LookupResult:
        entity = self.entity
        if isinstance(spec, dict):
            if spec.get("entity") is not None:
                entity = unwrap(await self.resolver.resolve(spec["entity"]))
            spec = spec.get("name")
        name = await self.resolver.resolve(spec)
        if not isinstance(entity, Entity):
            raise DefinitionError(f"Condition sensor '{name}' has no entity")
        if entity.has_attribute(str(name)):
            return found(entity.get_attribute(str(name)))
        return ABSENT

    async def _evaluate(self, condition: dict, inherited: LookupResult, subject_is_unresolved: bool) -> bool:
        subject, unresolved = await self._select_subject(condition, inherited)
        if not any(_normalize_key(k) in SUBJECT_KEYS for k in condition):
            unresolved = subject_is_unresolved

        checks = [(k, _normalize_key(k), v) for k, v in condition.items() if _normalize_key(k) not in SUBJECT_KEYS]

        when = None
        for _, name, value in checks:
            if name == "when":
                when = ConditionWhen(str(value).strip().lower())

        if unresolved and when not in _TOLERATES_ABSENCE:
            target = condition.get("target")
            raise UnresolvableExpression(
                f"Condition target '{target}' is unresolveable and absence is not tolerated", str(target)
            )

        if not checks:
            return subject.found and _is_truthy(subject.value)

        if when is not None and not self._check_when(when, subject):
            return False

        for key, name, value in checks:
            if name == "when":
                continue
            if not await self._check(key, name, value, subject, unresolved):
                return False
        return True

    @staticmethod
    def _check_when(when: ConditionWhen, subject: LookupResult) -> bool:
        if when == ConditionWhen.PRESENT:
            return subject.found
        if when == ConditionWhen.ABSENT:
            return not subject.found
        if when == ConditionWhen.PRESENT_NON_NULL:
            return subject.found and subject.value is not None
        return not subject.found or subject.value is None

    async def _nested(self, value: Any, subject: LookupResult, unresolved: bool) -> bool:
        if isinstance(value, dict):
            return await self._evaluate(value, subject, unresolved)
        # A bare value under not/any/all is shorthand for equals
        return await self._evaluate({"equals": value}, subject, unresolved)

    async def _check(self, key: str, name: str, value: Any, subject: LookupResult, unresolved: bool) -> bool:
        if name == "not":
            return not await self._nested(value, subject, unresolved)
        if name == "any":
            for nested in value:
                if await self._nested(nested, subject, unresolved):
                    return True
            return False
        if name == "all":
            for nested in value:
                if not await self._nested(nested, subject, unresolved):
                    return False
            return True
        if name == "assert":
            if isinstance(value, dict):
                holds = await self._evaluate(value, subject, unresolved)
            else:
                expected_type = await self.resolver.resolve(value)
                holds = subject.found and self._is_instance(subject.value, expected_type)
            if not holds:
                raise ConditionAssertionFailure(
                    f"Condition assertion failed: {key}={value!r} for value {subject.value!r}"
                )
            return True

        if not subject.found:
            return False
        actual = subject.value
        expected = await self.resolver.resolve(value)

        if name == "equals":
            return _values_equal(actual, expected)
        if name == "regex":
            return re.fullmatch(str(expected), render_text(actual) if actual is not None else "", re.DOTALL) is not None
        if name == "instance_of":
            return self._is_instance(actual, expected)
        if name == "less_than":
            return actual is not None and _compare(actual, expected) < 0
        if name == "greater_than":
            return actual is not None and _compare(actual, expected) > 0
        if name == "has_element":
            actual = unwrap(actual)
            return isinstance(actual, (list, tuple, set)) and any(_values_equal(item, expected) for item in actual)
        raise UnresolveableCondition(f"Condition is unresolveable: unknown key '{key}'")

    @staticmethod
    def _is_instance(value: Any, type_name: Any) -> bool:
        value = unwrap(value)
        if isinstance(type_name, str) and type_name.strip().lower() in ("entity", "resource"):
            return isinstance(value, Entity)
        target = type_for_name(type_name)
        if target is bool:
            return isinstance(value, bool)
        if target is int:
            return isinstance(value, int) and not isinstance(value, bool)
        if target is float:
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        try:
            return isinstance(value, target)
        except TypeError:
            return value is not None
