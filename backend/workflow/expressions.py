"""Expression resolution for workflow step definitions.

Strings may embed ``${...}`` placeholders which are looked up against a
layered scope. A string made of exactly one placeholder resolves to the
typed value; otherwise each placeholder is rendered as text.

Inside a placeholder:

- paths: ``entity.sensor.host.name``, ``items[0]``, ``m["a key"]``
- literals: numbers, quoted strings, ``true``, ``false``, ``null``
- arithmetic: ``+ - * /``, unary minus, parentheses
- defaults: ``a ?? b`` yields ``b`` when ``a`` is unresolvable or null

Value expressions (``let``, ``transform``) may also combine placeholders
with operators outside of ``${}``, e.g. ``${x} + 1 ?? 0``.
"""

import asyncio
import json
import re
from abc import ABC, abstractmethod
from contextlib import contextmanager
from functools import lru_cache
from typing import Any, Callable, Iterable, NamedTuple, Optional, Union

import structlog
import yaml
from pydantic import TypeAdapter

from core.exceptions import StepExecutionFailure, UnresolvableExpression
from core.utils import to_json_safe
from entities.base import Entity

logger = structlog.get_logger(__name__)


# ─── Lookup Results ───────────────────────────────────────────

class LookupResult(NamedTuple):
    """Outcome of a lookup; ``found`` distinguishes absent from null."""

    found: bool
    value: Any = None


ABSENT = LookupResult(False)


def found(value: Any) -> LookupResult:
    return LookupResult(True, value)


# ─── Template Models ──────────────────────────────────────────

class TemplateModel(ABC):
    """Object exposing named fields to expressions."""

    @abstractmethod
    async def get(self, key: str) -> LookupResult:
        """Look up a single field."""

    async def get_path(self, names: list[str]) -> tuple[LookupResult, int]:
        """Look up the first field, joining dotted names when needed.

        Returns the result and how many of ``names`` it consumed, so that
        ``a.b`` stored as one key is still reachable.
        """
        for count in range(1, len(names) + 1):
            result = await self.get(".".join(names[:count]))
            if result.found:
                return result, count
        return ABSENT, 1


class ScopeLayer(ABC):
    """One layer of the variable scope."""

    @abstractmethod
    async def lookup(self, name: str) -> LookupResult:
        """Look up a top-level name."""


class MappingLayer(ScopeLayer):
    """Layer backed by a plain mapping (scratch variables, extras, metadata)."""

    def __init__(self, values: Optional[dict]):
        self.values = values if values is not None else {}

    async def lookup(self, name: str) -> LookupResult:
        if name in self.values:
            return found(self.values[name])
        return ABSENT


class LazyMappingLayer(ScopeLayer):
    """Layer whose values are computed on first access."""

    def __init__(self, factories: dict[str, Callable[[], Any]]):
        self.factories = factories

    async def lookup(self, name: str) -> LookupResult:
        factory = self.factories.get(name)
        if factory is None:
            return ABSENT
        value = factory()
        if asyncio.iscoroutine(value):
            value = await value
        return found(value)


class EntityLayer(ScopeLayer):
    """Entity attributes, then entity config, without waiting."""

    def __init__(self, entity: Optional[Entity]):
        self.entity = entity

    async def lookup(self, name: str) -> LookupResult:
        if self.entity is None:
            return ABSENT
        if self.entity.has_attribute(name):
            return found(self.entity.get_attribute(name))
        if self.entity.has_config(name):
            return found(self.entity.get_config(name))
        return ABSENT


class InputLayer(ScopeLayer):
    """The current step's ``input``, resolved on demand.

    A name that is being resolved is hidden from its own resolution so that
    ``input: {name: "${name}"}`` reads ``name`` from the outer layers.
    """

    def __init__(self, raw_input: Optional[dict], settings: Optional[dict] = None):
        self.raw_input = raw_input or {}
        self.settings = settings or {}
        self.scope: Optional["Scope"] = None
        self._resolving: set[str] = set()
        self._cache: dict[str, Any] = {}

    async def lookup(self, name: str) -> LookupResult:
        if name not in self.raw_input or name in self._resolving or self.scope is None:
            return ABSENT
        if name in self._cache:
            return found(self._cache[name])
        with self.hiding(name):
            value = await ExpressionResolver(self.scope, self.settings).resolve(self.raw_input[name])
        self._cache[name] = value
        return found(value)

    @contextmanager
    def hiding(self, name: str):
        """Hide ``name`` while its own value is being computed."""
        already = name in self._resolving
        self._resolving.add(name)
        try:
            yield
        finally:
            if not already:
                self._resolving.discard(name)


class Scope(TemplateModel):
    """Ordered list of layers; the first layer that knows a name wins."""

    def __init__(self, layers: Iterable[ScopeLayer]):
        self.layers = list(layers)
        for layer in self.layers:
            if isinstance(layer, InputLayer) and layer.scope is None:
                layer.scope = self

    async def get(self, key: str) -> LookupResult:
        for layer in self.layers:
            result = await layer.lookup(key)
            if result.found:
                return result
        return ABSENT

    def with_variables(self, variables: dict) -> "Scope":
        """New scope with ``variables`` taking precedence over every layer."""
        return Scope([MappingLayer(variables), *self.layers])


# ─── Entity Models ────────────────────────────────────────────

class SensorModel(TemplateModel):
    """``entity.sensor.X``: current attribute value.

    Waits up to ``wait`` seconds for an attribute that is not yet ready;
    ``wait=None`` waits without limit and ``0`` never waits, so an
    unpublished attribute is simply absent.
    """

    def __init__(self, entity: Entity, wait: Optional[float] = 0.0):
        self.entity = entity
        self.wait = wait

    async def get(self, key: str) -> LookupResult:
        if self.entity.has_attribute(key) and (self.wait == 0 or self.entity.get_attribute(key) is not None):
            return found(self.entity.get_attribute(key))
        if self.wait is None or self.wait > 0:
            try:
                return found(await self.entity.attribute_when_ready(key, timeout=self.wait))
            except asyncio.TimeoutError:
                if self.entity.has_attribute(key):
                    return found(self.entity.get_attribute(key))
                return ABSENT
        return ABSENT


class AttributeWhenReadyModel(TemplateModel):
    """``entity.attributeWhenReady.X``: blocks until the attribute is ready."""

    def __init__(self, entity: Entity, timeout: Optional[float] = None):
        self.entity = entity
        self.timeout = timeout

    async def get(self, key: str) -> LookupResult:
        try:
            return found(await self.entity.attribute_when_ready(key, timeout=self.timeout))
        except asyncio.TimeoutError:
            raise UnresolvableExpression(
                f"Unresolveable expression: attribute '{key}' on {self.entity.entity_id} "
                f"not ready within {self.timeout}s",
                key,
            )

    async def get_path(self, names: list[str]) -> tuple[LookupResult, int]:
        for count in range(len(names), 0, -1):
            joined = ".".join(names[:count])
            if self.entity.has_attribute(joined):
                return await self.get(joined), count
        return await self.get(names[0]), 1


class ConfigModel(TemplateModel):
    """``entity.config.X``: config, inherited from ancestors."""

    def __init__(self, entity: Entity):
        self.entity = entity

    async def get(self, key: str) -> LookupResult:
        if self.entity.has_config(key):
            return found(self.entity.get_config(key))
        return ABSENT


class EntityModel(TemplateModel):
    """Expression view of an entity."""

    def __init__(self, entity: Entity, sensor_wait: Optional[float] = 0.0, ready_timeout: Optional[float] = None):
        self.entity = entity
        self.sensor_wait = sensor_wait
        self.ready_timeout = ready_timeout

    async def get(self, key: str) -> LookupResult:
        entity = self.entity
        if key == "id":
            return found(entity.entity_id)
        if key in ("name", "display_name", "displayName"):
            return found(entity.display_name)
        if key == "parent":
            return found(entity.parent)
        if key == "children":
            return found(entity.get_children())
        if key == "application":
            return found(entity.application)
        if key in ("sensor", "attribute"):
            return found(SensorModel(entity, self.sensor_wait))
        if key == "attributeWhenReady":
            return found(AttributeWhenReadyModel(entity, self.ready_timeout))
        if key == "config":
            return found(ConfigModel(entity))

        fields = entity.as_named_fields()
        if key in fields:
            return found(fields[key])
        if entity.has_attribute(key):
            return found(entity.get_attribute(key))
        if entity.has_config(key):
            return found(entity.get_config(key))
        return ABSENT


# ─── Navigation ───────────────────────────────────────────────

def _as_model(value: Any, settings: dict) -> Any:
    if isinstance(value, Entity):
        return EntityModel(value, settings.get("sensor_wait", 0.0), settings.get("ready_timeout"))
    return value


def _alternate_key(key: str) -> str:
    return key.replace("_", "-") if "_" in key else key.replace("-", "_")


def _dict_get_path(mapping: dict, names: list[str]) -> tuple[LookupResult, int]:
    for count in range(1, len(names) + 1):
        joined = ".".join(names[:count])
        if joined in mapping:
            return found(mapping[joined]), count
    alt = _alternate_key(names[0])
    if alt in mapping:
        return found(mapping[alt]), 1
    return ABSENT, 1


def _index_get(value: Any, index: Any) -> LookupResult:
    if isinstance(value, dict):
        if index in value:
            return found(value[index])
        if str(index) in value:
            return found(value[str(index)])
        return ABSENT
    if isinstance(value, (list, tuple)):
        try:
            position = int(index)
        except (TypeError, ValueError):
            return ABSENT
        if -len(value) <= position < len(value):
            return found(value[position])
        return ABSENT
    return ABSENT


def unwrap(value: Any) -> Any:
    """Turn template models back into the values they wrap."""
    if isinstance(value, EntityModel):
        return value.entity
    return value


# ─── Placeholder Expression AST ───────────────────────────────

class _Node(ABC):
    @abstractmethod
    async def evaluate(self, scope: Scope, settings: dict) -> LookupResult:
        ...


class _Literal(_Node):
    def __init__(self, value: Any):
        self.value = value

    async def evaluate(self, scope, settings):
        return found(self.value)


class _Path(_Node):
    """Head name followed by ``.name`` or ``[expr]`` accessors."""

    def __init__(self, accessors: list[tuple[str, Any]], text: str):
        self.accessors = accessors
        self.text = text

    async def evaluate(self, scope, settings):
        current: Any = scope
        position = 0
        while position < len(self.accessors):
            kind, key = self.accessors[position]
            current = _as_model(current, settings)
            if current is None:
                return ABSENT

            if kind == "index":
                index_result = await key.evaluate(scope, settings)
                if not index_result.found:
                    return ABSENT
                index = unwrap(index_result.value)
                if isinstance(current, TemplateModel):
                    result = await current.get(str(index))
                else:
                    result = _index_get(current, index)
                consumed = 1
            else:
                names = [key]
                for next_kind, next_key in self.accessors[position + 1:]:
                    if next_kind != "name":
                        break
                    names.append(next_key)
                if isinstance(current, TemplateModel):
                    result, consumed = await current.get_path(names)
                elif isinstance(current, dict):
                    result, consumed = _dict_get_path(current, names)
                elif isinstance(current, (list, tuple)):
                    result, consumed = _index_get(current, key), 1
                elif hasattr(current, "as_named_fields"):
                    result, consumed = _dict_get_path(current.as_named_fields(), names)
                else:
                    result, consumed = ABSENT, 1

            if not result.found:
                return ABSENT
            current = result.value
            position += consumed
        return found(current)


class _Negate(_Node):
    def __init__(self, operand: _Node, text: str):
        self.operand = operand
        self.text = text

    async def evaluate(self, scope, settings):
        value = await _require(self.operand, scope, settings, self.text)
        return found(-_to_number(value, "-"))


class _Binary(_Node):
    def __init__(self, op: str, left: _Node, right: _Node, text: str):
        self.op = op
        self.left = left
        self.right = right
        self.text = text

    async def evaluate(self, scope, settings):
        left = await _require(self.left, scope, settings, self.text)
        right = await _require(self.right, scope, settings, self.text)
        return found(apply_operator(self.op, left, right))


class _Coalesce(_Node):
    def __init__(self, left: _Node, right: _Node):
        self.left = left
        self.right = right

    async def evaluate(self, scope, settings):
        try:
            result = await self.left.evaluate(scope, settings)
        except UnresolvableExpression:
            result = ABSENT
        if result.found and result.value is not None:
            return result
        return await self.right.evaluate(scope, settings)


async def _require(node: _Node, scope: Scope, settings: dict, text: str) -> Any:
    result = await node.evaluate(scope, settings)
    if not result.found:
        label = node.text if isinstance(node, _Path) else text
        raise UnresolvableExpression(f"Unresolveable expression '{text}': no value for '{label}'", text)
    if result.value is None:
        raise UnresolvableExpression(f"Unresolveable expression '{text}': '{text}' uses a null value", text)
    return unwrap(result.value)


def _to_number(value: Any, op: str) -> Union[int, float]:
    if isinstance(value, bool):
        raise StepExecutionFailure(f"Cannot apply '{op}' to boolean {value!r}")
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            try:
                return float(text)
            except ValueError:
                pass
    raise StepExecutionFailure(f"Cannot apply '{op}' to non-numeric value {value!r}")


def _is_numeric(value: Any) -> bool:
    try:
        _to_number(value, "+")
        return True
    except StepExecutionFailure:
        return False


def apply_operator(op: str, left: Any, right: Any) -> Any:
    """Apply an arithmetic operator; ``+`` concatenates when either side is text."""
    if op == "+" and (
        (isinstance(left, str) and not _is_numeric(left))
        or (isinstance(right, str) and not _is_numeric(right))
    ):
        return render_text(left) + render_text(right)
    a = _to_number(left, op)
    b = _to_number(right, op)
    if op == "+":
        return a + b
    if op == "-":
        return a - b
    if op == "*":
        return a * b
    if op == "/":
        if b == 0:
            raise StepExecutionFailure("Division by zero")
        if isinstance(a, int) and isinstance(b, int) and a % b == 0:
            return a // b
        return a / b
    raise StepExecutionFailure(f"Unsupported operator '{op}'")


# ─── Placeholder Parser ───────────────────────────────────────

_INNER_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<num>\d+(?:\.\d+)?)
      | (?P<str>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
      | (?P<op>\?\?|[-+*/().\[\]])
      | (?P<name>[A-Za-z_][\w]*(?:-[A-Za-z_]\w*)*)
    )""",
    re.VERBOSE,
)

_KEYWORD_LITERALS = {"true": True, "false": False, "null": None}


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


def _number(text: str) -> Union[int, float]:
    return float(text) if "." in text else int(text)


class _InnerParser:
    """Recursive-descent parser for the text between ``${`` and ``}``."""

    def __init__(self, text: str):
        self.text = text
        self.tokens = self._tokenize(text)
        self.pos = 0

    def _tokenize(self, text: str) -> list[tuple[str, str]]:
        tokens = []
        index = 0
        stripped = text.rstrip()
        while index < len(stripped):
            match = _INNER_TOKEN_RE.match(stripped, index)
            if not match:
                raise UnresolvableExpression(
                    f"Unresolveable expression '{text}': cannot parse at '{stripped[index:].strip()}'", text
                )
            kind = match.lastgroup
            tokens.append((kind, match.group(kind)))
            index = match.end()
        return tokens

    def _peek(self, offset: int = 0) -> tuple[str, str]:
        position = self.pos + offset
        return self.tokens[position] if position < len(self.tokens) else ("eof", "")

    def _take(self) -> tuple[str, str]:
        token = self._peek()
        self.pos += 1
        return token

    def _fail(self, detail: str):
        raise UnresolvableExpression(f"Unresolveable expression '{self.text}': {detail}", self.text)

    def parse(self) -> _Node:
        if not self.tokens:
            self._fail("empty expression")
        node = self._coalesce()
        if self._peek()[0] != "eof":
            self._fail(f"unexpected '{self._peek()[1]}'")
        return node

    def _coalesce(self) -> _Node:
        node = self._additive()
        if self._peek() == ("op", "??"):
            self._take()
            node = _Coalesce(node, self._coalesce())
        return node

    def _additive(self) -> _Node:
        node = self._multiplicative()
        while self._peek() in (("op", "+"), ("op", "-")):
            op = self._take()[1]
            node = _Binary(op, node, self._multiplicative(), self.text)
        return node

    def _multiplicative(self) -> _Node:
        node = self._unary()
        while self._peek() in (("op", "*"), ("op", "/")):
            op = self._take()[1]
            node = _Binary(op, node, self._unary(), self.text)
        return node

    def _unary(self) -> _Node:
        if self._peek() == ("op", "-"):
            self._take()
            return _Negate(self._unary(), self.text)
        return self._primary()

    def _primary(self) -> _Node:
        kind, value = self._take()
        if kind == "num":
            return _Literal(_number(value))
        if kind == "str":
            return _Literal(_unquote(value))
        if (kind, value) == ("op", "("):
            node = self._coalesce()
            if self._take() != ("op", ")"):
                self._fail("missing ')'")
            return node
        if kind == "name":
            if value in _KEYWORD_LITERALS and self._peek() not in (("op", "."), ("op", "[")):
                return _Literal(_KEYWORD_LITERALS[value])
            return self._path(value)
        self._fail(f"unexpected '{value}'")

    def _path(self, head: str) -> _Node:
        accessors: list[tuple[str, Any]] = [("name", head)]
        parts = [head]
        while True:
            if self._peek() == ("op", "."):
                self._take()
                kind, value = self._take()
                if kind == "name":
                    accessors.append(("name", value))
                elif kind == "num":
                    for piece in value.split("."):
                        accessors.append(("index", _Literal(int(piece))))
                else:
                    self._fail(f"expected a name after '.', got '{value}'")
                parts.append(value)
            elif self._peek() == ("op", "["):
                self._take()
                index = self._coalesce()
                if self._take() != ("op", "]"):
                    self._fail("missing ']'")
                accessors.append(("index", index))
                parts.append("[...]")
            else:
                break
        return _Path(accessors, ".".join(parts).replace(".[", "["))


@lru_cache(maxsize=2048)
def parse_placeholder(text: str) -> _Node:
    """Parse the inside of a ``${...}`` placeholder."""
    return _InnerParser(text).parse()


# ─── Template Scanning ────────────────────────────────────────

def find_placeholder_end(text: str, start: int) -> int:
    """Index of the ``}`` closing the placeholder opened at ``start``."""
    depth = 0
    quote = None
    index = start + 2
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
        elif char == "{":
            depth += 1
        elif char == "}":
            if depth == 0:
                return index
            depth -= 1
        index += 1
    return -1


@lru_cache(maxsize=2048)
def split_template(text: str) -> tuple[tuple[bool, str], ...]:
    """Split text into ``(is_placeholder, content)`` parts."""
    parts: list[tuple[bool, str]] = []
    index = 0
    literal_start = 0
    while True:
        start = text.find("${", index)
        if start < 0:
            break
        end = find_placeholder_end(text, start)
        if end < 0:
            raise UnresolvableExpression(f"Unresolveable expression: unterminated '${{' in '{text}'", text)
        if start > literal_start:
            parts.append((False, text[literal_start:start]))
        parts.append((True, text[start + 2:end]))
        index = literal_start = end + 1
    if literal_start < len(text):
        parts.append((False, text[literal_start:]))
    return tuple(parts)


def has_placeholders(value: Any) -> bool:
    """Check whether a value embeds any ``${...}``."""
    if isinstance(value, str):
        return "${" in value
    if isinstance(value, dict):
        return any(has_placeholders(k) or has_placeholders(v) for k, v in value.items())
    if isinstance(value, (list, tuple)):
        return any(has_placeholders(v) for v in value)
    return False


def render_text(value: Any) -> str:
    """Render a resolved value for interpolation into text."""
    value = unwrap(value)
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Entity):
        return value.entity_id
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(to_json_safe(value))
    return str(value)


# ─── Value Expressions ────────────────────────────────────────

_VALUE_NUMBER_RE = re.compile(r"^\d+(?:\.\d+)?$")
_VALUE_OPERATORS = {"+", "-", "*", "/", "??"}


def _tokenize_value_expression(text: str) -> Optional[list[tuple[str, str]]]:
    """Tokens of a value expression, or None when the text is a plain template."""
    tokens: list[tuple[str, str]] = []
    index = 0
    length = len(text)
    while index < length:
        char = text[index]
        if char.isspace():
            index += 1
            continue
        if text.startswith("${", index):
            end = find_placeholder_end(text, index)
            if end < 0:
                return None
            tokens.append(("placeholder", text[index + 2:end]))
            index = end + 1
            if index < length and not text[index].isspace() and text[index] not in "()":
                return None
            continue
        if char in ("'", '"'):
            match = re.compile(r"%s(?:[^%s\\]|\\.)*%s" % (char, char, char)).match(text, index)
            if not match:
                return None
            tokens.append(("str", match.group(0)))
            index = match.end()
            continue
        if char in "()":
            tokens.append(("op", char))
            index += 1
            continue
        end = index
        while end < length and not text[end].isspace() and text[end] not in "()":
            end += 1
        chunk = text[index:end]
        if chunk in _VALUE_OPERATORS:
            tokens.append(("op", chunk))
        elif _VALUE_NUMBER_RE.match(chunk):
            tokens.append(("num", chunk))
        else:
            return None
        index = end
    return tokens


class _ValueParser(_InnerParser):
    """Parses value-expression tokens using the placeholder grammar."""

    def __init__(self, text: str, tokens: list[tuple[str, str]]):
        self.text = text
        self.tokens = tokens
        self.pos = 0

    def _primary(self) -> _Node:
        kind, value = self._peek()
        if kind == "placeholder":
            self._take()
            return parse_placeholder(value)
        return super()._primary()


@lru_cache(maxsize=1024)
def parse_value_expression(text: str) -> Optional[_Node]:
    """Parse a value expression, or return None if it is a plain template."""
    tokens = _tokenize_value_expression(text)
    if not tokens:
        return None
    try:
        return _ValueParser(text, tokens).parse()
    except UnresolvableExpression:
        return None


# ─── Type Coercion ────────────────────────────────────────────

TYPE_NAMES: dict[str, Any] = {
    "string": str,
    "str": str,
    "integer": int,
    "int": int,
    "long": int,
    "double": float,
    "float": float,
    "number": float,
    "boolean": bool,
    "bool": bool,
    "map": dict,
    "dict": dict,
    "list": list,
    "object": Any,
    "any": Any,
}


def type_for_name(type_name: Union[str, type, None]) -> Any:
    """Map a declared type name to a Python type."""
    if type_name is None:
        return Any
    if not isinstance(type_name, str):
        return type_name
    key = type_name.strip()
    if key.lower() in TYPE_NAMES:
        return TYPE_NAMES[key.lower()]
    if key.startswith("list") or key.startswith("set"):
        return list
    if key.startswith("map") or key.startswith("dict"):
        return dict
    raise StepExecutionFailure(f"Unknown type '{type_name}'")


def _scalar_coerce(value: Any, target: Any) -> Any:
    """Permissive conversion used when structured validation fails."""
    if target is str:
        return render_text(value)
    if isinstance(value, str):
        text = value.strip()
        if target is int:
            number = float(text)
            if number.is_integer():
                return int(number)
            raise ValueError(f"'{value}' is not an integer")
        if target is float:
            return float(text)
        if target is bool:
            lowered = text.lower()
            if lowered in ("true", "yes", "on", "1"):
                return True
            if lowered in ("false", "no", "off", "0", ""):
                return False
            raise ValueError(f"'{value}' is not a boolean")
        if target in (dict, list):
            documents = [doc for doc in yaml.safe_load_all(text)]
            if not documents:
                raise ValueError("no YAML document")
            result = documents[-1]
            if isinstance(result, target):
                return result
            raise ValueError(f"YAML text does not hold a {target.__name__}")
    if target is int and isinstance(value, float) and value.is_integer():
        return int(value)
    if target is list and isinstance(value, (tuple, set)):
        return list(value)
    raise ValueError(f"Cannot convert {value!r} to {getattr(target, '__name__', target)}")


def coerce(value: Any, type_name: Union[str, type, None], trim: bool = False) -> Any:
    """Coerce a resolved value to a declared type.

    Structured (pydantic) validation is tried first, then a permissive
    scalar conversion. When both fail the structured error is raised.
    """
    value = unwrap(value)
    if trim and isinstance(value, str):
        value = value.strip()
    target = type_for_name(type_name)
    if target is Any or value is None:
        return value
    if target is str and isinstance(value, str):
        return value
    try:
        return TypeAdapter(target).validate_python(value)
    except Exception as first_error:
        logger.debug("structured_coercion_failed", target=str(type_name), error=str(first_error))
        try:
            return _scalar_coerce(value, target)
        except Exception:
            raise first_error


# ─── Resolver ─────────────────────────────────────────────────

class ExpressionResolver:
    """Resolves placeholders in step definitions against a scope.

    Supports:
    - Typed lookup: ``"${workflow.scratch.x}"`` returns the value as-is
    - Interpolation: ``"host ${entity.sensor.host} ready"``
    - Defaults: ``"${x ?? 'none'}"``
    - Value expressions: ``${x} * 2 ?? 0``
    """

    def __init__(self, scope: Scope, settings: Optional[dict] = None):
        self.scope = scope
        self.settings = settings or {}

    def with_variables(self, variables: dict) -> "ExpressionResolver":
        """Resolver where ``variables`` shadow every other layer."""
        return ExpressionResolver(self.scope.with_variables(variables), self.settings)

    async def lookup(self, text: str) -> LookupResult:
        """Resolve a whole-placeholder string without failing on absence."""
        parts = split_template(text) if isinstance(text, str) else ()
        if len(parts) == 1 and parts[0][0]:
            result = await parse_placeholder(parts[0][1]).evaluate(self.scope, self.settings)
            return found(unwrap(result.value)) if result.found else ABSENT
        return found(await self.resolve(text))

    async def resolve(self, value: Any, expected_type: Union[str, type, None] = None) -> Any:
        """Recursively resolve placeholders in strings, mappings and sequences."""
        result = await self._resolve(value)
        if expected_type is not None:
            return coerce(result, expected_type)
        return result

    async def _resolve(self, value: Any) -> Any:
        if isinstance(value, str):
            return await self.resolve_template(value)
        if isinstance(value, dict):
            resolved = {}
            for key, item in value.items():
                new_key = await self.resolve_template(key) if isinstance(key, str) else key
                if isinstance(new_key, (dict, list)):
                    new_key = render_text(new_key)
                resolved[new_key] = await self._resolve(item)
            return resolved
        if isinstance(value, list):
            return [await self._resolve(item) for item in value]
        if isinstance(value, tuple):
            return tuple([await self._resolve(item) for item in value])
        return value

    async def resolve_template(self, text: str) -> Any:
        """Resolve a single string."""
        if "${" not in text:
            return text
        parts = split_template(text)
        if len(parts) == 1 and parts[0][0]:
            return await self._evaluate_placeholder(parts[0][1])

        pieces = []
        for is_placeholder, content in parts:
            if not is_placeholder:
                pieces.append(content)
                continue
            value = await self._evaluate_placeholder(content)
            if value is None:
                raise UnresolvableExpression(
                    f"Unresolveable expression '${{{content}}}': value is null", content
                )
            pieces.append(render_text(value))
        return "".join(pieces)

    async def evaluate(self, text: Any) -> Any:
        """Evaluate a value expression, falling back to template resolution."""
        if not isinstance(text, str):
            return await self.resolve(text)
        node = parse_value_expression(text.strip())
        if node is None:
            return await self.resolve_template(text)
        result = await node.evaluate(self.scope, self.settings)
        if not result.found:
            raise UnresolvableExpression(f"Unresolveable expression '{text.strip()}'", text)
        return unwrap(result.value)

    async def _evaluate_placeholder(self, content: str) -> Any:
        node = parse_placeholder(content)
        result = await node.evaluate(self.scope, self.settings)
        if not result.found:
            raise UnresolvableExpression(
                f"Unresolveable expression '${{{content}}}': no value for "
                f"'{node.text if isinstance(node, _Path) else content.strip()}'",
                content,
            )
        return unwrap(result.value)
