"""Single-line step syntax.

Each step type may declare a shorthand pattern, for example::

    [ ?${trimmed} trimmed ] [ ${type} ] ${variable} [ = ${value...} ]

Pattern elements:

- ``word``: literal that must appear as-is
- ``${name}``: one word, or one quoted string with the quotes removed
- ``${name...}``: the rest of the text (at least one word), spacing preserved
- ``${a.b}``: binds into a nested mapping ``{"a": {"b": ...}}``
- ``[ ... ]``: optional group; ``?${flag}`` inside it is set true when it matches
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Optional, Union

from core.exceptions import DefinitionError
from workflow.expressions import find_placeholder_end


@dataclass(frozen=True)
class _Literal:
    text: str


@dataclass(frozen=True)
class _Var:
    name: str
    rest: bool = False


@dataclass(frozen=True)
class _Flag:
    name: str


@dataclass(frozen=True)
class _Optional:
    elements: tuple


_Element = Union[_Literal, _Var, _Flag, _Optional]


@dataclass(frozen=True)
class _Token:
    text: str
    start: int
    end: int

    @property
    def value(self) -> str:
        return _unquote(self.text)


def _unquote(text: str) -> str:
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        body = text[1:-1]
        return body.replace("\\" + text[0], text[0]).replace("\\\\", "\\")
    return text


def tokenize(text: str) -> list[_Token]:
    """Split input into words, keeping quoted strings and ``${...}`` intact."""
    tokens: list[_Token] = []
    index = 0
    length = len(text)
    while index < length:
        if text[index].isspace():
            index += 1
            continue
        start = index
        if text[index] in ("'", '"'):
            quote = text[index]
            index += 1
            while index < length and text[index] != quote:
                index += 2 if text[index] == "\\" else 1
            index = min(index + 1, length)
        else:
            while index < length and not text[index].isspace():
                if text.startswith("${", index):
                    end = find_placeholder_end(text, index)
                    index = end + 1 if end >= 0 else length
                else:
                    index += 1
        tokens.append(_Token(text[start:index], start, index))
    return tokens


def _parse_pattern_words(words: list[str], position: int, pattern: str) -> tuple[tuple, int]:
    elements: list[_Element] = []
    while position < len(words):
        word = words[position]
        if word == "[":
            group, position = _parse_pattern_words(words, position + 1, pattern)
            elements.append(_Optional(group))
            continue
        if word == "]":
            return tuple(elements), position + 1
        if word.startswith("?${") and word.endswith("}"):
            elements.append(_Flag(word[3:-1]))
        elif word.startswith("${") and word.endswith("}"):
            name = word[2:-1]
            if name.endswith("..."):
                elements.append(_Var(name[:-3], rest=True))
            else:
                elements.append(_Var(name))
        else:
            elements.append(_Literal(_unquote(word)))
        position += 1
    return tuple(elements), position


@lru_cache(maxsize=256)
def compile_pattern(pattern: str) -> tuple:
    """Parse a shorthand pattern into elements."""
    words = pattern.replace("[", " [ ").replace("]", " ] ").split()
    elements, position = _parse_pattern_words(words, 0, pattern)
    if position < len(words):
        raise DefinitionError(f"Invalid shorthand pattern '{pattern}': unbalanced ']'")
    if words.count("[") != words.count("]"):
        raise DefinitionError(f"Invalid shorthand pattern '{pattern}': unbalanced '['")
    return elements


def _bind(bindings: dict, name: str, value: Any) -> dict:
    result = dict(bindings)
    parts = name.split(".")
    target = result
    for part in parts[:-1]:
        nested = dict(target.get(part) or {}) if isinstance(target.get(part), dict) else {}
        target[part] = nested
        target = nested
    target[parts[-1]] = value
    return result


def _match(elements: tuple, tokens: list[_Token], position: int, bindings: dict, text: str) -> Optional[dict]:
    if not elements:
        return bindings if position == len(tokens) else None

    head, rest = elements[0], elements[1:]

    if isinstance(head, _Optional):
        taken = _match(head.elements + rest, tokens, position, bindings, text)
        if taken is not None:
            return taken
        return _match(rest, tokens, position, bindings, text)

    if isinstance(head, _Flag):
        return _match(rest, tokens, position, _bind(bindings, head.name, True), text)

    if position >= len(tokens):
        return None

    if isinstance(head, _Literal):
        if tokens[position].value != head.text:
            return None
        return _match(rest, tokens, position + 1, bindings, text)

    if head.rest:
        for end in range(len(tokens), position, -1):
            span = tokens[position:end]
            raw = text[span[0].start:span[-1].end]
            value = span[0].value if len(span) == 1 else raw
            result = _match(rest, tokens, end, _bind(bindings, head.name, value), text)
            if result is not None:
                return result
        return None

    return _match(rest, tokens, position + 1, _bind(bindings, head.name, tokens[position].value), text)


def match_shorthand(pattern: str, text: str) -> Optional[dict]:
    """Match text against a pattern.

    Returns:
        Bound values, or None if the text does not fit the pattern
    """
    return _match(compile_pattern(pattern), tokenize(text), 0, {}, text)


def parse_shorthand(pattern: Optional[str], text: str, step_type: str) -> dict:
    """Match text against a step type's pattern.

    Raises:
        DefinitionError: If the type has no pattern or the text does not match
    """
    text = (text or "").strip()
    if not pattern:
        if text:
            raise DefinitionError(f"Step type '{step_type}' does not accept shorthand: '{text}'")
        return {}
    result = match_shorthand(pattern, text)
    if result is None:
        raise DefinitionError(
            f"Invalid shorthand for '{step_type}': '{text}' does not match '{pattern}'"
        )
    return result
