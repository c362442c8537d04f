"""Concurrency expressions for fan-out steps.

Grammar::

    expr  := term | func '(' expr ',' expr ')' | expr ('+' | '-') number
    term  := number | 'all' | number '%'
    func  := 'min' | 'max'

A negative literal counts back from the total, so ``-10`` over 25 targets
is 15 and ``-10%`` is 90% of the total. Results stay real numbers; the
scheduler decides how to turn them into a worker count.
"""

import math
import re
from dataclasses import dataclass
from typing import Callable, Union

from core.exceptions import DefinitionError

_TOKEN_RE = re.compile(r"\s*(?:(\d+(?:\.\d+)?)|(all)\b|(min|max)\b|([-+%(),]))", re.IGNORECASE)


@dataclass(frozen=True)
class ConcurrencyExpression:
    """Parsed concurrency expression; ``apply(total)`` evaluates it."""

    source: str
    _fn: Callable[[float], float]

    def apply(self, total: float) -> float:
        return self._fn(float(total))

    def width(self, total: int) -> int:
        """Worker count for ``total`` targets, at least 1 and at most ``total``."""
        if total <= 0:
            return 0
        value = self.apply(total)
        if math.isnan(value):
            return 1
        return max(1, min(total, int(math.floor(value))))

    def __str__(self) -> str:
        return self.source


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = self._tokenize(text)
        self.pos = 0

    def _tokenize(self, text: str) -> list[tuple[str, str]]:
        tokens = []
        index = 0
        stripped = text.rstrip()
        while index < len(stripped):
            match = _TOKEN_RE.match(stripped, index)
            if not match or match.end() == index:
                raise DefinitionError(
                    f"Invalid concurrency expression '{text}': unexpected text at '{stripped[index:].strip()}'"
                )
            number, all_kw, func, symbol = match.groups()
            if number is not None:
                tokens.append(("num", number))
            elif all_kw is not None:
                tokens.append(("all", "all"))
            elif func is not None:
                tokens.append(("func", func.lower()))
            else:
                tokens.append(("sym", symbol))
            index = match.end()
        return tokens

    def _peek(self) -> tuple[str, str]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else ("eof", "")

    def _take(self) -> tuple[str, str]:
        token = self._peek()
        self.pos += 1
        return token

    def _expect(self, symbol: str) -> None:
        kind, value = self._take()
        if kind != "sym" or value != symbol:
            raise DefinitionError(f"Invalid concurrency expression '{self.text}': expected '{symbol}'")

    def parse(self) -> Callable[[float], float]:
        if not self.tokens:
            raise DefinitionError("Invalid concurrency expression: empty")
        fn = self._expr()
        if self._peek()[0] != "eof":
            raise DefinitionError(
                f"Invalid concurrency expression '{self.text}': unexpected '{self._peek()[1]}'"
            )
        return fn

    def _expr(self) -> Callable[[float], float]:
        fn = self._operand()
        while self._peek() in (("sym", "+"), ("sym", "-")):
            sign = 1.0 if self._take()[1] == "+" else -1.0
            kind, number = self._take()
            if kind != "num":
                raise DefinitionError(
                    f"Invalid concurrency expression '{self.text}': offset must be a number"
                )
            fn = _offset(fn, sign * float(number))
        return fn

    def _operand(self) -> Callable[[float], float]:
        kind, value = self._take()
        if kind == "func":
            self._expect("(")
            left = self._expr()
            self._expect(",")
            right = self._expr()
            self._expect(")")
            return _combine(min if value == "min" else max, left, right)
        if kind == "all":
            return lambda total: total
        negative = False
        if (kind, value) == ("sym", "-"):
            negative = True
            kind, value = self._take()
        if kind != "num":
            raise DefinitionError(f"Invalid concurrency expression '{self.text}': unexpected '{value}'")
        number = float(value)
        if self._peek() == ("sym", "%"):
            self._take()
            return _percentage(number, negative)
        return _literal(number, negative)


def _literal(number: float, negative: bool) -> Callable[[float], float]:
    if negative:
        return lambda total: total - number
    return lambda total: number


def _percentage(percent: float, negative: bool) -> Callable[[float], float]:
    if negative:
        return lambda total: total - total * percent / 100.0
    return lambda total: total * percent / 100.0


def _offset(fn: Callable[[float], float], delta: float) -> Callable[[float], float]:
    return lambda total: fn(total) + delta


def _combine(op, left, right) -> Callable[[float], float]:
    return lambda total: op(left(total), right(total))


def parse_concurrency(text: Union[str, int, float]) -> ConcurrencyExpression:
    """Parse a concurrency expression.

    Raises:
        DefinitionError: If the text is malformed
    """
    if isinstance(text, bool):
        raise DefinitionError(f"Invalid concurrency expression: {text!r}")
    if isinstance(text, (int, float)):
        number = float(text)
        if number < 0:
            return ConcurrencyExpression(str(text), _literal(-number, True))
        return ConcurrencyExpression(str(text), _literal(number, False))
    source = str(text).strip()
    return ConcurrencyExpression(source, _Parser(source).parse())
