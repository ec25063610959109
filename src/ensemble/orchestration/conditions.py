"""Sandboxed condition expressions for the conditional pattern.

Supported syntax::

    context.user.tier == "gold" && context.scores[0] >= 0.5
    not (context.flag or context.retries > 3)

Literals (numbers, quoted strings, true/false/null/undefined and their
Python spellings), ``context`` references with dot and index access,
comparisons, boolean operators and parentheses. Nothing else parses, so an
expression can never call functions or reach outside the context it is
evaluated against.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any

import structlog

from ensemble.exceptions import ValidationError

logger = structlog.get_logger()

Evaluator = Callable[[dict[str, Any]], Any]

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<number>-?\d+(?:\.\d+)?)
      | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
      | (?P<op>===|!==|==|!=|<=|>=|&&|\|\||[<>!().\[\]])
      | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
    )
    """,
    re.VERBOSE,
)

_LITERALS: dict[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": None,
    "True": True,
    "False": False,
    "None": None,
}

_COMPARISONS = frozenset({"==", "===", "!=", "!==", "<", "<=", ">", ">="})

_MISSING = object()


class ConditionError(ValidationError):
    """Condition expression is not valid."""

    code = "CONDITION_ERROR"


class _Token:
    __slots__ = ("kind", "value", "position")

    def __init__(self, kind: str, value: str, position: int) -> None:
        self.kind = kind
        self.value = value
        self.position = position


def _tokenize(expression: str) -> list[_Token]:
    tokens: list[_Token] = []
    position = 0
    end = len(expression.rstrip())
    while position < end:
        match = _TOKEN_RE.match(expression, position)
        if match is None or match.end() == position:
            raise ConditionError(f"Unexpected character at {position} in condition: {expression!r}")
        kind = match.lastgroup or ""
        tokens.append(_Token(kind, match.group(kind), match.start(kind)))
        position = match.end()
    return tokens


def _unquote(raw: str) -> str:
    return re.sub(r"\\(.)", r"\1", raw[1:-1])


def _equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    return bool(left == right)


def _compare(op: str, left: Any, right: Any) -> bool:
    if op in ("==", "==="):
        return _equals(left, right)
    if op in ("!=", "!=="):
        return not _equals(left, right)
    if left is None or right is None:
        return False
    try:
        if op == "<":
            return bool(left < right)
        if op == "<=":
            return bool(left <= right)
        if op == ">":
            return bool(left > right)
        return bool(left >= right)
    except TypeError:
        return False


def _lookup(value: Any, key: str | int) -> Any:
    if isinstance(value, dict):
        return value.get(str(key), _MISSING)
    if isinstance(value, list) and isinstance(key, int):
        return value[key] if 0 <= key < len(value) else _MISSING
    return _MISSING


class _Parser:
    """Recursive-descent parser compiling tokens into evaluator closures."""

    def __init__(self, expression: str) -> None:
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.index = 0

    def parse(self) -> Evaluator:
        if not self.tokens:
            raise ConditionError("Condition must not be empty")
        evaluator = self._or()
        if self.index < len(self.tokens):
            token = self.tokens[self.index]
            raise ConditionError(
                f"Unexpected '{token.value}' at {token.position} in condition: {self.expression!r}"
            )
        return evaluator

    def _peek(self) -> _Token | None:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _accept(self, *values: str) -> _Token | None:
        token = self._peek()
        if token is not None and token.kind in ("op", "name") and token.value in values:
            self.index += 1
            return token
        return None

    def _expect(self, value: str) -> None:
        if self._accept(value) is None:
            raise ConditionError(f"Expected '{value}' in condition: {self.expression!r}")

    def _or(self) -> Evaluator:
        left = self._and()
        while self._accept("||", "or"):
            right = self._and()
            left = (lambda a, b: lambda ctx: bool(a(ctx)) or bool(b(ctx)))(left, right)
        return left

    def _and(self) -> Evaluator:
        left = self._not()
        while self._accept("&&", "and"):
            right = self._not()
            left = (lambda a, b: lambda ctx: bool(a(ctx)) and bool(b(ctx)))(left, right)
        return left

    def _not(self) -> Evaluator:
        if self._accept("!", "not"):
            operand = self._not()
            return lambda ctx: not operand(ctx)
        return self._comparison()

    def _comparison(self) -> Evaluator:
        left = self._primary()
        token = self._peek()
        if token is not None and token.kind == "op" and token.value in _COMPARISONS:
            self.index += 1
            right = self._primary()
            op = token.value
            return lambda ctx: _compare(op, left(ctx), right(ctx))
        return left

    def _primary(self) -> Evaluator:
        token = self._peek()
        if token is None:
            raise ConditionError(f"Unexpected end of condition: {self.expression!r}")
        self.index += 1

        if token.kind == "number":
            number = float(token.value) if "." in token.value else int(token.value)
            return lambda ctx: number
        if token.kind == "string":
            text = _unquote(token.value)
            return lambda ctx: text
        if token.kind == "op" and token.value == "(":
            inner = self._or()
            self._expect(")")
            return inner
        if token.kind == "name":
            if token.value in _LITERALS:
                literal = _LITERALS[token.value]
                return lambda ctx: literal
            if token.value == "context":
                return self._reference()
            raise ConditionError(
                f"Unknown identifier '{token.value}' in condition: {self.expression!r}"
            )
        raise ConditionError(
            f"Unexpected '{token.value}' at {token.position} in condition: {self.expression!r}"
        )

    def _reference(self) -> Evaluator:
        keys: list[str | int] = []
        while True:
            if self._accept("."):
                token = self._peek()
                if token is None or token.kind not in ("name", "number"):
                    raise ConditionError(
                        f"Expected property name in condition: {self.expression!r}"
                    )
                self.index += 1
                keys.append(int(token.value) if token.kind == "number" else token.value)
            elif self._accept("["):
                token = self._peek()
                if token is None or token.kind not in ("number", "string"):
                    raise ConditionError(f"Expected index in condition: {self.expression!r}")
                self.index += 1
                if token.kind == "number":
                    keys.append(int(float(token.value)))
                else:
                    keys.append(_unquote(token.value))
                self._expect("]")
            else:
                break

        def resolve(ctx: dict[str, Any]) -> Any:
            value: Any = ctx
            for key in keys:
                value = _lookup(value, key)
                if value is _MISSING:
                    return None
            return value

        return resolve


class Condition:
    """Compiled condition expression."""

    def __init__(self, expression: str) -> None:
        self.expression = expression
        self._evaluator = _Parser(expression).parse()

    def evaluate(self, context: dict[str, Any]) -> bool:
        return bool(self._evaluator(context))


def compile_condition(expression: str) -> Condition:
    """Parse an expression.

    Raises:
        ConditionError: If the expression is not valid
    """
    return Condition(expression)


def evaluate_condition(expression: str, context: dict[str, Any]) -> bool:
    """Evaluate an expression against a context; invalid expressions are false."""
    try:
        return compile_condition(expression).evaluate(context)
    except ConditionError as e:
        logger.warning("condition_evaluation_failed", condition=expression, error=e.message)
        return False
