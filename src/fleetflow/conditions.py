"""Sandboxed boolean expressions over workflow state.

Grammar::

    expr       := or
    or         := and ("||" and)*
    and        := not ("&&" not)*
    not        := "!" not | comparison
    comparison := operand (("==" | "!=" | "<" | "<=" | ">" | ">=" | "contains") operand)?
    operand    := literal | path | "(" expr ")" | "[" [operand ("," operand)*] "]"
    path       := name ("." (name | integer))*

A leading ``state.`` segment is optional. Paths that do not resolve evaluate to
:data:`ABSENT`; every comparison involving ``ABSENT`` is false and ``ABSENT`` is
falsy on its own. Nothing here performs I/O or calls user code.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from functools import lru_cache
import operator
import re
from typing import Any

from .errors import ConditionSyntaxError


class _Absent:
    _instance: _Absent | None = None

    def __new__(cls) -> _Absent:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABSENT"


ABSENT: Any = _Absent()

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<op>==|!=|<=|>=|&&|\|\||<|>|!|\(|\)|\[|\]|,|\.)
  | (?P<name>[A-Za-z_][A-Za-z0-9_\-]*)
    """,
    re.VERBOSE,
)

_INDEX_RE = re.compile(r"\d+")

_KEYWORDS = {"true": True, "false": False, "null": None, "none": None}


@dataclass(frozen=True, slots=True)
class _Token:
    kind: str
    text: str
    position: int


def _tokenize(expression: str) -> list[_Token]:
    tokens: list[_Token] = []
    position = 0
    while position < len(expression):
        after_dot = bool(tokens) and tokens[-1].text == "." and tokens[-1].kind == "op"
        # path indices: "items.0.1" is two segments, not the number 0.1
        match = _INDEX_RE.match(expression, position) if after_dot else None
        if match is None:
            match = _TOKEN_RE.match(expression, position)
        if match is None:
            raise ConditionSyntaxError(
                expression, f"unexpected character {expression[position]!r}", position=position
            )
        kind = match.lastgroup or ("number" if after_dot else "")
        if kind != "ws":
            tokens.append(_Token(kind, match.group(), position))
        position = match.end()
    return tokens


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


def _compare(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def _apply(left: Any, right: Any) -> bool:
        if left is ABSENT or right is ABSENT:
            return False
        try:
            return bool(op(left, right))
        except TypeError:
            return False

    return _apply


def _contains(container: Any, item: Any) -> bool:
    if container is ABSENT or item is ABSENT:
        return False
    if isinstance(container, str):
        return isinstance(item, str) and item in container
    if isinstance(container, (Mapping, Sequence, set, frozenset)):
        try:
            return item in container
        except TypeError:
            return False
    return False


_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": _compare(operator.eq),
    "!=": _compare(operator.ne),
    "<": _compare(operator.lt),
    "<=": _compare(operator.le),
    ">": _compare(operator.gt),
    ">=": _compare(operator.ge),
    "contains": _contains,
}


def resolve_path(state: Mapping[str, Any], segments: Sequence[str]) -> Any:
    """Walk ``segments`` through nested mappings/lists; ``ABSENT`` when missing."""

    parts = list(segments)
    if parts and parts[0] == "state" and "state" not in state:
        parts = parts[1:]
    current: Any = state
    for part in parts:
        if isinstance(current, Mapping):
            if part not in current:
                return ABSENT
            current = current[part]
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return ABSENT
        else:
            return ABSENT
    return current


class _Node:
    def evaluate(self, state: Mapping[str, Any]) -> Any:  # pragma: no cover - abstract
        raise NotImplementedError


@dataclass(frozen=True, slots=True)
class _Literal(_Node):
    value: Any

    def evaluate(self, state: Mapping[str, Any]) -> Any:
        return self.value


@dataclass(frozen=True, slots=True)
class _ListLiteral(_Node):
    items: tuple[_Node, ...]

    def evaluate(self, state: Mapping[str, Any]) -> Any:
        return [item.evaluate(state) for item in self.items]


@dataclass(frozen=True, slots=True)
class _Path(_Node):
    segments: tuple[str, ...]

    def evaluate(self, state: Mapping[str, Any]) -> Any:
        return resolve_path(state, self.segments)


@dataclass(frozen=True, slots=True)
class _Compare(_Node):
    op: str
    left: _Node
    right: _Node

    def evaluate(self, state: Mapping[str, Any]) -> Any:
        return _COMPARATORS[self.op](self.left.evaluate(state), self.right.evaluate(state))


@dataclass(frozen=True, slots=True)
class _Not(_Node):
    operand: _Node

    def evaluate(self, state: Mapping[str, Any]) -> Any:
        return not bool(self.operand.evaluate(state))


@dataclass(frozen=True, slots=True)
class _BoolOp(_Node):
    op: str
    operands: tuple[_Node, ...]

    def evaluate(self, state: Mapping[str, Any]) -> Any:
        if self.op == "&&":
            return all(bool(operand.evaluate(state)) for operand in self.operands)
        return any(bool(operand.evaluate(state)) for operand in self.operands)


class _Parser:
    def __init__(self, expression: str) -> None:
        self._expression = expression
        self._tokens = _tokenize(expression)
        self._index = 0

    def _peek(self) -> _Token | None:
        return self._tokens[self._index] if self._index < len(self._tokens) else None

    def _advance(self) -> _Token:
        token = self._peek()
        if token is None:
            raise ConditionSyntaxError(self._expression, "unexpected end of expression")
        self._index += 1
        return token

    def _error(self, reason: str, token: _Token | None) -> ConditionSyntaxError:
        position = token.position if token is not None else len(self._expression)
        return ConditionSyntaxError(self._expression, reason, position=position)

    def _accept(self, text: str) -> bool:
        token = self._peek()
        if token is not None and token.kind in {"op", "name"} and token.text == text:
            self._index += 1
            return True
        return False

    def parse(self) -> _Node:
        if not self._tokens:
            raise ConditionSyntaxError(self._expression, "empty expression")
        node = self._or()
        trailing = self._peek()
        if trailing is not None:
            raise self._error(f"unexpected token {trailing.text!r}", trailing)
        return node

    def _or(self) -> _Node:
        operands = [self._and()]
        while self._accept("||"):
            operands.append(self._and())
        return operands[0] if len(operands) == 1 else _BoolOp("||", tuple(operands))

    def _and(self) -> _Node:
        operands = [self._not()]
        while self._accept("&&"):
            operands.append(self._not())
        return operands[0] if len(operands) == 1 else _BoolOp("&&", tuple(operands))

    def _not(self) -> _Node:
        if self._accept("!"):
            return _Not(self._not())
        return self._comparison()

    def _comparison(self) -> _Node:
        left = self._operand()
        token = self._peek()
        if token is not None and token.text in _COMPARATORS and token.kind in {"op", "name"}:
            self._index += 1
            right = self._operand()
            return _Compare(token.text, left, right)
        return left

    def _operand(self) -> _Node:
        token = self._advance()
        if token.kind == "number":
            text = token.text
            return _Literal(float(text) if "." in text else int(text))
        if token.kind == "string":
            return _Literal(_unquote(token.text))
        if token.kind == "op" and token.text == "(":
            node = self._or()
            if not self._accept(")"):
                raise self._error("expected ')'", self._peek())
            return node
        if token.kind == "op" and token.text == "[":
            items: list[_Node] = []
            if not self._accept("]"):
                items.append(self._operand())
                while self._accept(","):
                    items.append(self._operand())
                if not self._accept("]"):
                    raise self._error("expected ']'", self._peek())
            return _ListLiteral(tuple(items))
        if token.kind == "name":
            lowered = token.text.lower()
            if lowered in _KEYWORDS and not self._next_is_dot():
                return _Literal(_KEYWORDS[lowered])
            segments = [token.text]
            while self._accept("."):
                part = self._advance()
                if part.kind not in {"name", "number"}:
                    raise self._error("expected path segment", part)
                segments.append(part.text)
            return _Path(tuple(segments))
        raise self._error(f"unexpected token {token.text!r}", token)

    def _next_is_dot(self) -> bool:
        token = self._peek()
        return token is not None and token.kind == "op" and token.text == "."


@dataclass(frozen=True, slots=True)
class Condition:
    """A parsed, reusable condition."""

    expression: str
    _root: _Node

    def evaluate(self, state: Mapping[str, Any]) -> bool:
        return bool(self._root.evaluate(state))


@lru_cache(maxsize=512)
def compile_condition(expression: str) -> Condition:
    """Parse ``expression``; raises :class:`ConditionSyntaxError` when malformed."""

    return Condition(expression, _Parser(expression).parse())


def evaluate(expression: str, state: Mapping[str, Any]) -> bool:
    return compile_condition(expression).evaluate(state)


__all__ = ["ABSENT", "Condition", "compile_condition", "evaluate", "resolve_path"]
