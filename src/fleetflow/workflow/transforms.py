"""Deterministic, I/O-free state transformations for Transform steps."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
import copy
import re
from typing import Any

from ..conditions import ABSENT, resolve_path

_PLACEHOLDER_RE = re.compile(r"\{([^{}]+)\}")

Operation = Mapping[str, Any]
OperationHandler = Callable[[dict[str, Any], Operation], None]


def _segments(path: str) -> list[str]:
    return [part for part in path.split(".") if part]


def _lookup(state: Mapping[str, Any], path: str) -> Any:
    return resolve_path(state, _segments(path))


def _assign(state: dict[str, Any], path: str, value: Any) -> None:
    parts = _segments(path)
    if not parts:
        raise ValueError("transform target key must not be empty")
    target: dict[str, Any] = state
    for part in parts[:-1]:
        child = target.get(part)
        if not isinstance(child, dict):
            child = {}
            target[part] = child
        target = child
    target[parts[-1]] = value


def render_template(template: str, state: Mapping[str, Any]) -> str:
    """Replace ``{dotted.path}`` placeholders; missing paths render empty."""

    def _substitute(match: re.Match[str]) -> str:
        value = _lookup(state, match.group(1).strip())
        return "" if value is ABSENT or value is None else str(value)

    return _PLACEHOLDER_RE.sub(_substitute, template)


def _op_set(state: dict[str, Any], op: Operation) -> None:
    _assign(state, op["key"], copy.deepcopy(op.get("value")))


def _op_copy(state: dict[str, Any], op: Operation) -> None:
    value = _lookup(state, op["from"])
    _assign(state, op["key"], None if value is ABSENT else copy.deepcopy(value))


def _op_delete(state: dict[str, Any], op: Operation) -> None:
    parts = _segments(op["key"])
    target: Any = state
    for part in parts[:-1]:
        if not isinstance(target, dict) or part not in target:
            return
        target = target[part]
    if isinstance(target, dict):
        target.pop(parts[-1], None)


def _op_increment(state: dict[str, Any], op: Operation) -> None:
    current = _lookup(state, op["key"])
    by = op.get("by", 1)
    if current is ABSENT or current is None:
        current = 0
    if isinstance(current, bool) or not isinstance(current, (int, float)):
        raise ValueError(f"cannot increment non-numeric key {op['key']!r}")
    _assign(state, op["key"], current + by)


def _op_append(state: dict[str, Any], op: Operation) -> None:
    current = _lookup(state, op["key"])
    items = [] if current is ABSENT or current is None else list(current)
    items.append(copy.deepcopy(op.get("value")))
    _assign(state, op["key"], items)


def _op_merge(state: dict[str, Any], op: Operation) -> None:
    current = _lookup(state, op["key"])
    value = op.get("value") or {}
    if not isinstance(value, Mapping):
        raise ValueError("merge transform needs a mapping value")
    base = dict(current) if isinstance(current, Mapping) else {}
    base.update(copy.deepcopy(dict(value)))
    _assign(state, op["key"], base)


def _op_template(state: dict[str, Any], op: Operation) -> None:
    _assign(state, op["key"], render_template(str(op.get("template", "")), state))


TRANSFORM_OPERATIONS: dict[str, OperationHandler] = {
    "set": _op_set,
    "copy": _op_copy,
    "delete": _op_delete,
    "increment": _op_increment,
    "append": _op_append,
    "merge": _op_merge,
    "template": _op_template,
}

_REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    "set": ("key",),
    "copy": ("key", "from"),
    "delete": ("key",),
    "increment": ("key",),
    "append": ("key",),
    "merge": ("key",),
    "template": ("key", "template"),
}


def validate_operations(operations: Sequence[Operation]) -> list[str]:
    issues: list[str] = []
    for index, op in enumerate(operations):
        name = op.get("op") if isinstance(op, Mapping) else None
        if name not in TRANSFORM_OPERATIONS:
            issues.append(f"operation #{index}: unknown op {name!r}")
            continue
        missing = [field for field in _REQUIRED_FIELDS[name] if field not in op]
        if missing:
            issues.append(f"operation #{index} ({name}): missing {', '.join(missing)}")
    return issues


def apply_transform(state: Mapping[str, Any], operations: Sequence[Operation]) -> dict[str, Any]:
    """Return a new state with ``operations`` applied in order; ``state`` is untouched."""

    result = copy.deepcopy(dict(state))
    for op in operations:
        TRANSFORM_OPERATIONS[op["op"]](result, op)
    return result


__all__ = [
    "TRANSFORM_OPERATIONS",
    "apply_transform",
    "render_template",
    "validate_operations",
]
