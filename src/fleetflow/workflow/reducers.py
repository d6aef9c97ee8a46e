"""Per-key state reducers and branch delta merging."""

from __future__ import annotations

from collections.abc import Mapping, MutableMapping
import copy
from numbers import Number
from typing import Any

from .models import ReducerType

_MISSING = object()


def apply_update(
    state: MutableMapping[str, Any], key: str, value: Any, reducer: ReducerType = ReducerType.REPLACE
) -> None:
    """Write ``value`` into ``state[key]`` using ``reducer``."""

    existing = state.get(key, _MISSING)
    if reducer is ReducerType.REPLACE or existing is _MISSING and reducer is not ReducerType.APPEND:
        state[key] = value
        return
    if reducer is ReducerType.APPEND:
        current = [] if existing is _MISSING or existing is None else existing
        if not isinstance(current, list):
            current = [current]
        state[key] = [*current, *value] if isinstance(value, list) else [*current, value]
        return
    if reducer is ReducerType.MERGE:
        if isinstance(existing, Mapping) and isinstance(value, Mapping):
            state[key] = {**existing, **value}
        else:
            state[key] = value
        return
    if reducer is ReducerType.SUM:
        if not _is_number(existing) or not _is_number(value):
            raise ValueError(f"sum reducer on {key!r} needs numeric values")
        state[key] = existing + value
        return
    raise ValueError(f"unknown reducer: {reducer!r}")


def apply_updates(
    state: MutableMapping[str, Any],
    updates: Mapping[str, Any],
    reducers: Mapping[str, ReducerType],
) -> list[str]:
    for key, value in updates.items():
        apply_update(state, key, value, reducers.get(key, ReducerType.REPLACE))
    return list(updates)


def _is_number(value: Any) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def branch_delta(
    base: Mapping[str, Any],
    branch: Mapping[str, Any],
    reducers: Mapping[str, ReducerType],
) -> tuple[dict[str, Any], list[str]]:
    """Return ``(updates, deleted)`` a branch made relative to the fork snapshot.

    Updates are expressed so that re-applying them with the key's reducer adds
    only what the branch contributed: appended items for ``append``, the
    numeric difference for ``sum``, changed sub-keys for ``merge``.
    """

    updates: dict[str, Any] = {}
    for key, value in branch.items():
        before = base.get(key, _MISSING)
        if before is not _MISSING and before == value:
            continue
        reducer = reducers.get(key, ReducerType.REPLACE)
        if before is _MISSING:
            updates[key] = copy.deepcopy(value)
        elif reducer is ReducerType.APPEND and isinstance(before, list) and isinstance(value, list):
            if value[: len(before)] == before:
                updates[key] = copy.deepcopy(value[len(before):])
            else:
                updates[key] = copy.deepcopy(value)
        elif reducer is ReducerType.SUM and _is_number(before) and _is_number(value):
            updates[key] = value - before
        elif reducer is ReducerType.MERGE and isinstance(before, Mapping) and isinstance(value, Mapping):
            updates[key] = {
                sub_key: copy.deepcopy(sub_value)
                for sub_key, sub_value in value.items()
                if sub_key not in before or before[sub_key] != sub_value
            }
        else:
            updates[key] = copy.deepcopy(value)
    deleted = [key for key in base if key not in branch]
    return updates, deleted


def merge_branch_states(
    state: MutableMapping[str, Any],
    base: Mapping[str, Any],
    branches: list[tuple[str, Mapping[str, Any]]],
    reducers: Mapping[str, ReducerType],
) -> list[str]:
    """Fold branch deltas into ``state`` in the given (declaration) order."""

    touched: list[str] = []
    for _, branch_state in branches:
        updates, deleted = branch_delta(base, branch_state, reducers)
        for key in deleted:
            state.pop(key, None)
        for key, value in updates.items():
            reducer = reducers.get(key, ReducerType.REPLACE)
            if reducer is ReducerType.APPEND and key in base and not isinstance(base.get(key), list):
                reducer = ReducerType.REPLACE
            apply_update(state, key, value, reducer)
            if key not in touched:
                touched.append(key)
    return touched


__all__ = ["apply_update", "apply_updates", "branch_delta", "merge_branch_states"]
