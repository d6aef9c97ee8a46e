"""Utility helpers shared across fleet and workflow execution."""

from __future__ import annotations

from collections.abc import Mapping
import copy
import json
import re
import time
from typing import Any
import uuid

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?\s*$")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, "d": 86400.0}
_WHITESPACE_RE = re.compile(r"\s+")


def parse_duration(value: str | float | int | None, *, default: float | None = None) -> float | None:
    """Convert ``"500ms"``/``"30s"``/``"5m"``/``"1h"`` or a number of seconds to seconds."""

    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"duration must be non-negative: {value!r}")
        return float(value)
    match = _DURATION_RE.match(value)
    if match is None:
        raise ValueError(f"invalid duration: {value!r}")
    amount, unit = match.groups()
    return float(amount) * _UNIT_SECONDS[unit or "s"]


def new_run_id(prefix: str = "run") -> str:
    """Return a unique, sortable-enough identifier for a run."""

    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def now_ms() -> int:
    return int(time.time() * 1000)


def elapsed_ms(start_ts: float, *, now: float | None = None) -> float:
    """Return elapsed time in milliseconds since the monotonic ``start_ts``."""

    current = time.monotonic() if now is None else now
    return max(0.0, (current - start_ts) * 1000.0)


def decision_key(value: Any) -> str:
    """Return the canonical bucket key used to group equal decisions."""

    if isinstance(value, str):
        normalized = _WHITESPACE_RE.sub(" ", value.strip())
        return f"text:{normalized.lower()}"
    try:
        canonical = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        canonical = repr(value)
    return f"json:{canonical}"


def snapshot(state: Mapping[str, Any]) -> dict[str, Any]:
    """Return a private deep copy of ``state``."""

    return copy.deepcopy(dict(state))


def jsonable(value: Any) -> Any:
    """Coerce ``value`` into something ``json.dumps`` accepts."""

    return json.loads(json.dumps(value, default=str))


__all__ = [
    "decision_key",
    "elapsed_ms",
    "jsonable",
    "new_run_id",
    "now_ms",
    "parse_duration",
    "snapshot",
]
