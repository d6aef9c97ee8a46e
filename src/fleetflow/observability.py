"""Structured event logging for fleet and workflow runs."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
import json
import logging
from pathlib import Path
import sys
from threading import Lock
from typing import Any, Protocol, TextIO

from .utils import now_ms

PathLike = str | Path

LOGGER = logging.getLogger(__name__)


class EventLogger(Protocol):
    """Protocol for structured event loggers."""

    def emit(self, event_type: str, record: Mapping[str, Any]) -> None:
        """Persist ``record`` for ``event_type``."""


class JsonlLogger:
    """Append structured events to a JSONL file with basic locking."""

    def __init__(self, path: PathLike) -> None:
        self._path = Path(path)
        self._lock = Lock()

    @property
    def path(self) -> Path:
        return self._path

    def emit(self, event_type: str, record: Mapping[str, Any]) -> None:
        payload = dict(record)
        payload.setdefault("event", event_type)

        parent = self._path.parent
        if parent != Path(""):
            parent.mkdir(parents=True, exist_ok=True)

        with self._lock:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")


class StdLogger:
    """Emit structured events to a text stream as JSON."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream or sys.stdout
        self._lock = Lock()

    def emit(self, event_type: str, record: Mapping[str, Any]) -> None:
        payload = dict(record)
        payload.setdefault("event", event_type)

        with self._lock:
            self._stream.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
            self._stream.flush()


class CompositeLogger:
    """Fan out events to multiple loggers while isolating failures."""

    def __init__(self, loggers: Iterable[EventLogger] | None = None) -> None:
        self._loggers: list[EventLogger] = list(loggers or ())
        self._lock = Lock()

    def add(self, logger: EventLogger) -> None:
        with self._lock:
            self._loggers.append(logger)

    def clear(self) -> None:
        with self._lock:
            self._loggers.clear()

    def emit(self, event_type: str, record: Mapping[str, Any]) -> None:
        with self._lock:
            loggers = tuple(self._loggers)

        for logger in loggers:
            try:
                logger.emit(event_type, record)
            except Exception:  # noqa: BLE001 - logger isolation
                LOGGER.warning("event logger %r failed for %s", logger, event_type, exc_info=True)


def emit_event(
    logger: EventLogger | None,
    event_type: str,
    *,
    run_id: str,
    **fields: Any,
) -> None:
    """Emit ``event_type`` stamped with ``run_id`` and ``ts``; failures are logged only."""

    if logger is None:
        return
    record: dict[str, Any] = {"ts": now_ms(), "run_id": run_id}
    record.update(fields)
    try:
        logger.emit(event_type, record)
    except Exception:  # noqa: BLE001 - a broken sink must not fail the run
        LOGGER.warning("failed to emit %s for %s", event_type, run_id, exc_info=True)


__all__ = [
    "CompositeLogger",
    "EventLogger",
    "JsonlLogger",
    "StdLogger",
    "emit_event",
]
