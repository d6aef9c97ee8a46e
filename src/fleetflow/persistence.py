"""Pluggable key/value persistence used by the checkpoint store."""

from __future__ import annotations

from collections.abc import Callable
import json
import os
from pathlib import Path
from threading import Lock
import time
from typing import Any, Protocol

from .errors import PersistenceError

PathLike = str | Path


class PersistenceBackend(Protocol):
    """Narrow storage contract: ``put``/``get``/``delete`` plus key listing."""

    def put(self, namespace: str, key: str, value: Any, *, ttl_s: float | None = None) -> None: ...

    def get(self, namespace: str, key: str) -> Any | None: ...

    def delete(self, namespace: str, key: str) -> bool: ...

    def keys(self, namespace: str, prefix: str = "") -> list[str]: ...


def _compose(namespace: str, key: str) -> str:
    return f"{namespace}/{key}"


class InMemoryBackend:
    """Process-local backend; entries expire lazily on access."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = Lock()
        self._entries: dict[str, tuple[Any, float | None]] = {}

    def put(self, namespace: str, key: str, value: Any, *, ttl_s: float | None = None) -> None:
        expires_at = None if ttl_s is None else self._clock() + ttl_s
        with self._lock:
            self._entries[_compose(namespace, key)] = (value, expires_at)

    def get(self, namespace: str, key: str) -> Any | None:
        composed = _compose(namespace, key)
        with self._lock:
            entry = self._entries.get(composed)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._entries[composed]
                return None
            return value

    def delete(self, namespace: str, key: str) -> bool:
        with self._lock:
            return self._entries.pop(_compose(namespace, key), None) is not None

    def keys(self, namespace: str, prefix: str = "") -> list[str]:
        head = _compose(namespace, prefix)
        now = self._clock()
        with self._lock:
            return sorted(
                composed.split("/", 1)[1]
                for composed, (_, expires_at) in self._entries.items()
                if composed.startswith(head) and (expires_at is None or now < expires_at)
            )


class FileBackend:
    """JSON-file backend holding every entry in one document.

    The file is rewritten atomically on each mutation. ``max_entries`` trims
    the oldest entries (by write time) once exceeded.
    """

    def __init__(
        self,
        path: PathLike,
        *,
        max_entries: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._path = Path(path)
        self._max_entries = max_entries
        self._clock = clock
        self._lock = Lock()
        self._cache: dict[str, dict[str, Any]] = self._load()
        if max_entries is not None and len(self._cache) > max_entries:
            self._trim()
            self._persist()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, dict[str, Any]]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"failed to read {self._path}: {exc}") from exc
        if not text.strip():
            return {}
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise PersistenceError(f"failed to parse {self._path}: {exc}") from exc
        if not isinstance(data, dict):
            raise PersistenceError(f"unexpected content in {self._path}")
        return data

    def _trim(self) -> None:
        if self._max_entries is None or len(self._cache) <= self._max_entries:
            return
        ordered = sorted(self._cache.items(), key=lambda item: item[1].get("written_at", 0.0))
        for composed, _ in ordered[: len(self._cache) - self._max_entries]:
            del self._cache[composed]

    def _persist(self) -> None:
        parent = self._path.parent
        try:
            if parent != Path(""):
                parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_name(self._path.name + ".tmp")
            tmp_path.write_text(
                json.dumps(self._cache, ensure_ascii=False, indent=2, default=str),
                encoding="utf-8",
            )
            os.replace(tmp_path, self._path)
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"failed to write {self._path}: {exc}") from exc

    def _expired(self, entry: dict[str, Any]) -> bool:
        expires_at = entry.get("expires_at")
        return expires_at is not None and self._clock() >= float(expires_at)

    def put(self, namespace: str, key: str, value: Any, *, ttl_s: float | None = None) -> None:
        now = self._clock()
        with self._lock:
            self._cache[_compose(namespace, key)] = {
                "value": value,
                "written_at": now,
                "expires_at": None if ttl_s is None else now + ttl_s,
            }
            self._trim()
            self._persist()

    def get(self, namespace: str, key: str) -> Any | None:
        with self._lock:
            entry = self._cache.get(_compose(namespace, key))
            if entry is None or self._expired(entry):
                return None
            return entry.get("value")

    def delete(self, namespace: str, key: str) -> bool:
        with self._lock:
            removed = self._cache.pop(_compose(namespace, key), None) is not None
            if removed:
                self._persist()
            return removed

    def keys(self, namespace: str, prefix: str = "") -> list[str]:
        head = _compose(namespace, prefix)
        with self._lock:
            return sorted(
                composed.split("/", 1)[1]
                for composed, entry in self._cache.items()
                if composed.startswith(head) and not self._expired(entry)
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)


__all__ = ["FileBackend", "InMemoryBackend", "PersistenceBackend"]
