"""Broadcast key/value store shared by the members of a fleet.

Entries are informational context only; coordinators never read them to make
control-flow decisions. Writes are last-write-wins by a store-wide monotonic
version, and every namespace may carry its own TTL.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
import time
from typing import Any


@dataclass(frozen=True, slots=True)
class SharedEntry:
    value: Any
    version: int
    written_at: float
    expires_at: float | None
    writer: str | None = None

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class SharedStore:
    """Concurrency-safe namespaced store with per-namespace TTL."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = Lock()
        self._version = 0
        self._data: dict[str, dict[str, SharedEntry]] = {}
        self._ttls: dict[str, float | None] = {}

    def namespace(self, name: str, *, ttl_s: float | None = None) -> SharedNamespace:
        with self._lock:
            self._ttls[name] = ttl_s
            self._data.setdefault(name, {})
        return SharedNamespace(self, name)

    def put(
        self,
        namespace: str,
        key: str,
        value: Any,
        *,
        ttl_s: float | None = None,
        writer: str | None = None,
        version: int | None = None,
    ) -> int:
        """Store ``value`` and return the version it was written with.

        An explicit ``version`` older than the stored one is ignored, which
        keeps replayed writes from clobbering newer ones.
        """

        with self._lock:
            now = self._clock()
            bucket = self._data.setdefault(namespace, {})
            current = bucket.get(key)
            if version is not None and current is not None and version <= current.version:
                return current.version
            self._version = max(self._version + 1, version or 0)
            effective_ttl = ttl_s if ttl_s is not None else self._ttls.get(namespace)
            bucket[key] = SharedEntry(
                value=value,
                version=self._version,
                written_at=now,
                expires_at=None if effective_ttl is None else now + effective_ttl,
                writer=writer,
            )
            return self._version

    def entry(self, namespace: str, key: str) -> SharedEntry | None:
        with self._lock:
            bucket = self._data.get(namespace, {})
            current = bucket.get(key)
            if current is None:
                return None
            if current.expired(self._clock()):
                del bucket[key]
                return None
            return current

    def get(self, namespace: str, key: str, default: Any = None) -> Any:
        current = self.entry(namespace, key)
        return default if current is None else current.value

    def delete(self, namespace: str, key: str) -> bool:
        with self._lock:
            return self._data.get(namespace, {}).pop(key, None) is not None

    def items(self, namespace: str) -> dict[str, Any]:
        with self._lock:
            now = self._clock()
            bucket = self._data.get(namespace, {})
            for key in [key for key, entry in bucket.items() if entry.expired(now)]:
                del bucket[key]
            return {key: entry.value for key, entry in bucket.items()}

    def drop_namespace(self, namespace: str) -> None:
        with self._lock:
            self._data.pop(namespace, None)
            self._ttls.pop(namespace, None)


class SharedNamespace:
    """View of one namespace handed to agents through ``AgentTask.shared``."""

    def __init__(self, store: SharedStore, name: str) -> None:
        self._store = store
        self.name = name

    def put(self, key: str, value: Any, *, writer: str | None = None) -> int:
        return self._store.put(self.name, key, value, writer=writer)

    def get(self, key: str, default: Any = None) -> Any:
        return self._store.get(self.name, key, default)

    def delete(self, key: str) -> bool:
        return self._store.delete(self.name, key)

    def snapshot(self) -> dict[str, Any]:
        return self._store.items(self.name)


__all__ = ["SharedEntry", "SharedNamespace", "SharedStore"]
