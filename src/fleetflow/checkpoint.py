"""Append-only workflow checkpoints on top of a persistence backend."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
import logging
from threading import Lock
import time
from typing import Any

from .errors import PersistenceError
from .persistence import InMemoryBackend, PersistenceBackend
from .utils import jsonable

LOGGER = logging.getLogger(__name__)

CHECKPOINT_NAMESPACE = "checkpoints"


@dataclass(frozen=True)
class Checkpoint:
    """Snapshot of a run: ``step_id`` is the step to execute on resume."""

    checkpoint_id: str
    run_id: str
    step_id: str
    state_snapshot: Mapping[str, Any]
    created_at: float
    sequence: int
    workflow: str = ""
    status: str = "running"
    completed_steps: tuple[str, ...] = ()
    history: tuple[Mapping[str, Any], ...] = ()
    approval: Mapping[str, Any] | None = None
    error: Mapping[str, Any] | None = None
    outcome: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checkpoint_id": self.checkpoint_id,
            "run_id": self.run_id,
            "step_id": self.step_id,
            "state_snapshot": jsonable(dict(self.state_snapshot)),
            "created_at": self.created_at,
            "sequence": self.sequence,
            "workflow": self.workflow,
            "status": self.status,
            "completed_steps": list(self.completed_steps),
            "history": jsonable([dict(entry) for entry in self.history]),
            "approval": jsonable(dict(self.approval)) if self.approval is not None else None,
            "error": dict(self.error) if self.error is not None else None,
            "outcome": self.outcome,
            "metadata": jsonable(dict(self.metadata)),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Checkpoint:
        try:
            return cls(
                checkpoint_id=str(data["checkpoint_id"]),
                run_id=str(data["run_id"]),
                step_id=str(data["step_id"]),
                state_snapshot=dict(data.get("state_snapshot") or {}),
                created_at=float(data["created_at"]),
                sequence=int(data["sequence"]),
                workflow=str(data.get("workflow") or ""),
                status=str(data.get("status") or "running"),
                completed_steps=tuple(data.get("completed_steps") or ()),
                history=tuple(data.get("history") or ()),
                approval=data.get("approval"),
                error=data.get("error"),
                outcome=data.get("outcome"),
                metadata=dict(data.get("metadata") or {}),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise PersistenceError(f"corrupt checkpoint record: {exc}") from exc


class CheckpointStore:
    """Writes, lists and prunes checkpoints per run.

    Checkpoints of one run are strictly ordered by ``sequence`` and their
    ``created_at`` never decreases. ``history`` bounds how many are retained;
    the newest is always kept.
    """

    def __init__(
        self,
        backend: PersistenceBackend | None = None,
        *,
        history: int | None = 10,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend: PersistenceBackend = backend if backend is not None else InMemoryBackend()
        self._history = history
        self._clock = clock
        self._lock = Lock()
        self._last: dict[str, tuple[int, float]] = {}

    @property
    def backend(self) -> PersistenceBackend:
        return self._backend

    def _keys(self, run_id: str) -> list[str]:
        try:
            return self._backend.keys(CHECKPOINT_NAMESPACE, f"{run_id}/")
        except PersistenceError:
            raise
        except Exception as exc:  # noqa: BLE001 - backend boundary
            raise PersistenceError(f"failed to list checkpoints for {run_id}: {exc}") from exc

    def _read(self, key: str) -> Checkpoint | None:
        try:
            raw = self._backend.get(CHECKPOINT_NAMESPACE, key)
        except PersistenceError:
            raise
        except Exception as exc:  # noqa: BLE001 - backend boundary
            raise PersistenceError(f"failed to read checkpoint {key}: {exc}") from exc
        if raw is None:
            return None
        return Checkpoint.from_dict(raw)

    def save(
        self,
        run_id: str,
        *,
        step_id: str,
        state: Mapping[str, Any],
        workflow: str = "",
        status: str = "running",
        completed_steps: Sequence[str] = (),
        history: Sequence[Mapping[str, Any]] = (),
        approval: Mapping[str, Any] | None = None,
        error: Mapping[str, Any] | None = None,
        outcome: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        keep: int | None = None,
    ) -> Checkpoint:
        with self._lock:
            last = self._last.get(run_id)
            if last is None:
                latest = self._latest_unlocked(run_id)
                last = (latest.sequence, latest.created_at) if latest is not None else (0, 0.0)
            sequence = last[0] + 1
            created_at = max(self._clock(), last[1])
            checkpoint = Checkpoint(
                checkpoint_id=f"{run_id}-{sequence:06d}",
                run_id=run_id,
                step_id=step_id,
                state_snapshot=jsonable(dict(state)),
                created_at=created_at,
                sequence=sequence,
                workflow=workflow,
                status=status,
                completed_steps=tuple(completed_steps),
                history=tuple(history),
                approval=approval,
                error=error,
                outcome=outcome,
                metadata=dict(metadata or {}),
            )
            key = f"{run_id}/{sequence:08d}"
            try:
                self._backend.put(CHECKPOINT_NAMESPACE, key, checkpoint.to_dict())
            except PersistenceError:
                raise
            except Exception as exc:  # noqa: BLE001 - backend boundary
                raise PersistenceError(f"failed to write checkpoint {key}: {exc}") from exc
            self._last[run_id] = (sequence, created_at)
            self._prune(run_id, keep if keep is not None else self._history)
        LOGGER.debug("checkpoint %s saved at step %s", checkpoint.checkpoint_id, step_id)
        return checkpoint

    def _prune(self, run_id: str, keep: int | None) -> None:
        if keep is None or keep <= 0:
            return
        keys = self._keys(run_id)
        for key in keys[: max(0, len(keys) - keep)]:
            try:
                self._backend.delete(CHECKPOINT_NAMESPACE, key)
            except Exception as exc:  # noqa: BLE001 - backend boundary
                raise PersistenceError(f"failed to prune checkpoint {key}: {exc}") from exc

    def _latest_unlocked(self, run_id: str) -> Checkpoint | None:
        keys = self._keys(run_id)
        for key in reversed(keys):
            checkpoint = self._read(key)
            if checkpoint is not None:
                return checkpoint
        return None

    def latest(self, run_id: str) -> Checkpoint | None:
        with self._lock:
            return self._latest_unlocked(run_id)

    def list(self, run_id: str) -> list[Checkpoint]:
        with self._lock:
            checkpoints = [self._read(key) for key in self._keys(run_id)]
        return [checkpoint for checkpoint in checkpoints if checkpoint is not None]

    def delete_run(self, run_id: str) -> int:
        with self._lock:
            keys = self._keys(run_id)
            for key in keys:
                self._backend.delete(CHECKPOINT_NAMESPACE, key)
            self._last.pop(run_id, None)
        return len(keys)

    def runs(self) -> list[str]:
        try:
            keys = self._backend.keys(CHECKPOINT_NAMESPACE)
        except Exception as exc:  # noqa: BLE001 - backend boundary
            raise PersistenceError(f"failed to list checkpoint runs: {exc}") from exc
        return sorted({key.split("/", 1)[0] for key in keys})


__all__ = ["CHECKPOINT_NAMESPACE", "Checkpoint", "CheckpointStore"]
