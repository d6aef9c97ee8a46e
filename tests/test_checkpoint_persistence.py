from __future__ import annotations

from pathlib import Path

import pytest

from fleetflow.checkpoint import CheckpointStore
from fleetflow.errors import PersistenceError
from fleetflow.persistence import FileBackend, InMemoryBackend


def test_checkpoint_ids_follow_sequence(clock) -> None:
    store = CheckpointStore(clock=clock.time)

    first = store.save("run-1", step_id="a", state={"x": 1})
    second = store.save("run-1", step_id="b", state={"x": 2})

    assert first.checkpoint_id == "run-1-000001"
    assert second.checkpoint_id == "run-1-000002"
    assert store.latest("run-1") == second
    assert [checkpoint.step_id for checkpoint in store.list("run-1")] == ["a", "b"]


def test_created_at_never_goes_backwards(clock) -> None:
    store = CheckpointStore(clock=clock.time)
    store.save("run-1", step_id="a", state={})
    clock.current -= 50

    later = store.save("run-1", step_id="b", state={})

    assert later.created_at == 1000.0


def test_state_snapshot_is_detached_from_caller(clock) -> None:
    store = CheckpointStore(clock=clock.time)
    state = {"items": [1]}

    checkpoint = store.save("run-1", step_id="a", state=state)
    state["items"].append(2)

    assert checkpoint.state_snapshot == {"items": [1]}
    assert store.latest("run-1").state_snapshot == {"items": [1]}


def test_history_prunes_oldest_but_keeps_latest(clock) -> None:
    store = CheckpointStore(history=2, clock=clock.time)
    for index in range(5):
        store.save("run-1", step_id=f"s{index}", state={"i": index})

    kept = store.list("run-1")

    assert [checkpoint.sequence for checkpoint in kept] == [4, 5]
    narrower = store.save("run-1", step_id="last", state={}, keep=1)
    assert store.list("run-1") == [narrower]


def test_runs_and_delete_run(clock) -> None:
    store = CheckpointStore(clock=clock.time)
    store.save("alpha", step_id="a", state={})
    store.save("beta", step_id="a", state={})
    store.save("beta", step_id="b", state={})

    assert store.runs() == ["alpha", "beta"]
    assert store.delete_run("beta") == 2
    assert store.runs() == ["alpha"]
    assert store.save("beta", step_id="a", state={}).sequence == 1


def test_file_backend_survives_reload(tmp_path: Path, clock) -> None:
    path = tmp_path / "state" / "checkpoints.json"
    store = CheckpointStore(FileBackend(path, clock=clock.time), clock=clock.time)
    store.save("run-1", step_id="a", state={"x": 1}, workflow="wf", metadata={"phase": "transition"})
    store.save("run-1", step_id="b", state={"x": 2}, workflow="wf", status="paused")

    reopened = CheckpointStore(FileBackend(path, clock=clock.time), clock=clock.time)
    latest = reopened.latest("run-1")

    assert latest is not None
    assert latest.step_id == "b"
    assert latest.status == "paused"
    assert latest.workflow == "wf"
    assert reopened.save("run-1", step_id="c", state={}).checkpoint_id == "run-1-000003"


def test_corrupt_file_raises_persistence_error(tmp_path: Path) -> None:
    path = tmp_path / "checkpoints.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(PersistenceError):
        FileBackend(path)


def test_corrupt_record_raises_persistence_error(clock) -> None:
    backend = InMemoryBackend(clock=clock.time)
    backend.put("checkpoints", "run-1/00000001", {"run_id": "run-1"})
    store = CheckpointStore(backend, clock=clock.time)

    with pytest.raises(PersistenceError):
        store.latest("run-1")


def test_file_backend_trims_to_max_entries(tmp_path: Path, clock) -> None:
    backend = FileBackend(tmp_path / "kv.json", max_entries=2, clock=clock.time)
    for index in range(3):
        backend.put("ns", f"k{index}", index)
        clock.current += 1

    assert backend.keys("ns") == ["k1", "k2"]
    assert len(backend) == 2


def test_backend_ttl_expires_entries(tmp_path: Path, clock) -> None:
    for backend in (InMemoryBackend(clock=clock.time), FileBackend(tmp_path / "ttl.json", clock=clock.time)):
        backend.put("ns", "short", "v", ttl_s=5)
        backend.put("ns", "long", "v")
        assert backend.get("ns", "short") == "v"

        clock.current += 5

        assert backend.get("ns", "short") is None
        assert backend.keys("ns") == ["long"]
        assert backend.delete("ns", "long") is True
        assert backend.delete("ns", "long") is False
