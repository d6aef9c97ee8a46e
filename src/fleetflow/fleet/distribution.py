"""swarm モードのメンバー選択とロード管理。"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
import random
from threading import Lock

from ..models import AgentMember, AgentTask, Distribution, FleetDef


class LoadTracker:
    """メンバーごとの実行中/完了件数。ディスパッチで加算、完了で減算する。"""

    def __init__(self) -> None:
        self._lock = Lock()
        self._in_flight: dict[str, int] = {}
        self._completed: dict[str, int] = {}

    def acquire(self, member: str) -> None:
        with self._lock:
            self._in_flight[member] = self._in_flight.get(member, 0) + 1

    def release(self, member: str) -> None:
        with self._lock:
            current = self._in_flight.get(member, 0)
            self._in_flight[member] = max(0, current - 1)
            self._completed[member] = self._completed.get(member, 0) + 1

    def in_flight(self, member: str) -> int:
        with self._lock:
            return self._in_flight.get(member, 0)

    def completed(self, member: str) -> int:
        with self._lock:
            return self._completed.get(member, 0)

    def snapshot(self) -> dict[str, dict[str, int]]:
        with self._lock:
            names = set(self._in_flight) | set(self._completed)
            return {
                name: {
                    "in_flight": self._in_flight.get(name, 0),
                    "completed": self._completed.get(name, 0),
                }
                for name in sorted(names)
            }


@dataclass
class SelectionState:
    tracker: LoadTracker
    rng: random.Random
    cursors: dict[str, int] = field(default_factory=dict)
    affinity: dict[tuple[str, str], str] = field(default_factory=dict)
    lock: Lock = field(default_factory=Lock)


Selector = Callable[[SelectionState, FleetDef, Sequence[AgentMember], AgentTask], AgentMember]


def _least_loaded(
    state: SelectionState, fleet: FleetDef, members: Sequence[AgentMember], task: AgentTask
) -> AgentMember:
    ranked = sorted(
        enumerate(members),
        key=lambda item: (
            state.tracker.in_flight(item[1].name),
            state.tracker.completed(item[1].name),
            item[0],
        ),
    )
    return ranked[0][1]


def _round_robin(
    state: SelectionState, fleet: FleetDef, members: Sequence[AgentMember], task: AgentTask
) -> AgentMember:
    with state.lock:
        cursor = state.cursors.get(fleet.name, 0)
        state.cursors[fleet.name] = cursor + 1
    return members[cursor % len(members)]


def _random(
    state: SelectionState, fleet: FleetDef, members: Sequence[AgentMember], task: AgentTask
) -> AgentMember:
    with state.lock:
        return state.rng.choice(list(members))


def _skill_based(
    state: SelectionState, fleet: FleetDef, members: Sequence[AgentMember], task: AgentTask
) -> AgentMember:
    skill = task.required_skill
    if skill:
        skilled = [member for member in members if skill in member.skills]
        if skilled:
            return _least_loaded(state, fleet, skilled, task)
    return _least_loaded(state, fleet, members, task)


def _sticky(
    state: SelectionState, fleet: FleetDef, members: Sequence[AgentMember], task: AgentTask
) -> AgentMember:
    key = task.affinity_key
    if not key:
        return _least_loaded(state, fleet, members, task)
    names = {member.name: member for member in members}
    with state.lock:
        assigned = state.affinity.get((fleet.name, key))
    if assigned in names:
        return names[assigned]
    chosen = _least_loaded(state, fleet, members, task)
    with state.lock:
        chosen_name = state.affinity.setdefault((fleet.name, key), chosen.name)
    return names.get(chosen_name, chosen)


SELECTORS: dict[Distribution, Selector] = {
    Distribution.ROUND_ROBIN: _round_robin,
    Distribution.LEAST_LOADED: _least_loaded,
    Distribution.RANDOM: _random,
    Distribution.SKILL_BASED: _skill_based,
    Distribution.STICKY: _sticky,
}


def select_member(
    state: SelectionState,
    fleet: FleetDef,
    task: AgentTask,
    distribution: Distribution | None = None,
    members: Sequence[AgentMember] | None = None,
) -> AgentMember:
    candidates = list(members if members is not None else fleet.members)
    if not candidates:
        raise ValueError(f"fleet {fleet.name!r} has no members to select from")
    selector = SELECTORS[distribution or Distribution.LEAST_LOADED]
    return selector(state, fleet, candidates, task)


__all__ = ["LoadTracker", "SELECTORS", "SelectionState", "select_member"]
