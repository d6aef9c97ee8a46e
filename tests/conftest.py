from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import pytest

from fleetflow.models import (
    AgentMember,
    AgentResult,
    AgentTask,
    ConsensusConfig,
    CoordinationConfig,
    FleetDef,
)
from fleetflow.registry import Registry


class _FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.current = start
        self.sleeps: list[float] = []

    def time(self) -> float:
        return self.current

    async def sleep(self, duration: float) -> None:
        self.sleeps.append(duration)
        self.current += duration
        await asyncio.sleep(0)


class _CapturingLogger:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, event_type: str, record: Mapping[str, Any]) -> None:
        self.events.append((event_type, dict(record)))

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [payload for kind, payload in self.events if kind == event_type]

    def types(self) -> list[str]:
        return [kind for kind, _ in self.events]


class _ScriptedAgent:
    """Replies from a script; ``Exception`` entries are raised instead."""

    def __init__(
        self,
        name: str,
        replies: Sequence[Any] | Callable[[AgentTask], Any] = (),
        *,
        confidence: float = 1.0,
        delay: float = 0.0,
        block: bool = False,
    ) -> None:
        self.name = name
        self._replies = replies if callable(replies) else list(replies)
        self._confidence = confidence
        self._delay = delay
        self._block = block
        self.calls: list[AgentTask] = []
        self.cancelled = False

    async def execute_async(self, task: AgentTask) -> Any:
        self.calls.append(task)
        try:
            if self._block:
                await asyncio.Event().wait()
            if self._delay:
                await asyncio.sleep(self._delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if callable(self._replies):
            reply = self._replies(task)
        elif self._replies:
            reply = self._replies.pop(0) if len(self._replies) > 1 else self._replies[0]
        else:
            reply = self.name
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, AgentResult):
            return reply
        return AgentResult(member_name=self.name, content=reply, confidence=self._confidence)


@pytest.fixture
def clock() -> _FakeClock:
    return _FakeClock()


@pytest.fixture
def capture() -> _CapturingLogger:
    return _CapturingLogger()


@pytest.fixture
def scripted() -> Callable[..., _ScriptedAgent]:
    return _ScriptedAgent


@pytest.fixture
def make_fleet() -> Callable[..., FleetDef]:
    def _make(
        name: str,
        members: Sequence[AgentMember | str],
        *,
        consensus: ConsensusConfig | None = None,
        **coordination: Any,
    ) -> FleetDef:
        resolved = tuple(
            member if isinstance(member, AgentMember) else AgentMember(name=member) for member in members
        )
        config = CoordinationConfig(consensus=consensus or ConsensusConfig(), **coordination)
        return FleetDef(name=name, members=resolved, coordination=config)

    return _make


@pytest.fixture
def registry_with() -> Callable[..., Registry]:
    def _build(agents: Mapping[str, Any], *fleets: FleetDef) -> Registry:
        registry = Registry(agents=agents)
        for fleet in fleets:
            registry.register_fleet(fleet)
        return registry

    return _build
