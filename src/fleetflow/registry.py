"""Explicit registry of agent capabilities, fleets and workflows."""

from __future__ import annotations

from collections.abc import Callable, Mapping
import logging
from threading import Lock
from typing import Any

from .agents import AsyncAgentCapability, Capability, ensure_async_agent
from .models import AgentTask, FleetDef
from .workflow.models import WorkflowDef

LOGGER = logging.getLogger(__name__)

AgentLike = Capability | Callable[[AgentTask], Any]


class Registry:
    """名前で定義とケイパビリティを引くためのレジストリ。

    ホストが生成してコーディネータ/エグゼキュータに渡す。``close()`` で
    ``close``/``aclose`` を持つケイパビリティを解放する。
    """

    def __init__(
        self,
        *,
        agents: Mapping[str, AgentLike] | None = None,
        fleets: Mapping[str, FleetDef] | None = None,
        workflows: Mapping[str, WorkflowDef] | None = None,
    ) -> None:
        self._lock = Lock()
        self._raw_agents: dict[str, AgentLike] = {}
        self._agents: dict[str, AsyncAgentCapability] = {}
        self._fleets: dict[str, FleetDef] = {}
        self._workflows: dict[str, WorkflowDef] = {}
        self._closed = False
        for name, agent in (agents or {}).items():
            self.register_agent(name, agent)
        for fleet in (fleets or {}).values():
            self.register_fleet(fleet)
        for workflow in (workflows or {}).values():
            self.register_workflow(workflow)

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("registry is closed")

    def register_agent(self, name: str, agent: AgentLike) -> None:
        adapted = ensure_async_agent(agent)
        with self._lock:
            self._ensure_open()
            self._raw_agents[name] = agent
            self._agents[name] = adapted

    def register_fleet(self, fleet: FleetDef) -> None:
        with self._lock:
            self._ensure_open()
            self._fleets[fleet.name] = fleet

    def register_workflow(self, workflow: WorkflowDef) -> None:
        with self._lock:
            self._ensure_open()
            self._workflows[workflow.name] = workflow

    def agent(self, name: str) -> AsyncAgentCapability:
        with self._lock:
            try:
                return self._agents[name]
            except KeyError:
                raise LookupError(f"unknown agent capability: {name}") from None

    def fleet(self, name: str) -> FleetDef:
        with self._lock:
            try:
                return self._fleets[name]
            except KeyError:
                raise LookupError(f"unknown fleet: {name}") from None

    def workflow(self, name: str) -> WorkflowDef:
        with self._lock:
            try:
                return self._workflows[name]
            except KeyError:
                raise LookupError(f"unknown workflow: {name}") from None

    def has_fleet(self, name: str) -> bool:
        with self._lock:
            return name in self._fleets

    def has_workflow(self, name: str) -> bool:
        with self._lock:
            return name in self._workflows

    async def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            agents = list(self._raw_agents.items())
            self._raw_agents.clear()
            self._agents.clear()
            self._fleets.clear()
            self._workflows.clear()
        for name, agent in agents:
            closer = getattr(agent, "aclose", None)
            try:
                if callable(closer):
                    await closer()
                    continue
                closer = getattr(agent, "close", None)
                if callable(closer):
                    closer()
            except Exception:  # noqa: BLE001 - teardown continues for other agents
                LOGGER.warning("failed to close agent %s", name, exc_info=True)

    @property
    def closed(self) -> bool:
        return self._closed


__all__ = ["AgentLike", "Registry"]
