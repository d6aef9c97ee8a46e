"""Coordination mode handlers keyed by :class:`CoordinationMode`."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from ...models import ConsensusResult, CoordinationMode
from ..context import FleetRunContext
from .deep import run_deep
from .hierarchical import run_hierarchical
from .peer import run_peer
from .pipeline import run_pipeline
from .swarm import run_swarm
from .tiered import run_tiered

ModeHandler = Callable[[FleetRunContext], Awaitable[ConsensusResult]]

MODE_HANDLERS: dict[CoordinationMode, ModeHandler] = {
    CoordinationMode.PEER: run_peer,
    CoordinationMode.HIERARCHICAL: run_hierarchical,
    CoordinationMode.PIPELINE: run_pipeline,
    CoordinationMode.SWARM: run_swarm,
    CoordinationMode.TIERED: run_tiered,
    CoordinationMode.DEEP: run_deep,
}

__all__ = [
    "MODE_HANDLERS",
    "ModeHandler",
    "run_deep",
    "run_hierarchical",
    "run_peer",
    "run_pipeline",
    "run_swarm",
    "run_tiered",
]
