"""Fleet Coordinator and its coordination modes."""

from __future__ import annotations

from .context import FleetRunContext
from .coordinator import FleetCoordinator
from .distribution import LoadTracker, select_member, SelectionState, SELECTORS
from .modes import MODE_HANDLERS

__all__ = [
    "FleetCoordinator",
    "FleetRunContext",
    "LoadTracker",
    "MODE_HANDLERS",
    "SELECTORS",
    "SelectionState",
    "select_member",
]
