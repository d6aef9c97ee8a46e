"""Fleet Coordinator: dispatches a task to a fleet and returns one decision."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
import logging
import random
import time
from typing import Any, TYPE_CHECKING

from ..errors import CancellationError, error_kind, FleetFlowError, RunNotFoundError
from ..models import AgentTask, FleetDef, FleetMetrics, FleetResult, FleetRun, FleetRunStatus
from ..observability import emit_event, EventLogger
from ..shared_store import SharedStore
from ..utils import new_run_id
from .context import FleetRunContext
from .distribution import LoadTracker, SelectionState
from .modes import MODE_HANDLERS

if TYPE_CHECKING:  # pragma: no cover - 型補完用
    from ..registry import Registry

LOGGER = logging.getLogger(__name__)


class FleetCoordinator:
    """フリート実行を管理する。

    ``FleetRun`` を更新するのはこのクラスだけで、各モードのハンドラは
    :class:`FleetRunContext` を通じて結果を記録する。
    """

    def __init__(
        self,
        registry: Registry,
        *,
        event_logger: EventLogger | None = None,
        shared_store: SharedStore | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._event_logger = event_logger
        self._shared_store = shared_store if shared_store is not None else SharedStore()
        self._clock = clock
        self._tracker = LoadTracker()
        self._selection = SelectionState(tracker=self._tracker, rng=rng or random.Random())
        self._metrics = FleetMetrics()
        self._runs: dict[str, FleetRun] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._inflight: dict[str, asyncio.Task[Any]] = {}

    @property
    def metrics(self) -> FleetMetrics:
        return self._metrics

    @property
    def load(self) -> LoadTracker:
        return self._tracker

    @property
    def shared_store(self) -> SharedStore:
        return self._shared_store

    def get_run(self, run_id: str) -> FleetRun:
        try:
            return self._runs[run_id]
        except KeyError:
            raise RunNotFoundError(f"unknown fleet run: {run_id}") from None

    def has_run(self, run_id: str) -> bool:
        return run_id in self._runs

    def active_runs(self) -> list[str]:
        return [run_id for run_id, run in self._runs.items() if not run.status.terminal]

    def forget(self, run_id: str) -> None:
        run = self._runs.get(run_id)
        if run is not None and run.status.terminal:
            del self._runs[run_id]
            self._cancel_events.pop(run_id, None)

    def cancel(self, run_id: str) -> bool:
        """Signal cancellation; returns ``False`` when the run already finished."""

        run = self.get_run(run_id)
        if run.status.terminal:
            return False
        self._cancel_events.setdefault(run_id, asyncio.Event()).set()
        task = self._inflight.get(run_id)
        if task is not None and not task.done():
            task.cancel()
        return True

    def _build_task(self, fleet: FleetDef, payload: Any, run_id: str) -> AgentTask:
        if isinstance(payload, AgentTask):
            task = payload.derive(payload.input, run_id=run_id)
        else:
            task = AgentTask(input=payload, run_id=run_id)
        shared = fleet.shared_memory
        if shared is not None:
            namespace = self._shared_store.namespace(
                shared.namespace or f"fleet:{fleet.name}", ttl_s=shared.ttl_s
            )
            task = task.derive(task.input, shared=namespace)
        return task

    async def execute(
        self,
        payload: Any,
        fleet: FleetDef | str,
        *,
        run_id: str | None = None,
    ) -> FleetResult:
        """Run ``payload`` through ``fleet`` and return its terminal result.

        Agent errors never escape; the result carries ``status`` and
        ``error_kind`` instead. Only cancellation of the calling task itself
        propagates.
        """

        definition = self._registry.fleet(fleet) if isinstance(fleet, str) else fleet
        run_id = run_id or new_run_id("fleet")
        if run_id in self._runs and not self._runs[run_id].status.terminal:
            raise FleetFlowError(f"fleet run {run_id} is already active")
        mode = definition.coordination.mode
        run = FleetRun(run_id=run_id, fleet_name=definition.name, mode=mode, started_at=self._clock())
        self._runs[run_id] = run
        cancel_event = self._cancel_events.setdefault(run_id, asyncio.Event())
        ctx = FleetRunContext(
            fleet=definition,
            run=run,
            task=self._build_task(definition, payload, run_id),
            registry=self._registry,
            tracker=self._tracker,
            selection=self._selection,
            metrics=self._metrics,
            event_logger=self._event_logger,
            cancel_event=cancel_event,
        )
        self._metrics.total_tasks += 1
        started = time.monotonic()
        ctx.emit("fleet_started", members=[member.name for member in definition.members])

        handler = MODE_HANDLERS[mode]
        child = asyncio.create_task(handler(ctx))
        self._inflight[run_id] = child
        try:
            if cancel_event.is_set():
                child.cancel()
            run.final = await child
        except asyncio.CancelledError:
            if not cancel_event.is_set():
                child.cancel()
                self._finish(run, FleetRunStatus.CANCELLED, started, error="interrupted", kind="cancelled")
                raise
            self._finish(run, FleetRunStatus.CANCELLED, started, error="cancelled", kind="cancelled")
        except CancellationError as exc:
            self._finish(run, FleetRunStatus.CANCELLED, started, error=str(exc), kind="cancelled")
        except Exception as exc:  # noqa: BLE001 - 失敗は FleetResult に集約
            LOGGER.info("fleet run %s failed: %s", run_id, exc)
            self._finish(
                run,
                FleetRunStatus.FAILED,
                started,
                error=str(exc) or type(exc).__name__,
                kind=error_kind(exc),
            )
        else:
            self._finish(run, FleetRunStatus.COMPLETED, started)
        finally:
            self._inflight.pop(run_id, None)
        return run.to_result()

    def _finish(
        self,
        run: FleetRun,
        status: FleetRunStatus,
        started: float,
        *,
        error: str | None = None,
        kind: str | None = None,
    ) -> None:
        run.status = status
        run.error = error
        run.error_kind = kind
        run.finished_at = self._clock()
        if status is not FleetRunStatus.COMPLETED:
            run.final = None
        duration_ms = (time.monotonic() - started) * 1000.0
        self._metrics.observe(status, duration_ms)
        fields: dict[str, Any] = {
            "fleet": run.fleet_name,
            "mode": run.mode.value,
            "duration_ms": duration_ms,
        }
        if status is FleetRunStatus.COMPLETED and run.final is not None:
            fields.update(
                decision=run.final.decision,
                confidence=run.final.confidence,
                human_review=run.final.human_review,
            )
            event = "fleet_completed"
        elif status is FleetRunStatus.CANCELLED:
            event = "fleet_cancelled"
        else:
            fields.update(error=error, error_kind=kind)
            event = "fleet_failed"
        emit_event(self._event_logger, event, run_id=run.run_id, **fields)


__all__ = ["FleetCoordinator"]
