"""Host-facing facade over the Fleet Coordinator and the Workflow Executor."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
import logging
import random
import time
from typing import Any

from .checkpoint import CheckpointStore
from .errors import FleetFlowError, RunNotFoundError
from .fleet import FleetCoordinator
from .models import FleetDef
from .observability import EventLogger
from .registry import Registry
from .shared_store import SharedStore
from .utils import new_run_id
from .workflow import ApprovalDecision, ApprovalRequest, WorkflowDef, WorkflowExecutor
from .workflow.executor import SleepFn

LOGGER = logging.getLogger(__name__)

FLEET = "fleet"
WORKFLOW = "workflow"

_TERMINAL = {"completed", "failed", "cancelled"}


@dataclass(frozen=True)
class RunStatus:
    """GetStatus の戻り値。終了済みでも ``forget`` まで参照できる。"""

    run_id: str
    kind: str
    status: str
    current_step: str | None = None
    current_tier: int | None = None
    partial_results: tuple[Mapping[str, Any], ...] = ()
    error_kind: str | None = None
    error: str | None = None
    last_checkpoint: str | None = None
    outcome: str | None = None
    decision: Any = None
    confidence: float | None = None
    state: Mapping[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.status in _TERMINAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "kind": self.kind,
            "status": self.status,
            "current_step": self.current_step,
            "current_tier": self.current_tier,
            "partial_results": [dict(result) for result in self.partial_results],
            "error_kind": self.error_kind,
            "error": self.error,
            "last_checkpoint": self.last_checkpoint,
            "outcome": self.outcome,
            "decision": self.decision,
            "confidence": self.confidence,
            "state": dict(self.state),
        }


class Runtime:
    """Submit/GetStatus/Cancel/ListActiveRuns/ResolveApproval をまとめた入口。

    ``submit`` は実行中のイベントループ上でバックグラウンドタスクを起動し、
    即座に ``run_id`` を返す。レジストリはホストが所有し、``shutdown`` は
    ``close_registry=True`` の場合のみ閉じる。
    """

    def __init__(
        self,
        registry: Registry,
        *,
        event_logger: EventLogger | None = None,
        checkpoints: CheckpointStore | None = None,
        shared_store: SharedStore | None = None,
        rng: random.Random | None = None,
        sleep_fn: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._coordinator = FleetCoordinator(
            registry,
            event_logger=event_logger,
            shared_store=shared_store,
            rng=rng,
            clock=clock,
        )
        self._executor = WorkflowExecutor(
            registry,
            coordinator=self._coordinator,
            checkpoints=checkpoints,
            event_logger=event_logger,
            sleep_fn=sleep_fn,
            clock=clock,
        )
        self._kinds: dict[str, str] = {}
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    @property
    def registry(self) -> Registry:
        return self._registry

    @property
    def coordinator(self) -> FleetCoordinator:
        return self._coordinator

    @property
    def executor(self) -> WorkflowExecutor:
        return self._executor

    @property
    def checkpoints(self) -> CheckpointStore:
        return self._executor.checkpoints

    # ------------------------------------------------------------------
    # 投入
    # ------------------------------------------------------------------
    def _resolve(self, ref: FleetDef | WorkflowDef | str) -> FleetDef | WorkflowDef:
        if isinstance(ref, (FleetDef, WorkflowDef)):
            return ref
        kind, _, name = ref.partition(":")
        if name and kind == FLEET:
            return self._registry.fleet(name)
        if name and kind == WORKFLOW:
            return self._registry.workflow(name)
        is_fleet = self._registry.has_fleet(ref)
        is_workflow = self._registry.has_workflow(ref)
        if is_fleet and is_workflow:
            raise FleetFlowError(f"{ref!r} names both a fleet and a workflow; use 'fleet:' or 'workflow:'")
        if is_fleet:
            return self._registry.fleet(ref)
        return self._registry.workflow(ref)

    def submit(
        self,
        ref: FleetDef | WorkflowDef | str,
        payload: Any = None,
        *,
        run_id: str | None = None,
    ) -> str:
        """Start a run in the background and return its id.

        Workflow input is validated before the task starts, so a
        :class:`~fleetflow.errors.ValidationError` leaves no run behind.
        """

        definition = self._resolve(ref)
        if run_id is not None and run_id in self._tasks:
            raise FleetFlowError(f"run {run_id} is already active")
        if isinstance(definition, WorkflowDef):
            run = self._executor.create_run(definition, payload, run_id=run_id)
            run_id = run.run_id
            coro = self._executor.drive(definition, run)
            kind = WORKFLOW
        else:
            run_id = run_id or new_run_id("fleet")
            coro = self._coordinator.execute(payload, definition, run_id=run_id)
            kind = FLEET
        self._start(run_id, kind, coro)
        return run_id

    def _start(self, run_id: str, kind: str, coro: Any) -> None:
        task = asyncio.create_task(coro, name=f"fleetflow:{run_id}")
        self._kinds[run_id] = kind
        self._tasks[run_id] = task
        task.add_done_callback(lambda done: self._on_done(run_id, done))

    def _on_done(self, run_id: str, task: asyncio.Task[Any]) -> None:
        if self._tasks.get(run_id) is task:
            del self._tasks[run_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("run %s crashed", run_id, exc_info=exc)

    async def run(
        self,
        ref: FleetDef | WorkflowDef | str,
        payload: Any = None,
        *,
        run_id: str | None = None,
    ) -> RunStatus:
        return await self.wait(self.submit(ref, payload, run_id=run_id))

    def resume(self, run_id: str) -> str:
        """Rebuild a workflow run from its latest checkpoint and continue it."""

        checkpoint = self._executor.checkpoints.latest(run_id)
        if checkpoint is None:
            raise RunNotFoundError(f"no checkpoint for run {run_id}")
        if run_id in self._tasks:
            raise FleetFlowError(f"run {run_id} is already active")
        definition = self._registry.workflow(checkpoint.workflow)
        run = self._executor.restore(definition, run_id)
        self._kinds[run_id] = WORKFLOW
        if not run.status.terminal:
            self._start(run_id, WORKFLOW, self._executor.continue_run(definition, run))
        return run_id

    async def wait(self, run_id: str, *, timeout: float | None = None) -> RunStatus:
        task = self._tasks.get(run_id)
        if task is None:
            return self.get_status(run_id)
        await asyncio.wait({task}, timeout=timeout)
        return self.get_status(run_id)

    # ------------------------------------------------------------------
    # 参照・操作
    # ------------------------------------------------------------------
    def _kind(self, run_id: str) -> str:
        kind = self._kinds.get(run_id)
        if kind is not None:
            return kind
        if self._executor.has_run(run_id):
            return WORKFLOW
        if self._coordinator.has_run(run_id):
            return FLEET
        raise RunNotFoundError(f"unknown run: {run_id}")

    def get_status(self, run_id: str) -> RunStatus:
        if self._kind(run_id) == WORKFLOW:
            return self._workflow_status(run_id)
        if not self._coordinator.has_run(run_id):
            status = "running" if run_id in self._tasks else "cancelled"
            return RunStatus(run_id=run_id, kind=FLEET, status=status)
        run = self._coordinator.get_run(run_id)
        final = run.final
        return RunStatus(
            run_id=run_id,
            kind=FLEET,
            status=run.status.value,
            current_tier=run.current_tier,
            partial_results=tuple(result.to_dict() for result in run.all_results()),
            error_kind=run.error_kind,
            error=run.error,
            decision=final.decision if final is not None else None,
            confidence=final.confidence if final is not None else None,
        )

    def _workflow_status(self, run_id: str) -> RunStatus:
        run = self._executor.get_run(run_id)
        error = run.error or {}
        return RunStatus(
            run_id=run_id,
            kind=WORKFLOW,
            status=run.status.value,
            current_step=run.current_step,
            partial_results=tuple(execution.to_dict() for execution in run.history),
            error_kind=error.get("kind"),
            error=error.get("message"),
            last_checkpoint=run.last_checkpoint_id,
            outcome=run.outcome,
            state=dict(run.state),
        )

    def cancel(self, run_id: str) -> bool:
        """Request cancellation; returns ``False`` if the run already finished."""

        kind = self._kind(run_id)
        if kind == WORKFLOW:
            return self._executor.cancel(run_id)
        if self._coordinator.has_run(run_id):
            return self._coordinator.cancel(run_id)
        task = self._tasks.get(run_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def list_active_runs(self) -> list[str]:
        return [run_id for run_id in self._kinds if not self.get_status(run_id).terminal]

    def resolve_approval(
        self, run_id: str, approver_id: str, decision: ApprovalDecision | str | bool
    ) -> ApprovalRequest:
        if self._kind(run_id) != WORKFLOW:
            raise RunNotFoundError(f"run {run_id} is not a workflow run")
        return self._executor.resolve_approval(run_id, approver_id, decision)

    def forget(self, run_id: str) -> None:
        """Drop a terminal run from memory; checkpoints are left untouched."""

        if not self.get_status(run_id).terminal:
            raise FleetFlowError(f"run {run_id} is still active")
        self._executor.forget(run_id)
        self._coordinator.forget(run_id)
        self._kinds.pop(run_id, None)

    async def shutdown(self, *, close_registry: bool = False) -> None:
        """Cancel outstanding runs and wait for them to settle."""

        pending = list(self._tasks.items())
        for run_id, task in pending:
            if not task.done():
                try:
                    self.cancel(run_id)
                except RunNotFoundError:
                    task.cancel()
        if pending:
            await asyncio.gather(*(task for _, task in pending), return_exceptions=True)
        if close_registry:
            await self._registry.close()


__all__ = ["FLEET", "Registry", "RunStatus", "Runtime", "WORKFLOW"]
