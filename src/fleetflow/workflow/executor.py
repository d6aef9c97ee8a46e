"""Workflow Executor: drives a step graph to a terminal status.

Canonical ``WorkflowRun.state`` is only written by the loop in
:meth:`WorkflowExecutor._drive`; parallel branches work on private copies that
are merged back at the join in branch declaration order.
"""

from __future__ import annotations

import asyncio
from collections import ChainMap
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
import logging
import time
from typing import Any, TYPE_CHECKING

from jsonschema import Draft202012Validator

from ..checkpoint import Checkpoint, CheckpointStore
from ..conditions import evaluate
from ..errors import (
    ApprovalTimeout,
    CancellationError,
    error_kind,
    FleetFlowError,
    is_transient,
    JoinError,
    PersistenceError,
    RoutingError,
    RunNotFoundError,
    StepExecutionError,
    ValidationError,
)
from ..observability import emit_event, EventLogger
from ..parallel_async import (
    run_parallel_all_async,
    run_parallel_quorum_async,
    WorkerOutcome,
)
from ..utils import new_run_id, parse_duration, snapshot
from .approvals import ApprovalGate
from .graph import parallel_branches
from .models import (
    ApprovalDecision,
    ApprovalRequest,
    JoinPolicy,
    Step,
    StepExecution,
    StepStatus,
    StepType,
    WorkflowDef,
    WorkflowRun,
    WorkflowStatus,
)
from .reducers import apply_updates, merge_branch_states
from .steps import STEP_HANDLERS, StepContext, StepHandler, StepOutcome

if TYPE_CHECKING:  # pragma: no cover - 型補完用
    from ..fleet import FleetCoordinator
    from ..registry import Registry

LOGGER = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]

_NO_STEP_TIMEOUT = {StepType.APPROVAL, StepType.WAIT, StepType.PARALLEL}


@dataclass
class BranchResult:
    """分岐 1 本の実行結果。"""

    name: str
    index: int
    state: dict[str, Any] = field(default_factory=dict)
    history: list[StepExecution] = field(default_factory=list)
    error: str | None = None
    error_kind: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class _ResumeHint:
    step_id: str
    resume_at: float | None = None


class WorkflowExecutor:
    """ワークフロー実行のステートマシン。"""

    def __init__(
        self,
        registry: Registry,
        *,
        coordinator: FleetCoordinator | None = None,
        checkpoints: CheckpointStore | None = None,
        event_logger: EventLogger | None = None,
        sleep_fn: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if coordinator is None:
            from ..fleet import FleetCoordinator

            coordinator = FleetCoordinator(registry, event_logger=event_logger, clock=clock)
        self._registry = registry
        self._coordinator = coordinator
        self._checkpoints = checkpoints if checkpoints is not None else CheckpointStore(clock=clock)
        self._event_logger = event_logger
        self._sleep = sleep_fn
        self._clock = clock
        self._gate = ApprovalGate()
        self._runs: dict[str, WorkflowRun] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._inflight: dict[str, asyncio.Task[Any]] = {}
        self._hints: dict[str, _ResumeHint] = {}
        self._definitions: dict[str, WorkflowDef] = {}
        self._handlers: dict[StepType, StepHandler] = {
            **STEP_HANDLERS,
            StepType.PARALLEL: self._parallel_step,
            StepType.APPROVAL: self._approval_step,
            StepType.WAIT: self._wait_step,
        }

    @property
    def registry(self) -> Registry:
        return self._registry

    @property
    def coordinator(self) -> FleetCoordinator:
        return self._coordinator

    @property
    def checkpoints(self) -> CheckpointStore:
        return self._checkpoints

    @property
    def approvals(self) -> ApprovalGate:
        return self._gate

    # ------------------------------------------------------------------
    # 公開 API
    # ------------------------------------------------------------------
    def get_run(self, run_id: str) -> WorkflowRun:
        try:
            return self._runs[run_id]
        except KeyError:
            raise RunNotFoundError(f"unknown workflow run: {run_id}") from None

    def has_run(self, run_id: str) -> bool:
        return run_id in self._runs

    def active_runs(self) -> list[str]:
        return [run_id for run_id, run in self._runs.items() if not run.status.terminal]

    def forget(self, run_id: str) -> None:
        run = self._runs.get(run_id)
        if run is not None and run.status.terminal:
            del self._runs[run_id]
            self._cancel_events.pop(run_id, None)
            self._definitions.pop(run_id, None)

    def cancel(self, run_id: str) -> bool:
        run = self.get_run(run_id)
        if run.status.terminal:
            return False
        self._cancel_events.setdefault(run_id, asyncio.Event()).set()
        task = self._inflight.get(run_id)
        if task is not None and not task.done():
            task.cancel()
        return True

    def resolve_approval(
        self, run_id: str, approver_id: str, decision: ApprovalDecision | str | bool
    ) -> ApprovalRequest:
        """Record one decision; a still-open request is checkpointed with it."""

        run = self.get_run(run_id)
        request = self._gate.resolve(run_id, approver_id, decision)
        definition = self._definitions.get(run_id)
        if request.resolved is None and definition is not None and run.pending_approval is request:
            self._checkpoint(definition, run, phase="decision")
        return request

    def prepare_state(self, definition: WorkflowDef, payload: Any) -> dict[str, Any]:
        """Merge ``payload`` over ``initial_state`` and validate it against ``state_schema``."""

        state = snapshot(definition.initial_state)
        if isinstance(payload, Mapping):
            state.update(snapshot(payload))
        elif payload is not None:
            state["input"] = payload
        if definition.state_schema:
            validator = Draft202012Validator(dict(definition.state_schema))
            issues = [
                f"{'/'.join(str(part) for part in error.absolute_path) or '<root>'}: {error.message}"
                for error in sorted(validator.iter_errors(state), key=lambda err: err.json_path)
            ]
            if issues:
                raise ValidationError(
                    f"input for workflow {definition.name!r} does not match state_schema: {issues[0]}",
                    issues=issues,
                )
        return state

    def create_run(
        self, definition: WorkflowDef, payload: Any = None, *, run_id: str | None = None
    ) -> WorkflowRun:
        state = self.prepare_state(definition, payload)
        run_id = run_id or new_run_id("wf")
        existing = self._runs.get(run_id)
        if existing is not None and not existing.status.terminal:
            raise FleetFlowError(f"workflow run {run_id} is already active")
        run = WorkflowRun(
            run_id=run_id,
            workflow_name=definition.name,
            current_step=definition.entrypoint,
            state=state,
            started_at=self._clock(),
        )
        self._runs[run_id] = run
        self._cancel_events[run_id] = asyncio.Event()
        return run

    async def run(
        self, definition: WorkflowDef, payload: Any = None, *, run_id: str | None = None
    ) -> WorkflowRun:
        run = self.create_run(definition, payload, run_id=run_id)
        return await self.drive(definition, run)

    async def drive(self, definition: WorkflowDef, run: WorkflowRun) -> WorkflowRun:
        self._emit(
            "workflow_started",
            run,
            workflow=definition.name,
            entrypoint=definition.entrypoint,
            current_step=run.current_step,
        )
        return await self._drive(definition, run)

    def restore(self, definition: WorkflowDef, run_id: str) -> WorkflowRun:
        """Rebuild a run from its latest checkpoint without executing anything."""

        checkpoint = self._checkpoints.latest(run_id)
        if checkpoint is None:
            raise RunNotFoundError(f"no checkpoint for run {run_id}")
        if checkpoint.workflow and checkpoint.workflow != definition.name:
            raise PersistenceError(
                f"checkpoint {checkpoint.checkpoint_id} belongs to workflow {checkpoint.workflow!r}"
            )
        if checkpoint.step_id not in definition.steps:
            raise PersistenceError(
                f"checkpoint {checkpoint.checkpoint_id} points at unknown step {checkpoint.step_id!r}"
            )
        existing = self._runs.get(run_id)
        if existing is not None and not existing.status.terminal:
            raise FleetFlowError(f"workflow run {run_id} is already active")
        run = self._from_checkpoint(checkpoint)
        self._runs[run_id] = run
        self._cancel_events[run_id] = asyncio.Event()
        return run

    async def resume(self, definition: WorkflowDef, run_id: str) -> WorkflowRun:
        return await self.continue_run(definition, self.restore(definition, run_id))

    async def continue_run(self, definition: WorkflowDef, run: WorkflowRun) -> WorkflowRun:
        """Drive a run returned by :meth:`restore`; terminal runs are returned unchanged."""

        if run.status.terminal:
            return run
        self._emit("workflow_resumed", run, workflow=definition.name, current_step=run.current_step)
        return await self._drive(definition, run)

    def _from_checkpoint(self, checkpoint: Checkpoint) -> WorkflowRun:
        status = WorkflowStatus(checkpoint.status)
        approval = ApprovalRequest.from_dict(checkpoint.approval) if checkpoint.approval else None
        run = WorkflowRun(
            run_id=checkpoint.run_id,
            workflow_name=checkpoint.workflow,
            current_step=checkpoint.step_id,
            state=dict(snapshot(checkpoint.state_snapshot)),
            status=status if status.terminal else WorkflowStatus.RUNNING,
            history=[StepExecution.from_dict(entry) for entry in checkpoint.history],
            completed_steps=list(checkpoint.completed_steps),
            pending_approval=approval,
            error=dict(checkpoint.error) if checkpoint.error else None,
            outcome=checkpoint.outcome,
            last_checkpoint_id=checkpoint.checkpoint_id,
            started_at=float(checkpoint.metadata.get("started_at") or checkpoint.created_at),
        )
        if status.terminal:
            run.finished_at = checkpoint.created_at
        resume_at = checkpoint.metadata.get("resume_at")
        if status is WorkflowStatus.PAUSED and resume_at is not None:
            self._hints[run.run_id] = _ResumeHint(checkpoint.step_id, float(resume_at))
        return run

    # ------------------------------------------------------------------
    # 実行ループ
    # ------------------------------------------------------------------
    async def _drive(self, definition: WorkflowDef, run: WorkflowRun) -> WorkflowRun:
        cancel_event = self._cancel_events.setdefault(run.run_id, asyncio.Event())
        self._definitions[run.run_id] = definition
        started = time.monotonic()
        try:
            while not run.status.terminal:
                if cancel_event.is_set():
                    raise CancellationError(f"workflow run {run.run_id} cancelled")
                step = definition.step(run.current_step)
                ctx = StepContext(
                    definition=definition, run=run, step=step, state=run.state, services=self
                )
                child = asyncio.create_task(self._execute_step(ctx))
                self._inflight[run.run_id] = child
                try:
                    execution, outcome = await child
                except StepExecutionError as exc:
                    run.record(self._failed_execution(step, exc))
                    self._on_step_failure(definition, run, step, exc)
                    continue
                finally:
                    self._inflight.pop(run.run_id, None)
                try:
                    self._commit(definition, run, step, execution, outcome)
                except RoutingError as exc:
                    self._on_step_failure(definition, run, step, exc)
        except asyncio.CancelledError:
            self._finish(definition, run, WorkflowStatus.CANCELLED, started, kind="cancelled")
            if not cancel_event.is_set():
                raise
        except CancellationError as exc:
            self._finish(
                definition, run, WorkflowStatus.CANCELLED, started, kind="cancelled", message=str(exc)
            )
        except Exception as exc:  # noqa: BLE001 - 実行失敗は WorkflowRun に集約
            LOGGER.info("workflow run %s failed: %s", run.run_id, exc)
            self._finish(
                definition,
                run,
                WorkflowStatus.FAILED,
                started,
                kind=error_kind(exc),
                message=str(exc) or type(exc).__name__,
                step=getattr(exc, "step_id", None) or run.current_step,
            )
        else:
            self._finish(definition, run, run.status, started)
        finally:
            self._gate.close(run.run_id)
            self._hints.pop(run.run_id, None)
        return run

    def _commit(
        self,
        definition: WorkflowDef,
        run: WorkflowRun,
        step: Step,
        execution: StepExecution,
        outcome: StepOutcome,
    ) -> None:
        run.record(execution)
        run.history.extend(outcome.history)
        changed = self._apply(definition, run.state, outcome)
        if outcome.state is not None:
            run.state = outcome.state
        if changed:
            self._emit("state_updated", run, step_id=step.id, keys=changed)
        if outcome.terminal is not None:
            run.status = outcome.terminal
            run.outcome = outcome.outcome
            return
        run.current_step = outcome.next_step or self._route(definition, step, run.state, outcome.signals)
        self._checkpoint(definition, run, phase="transition")

    @staticmethod
    def _apply(definition: WorkflowDef, state: dict[str, Any], outcome: StepOutcome) -> list[str]:
        changed: list[str] = []
        if outcome.state is not None:
            changed.extend(
                key for key in {*state, *outcome.state} if state.get(key) != outcome.state.get(key)
            )
            target = outcome.state
        else:
            target = state
        if outcome.updates:
            changed.extend(apply_updates(target, outcome.updates, definition.reducers))
        return sorted(set(changed))

    def _route(
        self,
        definition: WorkflowDef,
        step: Step,
        state: Mapping[str, Any],
        signals: Mapping[str, Any],
    ) -> str:
        scope: Mapping[str, Any] = ChainMap(dict(signals), state) if signals else state
        for connection in definition.outgoing(step.id):
            if connection.condition is None or evaluate(connection.condition, scope):
                return connection.target
        raise RoutingError(
            f"no outgoing connection of step {step.id!r} matched", step_id=step.id
        )

    def _failed_execution(
        self, step: Step, exc: StepExecutionError, branch: str | None = None
    ) -> StepExecution:
        now = self._clock()
        return StepExecution(
            step_id=step.id,
            step_type=step.type,
            status=StepStatus.FAILED,
            attempts=exc.attempts,
            started_at=now,
            finished_at=now,
            error=str(exc),
            branch=branch,
        )

    def _on_step_failure(
        self, definition: WorkflowDef, run: WorkflowRun, step: Step, exc: StepExecutionError
    ) -> None:
        handler = definition.error_handler
        if handler is None or step.id == handler:
            raise exc
        run.state["error"] = {"kind": error_kind(exc), "message": str(exc), "step": step.id}
        run.current_step = handler
        self._checkpoint(definition, run, phase="error_handler")

    async def _execute_step(self, ctx: StepContext) -> tuple[StepExecution, StepOutcome]:
        """Run one step with retry; wraps final failures in :class:`StepExecutionError`."""

        step = ctx.step
        handler = self._handlers[step.type]
        policy = ctx.definition.retry_for(step)
        started_at = self._clock()
        started = time.monotonic()
        attempt = 0
        while True:
            attempt += 1
            ctx.attempt = attempt
            self._emit(
                "step_started",
                ctx.run,
                step_id=step.id,
                step_type=step.type.value,
                attempt=attempt,
                branch=ctx.branch,
            )
            try:
                if step.timeout_s is not None and step.type not in _NO_STEP_TIMEOUT:
                    outcome = await asyncio.wait_for(handler(ctx), timeout=step.timeout_s)
                else:
                    outcome = await handler(ctx)
            except (asyncio.CancelledError, CancellationError):
                raise
            except Exception as exc:  # noqa: BLE001 - 分類してリトライ判定
                if is_transient(exc) and attempt < policy.max_attempts:
                    delay = policy.delay_for(attempt)
                    self._emit(
                        "step_retry",
                        ctx.run,
                        step_id=step.id,
                        attempt=attempt,
                        delay_s=delay,
                        error=str(exc) or type(exc).__name__,
                        branch=ctx.branch,
                    )
                    await self._sleep(delay)
                    continue
                failure = self._as_step_error(step, exc, attempt)
                self._emit(
                    "step_failed",
                    ctx.run,
                    step_id=step.id,
                    step_type=step.type.value,
                    attempts=attempt,
                    duration_ms=(time.monotonic() - started) * 1000.0,
                    error=str(failure),
                    error_kind=error_kind(failure),
                    branch=ctx.branch,
                )
                if failure is exc:
                    raise
                raise failure from exc
            execution = StepExecution(
                step_id=step.id,
                step_type=step.type,
                status=StepStatus.COMPLETED,
                attempts=attempt,
                started_at=started_at,
                finished_at=self._clock(),
                output=outcome.output,
                branch=ctx.branch,
            )
            self._emit(
                "step_completed",
                ctx.run,
                step_id=step.id,
                step_type=step.type.value,
                attempts=attempt,
                duration_ms=(time.monotonic() - started) * 1000.0,
                branch=ctx.branch,
            )
            return execution, outcome

    @staticmethod
    def _as_step_error(step: Step, exc: BaseException, attempts: int) -> StepExecutionError:
        if isinstance(exc, StepExecutionError):
            exc.step_id = exc.step_id or step.id
            exc.attempts = attempts
            return exc
        message = str(exc) or type(exc).__name__
        return StepExecutionError(
            f"step {step.id!r} failed after {attempts} attempt(s): {message}",
            step_id=step.id,
            attempts=attempts,
            cause_kind=error_kind(exc),
        )

    # ------------------------------------------------------------------
    # 中断を伴うステップ
    # ------------------------------------------------------------------
    async def _approval_step(self, ctx: StepContext) -> StepOutcome:
        step, run = ctx.step, ctx.run
        config = step.config
        output_key = str(config.get("output_key") or step.id)
        auto = config.get("auto_approve")
        if auto and evaluate(str(auto), ctx.state):
            payload = {
                "decision": ApprovalDecision.APPROVE.value,
                "timed_out": False,
                "approvers": {},
                "auto": True,
            }
            self._emit(
                "approval_resolved", run, step_id=step.id, decision="approve", timed_out=False, auto=True
            )
            return _approval_outcome(output_key, payload)

        request = run.pending_approval
        if request is None or request.step_id != step.id:
            request = ApprovalRequest(
                run_id=run.run_id,
                step_id=step.id,
                approvers=tuple(config.get("approvers") or ()),
                required_approvals=int(config.get("required_approvals", 1)),
                timeout_s=parse_duration(config.get("timeout", "1h")),
                default_on_timeout=ApprovalDecision(config.get("default_on_timeout", "reject")),
                created_at=self._clock(),
            )
        run.pending_approval = request
        run.status = WorkflowStatus.WAITING_APPROVAL
        event = self._gate.open(request)
        try:
            self._checkpoint(ctx.definition, run, phase="suspend")
            self._emit(
                "waiting_approval",
                run,
                step_id=step.id,
                approvers=list(request.approvers),
                required_approvals=request.required_approvals,
                timeout_s=request.timeout_s,
            )
            deadline = request.deadline()
            remaining = None if deadline is None else max(0.0, deadline - self._clock())
            await self._wait_for(event, remaining)
            decision = request.resolved
            timed_out = decision is None
            if decision is None:
                timeout = ApprovalTimeout(
                    f"approval for step {step.id!r} timed out",
                    step_id=step.id,
                    default=request.default_on_timeout.value,
                )
                LOGGER.info("%s; applying %s", timeout, timeout.default)
                decision = request.default_on_timeout
        finally:
            self._gate.close(run.run_id)
        run.pending_approval = None
        run.status = WorkflowStatus.RUNNING
        payload = {
            "decision": decision.value,
            "timed_out": timed_out,
            "approvers": {name: value.value for name, value in request.received_decisions.items()},
        }
        self._emit(
            "approval_resolved", run, step_id=step.id, decision=decision.value, timed_out=timed_out
        )
        return _approval_outcome(output_key, payload)

    async def _wait_for(self, event: asyncio.Event, timeout_s: float | None) -> bool:
        if event.is_set():
            return True
        if timeout_s is None:
            await event.wait()
            return True
        waiter = asyncio.create_task(event.wait())
        sleeper = asyncio.ensure_future(self._sleep(timeout_s))
        try:
            await asyncio.wait({waiter, sleeper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pending in (waiter, sleeper):
                if not pending.done():
                    pending.cancel()
            await asyncio.gather(waiter, sleeper, return_exceptions=True)
        return event.is_set()

    async def _wait_step(self, ctx: StepContext) -> StepOutcome:
        step, run = ctx.step, ctx.run
        duration = parse_duration(step.config.get("duration"), default=0.0) or 0.0
        hint = self._hints.pop(run.run_id, None)
        if hint is not None and hint.step_id == step.id and hint.resume_at is not None:
            resume_at = hint.resume_at
        else:
            resume_at = self._clock() + duration
        if ctx.branch is None:
            run.status = WorkflowStatus.PAUSED
            self._checkpoint(ctx.definition, run, phase="suspend", resume_at=resume_at)
        remaining = max(0.0, resume_at - self._clock())
        if remaining > 0:
            await self._sleep(remaining)
        if ctx.branch is None:
            run.status = WorkflowStatus.RUNNING
        return StepOutcome(output={"waited_s": remaining})

    async def _parallel_step(self, ctx: StepContext) -> StepOutcome:
        definition, run, step = ctx.definition, ctx.run, ctx.step
        branches = parallel_branches(step)
        join = definition.step(str(step.config["join"]))
        policy = JoinPolicy(join.config.get("policy", JoinPolicy.ALL.value))
        tolerant = bool(join.config.get("tolerant", False))
        timeout_s = parse_duration(join.config.get("timeout"), default=None)
        base = snapshot(ctx.state)
        self._checkpoint(definition, run, phase="fork")

        workers = [
            (lambda index=index, name=name, entry=entry: self._run_branch(
                definition, run, name, index, entry, join.id, base
            ))
            for index, (name, entry) in enumerate(branches)
        ]
        max_concurrency = step.config.get("max_concurrency")
        if policy is JoinPolicy.ALL:
            outcomes = await run_parallel_all_async(
                workers, max_concurrency=max_concurrency, timeout_s=timeout_s
            )
            succeeded = [outcome.value for outcome in outcomes if _branch_ok(outcome)]
            finished = outcomes
            satisfied = len(succeeded) == len(branches) or (tolerant and bool(succeeded))
        else:
            needed = 1 if policy is JoinPolicy.ANY else len(branches) // 2 + 1
            quorum = await run_parallel_quorum_async(
                workers,
                needed=needed,
                accept=lambda result: result.ok,
                max_concurrency=max_concurrency,
                timeout_s=timeout_s,
            )
            finished = quorum.by_index()
            succeeded = [outcome.value for outcome in finished if _branch_ok(outcome)]
            satisfied = quorum.reached

        summaries = [_branch_summary(branches[outcome.index][0], outcome) for outcome in finished]
        history = [
            entry
            for outcome in finished
            if outcome.value is not None
            for entry in outcome.value.history
        ]
        if not satisfied:
            raise JoinError(
                f"join {join.id!r} ({policy.value}) not satisfied: "
                + ", ".join(f"{item['branch']}={item['status']}" for item in summaries),
                step_id=join.id,
                outcomes=summaries,
            )
        ordered = sorted(succeeded, key=lambda result: result.index)
        merged = snapshot(ctx.state)
        merge_branch_states(
            merged, base, [(result.name, result.state) for result in ordered], definition.reducers
        )
        return StepOutcome(
            state=merged,
            next_step=join.id,
            output={"policy": policy.value, "branches": summaries},
            history=history,
        )

    async def _run_branch(
        self,
        definition: WorkflowDef,
        run: WorkflowRun,
        name: str,
        index: int,
        entry: str,
        join_id: str,
        base: Mapping[str, Any],
    ) -> BranchResult:
        result = BranchResult(name=name, index=index, state=snapshot(base))
        current = entry
        while current != join_id:
            step = definition.step(current)
            ctx = StepContext(
                definition=definition,
                run=run,
                step=step,
                state=result.state,
                services=self,
                branch=name,
            )
            try:
                execution, outcome = await self._execute_step(ctx)
            except StepExecutionError as exc:
                result.error = str(exc)
                result.error_kind = error_kind(exc)
                result.history.append(self._failed_execution(step, exc, name))
                return result
            result.history.append(execution)
            self._apply(definition, result.state, outcome)
            if outcome.state is not None:
                result.state = outcome.state
            try:
                current = outcome.next_step or self._route(
                    definition, step, result.state, outcome.signals
                )
            except RoutingError as exc:
                result.error = str(exc)
                result.error_kind = error_kind(exc)
                return result
        return result

    # ------------------------------------------------------------------
    # 永続化とイベント
    # ------------------------------------------------------------------
    def _checkpoint(
        self,
        definition: WorkflowDef,
        run: WorkflowRun,
        *,
        phase: str,
        resume_at: float | None = None,
    ) -> Checkpoint | None:
        if not definition.checkpoint.enabled:
            return None
        metadata: dict[str, Any] = {"phase": phase, "started_at": run.started_at}
        if resume_at is not None:
            metadata["resume_at"] = resume_at
        checkpoint = self._checkpoints.save(
            run.run_id,
            step_id=run.current_step,
            state=run.state,
            workflow=definition.name,
            status=run.status.value,
            completed_steps=run.completed_steps,
            history=[execution.to_dict() for execution in run.history],
            approval=run.pending_approval.to_dict() if run.pending_approval is not None else None,
            error=run.error,
            outcome=run.outcome,
            metadata=metadata,
            keep=definition.checkpoint.history,
        )
        run.last_checkpoint_id = checkpoint.checkpoint_id
        self._emit(
            "checkpoint_saved",
            run,
            checkpoint_id=checkpoint.checkpoint_id,
            step_id=checkpoint.step_id,
            sequence=checkpoint.sequence,
            phase=phase,
        )
        return checkpoint

    def _finish(
        self,
        definition: WorkflowDef,
        run: WorkflowRun,
        status: WorkflowStatus,
        started: float,
        *,
        kind: str | None = None,
        message: str | None = None,
        step: str | None = None,
    ) -> None:
        run.status = status
        run.pending_approval = None
        run.finished_at = self._clock()
        if kind is not None:
            run.error = {"kind": kind, "message": message or kind, "step": step or run.current_step}
        try:
            self._checkpoint(definition, run, phase="terminal")
        except PersistenceError:
            if kind is None:
                run.status = WorkflowStatus.FAILED
                run.error = {
                    "kind": "persistence",
                    "message": "terminal checkpoint failed",
                    "step": run.current_step,
                }
            LOGGER.warning("failed to persist terminal checkpoint for %s", run.run_id, exc_info=True)
        event = {
            WorkflowStatus.COMPLETED: "workflow_completed",
            WorkflowStatus.CANCELLED: "workflow_cancelled",
        }.get(run.status, "workflow_failed")
        self._emit(
            event,
            run,
            workflow=definition.name,
            status=run.status.value,
            outcome=run.outcome,
            error_kind=run.error["kind"] if run.error else None,
            error=run.error["message"] if run.error else None,
            duration_ms=(time.monotonic() - started) * 1000.0,
        )

    def _emit(self, event_type: str, run: WorkflowRun, **fields: Any) -> None:
        emit_event(self._event_logger, event_type, run_id=run.run_id, **fields)


def _approval_outcome(output_key: str, payload: dict[str, Any]) -> StepOutcome:
    decision = payload["decision"]
    return StepOutcome(
        updates={output_key: payload},
        output=payload,
        signals={
            "approved": decision == ApprovalDecision.APPROVE.value,
            "rejected": decision == ApprovalDecision.REJECT.value,
            "timeout": payload["timed_out"],
        },
    )


def _branch_ok(outcome: WorkerOutcome[BranchResult]) -> bool:
    if outcome.value is None or outcome.cancelled or outcome.timed_out:
        return False
    return outcome.value.ok


def _branch_summary(name: str, outcome: WorkerOutcome[BranchResult]) -> dict[str, Any]:
    if outcome.timed_out:
        return {"branch": name, "status": "timed_out", "error": "join timeout"}
    if outcome.cancelled:
        return {"branch": name, "status": "cancelled", "error": None}
    if outcome.error is not None:
        return {
            "branch": name,
            "status": "failed",
            "error": str(outcome.error),
            "error_kind": error_kind(outcome.error),
        }
    result = outcome.value
    if result is None or not result.ok:
        return {
            "branch": name,
            "status": "failed",
            "error": result.error if result is not None else None,
            "error_kind": result.error_kind if result is not None else None,
        }
    return {"branch": name, "status": "completed", "error": None}


__all__ = ["BranchResult", "WorkflowExecutor"]
