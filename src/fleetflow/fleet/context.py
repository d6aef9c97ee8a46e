"""Per-run helpers shared by the coordination mode handlers."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
import logging
from typing import Any, TYPE_CHECKING

from ..agents import invoke_agent
from ..consensus import below_min_confidence, compute_consensus
from ..errors import CancellationError, ConsensusFailure
from ..models import (
    AgentMember,
    AgentResult,
    AgentTask,
    ConsensusAlgorithm,
    ConsensusConfig,
    ConsensusResult,
    FleetDef,
    FleetMetrics,
    FleetRun,
)
from ..observability import emit_event, EventLogger
from ..parallel_async import run_parallel_all_async, run_parallel_first_async
from .distribution import LoadTracker, SelectionState

if TYPE_CHECKING:  # pragma: no cover - 型補完用
    from ..registry import Registry

LOGGER = logging.getLogger(__name__)


def _failed_result(member: AgentMember, error: str, kind: str) -> AgentResult:
    return AgentResult(
        member_name=member.name,
        confidence=0.0,
        error=error,
        tier=member.tier,
        metadata={"error_kind": kind},
    )


@dataclass
class FleetRunContext:
    """モードハンドラに渡す実行コンテキスト。状態の確定はここを経由する。"""

    fleet: FleetDef
    run: FleetRun
    task: AgentTask
    registry: Registry
    tracker: LoadTracker
    selection: SelectionState
    metrics: FleetMetrics
    event_logger: EventLogger | None = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def consensus_config(self) -> ConsensusConfig:
        return self.fleet.coordination.consensus

    @property
    def call_timeout_s(self) -> float | None:
        return self.consensus_config.timeout_s

    def emit(self, event_type: str, **fields: Any) -> None:
        emit_event(
            self.event_logger,
            event_type,
            run_id=self.run.run_id,
            fleet=self.fleet.name,
            mode=self.run.mode.value,
            **fields,
        )

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise CancellationError(f"fleet run {self.run.run_id} cancelled")

    def task_for(self, member: AgentMember, payload: Any) -> AgentTask:
        return self.task.derive(payload, member=member.name)

    async def call(
        self,
        member: AgentMember,
        payload: Any,
        *,
        record: bool = True,
        timeout_s: float | None = None,
    ) -> AgentResult:
        """Invoke one member; failures come back as failed results."""

        self.check_cancelled()
        self.emit("task_assigned", member=member.name, tier=member.tier)
        try:
            agent = self.registry.agent(member.capability)
        except LookupError as exc:
            result = _failed_result(member, str(exc), "unknown_capability")
        else:
            self.tracker.acquire(member.name)
            try:
                result = await invoke_agent(
                    member,
                    agent,
                    self.task_for(member, payload),
                    timeout_s=timeout_s if timeout_s is not None else self.call_timeout_s,
                )
            finally:
                self.tracker.release(member.name)
        if record:
            self.run.record(result)
        self._emit_result(result)
        return result

    def record_cancelled(self, member: AgentMember) -> AgentResult:
        result = _failed_result(member, "cancelled", "cancelled")
        self.run.record(result)
        self._emit_result(result)
        return result

    def record_missing(self, name: str, tier: int = 1) -> AgentResult:
        result = AgentResult(
            member_name=name,
            confidence=0.0,
            error=f"unknown member: {name}",
            tier=tier,
            metadata={"error_kind": "unknown_member"},
        )
        self.run.record(result)
        self._emit_result(result)
        return result

    def _emit_result(self, result: AgentResult) -> None:
        if result.ok:
            self.emit(
                "task_completed",
                member=result.member_name,
                tier=result.tier,
                latency_ms=result.latency_ms,
                confidence=result.confidence,
            )
        else:
            self.emit(
                "task_failed",
                member=result.member_name,
                tier=result.tier,
                latency_ms=result.latency_ms,
                error=result.error,
                error_kind=result.metadata.get("error_kind", "agent_failure"),
            )

    async def fan_out(
        self,
        assignments: Sequence[tuple[AgentMember, Any]],
        *,
        algorithm: ConsensusAlgorithm | None = None,
    ) -> list[AgentResult]:
        """Dispatch ``(member, payload)`` pairs concurrently.

        Results come back in declaration order, except for ``first_wins`` where
        they are in arrival order and unfinished calls are cancelled.
        """

        self.check_cancelled()
        if not assignments:
            return []
        members = [member for member, _ in assignments]
        workers = [
            (lambda member=member, payload=payload: self.call(member, payload))
            for member, payload in assignments
        ]
        limit = self.fleet.coordination.max_concurrency
        if algorithm is ConsensusAlgorithm.FIRST_WINS:
            outcome = await run_parallel_first_async(
                workers,
                accept=lambda result: result.ok,
                max_concurrency=limit,
                cancel_event=self.cancel_event,
            )
            arrived = [arrival.value for arrival in outcome.arrivals if arrival.value is not None]
            for unfinished in outcome.unfinished:
                if unfinished.value is not None:
                    arrived.append(unfinished.value)
                else:
                    arrived.append(self.record_cancelled(members[unfinished.index]))
            self.check_cancelled()
            return arrived
        outcomes = await run_parallel_all_async(
            workers, max_concurrency=limit, cancel_event=self.cancel_event
        )
        self.check_cancelled()
        results: list[AgentResult] = []
        for outcome in outcomes:
            if outcome.value is not None:
                results.append(outcome.value)
            elif outcome.error is not None:
                raise outcome.error
            else:
                results.append(self.record_cancelled(members[outcome.index]))
        return results

    def consensus(
        self,
        results: Sequence[AgentResult],
        config: ConsensusConfig,
        *,
        weights: Mapping[str, float] | None = None,
    ) -> ConsensusResult:
        """Run the consensus engine; results under the confidence floor come back flagged."""

        self.metrics.consensus_rounds += 1
        result = compute_consensus(
            results,
            config,
            weights=weights if weights is not None else self.fleet.weights(),
        )
        self.emit(
            "consensus_reached",
            algorithm=result.algorithm,
            decision=result.decision,
            confidence=result.confidence,
            human_review=result.human_review,
        )
        if below_min_confidence(result):
            LOGGER.info(
                "fleet run %s: confidence %s below %s, deferring to human review",
                self.run.run_id,
                result.metadata.get("original_confidence"),
                config.min_confidence,
            )
        return result

    def require_quorum(self, results: Sequence[AgentResult], config: ConsensusConfig) -> int:
        """Raise :class:`ConsensusFailure` unless ``min_votes`` results succeeded."""

        required = config.min_votes if config.min_votes is not None else 1
        received = sum(1 for result in results if result.ok)
        if received < required and not config.allow_partial:
            raise ConsensusFailure(
                f"insufficient votes: {received} of {required} required",
                results=results,
                required=required,
                received=received,
            )
        return received


def single_result(
    result: AgentResult, *, algorithm: str, metadata: Mapping[str, Any] | None = None
) -> ConsensusResult:
    """Wrap one successful result as the final decision."""

    return ConsensusResult(
        decision=result.content,
        confidence=result.confidence,
        algorithm=algorithm,
        contributing_results=(result,),
        metadata=dict(metadata or {}),
    )


__all__ = ["FleetRunContext", "single_result"]
