"""deep モード: 計画 → サブステップ実行 → 評価 のループ。

1 イテレーション = 計画 1 回 + サブステップ最大 1 件 + 評価。
``max_iterations`` は計画呼び出しの回数を数える。上限に達しても失敗にはせず、
手元のメモリで統合して完了する。
"""

from __future__ import annotations

from collections.abc import Mapping
from statistics import fmean
from typing import Any

from ...conditions import evaluate
from ...errors import AgentFailure, ValidationError
from ...models import AgentMember, AgentRole, ConsensusResult, DeepConfig, FleetDef
from ...utils import decision_key
from ..context import FleetRunContext


def _resolve(fleet: FleetDef, name: str | None, fallback: AgentMember | None) -> AgentMember | None:
    if not name:
        return fallback
    try:
        return fleet.member(name)
    except KeyError:
        raise ValidationError(f"fleet {fleet.name!r} has no member {name!r}") from None


def _roles(fleet: FleetDef, config: DeepConfig) -> tuple[AgentMember, AgentMember, AgentMember | None]:
    if not fleet.members:
        raise ValidationError(f"fleet {fleet.name!r} has no members")
    default_planner = fleet.manager_member() or fleet.members[0]
    planner = _resolve(fleet, config.planner, default_planner)
    workers = [member for member in fleet.members if member.role is not AgentRole.MANAGER]
    executor = _resolve(fleet, config.executor, workers[0] if workers else planner)
    synthesizer = _resolve(fleet, config.synthesizer, None)
    if planner is None or executor is None:
        raise ValidationError(f"fleet {fleet.name!r} has no planner or executor for deep mode")
    return planner, executor, synthesizer


def parse_plan(content: Any) -> tuple[list[Any], bool]:
    """Return ``(sub_steps, done)`` from a planner's output."""

    if isinstance(content, Mapping):
        steps = content.get("steps") or []
        return (list(steps) if isinstance(steps, (list, tuple)) else [steps]), bool(content.get("done"))
    if isinstance(content, (list, tuple)):
        return list(content), False
    if content is None:
        return [], False
    return [content], False


async def run_deep(ctx: FleetRunContext) -> ConsensusResult:
    config = ctx.fleet.coordination.deep or DeepConfig()
    planner, executor, synthesizer = _roles(ctx.fleet, config)
    original = ctx.task.input
    memory: list[dict[str, Any]] = []
    finished: set[str] = set()
    goal_reached = False
    iterations = 0
    executed = 0
    planned_total = 0

    while iterations < config.max_iterations:
        ctx.check_cancelled()
        iterations += 1
        ctx.run.current_tier = iterations
        plan = await ctx.call(
            planner,
            {"phase": "plan", "task": original, "memory": list(memory), "iteration": iterations},
        )
        if not plan.ok:
            memory.append({"iteration": iterations, "step": None, "error": plan.error, "ok": False})
            continue
        steps, done = parse_plan(plan.content)
        planned_total = max(planned_total, len(steps))
        if done:
            goal_reached = True
            break
        pending = [step for step in steps if decision_key(step) not in finished]
        if not pending:
            goal_reached = True
            break

        step = pending[0]
        ctx.check_cancelled()
        outcome = await ctx.call(
            executor,
            {"phase": "execute", "task": original, "step": step, "memory": list(memory)},
        )
        executed += 1
        finding: dict[str, Any] = {
            "iteration": iterations,
            "step": step,
            "ok": outcome.ok,
            "finding": outcome.content if outcome.ok else None,
            "confidence": outcome.confidence,
        }
        if not outcome.ok:
            finding["error"] = outcome.error
        else:
            finished.add(decision_key(step))
        memory.append(finding)

        if config.goal_condition and evaluate(
            config.goal_condition,
            {"memory": memory, "iteration": iterations, "last": finding},
        ):
            goal_reached = True
            break

    metadata = {
        "iterations": iterations,
        "sub_steps_executed": executed,
        "planned_steps": planned_total,
        "goal_reached": goal_reached,
        "memory": memory,
    }
    successful = [entry for entry in memory if entry.get("ok")]
    if synthesizer is None:
        return ConsensusResult(
            decision=[entry["finding"] for entry in successful],
            confidence=fmean(entry["confidence"] for entry in successful) if successful else 0.0,
            algorithm="deep",
            metadata=metadata,
        )

    ctx.check_cancelled()
    synthesis = await ctx.call(
        synthesizer,
        {"phase": "synthesize", "task": original, "memory": memory, "goal_reached": goal_reached},
    )
    if not synthesis.ok:
        raise AgentFailure(
            f"synthesizer {synthesizer.name!r} failed: {synthesis.error}", member_name=synthesizer.name
        )
    return ConsensusResult(
        decision=synthesis.content,
        confidence=synthesis.confidence,
        algorithm="deep",
        contributing_results=(synthesis,),
        metadata=metadata,
    )


__all__ = ["parse_plan", "run_deep"]
