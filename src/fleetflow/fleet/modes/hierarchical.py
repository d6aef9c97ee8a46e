"""hierarchical モード: マネージャが計画し、ワーカーへ分配し、統合する。

マネージャは ``{"phase": "plan", ...}`` で呼ばれ、次のいずれかを返す。

* ``[{"member": name, "task": subtask}, ...]``
* ``{"assignments": [...]}``
* ``[name, ...]`` (サブタスクは元の入力)

割り当てが無ければ計画の出力をそのまま決定とする。
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import replace
from typing import Any

from ...errors import AgentFailure, ValidationError
from ...models import AgentMember, AgentResult, ConsensusResult
from ..context import FleetRunContext, single_result


def parse_assignments(plan: Any, original: Any) -> list[tuple[str, Any]] | None:
    """Return ``(member_name, subtask)`` pairs, or ``None`` when ``plan`` assigns nothing."""

    if isinstance(plan, Mapping):
        plan = plan.get("assignments")
    if not isinstance(plan, list) or not plan:
        return None
    assignments: list[tuple[str, Any]] = []
    for entry in plan:
        if isinstance(entry, str):
            assignments.append((entry, original))
        elif isinstance(entry, Mapping) and entry.get("member"):
            assignments.append((str(entry["member"]), entry.get("task", original)))
        else:
            return None
    return assignments


async def run_hierarchical(ctx: FleetRunContext) -> ConsensusResult:
    manager = ctx.fleet.manager_member()
    if manager is None:
        raise ValidationError(f"fleet {ctx.fleet.name!r} has no manager member")
    original = ctx.task.input
    workers = [member for member in ctx.fleet.members if member.name != manager.name]

    ctx.run.current_tier = manager.tier
    plan = await ctx.call(
        manager,
        {"phase": "plan", "task": original, "workers": [member.name for member in workers]},
    )
    if not plan.ok:
        raise AgentFailure(f"manager {manager.name!r} failed to plan: {plan.error}", member_name=manager.name)

    assignments = parse_assignments(plan.content, original)
    if assignments is None:
        return single_result(plan, algorithm="hierarchical", metadata={"assignments": []})

    by_name = {member.name: member for member in workers}
    dispatch: list[tuple[AgentMember, Any]] = []
    missing: list[AgentResult] = []
    for name, subtask in assignments:
        member = by_name.get(name)
        if member is None:
            missing.append(ctx.record_missing(name))
        else:
            dispatch.append((member, subtask))

    worker_results = await ctx.fan_out(dispatch)
    results = [*worker_results, *missing]
    config = ctx.consensus_config
    if config.min_votes is None:
        config = replace(config, min_votes=1)
    ctx.require_quorum(results, config)
    plan_metadata = {"assignments": [{"member": name, "task": task} for name, task in assignments]}

    if ctx.fleet.coordination.worker_consensus:
        consensus = ctx.consensus(results, config)
        return replace(consensus, metadata={**consensus.metadata, **plan_metadata})

    ctx.check_cancelled()
    synthesis = await ctx.call(
        manager,
        {
            "phase": "synthesize",
            "task": original,
            "results": [result.to_dict() for result in results],
        },
    )
    if not synthesis.ok:
        raise AgentFailure(
            f"manager {manager.name!r} failed to synthesize: {synthesis.error}",
            member_name=manager.name,
        )
    return ConsensusResult(
        decision=synthesis.content,
        confidence=synthesis.confidence,
        algorithm="hierarchical",
        contributing_results=(synthesis, *results),
        metadata=plan_metadata,
    )


__all__ = ["parse_assignments", "run_hierarchical"]
