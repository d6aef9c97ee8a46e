"""swarm モード: 振り分け方式で選んだ 1 メンバーにタスクを渡す。"""

from __future__ import annotations

from ...errors import AgentFailure
from ...models import ConsensusResult, Distribution
from ..context import FleetRunContext, single_result
from ..distribution import select_member


async def run_swarm(ctx: FleetRunContext) -> ConsensusResult:
    distribution = ctx.fleet.coordination.distribution or Distribution.LEAST_LOADED
    member = select_member(ctx.selection, ctx.fleet, ctx.task, distribution)
    ctx.run.current_tier = member.tier
    result = await ctx.call(member, ctx.task.input)
    if not result.ok:
        raise AgentFailure(f"swarm member {member.name!r} failed: {result.error}", member_name=member.name)
    return single_result(
        result,
        algorithm="swarm",
        metadata={"distribution": distribution.value, "member": member.name},
    )


__all__ = ["run_swarm"]
