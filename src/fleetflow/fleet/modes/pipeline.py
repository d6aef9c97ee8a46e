"""pipeline モード: 宣言順に逐次実行し、前段の出力を次段の入力にする。"""

from __future__ import annotations

from ...errors import AgentFailure
from ...models import AgentResult, ConsensusResult
from ..context import FleetRunContext, single_result


async def run_pipeline(ctx: FleetRunContext) -> ConsensusResult:
    payload = ctx.task.input
    last: AgentResult | None = None
    stages: list[str] = []
    for member in ctx.fleet.members:
        ctx.check_cancelled()
        ctx.run.current_tier = member.tier
        last = await ctx.call(member, payload)
        stages.append(member.name)
        if not last.ok:
            raise AgentFailure(
                f"pipeline stage {member.name!r} failed: {last.error}", member_name=member.name
            )
        payload = last.content
    if last is None:
        raise AgentFailure("pipeline has no members")
    return single_result(last, algorithm="pipeline", metadata={"stages": stages})


__all__ = ["run_pipeline"]
