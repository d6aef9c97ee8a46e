"""peer モード: 全メンバーへ同時に配信し合意を取る。"""

from __future__ import annotations

from dataclasses import replace

from ...models import ConsensusAlgorithm, ConsensusResult
from ..context import FleetRunContext


async def run_peer(ctx: FleetRunContext) -> ConsensusResult:
    config = ctx.consensus_config
    members = list(ctx.fleet.members)
    if config.algorithm is ConsensusAlgorithm.FIRST_WINS:
        if config.min_votes is None:
            config = replace(config, min_votes=1)
    else:
        config = config.with_min_votes(len(members))
    ctx.run.current_tier = None
    results = await ctx.fan_out(
        [(member, ctx.task.input) for member in members],
        algorithm=config.algorithm,
    )
    return ctx.consensus(results, config)


__all__ = ["run_peer"]
