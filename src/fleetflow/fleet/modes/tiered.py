"""tiered モード: tier 昇順に実行し、各 tier の結果を次の tier へ渡す。

各 tier の合意はその tier の参加者だけで計算し、前段の結果は再投票しない。
"""

from __future__ import annotations

from dataclasses import replace
from statistics import fmean
from typing import Any

from ...errors import AgentFailure, ValidationError
from ...models import (
    AgentMember,
    AgentResult,
    ConsensusAlgorithm,
    ConsensusConfig,
    ConsensusResult,
    FinalAggregation,
    TieredConfig,
)
from ..context import FleetRunContext


def _tier_config(ctx: FleetRunContext, tiered: TieredConfig, tier: int, size: int) -> ConsensusConfig:
    config = tiered.tier_consensus.get(tier, ctx.consensus_config)
    if config.algorithm is ConsensusAlgorithm.FIRST_WINS:
        return config if config.min_votes is not None else replace(config, min_votes=1)
    return config.with_min_votes(size)


def _next_input(
    original: Any, tier: int, results: list[AgentResult], consensus: ConsensusResult | None
) -> dict[str, Any]:
    payload: dict[str, Any] = {"task": original, "previous_tier": tier}
    if consensus is None:
        payload["results"] = [result.to_dict() for result in results]
    else:
        payload["consensus"] = {"decision": consensus.decision, "confidence": consensus.confidence}
    return payload


def _merge(results: list[AgentResult], tier: int) -> ConsensusResult:
    succeeded = [result for result in results if result.ok]
    return ConsensusResult(
        decision={result.member_name: result.content for result in succeeded},
        confidence=fmean(result.confidence for result in succeeded) if succeeded else 0.0,
        algorithm="merge",
        contributing_results=tuple(succeeded),
        metadata={"tier": tier, "failed": [result.member_name for result in results if not result.ok]},
    )


async def run_tiered(ctx: FleetRunContext) -> ConsensusResult:
    tiered = ctx.fleet.coordination.tiered or TieredConfig()
    manager: AgentMember | None = None
    if tiered.final_aggregation is FinalAggregation.MANAGER_SYNTHESIS:
        manager = ctx.fleet.manager_member()
        if manager is None:
            raise ValidationError(f"fleet {ctx.fleet.name!r} needs a manager for manager_synthesis")
    tiers = {
        tier: [member for member in members if manager is None or member.name != manager.name]
        for tier, members in ctx.fleet.tiers().items()
    }
    tiers = {tier: members for tier, members in tiers.items() if members}
    if not tiers:
        raise ValidationError(f"fleet {ctx.fleet.name!r} has no tier members")

    original = ctx.task.input
    payload: Any = original
    *intermediate, last_tier = sorted(tiers)
    tier_summaries: list[dict[str, Any]] = []
    for tier in intermediate:
        ctx.check_cancelled()
        ctx.run.current_tier = tier
        members = tiers[tier]
        config = _tier_config(ctx, tiered, tier, len(members))
        results = await ctx.fan_out([(member, payload) for member in members], algorithm=config.algorithm)
        if tiered.pass_all_results:
            ctx.require_quorum(results, config)
            tier_summaries.append({"tier": tier, "results": len(results)})
            payload = _next_input(original, tier, results, None)
        else:
            consensus = ctx.consensus(results, config, weights=_tier_weights(ctx, members))
            tier_summaries.append(
                {"tier": tier, "decision": consensus.decision, "confidence": consensus.confidence}
            )
            payload = _next_input(original, tier, results, consensus)

    ctx.check_cancelled()
    ctx.run.current_tier = last_tier
    members = tiers[last_tier]
    config = _tier_config(ctx, tiered, last_tier, len(members))
    results = await ctx.fan_out([(member, payload) for member in members], algorithm=config.algorithm)
    final = await _aggregate_final(ctx, tiered, manager, last_tier, members, results, config, original)
    tier_summaries.append({"tier": last_tier, "decision": final.decision, "confidence": final.confidence})
    return ConsensusResult(
        decision=final.decision,
        confidence=final.confidence,
        algorithm=final.algorithm,
        contributing_results=final.contributing_results,
        metadata={**final.metadata, "tiers": tier_summaries},
        human_review=final.human_review,
    )


def _tier_weights(ctx: FleetRunContext, members: list[AgentMember]) -> dict[str, float]:
    return {member.name: ctx.fleet.weight_for(member.name) for member in members}


async def _aggregate_final(
    ctx: FleetRunContext,
    tiered: TieredConfig,
    manager: AgentMember | None,
    tier: int,
    members: list[AgentMember],
    results: list[AgentResult],
    config: ConsensusConfig,
    original: Any,
) -> ConsensusResult:
    if tiered.final_aggregation is FinalAggregation.CONSENSUS:
        return ctx.consensus(results, config, weights=_tier_weights(ctx, members))
    ctx.require_quorum(results, config)
    if tiered.final_aggregation is FinalAggregation.MERGE:
        return _merge(results, tier)
    if manager is None:
        raise ValidationError(f"fleet {ctx.fleet.name!r} needs a manager for manager_synthesis")
    ctx.check_cancelled()
    synthesis = await ctx.call(
        manager,
        {
            "phase": "synthesize",
            "task": original,
            "tier": tier,
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
        algorithm="manager_synthesis",
        contributing_results=(synthesis, *results),
        metadata={"tier": tier},
    )


__all__ = ["run_tiered"]
