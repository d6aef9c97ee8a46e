"""重み付き投票ストラテジ。"""
from __future__ import annotations

from collections.abc import Mapping, Sequence

from ...models import AgentResult, ConsensusResult
from ..base import human_review_result, tally, TieBreaker, vote_summary
from .tie_breakers import LexicographicTieBreaker

__all__ = ["WeightedStrategy"]


class WeightedStrategy:
    """Highest summed weight wins without a threshold."""

    name = "weighted"

    def aggregate(
        self,
        results: Sequence[AgentResult],
        *,
        weights: Mapping[str, float],
        tie_breaker: TieBreaker | None = None,
    ) -> ConsensusResult:
        if not results:
            raise ValueError("weighted: results must be non-empty")

        buckets, total = tally(results, weights)
        votes = vote_summary(buckets)
        if total <= 0:
            return human_review_result(
                results, algorithm=self.name, reason="zero_total_weight", metadata={"votes": votes}
            )

        top_weight = max(bucket.weight for bucket in buckets)
        leaders = [bucket for bucket in buckets if bucket.weight == top_weight]
        breaker = tie_breaker or LexicographicTieBreaker()
        winner = leaders[0] if len(leaders) == 1 else breaker.break_tie(leaders)

        metadata = {
            "votes": votes,
            "total_weight": total,
            "winner_weight": winner.weight,
            "winners": winner.members,
        }
        if len(leaders) > 1:
            metadata["tie_breaker"] = breaker.name
            metadata["tied"] = [bucket.decision for bucket in leaders]

        return ConsensusResult(
            decision=winner.decision,
            confidence=winner.weight / total,
            algorithm=self.name,
            contributing_results=tuple(results),
            metadata=metadata,
        )
