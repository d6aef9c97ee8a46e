"""全会一致ストラテジ。"""
from __future__ import annotations

from collections.abc import Mapping, Sequence

from ...models import AgentResult, ConsensusResult
from ..base import human_review_result, tally, TieBreaker, vote_summary

__all__ = ["UnanimousStrategy"]


class UnanimousStrategy:
    name = "unanimous"

    def aggregate(
        self,
        results: Sequence[AgentResult],
        *,
        weights: Mapping[str, float],
        tie_breaker: TieBreaker | None = None,
    ) -> ConsensusResult:
        if not results:
            raise ValueError("unanimous: results must be non-empty")

        buckets, total = tally(results, weights)
        votes = vote_summary(buckets)
        if total <= 0:
            return human_review_result(
                results, algorithm=self.name, reason="zero_total_weight", metadata={"votes": votes}
            )

        weighted = [bucket for bucket in buckets if bucket.weight > 0]
        if len(weighted) != 1:
            return human_review_result(
                results,
                algorithm=self.name,
                reason="disagreement",
                metadata={"votes": votes, "total_weight": total},
            )

        winner = weighted[0]
        return ConsensusResult(
            decision=winner.decision,
            confidence=1.0,
            algorithm=self.name,
            contributing_results=tuple(results),
            metadata={"votes": votes, "total_weight": total, "winners": winner.members},
        )
