"""多数決ストラテジ。"""
from __future__ import annotations

from collections.abc import Mapping, Sequence

from ...models import AgentResult, ConsensusResult
from ..base import human_review_result, tally, TieBreaker, vote_summary

__all__ = ["MajorityStrategy"]


class MajorityStrategy:
    """Winner needs strictly more than half of the participating weight."""

    name = "majority"

    def aggregate(
        self,
        results: Sequence[AgentResult],
        *,
        weights: Mapping[str, float],
        tie_breaker: TieBreaker | None = None,
    ) -> ConsensusResult:
        if not results:
            raise ValueError("majority: results must be non-empty")

        buckets, total = tally(results, weights)
        votes = vote_summary(buckets)
        if total <= 0:
            return human_review_result(
                results, algorithm=self.name, reason="zero_total_weight", metadata={"votes": votes}
            )

        leader = max(buckets, key=lambda bucket: bucket.weight)
        if leader.weight * 2 <= total:
            return human_review_result(
                results,
                algorithm=self.name,
                reason="no_majority",
                metadata={"votes": votes, "total_weight": total},
            )

        return ConsensusResult(
            decision=leader.decision,
            confidence=leader.weight / total,
            algorithm=self.name,
            contributing_results=tuple(results),
            metadata={
                "votes": votes,
                "total_weight": total,
                "winner_weight": leader.weight,
                "winners": leader.members,
            },
        )
