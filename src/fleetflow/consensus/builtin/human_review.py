"""常に人間の判断へ委ねるストラテジ。"""
from __future__ import annotations

from collections.abc import Mapping, Sequence

from ...models import AgentResult, ConsensusResult
from ..base import human_review_result, tally, TieBreaker, vote_summary

__all__ = ["HumanReviewStrategy"]


class HumanReviewStrategy:
    name = "human_review"

    def aggregate(
        self,
        results: Sequence[AgentResult],
        *,
        weights: Mapping[str, float],
        tie_breaker: TieBreaker | None = None,
    ) -> ConsensusResult:
        buckets, total = tally(results, weights)
        return human_review_result(
            results,
            algorithm=self.name,
            reason="requested",
            metadata={"votes": vote_summary(buckets), "total_weight": total},
        )
