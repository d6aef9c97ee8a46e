"""最初に到着した結果を採用するストラテジ。"""
from __future__ import annotations

from collections.abc import Mapping, Sequence

from ...models import AgentResult, ConsensusResult
from ..base import TieBreaker

__all__ = ["FirstWinsStrategy"]


class FirstWinsStrategy:
    """``results`` must be ordered by arrival; the head is adopted."""

    name = "first_wins"

    def aggregate(
        self,
        results: Sequence[AgentResult],
        *,
        weights: Mapping[str, float],
        tie_breaker: TieBreaker | None = None,
    ) -> ConsensusResult:
        if not results:
            raise ValueError("first_wins: results must be non-empty")

        first = results[0]
        return ConsensusResult(
            decision=first.content,
            confidence=first.confidence,
            algorithm=self.name,
            contributing_results=(first,),
            metadata={
                "winner": first.member_name,
                "late_results": [result.to_dict() for result in results[1:]],
            },
        )
