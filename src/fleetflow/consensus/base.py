"""Shared tally types and protocols for consensus strategies."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from ..models import AgentResult, ConsensusResult, HUMAN_REVIEW_DECISION
from ..utils import decision_key


@dataclass(slots=True)
class VoteBucket:
    """Results sharing one canonical decision."""

    key: str
    decision: Any
    weight: float = 0.0
    results: list[AgentResult] = field(default_factory=list)

    @property
    def members(self) -> list[str]:
        return [result.member_name for result in self.results]

    @property
    def mean_confidence(self) -> float:
        if not self.results:
            return 0.0
        return sum(result.confidence for result in self.results) / len(self.results)


class TieBreaker(Protocol):
    name: str

    def break_tie(self, buckets: Sequence[VoteBucket]) -> VoteBucket: ...


class ConsensusStrategy(Protocol):
    name: str

    def aggregate(
        self,
        results: Sequence[AgentResult],
        *,
        weights: Mapping[str, float],
        tie_breaker: TieBreaker | None = None,
    ) -> ConsensusResult: ...


def tally(
    results: Sequence[AgentResult], weights: Mapping[str, float]
) -> tuple[list[VoteBucket], float]:
    """Group ``results`` by decision in first-seen order and sum their weights."""

    buckets: dict[str, VoteBucket] = {}
    total = 0.0
    for result in results:
        key = decision_key(result.content)
        bucket = buckets.get(key)
        if bucket is None:
            bucket = buckets[key] = VoteBucket(key=key, decision=result.content)
        weight = max(0.0, float(weights.get(result.member_name, 1.0)))
        bucket.weight += weight
        bucket.results.append(result)
        total += weight
    return list(buckets.values()), total


def vote_summary(buckets: Sequence[VoteBucket]) -> list[dict[str, Any]]:
    return [
        {"decision": bucket.decision, "weight": bucket.weight, "members": bucket.members}
        for bucket in buckets
    ]


def human_review_result(
    results: Sequence[AgentResult],
    *,
    algorithm: str,
    reason: str,
    metadata: Mapping[str, Any] | None = None,
    confidence: float = 0.0,
) -> ConsensusResult:
    """Build an unresolved outcome that defers the decision to a human."""

    payload: dict[str, Any] = {"reason": reason, "results": [result.to_dict() for result in results]}
    if metadata:
        payload.update(metadata)
    return ConsensusResult(
        decision=HUMAN_REVIEW_DECISION,
        confidence=confidence,
        algorithm=algorithm,
        contributing_results=tuple(results),
        metadata=payload,
        human_review=True,
    )


__all__ = [
    "ConsensusStrategy",
    "TieBreaker",
    "VoteBucket",
    "human_review_result",
    "tally",
    "vote_summary",
]
