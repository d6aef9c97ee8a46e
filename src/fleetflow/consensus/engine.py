"""Quorum checks and confidence gating around the consensus strategies."""
from __future__ import annotations

from collections.abc import Iterable, Mapping

from ..errors import ConsensusFailure
from ..models import AgentResult, ConsensusConfig, ConsensusResult, HUMAN_REVIEW_DECISION
from .base import ConsensusStrategy, human_review_result, TieBreaker
from .builtin.registry import resolve_builtin_strategy, resolve_tie_breaker


def compute_consensus(
    results: Iterable[AgentResult],
    config: ConsensusConfig | None = None,
    *,
    weights: Mapping[str, float] | None = None,
    strategy: ConsensusStrategy | None = None,
    tie_breaker: TieBreaker | None = None,
) -> ConsensusResult:
    """Aggregate ``results`` into one decision according to ``config``.

    Errored results are excluded from voting. When fewer than ``min_votes``
    results succeeded, :class:`ConsensusFailure` is raised unless
    ``allow_partial`` is set. A decision whose confidence falls under
    ``min_confidence`` is replaced by a human-review outcome that keeps the
    original decision in ``metadata``.
    """

    collected = list(results)
    if config is None:
        config = ConsensusConfig()
    participants = [result for result in collected if result.ok]
    failed = [result for result in collected if not result.ok]
    required = config.min_votes if config.min_votes is not None else 1

    partial = False
    if len(participants) < required:
        if not config.allow_partial:
            raise ConsensusFailure(
                f"insufficient votes: {len(participants)} of {required} required",
                results=collected,
                required=required,
                received=len(participants),
            )
        partial = True

    algorithm = config.algorithm.value
    shared_metadata = {
        "participants": [result.member_name for result in participants],
        "failed": [{"member": result.member_name, "error": result.error} for result in failed],
        "required_votes": required,
        "partial": partial,
    }

    if not participants:
        return human_review_result(
            collected, algorithm=algorithm, reason="no_participants", metadata=shared_metadata
        )

    resolved_strategy = strategy or resolve_builtin_strategy(algorithm)
    breaker = tie_breaker or resolve_tie_breaker(config.tie_breaker)
    outcome = resolved_strategy.aggregate(
        participants,
        weights=dict(weights or config.weights),
        tie_breaker=breaker,
    )

    metadata = dict(outcome.metadata)
    metadata.update(shared_metadata)

    if not outcome.human_review and outcome.confidence < config.min_confidence:
        metadata.update(
            {
                "override": "min_confidence",
                "original_decision": outcome.decision,
                "original_confidence": outcome.confidence,
                "min_confidence": config.min_confidence,
            }
        )
        return ConsensusResult(
            decision=HUMAN_REVIEW_DECISION,
            confidence=outcome.confidence,
            algorithm=outcome.algorithm,
            contributing_results=outcome.contributing_results,
            metadata=metadata,
            human_review=True,
        )

    return ConsensusResult(
        decision=outcome.decision,
        confidence=outcome.confidence,
        algorithm=outcome.algorithm,
        contributing_results=outcome.contributing_results,
        metadata=metadata,
        human_review=outcome.human_review,
    )


def below_min_confidence(result: ConsensusResult) -> bool:
    return result.metadata.get("override") == "min_confidence"


__all__ = ["below_min_confidence", "compute_consensus"]
