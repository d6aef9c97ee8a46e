"""Consensus engine: pure aggregation of agent results into one decision."""
from __future__ import annotations

from .base import ConsensusStrategy, human_review_result, tally, TieBreaker, VoteBucket
from .builtin import (
    FirstWinsStrategy,
    HumanReviewStrategy,
    LexicographicTieBreaker,
    MajorityStrategy,
    MaxConfidenceTieBreaker,
    register_strategy,
    register_tie_breaker,
    resolve_builtin_strategy,
    resolve_tie_breaker,
    StableOrderTieBreaker,
    UnanimousStrategy,
    WeightedStrategy,
)
from .engine import below_min_confidence, compute_consensus

__all__ = [
    "ConsensusStrategy",
    "FirstWinsStrategy",
    "HumanReviewStrategy",
    "LexicographicTieBreaker",
    "MajorityStrategy",
    "MaxConfidenceTieBreaker",
    "StableOrderTieBreaker",
    "TieBreaker",
    "UnanimousStrategy",
    "VoteBucket",
    "WeightedStrategy",
    "below_min_confidence",
    "compute_consensus",
    "human_review_result",
    "register_strategy",
    "register_tie_breaker",
    "resolve_builtin_strategy",
    "resolve_tie_breaker",
    "tally",
]
