"""Built-in consensus strategies."""
from __future__ import annotations

from .first_wins import FirstWinsStrategy
from .human_review import HumanReviewStrategy
from .majority import MajorityStrategy
from .registry import (
    register_strategy,
    register_tie_breaker,
    resolve_builtin_strategy,
    resolve_tie_breaker,
    STRATEGY_ALIASES,
    STRATEGY_FACTORIES,
    TIE_BREAKER_FACTORIES,
)
from .tie_breakers import LexicographicTieBreaker, MaxConfidenceTieBreaker, StableOrderTieBreaker
from .unanimous import UnanimousStrategy
from .weighted import WeightedStrategy

__all__ = [
    "FirstWinsStrategy",
    "HumanReviewStrategy",
    "LexicographicTieBreaker",
    "MajorityStrategy",
    "MaxConfidenceTieBreaker",
    "StableOrderTieBreaker",
    "UnanimousStrategy",
    "WeightedStrategy",
    "register_strategy",
    "register_tie_breaker",
    "resolve_builtin_strategy",
    "resolve_tie_breaker",
    "STRATEGY_ALIASES",
    "STRATEGY_FACTORIES",
    "TIE_BREAKER_FACTORIES",
]
