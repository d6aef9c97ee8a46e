"""組み込みストラテジのレジストリ。"""
from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any

from ..base import ConsensusStrategy, TieBreaker
from .first_wins import FirstWinsStrategy
from .human_review import HumanReviewStrategy
from .majority import MajorityStrategy
from .tie_breakers import LexicographicTieBreaker, MaxConfidenceTieBreaker, StableOrderTieBreaker
from .unanimous import UnanimousStrategy
from .weighted import WeightedStrategy

__all__ = [
    "StrategyFactory",
    "register_strategy",
    "register_tie_breaker",
    "resolve_builtin_strategy",
    "resolve_tie_breaker",
    "STRATEGY_FACTORIES",
    "STRATEGY_ALIASES",
    "TIE_BREAKER_FACTORIES",
]

StrategyFactory = Callable[..., ConsensusStrategy]
TieBreakerFactory = Callable[[], TieBreaker]


STRATEGY_FACTORIES: dict[str, StrategyFactory] = {
    "majority": lambda **_kwargs: MajorityStrategy(),
    "unanimous": lambda **_kwargs: UnanimousStrategy(),
    "weighted": lambda **_kwargs: WeightedStrategy(),
    "first_wins": lambda **_kwargs: FirstWinsStrategy(),
    "human_review": lambda **_kwargs: HumanReviewStrategy(),
}

STRATEGY_ALIASES: dict[str, set[str]] = {
    "majority": {"majority", "majority_vote", "vote"},
    "unanimous": {"unanimous", "all"},
    "weighted": {"weighted", "weighted_vote"},
    "first_wins": {"first_wins", "first-wins", "first"},
    "human_review": {"human_review", "human-review", "human"},
}

TIE_BREAKER_FACTORIES: dict[str, TieBreakerFactory] = {
    "lexicographic": LexicographicTieBreaker,
    "stable_order": StableOrderTieBreaker,
    "max_confidence": MaxConfidenceTieBreaker,
}


def register_strategy(
    name: str, factory: StrategyFactory, *, aliases: Iterable[str] = ()
) -> None:
    """Add ``factory`` under ``name``; re-registering a name replaces it."""

    key = name.strip().lower()
    STRATEGY_FACTORIES[key] = factory
    STRATEGY_ALIASES[key] = {key, *(alias.strip().lower() for alias in aliases)}


def register_tie_breaker(name: str, factory: TieBreakerFactory) -> None:
    TIE_BREAKER_FACTORIES[name.strip().lower()] = factory


def resolve_builtin_strategy(kind: str, **kwargs: Any) -> ConsensusStrategy:
    kind_norm = (kind or "").strip().lower()
    for key, aliases in STRATEGY_ALIASES.items():
        if kind_norm in aliases:
            factory = STRATEGY_FACTORIES[key]
            return factory(**kwargs)
    raise ValueError(f"Unknown consensus algorithm: {kind!r}")


def resolve_tie_breaker(kind: str | None) -> TieBreaker | None:
    if kind is None:
        return None
    factory = TIE_BREAKER_FACTORIES.get(kind.strip().lower())
    if factory is None:
        raise ValueError(f"Unknown tie breaker: {kind!r}")
    return factory()
