"""組み込みタイブレーカー。"""
from __future__ import annotations

from collections.abc import Sequence

from ..base import VoteBucket

__all__ = ["LexicographicTieBreaker", "MaxConfidenceTieBreaker", "StableOrderTieBreaker"]


class LexicographicTieBreaker:
    name = "lexicographic"

    def break_tie(self, buckets: Sequence[VoteBucket]) -> VoteBucket:
        if not buckets:
            raise ValueError("TieBreaker: buckets must be non-empty")
        return min(buckets, key=lambda bucket: bucket.key)


class StableOrderTieBreaker:
    name = "stable_order"

    def break_tie(self, buckets: Sequence[VoteBucket]) -> VoteBucket:
        if not buckets:
            raise ValueError("TieBreaker: buckets must be non-empty")
        return buckets[0]


class MaxConfidenceTieBreaker:
    name = "max_confidence"

    def break_tie(self, buckets: Sequence[VoteBucket]) -> VoteBucket:
        if not buckets:
            raise ValueError("TieBreaker: buckets must be non-empty")
        best = max(bucket.mean_confidence for bucket in buckets)
        leaders = [bucket for bucket in buckets if bucket.mean_confidence == best]
        return LexicographicTieBreaker().break_tie(leaders)
