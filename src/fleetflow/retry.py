"""Retry policy and backoff computation for workflow steps."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class BackoffKind(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class RetryPolicy:
    """Attempts include the first try; ``max_attempts=1`` disables retry."""

    max_attempts: int = 3
    backoff: BackoffKind = BackoffKind.EXPONENTIAL
    initial_delay_s: float = 1.0
    max_delay_s: float = 30.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay_s < 0 or self.max_delay_s < 0:
            raise ValueError("retry delays must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1 = the first retry)."""

        if attempt < 1:
            return 0.0
        if self.backoff is BackoffKind.FIXED:
            delay = self.initial_delay_s
        elif self.backoff is BackoffKind.LINEAR:
            delay = self.initial_delay_s * attempt
        else:
            delay = self.initial_delay_s * (self.multiplier ** (attempt - 1))
        return min(delay, self.max_delay_s)

    def delays(self) -> list[float]:
        return [self.delay_for(attempt) for attempt in range(1, self.max_attempts)]


NO_RETRY = RetryPolicy(max_attempts=1, initial_delay_s=0.0, max_delay_s=0.0)

__all__ = ["BackoffKind", "NO_RETRY", "RetryPolicy"]
