"""Normalized exception hierarchy for fleet and workflow execution."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping, Sequence
from typing import Any


class FleetFlowError(Exception):
    """Base class for runtime-originated errors."""

    alertable = True


class RetryableError(FleetFlowError):
    """Base class for errors where retrying may succeed."""


class FatalError(FleetFlowError):
    """Base class for unrecoverable errors."""


class ValidationError(FatalError):
    """Raised when a fleet or workflow definition is malformed."""

    def __init__(self, message: str, *, issues: Iterable[str] | None = None) -> None:
        super().__init__(message)
        self.issues = list(issues) if issues is not None else []


class ConditionSyntaxError(ValidationError):
    """Raised when a condition expression cannot be parsed."""

    def __init__(self, expression: str, reason: str, *, position: int | None = None) -> None:
        where = f" at {position}" if position is not None else ""
        super().__init__(f"invalid condition {expression!r}{where}: {reason}")
        self.expression = expression
        self.reason = reason
        self.position = position


class AgentFailure(FleetFlowError):
    """Raised when a single agent capability call fails."""

    def __init__(self, message: str, *, member_name: str | None = None) -> None:
        super().__init__(message)
        self.member_name = member_name


class AgentTimeout(AgentFailure, RetryableError):
    """Raised when an agent call exceeds its timeout."""


class TransientAgentError(AgentFailure, RetryableError):
    """Raised by capabilities to signal a failure worth retrying."""


class ConsensusFailure(FatalError):
    """Raised when a fleet cannot reach a usable consensus."""

    def __init__(
        self,
        message: str,
        *,
        results: Iterable[Any] | None = None,
        required: int | None = None,
        received: int | None = None,
        confidence: float | None = None,
    ) -> None:
        super().__init__(message)
        self.results = list(results) if results is not None else []
        self.required = required
        self.received = received
        self.confidence = confidence


class StepExecutionError(FleetFlowError):
    """Raised when a workflow step fails."""

    def __init__(
        self,
        message: str,
        *,
        step_id: str | None = None,
        attempts: int = 0,
        outcomes: Sequence[Mapping[str, Any]] | None = None,
        cause_kind: str | None = None,
    ) -> None:
        super().__init__(message)
        self.step_id = step_id
        self.attempts = attempts
        self.outcomes = list(outcomes) if outcomes is not None else None
        self.cause_kind = cause_kind


class RoutingError(StepExecutionError):
    """Raised when no outgoing connection matches after a step."""


class JoinError(StepExecutionError):
    """Raised when parallel branches do not satisfy the join policy."""


class ApprovalTimeout(FleetFlowError):
    """Signals that an approval request expired without a decision."""

    alertable = False

    def __init__(self, message: str, *, step_id: str | None = None, default: str | None = None) -> None:
        super().__init__(message)
        self.step_id = step_id
        self.default = default


class ApprovalError(FleetFlowError):
    """Raised when an approval decision cannot be applied."""


class CancellationError(FleetFlowError):
    """Raised when a run is cancelled by an external signal."""

    alertable = False


class PersistenceError(FatalError):
    """Raised when checkpoint storage cannot be read or written."""


class RunNotFoundError(FleetFlowError, LookupError):
    """Raised when a run id is unknown to the runtime."""


_KIND_BY_TYPE: tuple[tuple[type[BaseException], str], ...] = (
    (CancellationError, "cancelled"),
    (asyncio.CancelledError, "cancelled"),
    (ValidationError, "validation"),
    (ConsensusFailure, "consensus_failure"),
    (AgentFailure, "agent_failure"),
    (StepExecutionError, "step_execution"),
    (ApprovalTimeout, "approval_timeout"),
    (PersistenceError, "persistence"),
)


def error_kind(exc: BaseException) -> str:
    """Map ``exc`` to the taxonomy label stored on terminal runs."""

    if isinstance(exc, StepExecutionError) and exc.cause_kind:
        return exc.cause_kind
    for exc_type, kind in _KIND_BY_TYPE:
        if isinstance(exc, exc_type):
            return kind
    return "internal"


def is_transient(exc: BaseException) -> bool:
    """Return ``True`` when retrying the failed operation may succeed."""

    return isinstance(exc, (RetryableError, asyncio.TimeoutError, TimeoutError))


__all__ = [
    "FleetFlowError",
    "RetryableError",
    "FatalError",
    "ValidationError",
    "ConditionSyntaxError",
    "AgentFailure",
    "AgentTimeout",
    "TransientAgentError",
    "ConsensusFailure",
    "StepExecutionError",
    "RoutingError",
    "JoinError",
    "ApprovalTimeout",
    "ApprovalError",
    "CancellationError",
    "PersistenceError",
    "RunNotFoundError",
    "error_kind",
    "is_transient",
]
