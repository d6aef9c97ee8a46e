"""ワークフロー定義と実行状態の dataclass 定義。"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..retry import RetryPolicy

__all__ = [
    "StepType",
    "JoinPolicy",
    "ReducerType",
    "WorkflowStatus",
    "StepStatus",
    "ApprovalDecision",
    "Step",
    "Connection",
    "CheckpointConfig",
    "WorkflowDef",
    "StepExecution",
    "ApprovalRequest",
    "WorkflowRun",
]


class StepType(str, Enum):
    AGENT = "agent"
    FLEET = "fleet"
    TRANSFORM = "transform"
    CONDITIONAL = "conditional"
    PARALLEL = "parallel"
    JOIN = "join"
    APPROVAL = "approval"
    WAIT = "wait"
    END = "end"


class JoinPolicy(str, Enum):
    ALL = "all"
    ANY = "any"
    MAJORITY = "majority"


class ReducerType(str, Enum):
    """状態キーごとの更新方法。"""

    APPEND = "append"
    MERGE = "merge"
    SUM = "sum"
    REPLACE = "replace"


class WorkflowStatus(str, Enum):
    RUNNING = "running"
    WAITING_APPROVAL = "waiting_approval"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED}


class StepStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ApprovalDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


@dataclass(frozen=True)
class Step:
    """ステップ定義。``config`` の内容は ``type`` ごとに異なる。"""

    id: str
    type: StepType
    config: Mapping[str, Any] = field(default_factory=dict)
    retry: RetryPolicy | None = None
    timeout_s: float | None = None


@dataclass(frozen=True)
class Connection:
    """ステップ間の遷移。``condition`` が無ければ無条件。"""

    source: str
    target: str
    condition: str | None = None


@dataclass(frozen=True)
class CheckpointConfig:
    enabled: bool = True
    history: int = 10


@dataclass(frozen=True)
class WorkflowDef:
    """検証済みワークフロー定義。"""

    name: str
    entrypoint: str
    steps: Mapping[str, Step]
    connections: tuple[Connection, ...] = ()
    state_schema: Mapping[str, Any] | None = None
    error_handler: str | None = None
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    reducers: Mapping[str, ReducerType] = field(default_factory=dict)
    checkpoint: CheckpointConfig = field(default_factory=CheckpointConfig)
    initial_state: Mapping[str, Any] = field(default_factory=dict)

    def step(self, step_id: str) -> Step:
        return self.steps[step_id]

    def outgoing(self, step_id: str) -> list[Connection]:
        return [connection for connection in self.connections if connection.source == step_id]

    def retry_for(self, step: Step) -> RetryPolicy:
        return step.retry if step.retry is not None else self.retry_policy


@dataclass(frozen=True)
class StepExecution:
    """1 ステップの実行記録。"""

    step_id: str
    step_type: StepType
    status: StepStatus
    attempts: int = 1
    started_at: float = 0.0
    finished_at: float = 0.0
    output: Any = None
    error: str | None = None
    branch: str | None = None

    @property
    def duration_ms(self) -> float:
        return max(0.0, (self.finished_at - self.started_at) * 1000.0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "step_type": self.step_type.value,
            "status": self.status.value,
            "attempts": self.attempts,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error": self.error,
            "branch": self.branch,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StepExecution:
        return cls(
            step_id=str(data["step_id"]),
            step_type=StepType(data["step_type"]),
            status=StepStatus(data["status"]),
            attempts=int(data.get("attempts", 1)),
            started_at=float(data.get("started_at", 0.0)),
            finished_at=float(data.get("finished_at", 0.0)),
            error=data.get("error"),
            branch=data.get("branch"),
        )


@dataclass
class ApprovalRequest:
    """承認待ちリクエスト。解決またはタイムアウト後に破棄する。"""

    run_id: str
    step_id: str
    approvers: tuple[str, ...] = ()
    required_approvals: int = 1
    timeout_s: float | None = 3600.0
    default_on_timeout: ApprovalDecision = ApprovalDecision.REJECT
    received_decisions: dict[str, ApprovalDecision] = field(default_factory=dict)
    created_at: float = 0.0

    @property
    def approvals(self) -> int:
        return sum(1 for decision in self.received_decisions.values() if decision is ApprovalDecision.APPROVE)

    @property
    def resolved(self) -> ApprovalDecision | None:
        if any(decision is ApprovalDecision.REJECT for decision in self.received_decisions.values()):
            return ApprovalDecision.REJECT
        if self.approvals >= self.required_approvals:
            return ApprovalDecision.APPROVE
        return None

    def deadline(self) -> float | None:
        if self.timeout_s is None:
            return None
        return self.created_at + self.timeout_s

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "step_id": self.step_id,
            "approvers": list(self.approvers),
            "required_approvals": self.required_approvals,
            "timeout_s": self.timeout_s,
            "default_on_timeout": self.default_on_timeout.value,
            "received_decisions": {
                approver: decision.value for approver, decision in self.received_decisions.items()
            },
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ApprovalRequest:
        return cls(
            run_id=str(data["run_id"]),
            step_id=str(data["step_id"]),
            approvers=tuple(data.get("approvers") or ()),
            required_approvals=int(data.get("required_approvals", 1)),
            timeout_s=data.get("timeout_s"),
            default_on_timeout=ApprovalDecision(data.get("default_on_timeout", "reject")),
            received_decisions={
                approver: ApprovalDecision(decision)
                for approver, decision in (data.get("received_decisions") or {}).items()
            },
            created_at=float(data.get("created_at", 0.0)),
        )


@dataclass
class WorkflowRun:
    """実行中ワークフロー。状態の確定はエグゼキュータのみが行う。"""

    run_id: str
    workflow_name: str
    current_step: str
    state: dict[str, Any] = field(default_factory=dict)
    status: WorkflowStatus = WorkflowStatus.RUNNING
    history: list[StepExecution] = field(default_factory=list)
    completed_steps: list[str] = field(default_factory=list)
    pending_approval: ApprovalRequest | None = None
    error: dict[str, Any] | None = None
    outcome: str | None = None
    last_checkpoint_id: str | None = None
    started_at: float = 0.0
    finished_at: float | None = None

    def record(self, execution: StepExecution) -> None:
        self.history.append(execution)
        if execution.status is StepStatus.COMPLETED and execution.branch is None:
            self.completed_steps.append(execution.step_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow": self.workflow_name,
            "current_step": self.current_step,
            "status": self.status.value,
            "state": self.state,
            "history": [execution.to_dict() for execution in self.history],
            "completed_steps": list(self.completed_steps),
            "pending_approval": self.pending_approval.to_dict() if self.pending_approval else None,
            "error": self.error,
            "outcome": self.outcome,
            "last_checkpoint": self.last_checkpoint_id,
        }
