"""宣言的なフリート/ワークフロー定義を検証する Pydantic モデル。"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import (
    AgentRole,
    ConsensusAlgorithm,
    CoordinationMode,
    Distribution,
    FinalAggregation,
)
from .retry import BackoffKind
from .utils import parse_duration
from .workflow.models import ReducerType, StepType

__all__ = [
    "AgentMemberModel",
    "ConsensusConfigModel",
    "TieredConfigModel",
    "DeepConfigModel",
    "SharedMemoryConfigModel",
    "CoordinationConfigModel",
    "FleetDefModel",
    "RetryPolicyModel",
    "NextModel",
    "StepModel",
    "ConnectionModel",
    "CheckpointConfigModel",
    "WorkflowDefModel",
]

Duration = float | str | None


def _seconds(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return parse_duration(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(str(exc)) from None


def _snake(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower().replace("-", "_")
    return value


class AgentMemberModel(BaseModel):
    """フリートメンバーのスキーマ。"""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str = Field(min_length=1)
    role: AgentRole = AgentRole.WORKER
    tier: int = Field(default=1, ge=1)
    weight: float | None = Field(default=None, ge=0.0)
    capability_ref: str | None = Field(default=None, alias="capability")
    skills: list[str] = Field(default_factory=list)

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, value: Any) -> Any:
        return _snake(value)


class ConsensusConfigModel(BaseModel):
    """合意形成設定のスキーマ。"""

    model_config = ConfigDict(extra="forbid")

    algorithm: ConsensusAlgorithm = ConsensusAlgorithm.MAJORITY
    min_votes: int | None = Field(default=None, ge=1)
    timeout: Duration = None
    allow_partial: bool = False
    min_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    tie_breaker: str | None = None
    weights: dict[str, float] = Field(default_factory=dict)

    @field_validator("algorithm", mode="before")
    @classmethod
    def _normalize_algorithm(cls, value: Any) -> Any:
        return _snake(value)

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, value: Any) -> float | None:
        return _seconds(value)

    @field_validator("weights")
    @classmethod
    def _non_negative(cls, value: dict[str, float]) -> dict[str, float]:
        negative = sorted(name for name, weight in value.items() if weight < 0)
        if negative:
            raise ValueError(f"weights must be non-negative: {', '.join(negative)}")
        return value


class TieredConfigModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tier_consensus: dict[int, ConsensusConfigModel] = Field(default_factory=dict)
    pass_all_results: bool = False
    final_aggregation: FinalAggregation = FinalAggregation.CONSENSUS

    @field_validator("final_aggregation", mode="before")
    @classmethod
    def _normalize_aggregation(cls, value: Any) -> Any:
        return _snake(value)


class DeepConfigModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_iterations: int = Field(default=5, ge=1)
    planner: str | None = None
    executor: str | None = None
    synthesizer: str | None = None
    goal_condition: str | None = None


class SharedMemoryConfigModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    namespace: str | None = None
    ttl: Duration = None

    @field_validator("ttl", mode="before")
    @classmethod
    def _parse_ttl(cls, value: Any) -> float | None:
        return _seconds(value)


class CoordinationConfigModel(BaseModel):
    """協調モード設定のスキーマ。distribution は ``round-robin`` 表記も受け付ける。"""

    model_config = ConfigDict(extra="forbid")

    mode: CoordinationMode = CoordinationMode.PEER
    distribution: Distribution | None = None
    consensus: ConsensusConfigModel = Field(default_factory=ConsensusConfigModel)
    tiered: TieredConfigModel | None = None
    deep: DeepConfigModel | None = None
    manager: str | None = None
    worker_consensus: bool = False
    max_concurrency: int | None = Field(default=None, ge=1)

    @field_validator("mode", "distribution", mode="before")
    @classmethod
    def _normalize_enum(cls, value: Any) -> Any:
        return _snake(value)


class FleetDefModel(BaseModel):
    """フリート定義全体のスキーマ。"""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    kind: Literal["fleet"] | None = None
    name: str = Field(min_length=1)
    members: list[AgentMemberModel] = Field(alias="agents")
    coordination: CoordinationConfigModel = Field(default_factory=CoordinationConfigModel)
    shared_memory: SharedMemoryConfigModel | None = None
    labels: dict[str, str] = Field(default_factory=dict)


class RetryPolicyModel(BaseModel):
    """再試行設定のスキーマ。"""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=1)
    backoff: BackoffKind = BackoffKind.EXPONENTIAL
    initial_delay: Duration = 1.0
    max_delay: Duration = 30.0
    multiplier: float = Field(default=2.0, gt=0.0)

    @field_validator("initial_delay", "max_delay", mode="before")
    @classmethod
    def _parse_delay(cls, value: Any) -> float | None:
        return _seconds(value)


class NextModel(BaseModel):
    """``next`` 省略記法の 1 要素。"""

    model_config = ConfigDict(extra="forbid")

    target: str
    condition: str | None = None


class StepModel(BaseModel):
    """ステップ定義のスキーマ。種別固有の設定は ``config`` に置く。"""

    model_config = ConfigDict(extra="forbid")

    id: str | None = None
    type: StepType
    config: dict[str, Any] = Field(default_factory=dict)
    next: str | list[NextModel | str] | None = None
    retry: RetryPolicyModel | None = None
    timeout: Duration = None

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        return _snake(value)

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, value: Any) -> float | None:
        return _seconds(value)


class ConnectionModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    source: str = Field(alias="from")
    target: str = Field(alias="to")
    condition: str | None = None


class CheckpointConfigModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    history: int = Field(default=10, ge=1)


class WorkflowDefModel(BaseModel):
    """ワークフロー定義全体のスキーマ。"""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["workflow"] | None = None
    name: str = Field(min_length=1)
    entrypoint: str
    state_schema: dict[str, Any] | None = None
    steps: dict[str, StepModel] | list[StepModel]
    connections: list[ConnectionModel] = Field(default_factory=list)
    error_handler: str | None = None
    retry_policy: RetryPolicyModel = Field(default_factory=RetryPolicyModel)
    reducers: dict[str, ReducerType] = Field(default_factory=dict)
    checkpoint: CheckpointConfigModel = Field(default_factory=CheckpointConfigModel)
    initial_state: dict[str, Any] = Field(default_factory=dict)
