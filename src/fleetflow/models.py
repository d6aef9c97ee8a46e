"""フリート実行で扱うデータモデルの dataclass 定義。"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - 型補完用
    from .shared_store import SharedNamespace

__all__ = [
    "AgentRole",
    "CoordinationMode",
    "Distribution",
    "ConsensusAlgorithm",
    "FinalAggregation",
    "FleetRunStatus",
    "AgentMember",
    "ConsensusConfig",
    "TieredConfig",
    "DeepConfig",
    "SharedMemoryConfig",
    "CoordinationConfig",
    "FleetDef",
    "AgentTask",
    "AgentResult",
    "ConsensusResult",
    "FleetRun",
    "FleetResult",
    "FleetMetrics",
    "HUMAN_REVIEW_DECISION",
]

HUMAN_REVIEW_DECISION = "human_review"


class AgentRole(str, Enum):
    """フリート内でのメンバーの役割。"""

    WORKER = "worker"
    MANAGER = "manager"
    SPECIALIST = "specialist"
    VALIDATOR = "validator"


class CoordinationMode(str, Enum):
    PEER = "peer"
    HIERARCHICAL = "hierarchical"
    PIPELINE = "pipeline"
    SWARM = "swarm"
    TIERED = "tiered"
    DEEP = "deep"


class Distribution(str, Enum):
    """swarm モードでのタスク振り分け方式。"""

    ROUND_ROBIN = "round_robin"
    LEAST_LOADED = "least_loaded"
    RANDOM = "random"
    SKILL_BASED = "skill_based"
    STICKY = "sticky"


class ConsensusAlgorithm(str, Enum):
    MAJORITY = "majority"
    UNANIMOUS = "unanimous"
    WEIGHTED = "weighted"
    FIRST_WINS = "first_wins"
    HUMAN_REVIEW = "human_review"


class FinalAggregation(str, Enum):
    """tiered モード最終段の集約方法。"""

    CONSENSUS = "consensus"
    MERGE = "merge"
    MANAGER_SYNTHESIS = "manager_synthesis"


class FleetRunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self is not FleetRunStatus.RUNNING


@dataclass(frozen=True)
class AgentMember:
    """フリートを構成するエージェント。"""

    name: str
    role: AgentRole = AgentRole.WORKER
    tier: int = 1
    weight: float | None = None
    capability_ref: str | None = None
    skills: tuple[str, ...] = ()

    @property
    def capability(self) -> str:
        return self.capability_ref or self.name


@dataclass(frozen=True)
class ConsensusConfig:
    """合意形成の設定。``min_votes`` が ``None`` の場合は参加者数から算出する。"""

    algorithm: ConsensusAlgorithm = ConsensusAlgorithm.MAJORITY
    min_votes: int | None = None
    timeout_s: float | None = None
    allow_partial: bool = False
    min_confidence: float = 0.0
    tie_breaker: str | None = None
    weights: Mapping[str, float] = field(default_factory=dict)

    def with_min_votes(self, participants: int) -> ConsensusConfig:
        """Return a copy whose quorum is resolved for ``participants`` members."""

        if self.min_votes is not None:
            return self
        return replace(self, min_votes=participants // 2 + 1)


@dataclass(frozen=True)
class TieredConfig:
    """tiered モードの設定。"""

    tier_consensus: Mapping[int, ConsensusConfig] = field(default_factory=dict)
    pass_all_results: bool = False
    final_aggregation: FinalAggregation = FinalAggregation.CONSENSUS


@dataclass(frozen=True)
class DeepConfig:
    """deep モード (計画→実行→評価ループ) の設定。"""

    max_iterations: int = 5
    planner: str | None = None
    executor: str | None = None
    synthesizer: str | None = None
    goal_condition: str | None = None


@dataclass(frozen=True)
class SharedMemoryConfig:
    namespace: str | None = None
    ttl_s: float | None = None


@dataclass(frozen=True)
class CoordinationConfig:
    """協調モードと合意設定。"""

    mode: CoordinationMode = CoordinationMode.PEER
    distribution: Distribution | None = None
    consensus: ConsensusConfig = field(default_factory=ConsensusConfig)
    tiered: TieredConfig | None = None
    deep: DeepConfig | None = None
    manager: str | None = None
    worker_consensus: bool = False
    max_concurrency: int | None = None


@dataclass(frozen=True)
class FleetDef:
    """宣言済みフリート定義。実行開始後は変更しない。"""

    name: str
    members: tuple[AgentMember, ...]
    coordination: CoordinationConfig = field(default_factory=CoordinationConfig)
    shared_memory: SharedMemoryConfig | None = None
    labels: Mapping[str, str] = field(default_factory=dict)

    def member(self, name: str) -> AgentMember:
        for member in self.members:
            if member.name == name:
                return member
        raise KeyError(name)

    def weight_for(self, name: str) -> float:
        """Explicit member weight, then ``consensus.weights``, then 1.0."""

        for member in self.members:
            if member.name == name and member.weight is not None:
                return float(member.weight)
        weight = self.coordination.consensus.weights.get(name)
        if weight is None:
            return 1.0
        return float(weight)

    def weights(self) -> dict[str, float]:
        return {member.name: self.weight_for(member.name) for member in self.members}

    def manager_member(self) -> AgentMember | None:
        manager_name = self.coordination.manager
        if manager_name:
            return self.member(manager_name)
        for member in self.members:
            if member.role is AgentRole.MANAGER:
                return member
        return None

    def tiers(self) -> dict[int, list[AgentMember]]:
        grouped: dict[int, list[AgentMember]] = {}
        for member in self.members:
            grouped.setdefault(member.tier, []).append(member)
        return {tier: grouped[tier] for tier in sorted(grouped)}


@dataclass(frozen=True)
class AgentTask:
    """エージェントに渡すタスク。"""

    input: Any
    context: Mapping[str, Any] = field(default_factory=dict)
    run_id: str | None = None
    member: str | None = None
    required_skill: str | None = None
    affinity_key: str | None = None
    shared: SharedNamespace | None = field(default=None, compare=False, repr=False)

    def derive(self, new_input: Any, **changes: Any) -> AgentTask:
        return replace(self, input=new_input, **changes)


@dataclass(frozen=True)
class AgentResult:
    """1 回のエージェント呼び出し結果。"""

    member_name: str
    content: Any = None
    confidence: float = 1.0
    error: str | None = None
    latency_ms: float = 0.0
    tier: int = 1
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "member": self.member_name,
            "content": self.content,
            "confidence": self.confidence,
            "error": self.error,
            "latency_ms": self.latency_ms,
            "tier": self.tier,
        }


@dataclass(frozen=True)
class ConsensusResult:
    """合意結果。生成後は変更しない。"""

    decision: Any
    confidence: float
    algorithm: str
    contributing_results: tuple[AgentResult, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)
    human_review: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": self.decision,
            "confidence": self.confidence,
            "algorithm": self.algorithm,
            "human_review": self.human_review,
            "contributing_results": [result.to_dict() for result in self.contributing_results],
            "metadata": dict(self.metadata),
        }


@dataclass(slots=True)
class FleetRun:
    """実行中フリートの状態。コーディネータのみが更新する。"""

    run_id: str
    fleet_name: str
    mode: CoordinationMode
    status: FleetRunStatus = FleetRunStatus.RUNNING
    per_tier_results: dict[int, list[AgentResult]] = field(default_factory=dict)
    final: ConsensusResult | None = None
    current_tier: int | None = None
    error: str | None = None
    error_kind: str | None = None
    started_at: float = 0.0
    finished_at: float | None = None

    def record(self, result: AgentResult) -> None:
        self.per_tier_results.setdefault(result.tier, []).append(result)

    def all_results(self) -> list[AgentResult]:
        return [result for tier in sorted(self.per_tier_results) for result in self.per_tier_results[tier]]

    def to_result(self) -> FleetResult:
        return FleetResult(
            run_id=self.run_id,
            fleet_name=self.fleet_name,
            status=self.status,
            final=self.final,
            per_tier_results={tier: tuple(results) for tier, results in self.per_tier_results.items()},
            error=self.error,
            error_kind=self.error_kind,
        )


@dataclass(frozen=True)
class FleetResult:
    """フリート実行の最終結果。"""

    run_id: str
    fleet_name: str
    status: FleetRunStatus
    final: ConsensusResult | None
    per_tier_results: Mapping[int, tuple[AgentResult, ...]] = field(default_factory=dict)
    error: str | None = None
    error_kind: str | None = None

    @property
    def decision(self) -> Any:
        return self.final.decision if self.final is not None else None

    @property
    def confidence(self) -> float:
        return self.final.confidence if self.final is not None else 0.0

    @property
    def results(self) -> list[AgentResult]:
        return [result for tier in sorted(self.per_tier_results) for result in self.per_tier_results[tier]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "fleet": self.fleet_name,
            "status": self.status.value,
            "final": self.final.to_dict() if self.final is not None else None,
            "results": [result.to_dict() for result in self.results],
            "error": self.error,
            "error_kind": self.error_kind,
        }


@dataclass(slots=True)
class FleetMetrics:
    """コーディネータ単位の集計値。"""

    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    cancelled_tasks: int = 0
    total_duration_ms: float = 0.0
    consensus_rounds: int = 0

    @property
    def avg_duration_ms(self) -> float:
        finished = self.completed_tasks + self.failed_tasks + self.cancelled_tasks
        if finished == 0:
            return 0.0
        return self.total_duration_ms / finished

    def observe(self, status: FleetRunStatus, duration_ms: float) -> None:
        if status is FleetRunStatus.COMPLETED:
            self.completed_tasks += 1
        elif status is FleetRunStatus.CANCELLED:
            self.cancelled_tasks += 1
        else:
            self.failed_tasks += 1
        self.total_duration_ms += duration_ms
