"""フリート/ワークフロー定義の読み込みユーティリティ。"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
import json
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from pydantic import ValidationError as PydanticValidationError
import yaml

from .conditions import compile_condition
from .consensus import resolve_tie_breaker
from .errors import ConditionSyntaxError, ValidationError
from .models import (
    AgentMember,
    ConsensusConfig,
    CoordinationConfig,
    CoordinationMode,
    DeepConfig,
    FinalAggregation,
    FleetDef,
    SharedMemoryConfig,
    TieredConfig,
)
from .retry import RetryPolicy
from .schema import (
    ConsensusConfigModel,
    FleetDefModel,
    NextModel,
    RetryPolicyModel,
    StepModel,
    WorkflowDefModel,
)
from .workflow.graph import validate_workflow
from .workflow.models import CheckpointConfig, Connection, Step, WorkflowDef

__all__ = [
    "Definition",
    "check_fleet",
    "fleet_from_model",
    "load_definition",
    "load_definitions",
    "load_documents",
    "load_fleet",
    "load_workflow",
    "workflow_from_model",
]

Definition = FleetDef | WorkflowDef
Source = str | Path | Mapping[str, Any]


def _format_validation_error(exc: PydanticValidationError) -> list[str]:
    details = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part is not None)
        message = error.get("msg", "unknown error")
        details.append(f"{location}: {message}" if location else message)
    return details


def _origin(source: Source) -> str:
    if isinstance(source, Mapping):
        return "<mapping>"
    return str(source)


def load_documents(source: Source) -> list[Mapping[str, Any]]:
    """ファイルまたはマッピングから定義ドキュメントの一覧を返す。

    YAML の複数ドキュメント (``---`` 区切り) と、``fleets`` / ``workflows``
    キーでまとめたバンドル形式の両方を受け付ける。
    """

    if isinstance(source, Mapping):
        raw_documents: list[Any] = [source]
    else:
        path = Path(source)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ValidationError(f"cannot read definition file {path}: {exc}") from exc
        try:
            if path.suffix.lower() == ".json":
                raw_documents = [json.loads(text)]
            else:
                raw_documents = [document for document in yaml.safe_load_all(text) if document is not None]
        except (json.JSONDecodeError, yaml.YAMLError) as exc:
            raise ValidationError(f"cannot parse definition file {path}: {exc}") from exc

    documents: list[Mapping[str, Any]] = []
    for document in raw_documents:
        if not isinstance(document, Mapping):
            raise ValidationError(f"definition in {_origin(source)} is not a mapping")
        if "fleets" in document or "workflows" in document:
            for key in ("fleets", "workflows"):
                for entry in document.get(key) or ():
                    if not isinstance(entry, Mapping):
                        raise ValidationError(f"{key} entry in {_origin(source)} is not a mapping")
                    documents.append({"kind": key[:-1], **entry})
        else:
            documents.append(document)
    return documents


def _kind_of(document: Mapping[str, Any]) -> str:
    kind = document.get("kind")
    if kind in ("fleet", "workflow"):
        return str(kind)
    if "steps" in document:
        return "workflow"
    if "members" in document or "agents" in document:
        return "fleet"
    raise ValidationError(
        "cannot tell whether the definition is a fleet or a workflow",
        issues=["kind: expected 'fleet' or 'workflow'"],
    )


# ----------------------------------------------------------------------
# フリート
# ----------------------------------------------------------------------
def _consensus(model: ConsensusConfigModel) -> ConsensusConfig:
    return ConsensusConfig(
        algorithm=model.algorithm,
        min_votes=model.min_votes,
        timeout_s=model.timeout,
        allow_partial=model.allow_partial,
        min_confidence=model.min_confidence,
        tie_breaker=model.tie_breaker,
        weights=dict(model.weights),
    )


def fleet_from_model(model: FleetDefModel) -> FleetDef:
    coordination = model.coordination
    tiered = coordination.tiered
    deep = coordination.deep
    shared = model.shared_memory
    return FleetDef(
        name=model.name,
        members=tuple(
            AgentMember(
                name=member.name,
                role=member.role,
                tier=member.tier,
                weight=member.weight,
                capability_ref=member.capability_ref,
                skills=tuple(member.skills),
            )
            for member in model.members
        ),
        coordination=CoordinationConfig(
            mode=coordination.mode,
            distribution=coordination.distribution,
            consensus=_consensus(coordination.consensus),
            tiered=(
                TieredConfig(
                    tier_consensus={
                        tier: _consensus(config) for tier, config in tiered.tier_consensus.items()
                    },
                    pass_all_results=tiered.pass_all_results,
                    final_aggregation=tiered.final_aggregation,
                )
                if tiered is not None
                else None
            ),
            deep=(
                DeepConfig(
                    max_iterations=deep.max_iterations,
                    planner=deep.planner,
                    executor=deep.executor,
                    synthesizer=deep.synthesizer,
                    goal_condition=deep.goal_condition,
                )
                if deep is not None
                else None
            ),
            manager=coordination.manager,
            worker_consensus=coordination.worker_consensus,
            max_concurrency=coordination.max_concurrency,
        ),
        shared_memory=(
            SharedMemoryConfig(namespace=shared.namespace, ttl_s=shared.ttl)
            if shared is not None
            else None
        ),
        labels=dict(model.labels),
    )


def _check_tie_breaker(name: str | None, where: str, issues: list[str]) -> None:
    if name is None:
        return
    try:
        resolve_tie_breaker(name)
    except ValueError as exc:
        issues.append(f"{where}: {exc}")


def check_fleet(fleet: FleetDef) -> list[str]:
    """Return every rule violation of ``fleet``; empty when the fleet is usable."""

    issues: list[str] = []
    names = [member.name for member in fleet.members]
    if not names:
        issues.append("members: a fleet needs at least one member")
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        issues.append(f"members: duplicate member names: {', '.join(duplicates)}")
    for member in fleet.members:
        if member.weight is not None and member.weight < 0:
            issues.append(f"members.{member.name}: weight must be non-negative")

    coordination = fleet.coordination
    manager_known = not coordination.manager or coordination.manager in names
    if not manager_known:
        issues.append(f"coordination.manager: unknown member {coordination.manager!r}")
    elif coordination.mode is CoordinationMode.HIERARCHICAL and fleet.manager_member() is None:
        issues.append("coordination: hierarchical mode needs a manager member")
    _check_tie_breaker(coordination.consensus.tie_breaker, "coordination.consensus", issues)

    tiered = coordination.tiered
    if tiered is not None:
        tiers = {member.tier for member in fleet.members}
        for tier, config in tiered.tier_consensus.items():
            if tier not in tiers:
                issues.append(f"coordination.tiered.tier_consensus: tier {tier} has no members")
            _check_tie_breaker(config.tie_breaker, f"coordination.tiered.tier_consensus.{tier}", issues)
        if (
            tiered.final_aggregation is FinalAggregation.MANAGER_SYNTHESIS
            and coordination.mode is CoordinationMode.TIERED
            and manager_known
            and fleet.manager_member() is None
        ):
            issues.append("coordination.tiered: manager_synthesis needs a manager member")

    deep = coordination.deep
    if deep is not None:
        for role in ("planner", "executor", "synthesizer"):
            reference = getattr(deep, role)
            if reference and reference not in names:
                issues.append(f"coordination.deep.{role}: unknown member {reference!r}")
        if deep.goal_condition:
            try:
                compile_condition(deep.goal_condition)
            except ConditionSyntaxError as exc:
                issues.append(f"coordination.deep.goal_condition: {exc}")
    return issues


def _fleet(document: Mapping[str, Any], origin: str) -> FleetDef:
    try:
        model = FleetDefModel.model_validate(document)
    except PydanticValidationError as exc:
        issues = _format_validation_error(exc)
        raise ValidationError(
            f"invalid fleet definition ({origin}): {'; '.join(issues)}", issues=issues
        ) from None
    fleet = fleet_from_model(model)
    issues = check_fleet(fleet)
    if issues:
        raise ValidationError(
            f"invalid fleet {fleet.name!r} ({origin}): {'; '.join(issues)}", issues=issues
        )
    return fleet


# ----------------------------------------------------------------------
# ワークフロー
# ----------------------------------------------------------------------
def _retry(model: RetryPolicyModel | None) -> RetryPolicy | None:
    if model is None:
        return None
    initial = model.initial_delay if model.initial_delay is not None else 0.0
    maximum = model.max_delay if model.max_delay is not None else max(initial, 30.0)
    return RetryPolicy(
        max_attempts=model.max_attempts,
        backoff=model.backoff,
        initial_delay_s=float(initial),
        max_delay_s=float(maximum),
        multiplier=model.multiplier,
    )


def _next_connections(step_id: str, model: StepModel) -> list[Connection]:
    if model.next is None:
        return []
    if isinstance(model.next, str):
        return [Connection(source=step_id, target=model.next)]
    connections = []
    for item in model.next:
        if isinstance(item, NextModel):
            connections.append(Connection(source=step_id, target=item.target, condition=item.condition))
        else:
            connections.append(Connection(source=step_id, target=item))
    return connections


def workflow_from_model(model: WorkflowDefModel) -> WorkflowDef:
    """Convert a parsed model; graph-level rules are checked by the caller."""

    issues: list[str] = []
    declared: list[tuple[str, StepModel]] = []
    if isinstance(model.steps, Mapping):
        declared = [(step.id or key, step) for key, step in model.steps.items()]
        mismatched = [key for key, step in model.steps.items() if step.id and step.id != key]
        for key in mismatched:
            issues.append(f"steps.{key}: id {model.steps[key].id!r} does not match its key")
    else:
        for index, step in enumerate(model.steps):
            if not step.id:
                issues.append(f"steps.{index}: id is required")
                continue
            declared.append((step.id, step))

    steps: dict[str, Step] = {}
    connections: list[Connection] = []
    for step_id, step in declared:
        if step_id in steps:
            issues.append(f"steps.{step_id}: duplicate step id")
            continue
        steps[step_id] = Step(
            id=step_id,
            type=step.type,
            config=dict(step.config),
            retry=_retry(step.retry),
            timeout_s=step.timeout,
        )
        connections.extend(_next_connections(step_id, step))
    connections.extend(
        Connection(source=connection.source, target=connection.target, condition=connection.condition)
        for connection in model.connections
    )

    if model.state_schema is not None:
        try:
            Draft202012Validator.check_schema(model.state_schema)
        except SchemaError as exc:
            issues.append(f"state_schema: {exc.message}")

    if issues:
        raise ValidationError(
            f"invalid workflow {model.name!r}: {'; '.join(issues)}", issues=issues
        )
    return WorkflowDef(
        name=model.name,
        entrypoint=model.entrypoint,
        steps=steps,
        connections=tuple(connections),
        state_schema=model.state_schema,
        error_handler=model.error_handler,
        retry_policy=_retry(model.retry_policy) or RetryPolicy(),
        reducers=dict(model.reducers),
        checkpoint=CheckpointConfig(
            enabled=model.checkpoint.enabled, history=model.checkpoint.history
        ),
        initial_state=dict(model.initial_state),
    )


def _workflow(document: Mapping[str, Any], origin: str) -> WorkflowDef:
    try:
        model = WorkflowDefModel.model_validate(document)
    except PydanticValidationError as exc:
        issues = _format_validation_error(exc)
        raise ValidationError(
            f"invalid workflow definition ({origin}): {'; '.join(issues)}", issues=issues
        ) from None
    return validate_workflow(workflow_from_model(model))


# ----------------------------------------------------------------------
# 公開 API
# ----------------------------------------------------------------------
def _single(source: Source) -> Mapping[str, Any]:
    documents = load_documents(source)
    if len(documents) != 1:
        raise ValidationError(f"expected exactly one definition in {_origin(source)}, found {len(documents)}")
    return documents[0]


def load_fleet(source: Source) -> FleetDef:
    """単一のフリート定義を読み込む。"""

    return _fleet(_single(source), _origin(source))


def load_workflow(source: Source) -> WorkflowDef:
    """単一のワークフロー定義を読み込み、グラフ検証まで行う。"""

    return _workflow(_single(source), _origin(source))


def load_definition(source: Source) -> Definition:
    document = _single(source)
    if _kind_of(document) == "fleet":
        return _fleet(document, _origin(source))
    return _workflow(document, _origin(source))


def load_definitions(sources: Source | Iterable[Source]) -> list[Definition]:
    """複数ファイル/ドキュメントから定義をまとめて読み込む。"""

    if isinstance(sources, (str, Path, Mapping)):
        sources = [sources]
    definitions: list[Definition] = []
    for source in sources:
        origin = _origin(source)
        for document in load_documents(source):
            if _kind_of(document) == "fleet":
                definitions.append(_fleet(document, origin))
            else:
                definitions.append(_workflow(document, origin))
    return definitions
