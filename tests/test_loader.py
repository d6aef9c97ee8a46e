from __future__ import annotations

import json
from pathlib import Path
import textwrap

import pytest

from fleetflow.errors import ValidationError
from fleetflow.loader import load_definition, load_definitions, load_fleet, load_workflow
from fleetflow.models import AgentRole, ConsensusAlgorithm, CoordinationMode, Distribution, FleetDef
from fleetflow.retry import BackoffKind
from fleetflow.workflow.models import ReducerType, StepType, WorkflowDef


def _write(tmp_path: Path, name: str, content: str) -> Path:
    path = tmp_path / name
    path.write_text(textwrap.dedent(content), encoding="utf-8")
    return path


def test_load_fleet_from_yaml(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        "review.yaml",
        """
        name: review
        members:
          - name: lead
            role: manager
          - name: a
            weight: 2
          - name: b
            skills: [python]
        coordination:
          mode: hierarchical
          consensus:
            algorithm: weighted
            min_votes: 2
            timeout: 30s
            tie_breaker: max_confidence
        shared_memory:
          ttl: 5m
        """,
    )

    fleet = load_fleet(path)

    assert isinstance(fleet, FleetDef)
    assert fleet.coordination.mode is CoordinationMode.HIERARCHICAL
    assert fleet.members[0].role is AgentRole.MANAGER
    assert fleet.members[1].weight == 2.0
    assert fleet.members[2].skills == ("python",)
    consensus = fleet.coordination.consensus
    assert consensus.algorithm is ConsensusAlgorithm.WEIGHTED
    assert consensus.min_votes == 2
    assert consensus.timeout_s == 30.0
    assert fleet.shared_memory is not None and fleet.shared_memory.ttl_s == 300.0


def test_agents_alias_and_hyphenated_distribution() -> None:
    fleet = load_fleet(
        {
            "name": "pool",
            "agents": [{"name": "w1"}, {"name": "w2"}],
            "coordination": {"mode": "swarm", "distribution": "round-robin"},
        }
    )

    assert [member.name for member in fleet.members] == ["w1", "w2"]
    assert fleet.coordination.distribution is Distribution.ROUND_ROBIN


def test_unknown_manager_is_reported() -> None:
    with pytest.raises(ValidationError) as excinfo:
        load_fleet(
            {
                "name": "broken",
                "members": [{"name": "a"}, {"name": "a"}],
                "coordination": {"mode": "hierarchical", "manager": "ghost"},
            }
        )

    issues = excinfo.value.issues
    assert "members: duplicate member names: a" in issues
    assert "coordination.manager: unknown member 'ghost'" in issues


def test_schema_errors_carry_locations() -> None:
    with pytest.raises(ValidationError) as excinfo:
        load_fleet({"name": "x", "members": [{"name": "a", "tier": 0}], "extra": 1})

    joined = " | ".join(excinfo.value.issues)
    assert "tier" in joined
    assert "extra" in joined


def test_load_workflow_from_json(tmp_path: Path) -> None:
    document = {
        "name": "ship",
        "entrypoint": "build",
        "retry_policy": {"max_attempts": 5, "backoff": "linear", "initial_delay": "500ms"},
        "reducers": {"log": "append"},
        "steps": {
            "build": {"type": "agent", "config": {"agent": "builder"}, "next": "check"},
            "check": {
                "type": "conditional",
                "config": {"condition": "build == 'ok'", "then": "done", "else": "fail"},
            },
            "done": {"type": "end"},
            "fail": {"type": "end", "config": {"status": "failed"}},
        },
    }
    path = tmp_path / "ship.json"
    path.write_text(json.dumps(document), encoding="utf-8")

    workflow = load_workflow(path)

    assert isinstance(workflow, WorkflowDef)
    assert workflow.steps["check"].type is StepType.CONDITIONAL
    assert workflow.retry_policy.max_attempts == 5
    assert workflow.retry_policy.backoff is BackoffKind.LINEAR
    assert workflow.retry_policy.initial_delay_s == 0.5
    assert workflow.retry_policy.max_delay_s == 30.0
    assert workflow.reducers == {"log": ReducerType.APPEND}
    assert [(c.source, c.target) for c in workflow.connections] == [("build", "check")]


def test_minimal_workflow_uses_default_retry_policy() -> None:
    workflow = load_workflow({"name": "x", "entrypoint": "e", "steps": {"e": {"type": "end"}}})

    assert workflow.retry_policy.max_attempts == 3
    assert workflow.retry_policy.backoff is BackoffKind.EXPONENTIAL
    assert workflow.retry_policy.initial_delay_s == 1.0
    assert workflow.retry_policy.max_delay_s == 30.0


def test_next_shorthand_precedes_explicit_connections() -> None:
    workflow = load_workflow(
        {
            "name": "routes",
            "entrypoint": "start",
            "steps": [
                {
                    "id": "start",
                    "type": "transform",
                    "config": {"operations": [{"op": "set", "key": "x", "value": 1}]},
                    "next": [{"target": "a", "condition": "x == 1"}],
                },
                {"id": "a", "type": "end"},
                {"id": "b", "type": "end"},
            ],
            "connections": [{"from": "start", "to": "b"}],
        }
    )

    assert [(c.target, c.condition) for c in workflow.outgoing("start")] == [("a", "x == 1"), ("b", None)]


def _workflow_issues(document: dict) -> list[str]:
    with pytest.raises(ValidationError) as excinfo:
        load_workflow(document)
    return excinfo.value.issues


def test_bad_condition_and_dangling_connection_are_reported() -> None:
    issues = _workflow_issues(
        {
            "name": "bad",
            "entrypoint": "start",
            "steps": {
                "start": {"type": "conditional", "config": {"condition": "x ==", "then": "done"}},
                "done": {"type": "end"},
            },
            "connections": [{"from": "start", "to": "nowhere"}],
        }
    )

    assert any("dangling target 'nowhere'" in issue for issue in issues)
    assert any(issue.startswith("step 'start':") and "x ==" in issue for issue in issues)


def test_duplicate_step_ids_are_rejected() -> None:
    issues = _workflow_issues(
        {
            "name": "dupes",
            "entrypoint": "a",
            "steps": [
                {"id": "a", "type": "end"},
                {"id": "a", "type": "end"},
            ],
        }
    )

    assert issues == ["steps.a: duplicate step id"]


def test_non_terminating_cycle_is_rejected() -> None:
    issues = _workflow_issues(
        {
            "name": "loop",
            "entrypoint": "a",
            "steps": {
                "a": {"type": "agent", "config": {"agent": "x"}, "next": "b"},
                "b": {"type": "agent", "config": {"agent": "x"}, "next": "a"},
                "done": {"type": "end"},
            },
        }
    )

    assert "step 'a' cannot reach an end step (non-terminating cycle)" in issues


def test_branch_reaching_approval_is_rejected() -> None:
    issues = _workflow_issues(
        {
            "name": "fan",
            "entrypoint": "fan",
            "steps": {
                "fan": {"type": "parallel", "config": {"branches": ["gate"], "join": "join"}},
                "gate": {"type": "approval", "next": "join"},
                "join": {"type": "join", "next": "done"},
                "done": {"type": "end"},
            },
        }
    )

    assert "step 'fan': branch 'gate' reaches approval step 'gate' before the join" in issues


def test_invalid_state_schema_is_reported() -> None:
    issues = _workflow_issues(
        {
            "name": "schema",
            "entrypoint": "done",
            "state_schema": {"type": "not-a-type"},
            "steps": {"done": {"type": "end"}},
        }
    )

    assert len(issues) == 1
    assert issues[0].startswith("state_schema:")


def test_bundle_yields_fleets_and_workflows(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        "bundle.yaml",
        """
        fleets:
          - name: reviewers
            members: [{name: r1}, {name: r2}]
        workflows:
          - name: review
            entrypoint: run
            steps:
              run: {type: fleet, config: {fleet: reviewers}, next: done}
              done: {type: end}
        ---
        name: solo
        agents: [{name: only}]
        """,
    )

    definitions = load_definitions(path)

    assert [type(item).__name__ for item in definitions] == ["FleetDef", "WorkflowDef", "FleetDef"]
    assert [item.name for item in definitions] == ["reviewers", "review", "solo"]


def test_load_definition_detects_kind() -> None:
    workflow = load_definition({"name": "w", "entrypoint": "e", "steps": {"e": {"type": "end"}}})
    fleet = load_definition({"name": "f", "members": [{"name": "m"}]})

    assert isinstance(workflow, WorkflowDef)
    assert isinstance(fleet, FleetDef)
    with pytest.raises(ValidationError):
        load_definition({"name": "?"})


def test_unreadable_file_is_validation_error(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        load_workflow(tmp_path / "missing.yaml")
    with pytest.raises(ValidationError):
        load_workflow(_write(tmp_path, "broken.yaml", "name: [unclosed\n"))
