from __future__ import annotations

import asyncio
from typing import Any

import pytest

from fleetflow.checkpoint import CheckpointStore
from fleetflow.errors import AgentFailure, ApprovalError, TransientAgentError, ValidationError
from fleetflow.loader import load_workflow
from fleetflow.models import AgentTask
from fleetflow.workflow import WorkflowExecutor, WorkflowStatus
from fleetflow.workflow.models import ApprovalDecision, StepStatus


def _executor(registry: Any, clock: Any, capture: Any = None, **kwargs: Any) -> WorkflowExecutor:
    kwargs.setdefault("sleep_fn", clock.sleep)
    return WorkflowExecutor(registry, event_logger=capture, clock=clock.time, **kwargs)


TRIAGE = {
    "name": "triage",
    "entrypoint": "classify",
    "state_schema": {
        "type": "object",
        "required": ["ticket"],
        "properties": {"ticket": {"type": "string"}},
    },
    "steps": {
        "classify": {"type": "agent", "config": {"agent": "classifier"}, "next": "route"},
        "route": {
            "type": "conditional",
            "config": {"condition": "classify == 'bug'", "then": "fix", "else": "done"},
        },
        "fix": {
            "type": "agent",
            "config": {"agent": "fixer", "input": "patch for {ticket}", "output_key": "patch"},
            "next": "done",
        },
        "done": {"type": "end", "config": {"outcome": "resolved"}},
    },
}


def _classify(task: AgentTask) -> str:
    return "bug" if "crash" in task.input["ticket"] else "question"


def test_linear_workflow_routes_and_completes(scripted, registry_with, clock, capture) -> None:
    fixer = scripted("fixer", lambda task: f"patched({task.input})")
    registry = registry_with({"classifier": scripted("classifier", _classify), "fixer": fixer})
    executor = _executor(registry, clock, capture)
    definition = load_workflow(TRIAGE)

    run = asyncio.run(executor.run(definition, {"ticket": "app crash on save"}, run_id="wf-1"))

    assert run.status is WorkflowStatus.COMPLETED
    assert run.outcome == "resolved"
    assert run.state["classify"] == "bug"
    assert run.state["patch"] == "patched(patch for app crash on save)"
    assert run.completed_steps == ["classify", "route", "fix", "done"]
    assert capture.types()[0] == "workflow_started"
    assert capture.of_type("workflow_completed")[0]["outcome"] == "resolved"
    checkpoints = executor.checkpoints.list("wf-1")
    assert [checkpoint.step_id for checkpoint in checkpoints] == ["route", "fix", "done", "done"]
    assert checkpoints[-1].status == "completed"
    sequences = [checkpoint.sequence for checkpoint in checkpoints]
    assert sequences == sorted(sequences)


def test_else_branch_skips_fixer(scripted, registry_with, clock) -> None:
    fixer = scripted("fixer")
    registry = registry_with({"classifier": scripted("classifier", _classify), "fixer": fixer})
    executor = _executor(registry, clock)

    run = asyncio.run(executor.run(load_workflow(TRIAGE), {"ticket": "how do I export?"}))

    assert run.status is WorkflowStatus.COMPLETED
    assert fixer.calls == []
    assert "patch" not in run.state


def test_input_not_matching_state_schema_is_rejected(scripted, registry_with, clock) -> None:
    executor = _executor(registry_with({"classifier": scripted("classifier")}), clock)

    with pytest.raises(ValidationError) as excinfo:
        executor.create_run(load_workflow(TRIAGE), {"ticket": 42})

    assert excinfo.value.issues
    assert executor.active_runs() == []


FAN_OUT = {
    "name": "fan-out",
    "entrypoint": "fan",
    "reducers": {"results": "append"},
    "steps": {
        "fan": {"type": "parallel", "config": {"branches": ["left", "right"], "join": "gather"}},
        "left": {"type": "agent", "config": {"agent": "left", "output_key": "results"}, "next": "gather"},
        "right": {"type": "agent", "config": {"agent": "right", "output_key": "results"}, "next": "gather"},
        "gather": {"type": "join", "config": {"policy": "all"}, "next": "done"},
        "done": {"type": "end"},
    },
}


def _with_join_policy(policy: str) -> dict[str, Any]:
    steps = dict(FAN_OUT["steps"])
    steps["gather"] = {"type": "join", "config": {"policy": policy}, "next": "done"}
    return {**FAN_OUT, "steps": steps}


def test_parallel_merge_follows_declaration_order(scripted, registry_with, clock) -> None:
    agents = {"left": scripted("left", ["L"], delay=0.02), "right": scripted("right", ["R"])}
    executor = _executor(registry_with(agents), clock)

    run = asyncio.run(executor.run(load_workflow(FAN_OUT), {}))

    assert run.status is WorkflowStatus.COMPLETED
    assert run.state["results"] == ["L", "R"]
    branches = {entry.branch for entry in run.history if entry.branch is not None}
    assert branches == {"left", "right"}
    assert run.completed_steps == ["fan", "gather", "done"]


def test_join_all_fails_when_a_branch_fails(scripted, registry_with, clock, capture) -> None:
    agents = {
        "left": scripted("left", ["L"]),
        "right": scripted("right", [AgentFailure("model refused")]),
    }
    executor = _executor(registry_with(agents), clock, capture)

    run = asyncio.run(executor.run(load_workflow(FAN_OUT), {}))

    assert run.status is WorkflowStatus.FAILED
    assert run.error is not None
    assert run.error["step"] == "gather"
    assert "left=completed" in run.error["message"]
    assert "right=failed" in run.error["message"]
    assert "results" not in run.state
    failed = [entry for entry in run.history if entry.status is StepStatus.FAILED]
    assert [entry.step_id for entry in failed] == ["fan"]
    assert capture.of_type("workflow_failed")


def test_join_any_tolerates_failed_branch(scripted, registry_with, clock) -> None:
    agents = {
        "left": scripted("left", ["L"], delay=0.01),
        "right": scripted("right", [AgentFailure("down")]),
    }
    executor = _executor(registry_with(agents), clock)

    run = asyncio.run(executor.run(load_workflow(_with_join_policy("any")), {}))

    assert run.status is WorkflowStatus.COMPLETED
    assert run.state["results"] == ["L"]


THREE_WAY = {
    "name": "three-way",
    "entrypoint": "fan",
    "reducers": {"results": "append"},
    "steps": {
        "fan": {"type": "parallel", "config": {"branches": ["a", "b", "c"], "join": "gather"}},
        "a": {"type": "agent", "config": {"agent": "a", "output_key": "results"}, "next": "gather"},
        "b": {"type": "agent", "config": {"agent": "b", "output_key": "results"}, "next": "gather"},
        "c": {"type": "agent", "config": {"agent": "c", "output_key": "results"}, "next": "gather"},
        "gather": {"type": "join", "config": {"policy": "majority"}, "next": "done"},
        "done": {"type": "end"},
    },
}


def test_join_majority_proceeds_with_two_of_three(scripted, registry_with, clock) -> None:
    agents = {
        "a": scripted("a", ["A"]),
        "b": scripted("b", [AgentFailure("down")]),
        "c": scripted("c", ["C"], delay=0.01),
    }
    executor = _executor(registry_with(agents), clock)

    run = asyncio.run(executor.run(load_workflow(THREE_WAY), {}))

    assert run.status is WorkflowStatus.COMPLETED
    assert run.state["results"] == ["A", "C"]


def test_join_majority_fails_with_one_of_three(scripted, registry_with, clock) -> None:
    agents = {
        "a": scripted("a", ["A"]),
        "b": scripted("b", [AgentFailure("down")]),
        "c": scripted("c", [AgentFailure("down")]),
    }
    executor = _executor(registry_with(agents), clock)

    run = asyncio.run(executor.run(load_workflow(THREE_WAY), {}))

    assert run.status is WorkflowStatus.FAILED
    assert run.error is not None
    assert run.error["kind"] == "step_execution"
    assert "(majority) not satisfied" in run.error["message"]


def test_tolerant_join_all_keeps_successful_branches(scripted, registry_with, clock) -> None:
    steps = dict(FAN_OUT["steps"])
    steps["gather"] = {"type": "join", "config": {"policy": "all", "tolerant": True}, "next": "done"}
    agents = {"left": scripted("left", ["L"]), "right": scripted("right", [AgentFailure("down")])}
    executor = _executor(registry_with(agents), clock)

    run = asyncio.run(executor.run(load_workflow({**FAN_OUT, "steps": steps}), {}))

    assert run.status is WorkflowStatus.COMPLETED
    assert run.state["results"] == ["L"]
    fork = next(entry for entry in run.history if entry.step_id == "fan" and entry.branch is None)
    assert {item["branch"]: item["status"] for item in fork.output["branches"]} == {
        "left": "completed",
        "right": "failed",
    }


def test_join_timeout_cancels_slow_branch(scripted, registry_with, clock) -> None:
    steps = dict(FAN_OUT["steps"])
    steps["gather"] = {"type": "join", "config": {"policy": "all", "timeout": "50ms"}, "next": "done"}
    agents = {"left": scripted("left", ["L"]), "right": scripted("right", block=True)}
    executor = _executor(registry_with(agents), clock)

    run = asyncio.run(executor.run(load_workflow({**FAN_OUT, "steps": steps}), {}))

    assert run.status is WorkflowStatus.FAILED
    assert run.error is not None
    assert "right=timed_out" in run.error["message"]
    assert agents["right"].cancelled


RETRYING = {
    "name": "retrying",
    "entrypoint": "work",
    "error_handler": "recover",
    "retry_policy": {"max_attempts": 3, "backoff": "exponential", "initial_delay": "1s"},
    "steps": {
        "work": {"type": "agent", "config": {"agent": "worker"}, "next": "done"},
        "recover": {
            "type": "transform",
            "config": {"operations": [{"op": "set", "key": "recovered", "value": True}]},
            "next": "done",
        },
        "done": {"type": "end"},
    },
}


def test_transient_errors_are_retried_with_backoff(scripted, registry_with, clock, capture) -> None:
    worker = scripted("worker", [TransientAgentError("busy"), TransientAgentError("busy"), "ok"])
    executor = _executor(registry_with({"worker": worker}), clock, capture)

    run = asyncio.run(executor.run(load_workflow(RETRYING), {}))

    assert run.status is WorkflowStatus.COMPLETED
    assert run.state["work"] == "ok"
    assert clock.sleeps == [1.0, 2.0]
    assert len(capture.of_type("step_retry")) == 2
    assert run.history[0].attempts == 3


def test_error_handler_receives_error_details(scripted, registry_with, clock) -> None:
    worker = scripted("worker", [AgentFailure("model refused")])
    executor = _executor(registry_with({"worker": worker}), clock)

    run = asyncio.run(executor.run(load_workflow(RETRYING), {}))

    assert run.status is WorkflowStatus.COMPLETED
    assert run.state["recovered"] is True
    assert run.state["error"]["step"] == "work"
    assert run.state["error"]["kind"] == "agent_failure"
    assert len(worker.calls) == 1
    assert clock.sleeps == []


def test_unmatched_routing_fails_run(scripted, registry_with, clock) -> None:
    definition = load_workflow(
        {
            "name": "strict",
            "entrypoint": "check",
            "steps": {
                "check": {
                    "type": "agent",
                    "config": {"agent": "scorer"},
                    "next": [{"target": "done", "condition": "check > 5"}],
                },
                "done": {"type": "end"},
            },
        }
    )
    executor = _executor(registry_with({"scorer": scripted("scorer", [3])}), clock)

    run = asyncio.run(executor.run(definition, {}))

    assert run.status is WorkflowStatus.FAILED
    assert run.error is not None
    assert run.error["step"] == "check"
    assert "no outgoing connection" in run.error["message"]


RELEASE = {
    "name": "release",
    "entrypoint": "gate",
    "steps": {
        "gate": {
            "type": "approval",
            "config": {
                "approvers": ["alice", "bob"],
                "required_approvals": 2,
                "timeout": "1h",
                "default_on_timeout": "reject",
            },
            "next": [
                {"target": "deploy", "condition": "approved"},
                {"target": "rejected", "condition": "rejected"},
            ],
        },
        "deploy": {"type": "agent", "config": {"agent": "deployer"}, "next": "shipped"},
        "shipped": {"type": "end", "config": {"outcome": "shipped"}},
        "rejected": {"type": "end", "config": {"outcome": "rejected"}},
    },
}


def test_approval_timeout_applies_default_reject(scripted, registry_with, clock, capture) -> None:
    deployer = scripted("deployer")
    executor = _executor(registry_with({"deployer": deployer}), clock, capture)

    run = asyncio.run(executor.run(load_workflow(RELEASE), {}))

    assert run.status is WorkflowStatus.COMPLETED
    assert run.outcome == "rejected"
    assert deployer.calls == []
    assert clock.sleeps == [3600.0]
    resolved = capture.of_type("approval_resolved")[0]
    assert resolved["timed_out"] is True
    assert resolved["decision"] == "reject"
    assert run.state["gate"]["timed_out"] is True


@pytest.mark.asyncio
async def test_approval_waits_for_required_approvers(scripted, registry_with, clock, capture) -> None:
    deployer = scripted("deployer", ["deployed"])
    executor = WorkflowExecutor(
        registry_with({"deployer": deployer}), event_logger=capture, clock=clock.time
    )
    definition = load_workflow(RELEASE)

    pending = asyncio.create_task(executor.run(definition, {}, run_id="wf-approve"))
    while executor.approvals.pending("wf-approve") is None:
        await asyncio.sleep(0)

    assert executor.get_run("wf-approve").status is WorkflowStatus.WAITING_APPROVAL
    assert executor.checkpoints.latest("wf-approve").status == "waiting_approval"
    with pytest.raises(ApprovalError):
        executor.resolve_approval("wf-approve", "mallory", "approve")
    executor.resolve_approval("wf-approve", "alice", "approve")
    assert not pending.done()
    executor.resolve_approval("wf-approve", "bob", True)
    run = await pending

    assert run.outcome == "shipped"
    assert run.state["deploy"] == "deployed"
    assert run.state["gate"]["approvers"] == {"alice": "approve", "bob": "approve"}
    assert capture.of_type("waiting_approval")[0]["required_approvals"] == 2


def test_auto_approve_skips_waiting(scripted, registry_with, clock) -> None:
    gate = dict(RELEASE["steps"]["gate"])
    gate["config"] = {**gate["config"], "auto_approve": "risk == 'low'"}
    definition = load_workflow({**RELEASE, "steps": {**RELEASE["steps"], "gate": gate}})
    executor = _executor(registry_with({"deployer": scripted("deployer", ["ok"])}), clock)

    run = asyncio.run(executor.run(definition, {"risk": "low"}))

    assert run.outcome == "shipped"
    assert run.state["gate"]["auto"] is True
    assert clock.sleeps == []


PAUSING = {
    "name": "pausing",
    "entrypoint": "first",
    "steps": {
        "first": {"type": "agent", "config": {"agent": "first"}, "next": "pause"},
        "pause": {"type": "wait", "config": {"duration": "10m"}, "next": "second"},
        "second": {"type": "agent", "config": {"agent": "second"}, "next": "done"},
        "done": {"type": "end"},
    },
}


async def _block_forever(_: float) -> None:
    await asyncio.Event().wait()


@pytest.mark.asyncio
async def test_resume_continues_from_checkpoint_without_rerunning_steps(
    scripted, registry_with, clock
) -> None:
    first = scripted("first", ["one"])
    second = scripted("second", ["two"])
    registry = registry_with({"first": first, "second": second})
    store = CheckpointStore(clock=clock.time)
    definition = load_workflow(PAUSING)

    crashed = WorkflowExecutor(registry, checkpoints=store, sleep_fn=_block_forever, clock=clock.time)
    stalled = asyncio.create_task(crashed.run(definition, {}, run_id="wf-resume"))
    while store.latest("wf-resume") is None or store.latest("wf-resume").metadata.get("phase") != "suspend":
        await asyncio.sleep(0)
    clock.current += 601

    restorer = WorkflowExecutor(registry, checkpoints=store, clock=clock.time)
    again = restorer.restore(definition, "wf-resume")
    resumed = _executor(registry, clock, checkpoints=store)
    restored = resumed.restore(definition, "wf-resume")

    assert restored.current_step == again.current_step == "pause"
    assert restored.state == again.state == {"first": "one"}
    assert restored.completed_steps == ["first"]

    run = await resumed.continue_run(definition, restored)

    assert run.status is WorkflowStatus.COMPLETED
    assert run.state == {"first": "one", "second": "two"}
    assert len(first.calls) == 1
    assert len(second.calls) == 1
    assert clock.sleeps == []

    stalled.cancel()
    await asyncio.gather(stalled, return_exceptions=True)


@pytest.mark.asyncio
async def test_resumed_wait_keeps_original_deadline(scripted, registry_with, clock) -> None:
    registry = registry_with({"first": scripted("first", ["one"]), "second": scripted("second", ["two"])})
    store = CheckpointStore(clock=clock.time)
    definition = load_workflow(PAUSING)

    crashed = WorkflowExecutor(registry, checkpoints=store, sleep_fn=_block_forever, clock=clock.time)
    stalled = asyncio.create_task(crashed.run(definition, {}, run_id="wf-window"))
    while store.latest("wf-window") is None or store.latest("wf-window").metadata.get("phase") != "suspend":
        await asyncio.sleep(0)
    resume_at = store.latest("wf-window").metadata["resume_at"]
    clock.current += 200

    resumed = _executor(registry, clock, checkpoints=store)
    run = await resumed.resume(definition, "wf-window")

    assert run.status is WorkflowStatus.COMPLETED
    assert clock.sleeps == [400.0]
    assert clock.current == resume_at

    stalled.cancel()
    await asyncio.gather(stalled, return_exceptions=True)


@pytest.mark.asyncio
async def test_received_approvals_survive_restart(scripted, registry_with, clock) -> None:
    registry = registry_with({"deployer": scripted("deployer", ["deployed"])})
    store = CheckpointStore(clock=clock.time)
    definition = load_workflow(RELEASE)

    crashed = WorkflowExecutor(registry, checkpoints=store, clock=clock.time)
    stalled = asyncio.create_task(crashed.run(definition, {}, run_id="wf-votes"))
    while crashed.approvals.pending("wf-votes") is None:
        await asyncio.sleep(0)
    crashed.resolve_approval("wf-votes", "alice", "approve")

    latest = store.latest("wf-votes")
    assert latest.metadata["phase"] == "decision"
    assert latest.approval["received_decisions"] == {"alice": "approve"}

    resumed = WorkflowExecutor(registry, checkpoints=store, clock=clock.time)
    restored = resumed.restore(definition, "wf-votes")
    assert restored.pending_approval is not None
    assert restored.pending_approval.received_decisions == {"alice": ApprovalDecision.APPROVE}

    pending = asyncio.create_task(resumed.continue_run(definition, restored))
    while resumed.approvals.pending("wf-votes") is None:
        await asyncio.sleep(0)
    with pytest.raises(ApprovalError):
        resumed.resolve_approval("wf-votes", "alice", "approve")
    resumed.resolve_approval("wf-votes", "bob", "approve")
    run = await pending

    assert run.outcome == "shipped"
    assert run.state["gate"]["approvers"] == {"alice": "approve", "bob": "approve"}

    stalled.cancel()
    await asyncio.gather(stalled, return_exceptions=True)


def test_resume_of_terminal_run_returns_it_unchanged(scripted, registry_with, clock) -> None:
    registry = registry_with({"classifier": scripted("classifier", _classify), "fixer": scripted("fixer")})
    store = CheckpointStore(clock=clock.time)
    definition = load_workflow(TRIAGE)
    asyncio.run(_executor(registry, clock, checkpoints=store).run(definition, {"ticket": "q"}, run_id="wf-t"))

    run = asyncio.run(_executor(registry, clock, checkpoints=store).resume(definition, "wf-t"))

    assert run.status is WorkflowStatus.COMPLETED
    assert len(store.list("wf-t")) == 3


@pytest.mark.asyncio
async def test_cancel_interrupts_running_step(scripted, registry_with, clock, capture) -> None:
    worker = scripted("worker", block=True)
    executor = _executor(registry_with({"worker": worker}), clock, capture)

    pending = asyncio.create_task(executor.run(load_workflow(RETRYING), {}, run_id="wf-c"))
    while not worker.calls:
        await asyncio.sleep(0)

    assert executor.cancel("wf-c") is True
    run = await pending

    assert run.status is WorkflowStatus.CANCELLED
    assert run.error is not None and run.error["kind"] == "cancelled"
    assert worker.cancelled
    assert capture.of_type("workflow_cancelled")
    assert executor.cancel("wf-c") is False


def test_fleet_step_feeds_decision_into_state(scripted, registry_with, make_fleet, clock) -> None:
    fleet = make_fleet("reviewers", ["r1", "r2", "r3"])
    agents = {
        "r1": scripted("r1", ["approve"]),
        "r2": scripted("r2", ["approve"]),
        "r3": scripted("r3", ["reject"]),
        "deployer": scripted("deployer", ["ok"]),
    }
    definition = load_workflow(
        {
            "name": "review-then-ship",
            "entrypoint": "review",
            "steps": {
                "review": {
                    "type": "fleet",
                    "config": {"fleet": "reviewers", "input_from": "change"},
                    "next": [
                        {"target": "deploy", "condition": "review.decision == 'approve'"},
                        {"target": "stop", "condition": "review.human_review"},
                        {"target": "stop"},
                    ],
                },
                "deploy": {"type": "agent", "config": {"agent": "deployer"}, "next": "stop"},
                "stop": {"type": "end"},
            },
        }
    )
    executor = _executor(registry_with(agents, fleet), clock)

    run = asyncio.run(executor.run(definition, {"change": "diff"}, run_id="wf-fleet"))

    assert run.status is WorkflowStatus.COMPLETED
    assert run.state["review"]["decision"] == "approve"
    assert run.state["review"]["confidence"] == pytest.approx(2 / 3)
    assert run.state["review"]["fleet_run_id"] == "wf-fleet/review/1"
    assert agents["r1"].calls[0].input == "diff"
    assert run.state["deploy"] == "ok"


def test_wait_step_sleeps_for_duration(scripted, registry_with, clock) -> None:
    registry = registry_with({"first": scripted("first"), "second": scripted("second")})
    executor = _executor(registry, clock)

    run = asyncio.run(executor.run(load_workflow(PAUSING), {}))

    assert run.status is WorkflowStatus.COMPLETED
    assert clock.sleeps == [600.0]
