"""Static checks over a workflow's step graph."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping
from typing import Any

from ..conditions import compile_condition
from ..errors import ConditionSyntaxError, ValidationError
from ..utils import parse_duration
from .models import ApprovalDecision, JoinPolicy, Step, StepType, WorkflowDef, WorkflowStatus
from .transforms import validate_operations

_BRANCH_FORBIDDEN = {StepType.APPROVAL, StepType.END, StepType.PARALLEL}


def parallel_branches(step: Step) -> list[tuple[str, str]]:
    """Return ``(branch_name, entry_step)`` pairs in declaration order."""

    branches: list[tuple[str, str]] = []
    for index, raw in enumerate(step.config.get("branches") or ()):
        if isinstance(raw, str):
            branches.append((raw, raw))
        elif isinstance(raw, Mapping):
            entry = str(raw.get("entry") or raw.get("start") or "")
            branches.append((str(raw.get("name") or entry or f"branch-{index}"), entry))
    return branches


def successors(definition: WorkflowDef, step_id: str) -> list[str]:
    step = definition.steps[step_id]
    targets = [connection.target for connection in definition.outgoing(step_id)]
    if step.type is StepType.CONDITIONAL:
        targets.extend(
            str(step.config[key]) for key in ("then", "else") if step.config.get(key)
        )
    if step.type is StepType.PARALLEL:
        targets.extend(entry for _, entry in parallel_branches(step))
        if step.config.get("join"):
            targets.append(str(step.config["join"]))
    return [target for target in dict.fromkeys(targets) if target in definition.steps]


def _check_condition(expression: Any, where: str, issues: list[str]) -> None:
    if not isinstance(expression, str) or not expression.strip():
        issues.append(f"{where}: condition must be a non-empty string")
        return
    try:
        compile_condition(expression)
    except ConditionSyntaxError as exc:
        issues.append(f"{where}: {exc}")


def _check_duration(value: Any, where: str, issues: list[str]) -> None:
    if value is None:
        return
    try:
        parse_duration(value)
    except (TypeError, ValueError):
        issues.append(f"{where}: invalid duration {value!r}")


def _check_step(definition: WorkflowDef, step: Step, issues: list[str]) -> None:
    config = step.config
    where = f"step {step.id!r}"
    if step.type is StepType.AGENT and not config.get("agent"):
        issues.append(f"{where}: agent step needs 'agent'")
    elif step.type is StepType.FLEET and not config.get("fleet"):
        issues.append(f"{where}: fleet step needs 'fleet'")
    elif step.type is StepType.TRANSFORM:
        operations = config.get("operations")
        if not isinstance(operations, list) or not operations:
            issues.append(f"{where}: transform step needs a non-empty 'operations' list")
        else:
            issues.extend(f"{where}: {issue}" for issue in validate_operations(operations))
    elif step.type is StepType.CONDITIONAL:
        _check_condition(config.get("condition"), where, issues)
        for key in ("then", "else"):
            target = config.get(key)
            if target is not None and target not in definition.steps:
                issues.append(f"{where}: {key} target {target!r} does not exist")
        if not config.get("then") and not definition.outgoing(step.id):
            issues.append(f"{where}: conditional step needs 'then' or outgoing connections")
    elif step.type is StepType.PARALLEL:
        _check_parallel(definition, step, issues)
    elif step.type is StepType.JOIN:
        policy = config.get("policy", JoinPolicy.ALL.value)
        if policy not in {item.value for item in JoinPolicy}:
            issues.append(f"{where}: unknown join policy {policy!r}")
        _check_duration(config.get("timeout"), where, issues)
    elif step.type is StepType.APPROVAL:
        default = config.get("default_on_timeout", ApprovalDecision.REJECT.value)
        if default not in {item.value for item in ApprovalDecision}:
            issues.append(f"{where}: unknown default_on_timeout {default!r}")
        required = config.get("required_approvals", 1)
        if not isinstance(required, int) or required < 1:
            issues.append(f"{where}: required_approvals must be a positive integer")
        if config.get("auto_approve") is not None:
            _check_condition(config.get("auto_approve"), f"{where} auto_approve", issues)
        _check_duration(config.get("timeout"), where, issues)
    elif step.type is StepType.WAIT:
        if config.get("duration") is None:
            issues.append(f"{where}: wait step needs 'duration'")
        _check_duration(config.get("duration"), where, issues)
    elif step.type is StepType.END:
        status = config.get("status", WorkflowStatus.COMPLETED.value)
        if status not in {"completed", "failed", "cancelled"}:
            issues.append(f"{where}: unknown end status {status!r}")
        if definition.outgoing(step.id):
            issues.append(f"{where}: end step must not have outgoing connections")


def _check_parallel(definition: WorkflowDef, step: Step, issues: list[str]) -> None:
    where = f"step {step.id!r}"
    branches = parallel_branches(step)
    if not branches:
        issues.append(f"{where}: parallel step needs at least one branch")
    join_id = step.config.get("join")
    join = definition.steps.get(join_id) if isinstance(join_id, str) else None
    if join is None:
        issues.append(f"{where}: parallel step needs a 'join' step that exists")
    elif join.type is not StepType.JOIN:
        issues.append(f"{where}: join target {join_id!r} is not a join step")
    names = [name for name, _ in branches]
    if len(set(names)) != len(names):
        issues.append(f"{where}: duplicate branch names")
    for name, entry in branches:
        if entry not in definition.steps:
            issues.append(f"{where}: branch {name!r} entry {entry!r} does not exist")
            continue
        if join is None:
            continue
        issues.extend(_check_branch_path(definition, where, name, entry, join.id))


def _check_branch_path(
    definition: WorkflowDef, where: str, name: str, entry: str, join_id: str
) -> list[str]:
    issues: list[str] = []
    seen: set[str] = set()
    queue = deque([entry])
    while queue:
        current = queue.popleft()
        if current == join_id or current in seen:
            continue
        seen.add(current)
        step = definition.steps[current]
        if step.type in _BRANCH_FORBIDDEN:
            issues.append(
                f"{where}: branch {name!r} reaches {step.type.value} step {current!r} before the join"
            )
            continue
        queue.extend(successors(definition, current))
    if join_id not in _reachable(definition, [entry]):
        issues.append(f"{where}: branch {name!r} never reaches join {join_id!r}")
    return issues


def _reachable(definition: WorkflowDef, roots: Iterable[str]) -> set[str]:
    seen: set[str] = set()
    queue = deque(root for root in roots if root in definition.steps)
    while queue:
        current = queue.popleft()
        if current in seen:
            continue
        seen.add(current)
        queue.extend(successors(definition, current))
    return seen


def _reaches_end(definition: WorkflowDef) -> set[str]:
    predecessors: dict[str, set[str]] = {step_id: set() for step_id in definition.steps}
    for step_id in definition.steps:
        for target in successors(definition, step_id):
            predecessors[target].add(step_id)
    ends = [step.id for step in definition.steps.values() if step.type is StepType.END]
    seen: set[str] = set()
    queue = deque(ends)
    while queue:
        current = queue.popleft()
        if current in seen:
            continue
        seen.add(current)
        queue.extend(predecessors[current])
    return seen


def collect_issues(definition: WorkflowDef) -> list[str]:
    issues: list[str] = []
    steps = definition.steps
    if definition.entrypoint not in steps:
        issues.append(f"entrypoint {definition.entrypoint!r} does not exist")
    if definition.error_handler is not None and definition.error_handler not in steps:
        issues.append(f"error_handler {definition.error_handler!r} does not exist")
    for step_id, step in steps.items():
        if step.id != step_id:
            issues.append(f"step key {step_id!r} does not match id {step.id!r}")
    for index, connection in enumerate(definition.connections):
        label = f"connection #{index} ({connection.source} -> {connection.target})"
        if connection.source not in steps:
            issues.append(f"{label}: unknown source {connection.source!r}")
        if connection.target not in steps:
            issues.append(f"{label}: dangling target {connection.target!r}")
        if connection.condition is not None:
            _check_condition(connection.condition, label, issues)
    for step in steps.values():
        _check_step(definition, step, issues)
    if issues:
        return issues

    if not any(step.type is StepType.END for step in steps.values()):
        issues.append("workflow has no end step")
        return issues
    terminating = _reaches_end(definition)
    roots = [definition.entrypoint]
    if definition.error_handler is not None:
        roots.append(definition.error_handler)
    for step_id in sorted(_reachable(definition, roots) - terminating):
        issues.append(f"step {step_id!r} cannot reach an end step (non-terminating cycle)")
    return issues


def validate_workflow(definition: WorkflowDef) -> WorkflowDef:
    """Raise :class:`ValidationError` listing every problem in ``definition``."""

    issues = collect_issues(definition)
    if issues:
        raise ValidationError(
            f"workflow {definition.name!r} is invalid: {issues[0]}"
            + (f" (+{len(issues) - 1} more)" if len(issues) > 1 else ""),
            issues=issues,
        )
    return definition


__all__ = ["collect_issues", "parallel_branches", "successors", "validate_workflow"]
