"""Workflow Executor: graph validation, step handlers and the run loop."""

from __future__ import annotations

from .approvals import ApprovalGate, coerce_decision
from .executor import BranchResult, WorkflowExecutor
from .graph import collect_issues, parallel_branches, successors, validate_workflow
from .models import (
    ApprovalDecision,
    ApprovalRequest,
    CheckpointConfig,
    Connection,
    JoinPolicy,
    ReducerType,
    Step,
    StepExecution,
    StepStatus,
    StepType,
    WorkflowDef,
    WorkflowRun,
    WorkflowStatus,
)
from .reducers import apply_update, apply_updates, merge_branch_states
from .steps import STEP_HANDLERS, StepContext, StepOutcome
from .transforms import apply_transform, render_template, TRANSFORM_OPERATIONS

__all__ = [
    "ApprovalDecision",
    "ApprovalGate",
    "ApprovalRequest",
    "BranchResult",
    "CheckpointConfig",
    "Connection",
    "JoinPolicy",
    "ReducerType",
    "STEP_HANDLERS",
    "Step",
    "StepContext",
    "StepExecution",
    "StepOutcome",
    "StepStatus",
    "StepType",
    "TRANSFORM_OPERATIONS",
    "WorkflowDef",
    "WorkflowExecutor",
    "WorkflowRun",
    "WorkflowStatus",
    "apply_transform",
    "apply_update",
    "apply_updates",
    "coerce_decision",
    "collect_issues",
    "merge_branch_states",
    "parallel_branches",
    "render_template",
    "successors",
    "validate_workflow",
]
