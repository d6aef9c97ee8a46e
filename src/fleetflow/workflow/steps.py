"""ステップ種別ごとのハンドラ。中断を伴う種別はエグゼキュータ側で扱う。"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
import copy
from dataclasses import dataclass, field
from typing import Any, Protocol, TYPE_CHECKING

from ..agents import call_agent
from ..conditions import ABSENT, evaluate, resolve_path
from ..errors import AgentFailure, CancellationError, StepExecutionError
from ..models import AgentMember, AgentTask, FleetRunStatus
from ..utils import parse_duration
from .models import Step, StepExecution, StepType, WorkflowDef, WorkflowRun, WorkflowStatus
from .transforms import apply_transform, render_template

if TYPE_CHECKING:  # pragma: no cover - 型補完用
    from ..fleet import FleetCoordinator
    from ..registry import Registry


class StepServices(Protocol):
    @property
    def registry(self) -> Registry: ...

    @property
    def coordinator(self) -> FleetCoordinator: ...


@dataclass
class StepContext:
    """1 ステップ実行分の入力。``state`` は本線か分岐のワーキングコピー。"""

    definition: WorkflowDef
    run: WorkflowRun
    step: Step
    state: dict[str, Any]
    services: StepServices
    branch: str | None = None
    attempt: int = 1


@dataclass
class StepOutcome:
    """ハンドラの戻り値。状態への反映はコミット側が行う。"""

    updates: dict[str, Any] = field(default_factory=dict)
    state: dict[str, Any] | None = None
    next_step: str | None = None
    output: Any = None
    terminal: WorkflowStatus | None = None
    outcome: str | None = None
    signals: Mapping[str, Any] = field(default_factory=dict)
    history: list[StepExecution] = field(default_factory=list)


StepHandler = Callable[[StepContext], Awaitable[StepOutcome]]


def step_input(step: Step, state: Mapping[str, Any]) -> Any:
    """``input_from`` のパス、``input`` テンプレート、状態全体の順で入力を決める。"""

    config = step.config
    source = config.get("input_from")
    if source:
        value = resolve_path(state, [part for part in str(source).split(".") if part])
        return None if value is ABSENT else copy.deepcopy(value)
    if "input" in config:
        template = config["input"]
        if isinstance(template, str):
            return render_template(template, state)
        if isinstance(template, Mapping):
            return {
                key: render_template(value, state) if isinstance(value, str) else copy.deepcopy(value)
                for key, value in template.items()
            }
        return copy.deepcopy(template)
    return copy.deepcopy(dict(state))


def output_updates(step: Step, output: Any) -> dict[str, Any]:
    if step.config.get("merge_output") and isinstance(output, Mapping):
        return dict(output)
    return {str(step.config.get("output_key") or step.id): output}


def _call_timeout(step: Step) -> float | None:
    return parse_duration(step.config.get("timeout"), default=None)


async def run_agent_step(ctx: StepContext) -> StepOutcome:
    name = str(ctx.step.config["agent"])
    agent = ctx.services.registry.agent(name)
    member = AgentMember(name=name)
    task = AgentTask(
        input=step_input(ctx.step, ctx.state),
        context={"workflow": ctx.definition.name, "step": ctx.step.id, "branch": ctx.branch},
        run_id=ctx.run.run_id,
        member=name,
    )
    result = await call_agent(member, agent, task, timeout_s=_call_timeout(ctx.step))
    if not result.ok:
        raise AgentFailure(f"agent {name!r} returned an error: {result.error}", member_name=name)
    return StepOutcome(updates=output_updates(ctx.step, result.content), output=result.content)


async def run_fleet_step(ctx: StepContext) -> StepOutcome:
    fleet_name = str(ctx.step.config["fleet"])
    suffix = f"{ctx.branch}/" if ctx.branch else ""
    result = await ctx.services.coordinator.execute(
        step_input(ctx.step, ctx.state),
        fleet_name,
        run_id=f"{ctx.run.run_id}/{suffix}{ctx.step.id}/{ctx.attempt}",
    )
    if result.status is FleetRunStatus.CANCELLED:
        raise CancellationError(f"fleet {fleet_name!r} was cancelled")
    if result.status is not FleetRunStatus.COMPLETED or result.final is None:
        raise StepExecutionError(
            f"fleet {fleet_name!r} failed: {result.error}",
            step_id=ctx.step.id,
            cause_kind=result.error_kind,
        )
    output = {
        "decision": result.decision,
        "confidence": result.confidence,
        "human_review": result.final.human_review,
        "fleet_run_id": result.run_id,
    }
    return StepOutcome(updates=output_updates(ctx.step, output), output=output)


async def run_transform_step(ctx: StepContext) -> StepOutcome:
    state = apply_transform(ctx.state, ctx.step.config["operations"])
    return StepOutcome(state=state)


async def run_conditional_step(ctx: StepContext) -> StepOutcome:
    matched = evaluate(str(ctx.step.config["condition"]), ctx.state)
    target = ctx.step.config.get("then") if matched else ctx.step.config.get("else")
    return StepOutcome(
        next_step=str(target) if target else None,
        output={"matched": matched},
        signals={"matched": matched},
    )


async def run_join_step(ctx: StepContext) -> StepOutcome:
    return StepOutcome()


async def run_end_step(ctx: StepContext) -> StepOutcome:
    status = WorkflowStatus(ctx.step.config.get("status", WorkflowStatus.COMPLETED.value))
    return StepOutcome(terminal=status, outcome=ctx.step.config.get("outcome"))


STEP_HANDLERS: dict[StepType, StepHandler] = {
    StepType.AGENT: run_agent_step,
    StepType.FLEET: run_fleet_step,
    StepType.TRANSFORM: run_transform_step,
    StepType.CONDITIONAL: run_conditional_step,
    StepType.JOIN: run_join_step,
    StepType.END: run_end_step,
}

__all__ = [
    "STEP_HANDLERS",
    "StepContext",
    "StepHandler",
    "StepOutcome",
    "StepServices",
    "output_updates",
    "step_input",
]
