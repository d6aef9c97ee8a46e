"""Agent capability contracts and the invocation wrapper used by coordinators."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
import inspect
import time
from typing import Any, cast, Protocol

from .errors import AgentFailure, AgentTimeout
from .models import AgentMember, AgentResult, AgentTask
from .utils import elapsed_ms


class AgentCapability(Protocol):
    def execute(self, task: AgentTask) -> AgentResult | Any: ...


class AsyncAgentCapability(Protocol):
    async def execute_async(self, task: AgentTask) -> AgentResult | Any: ...


Capability = AgentCapability | AsyncAgentCapability


class FunctionAgent:
    """Wrap a plain (sync or async) callable as an agent capability."""

    def __init__(self, func: Callable[[AgentTask], Any], *, name: str | None = None) -> None:
        self._func = func
        self.name = name or getattr(func, "__name__", "agent")

    async def execute_async(self, task: AgentTask) -> Any:
        result = self._func(task)
        if inspect.isawaitable(result):
            return await cast(Awaitable[Any], result)
        return result


class _AsyncAgentAdapter:
    def __init__(self, agent: AgentCapability) -> None:
        self._agent = agent

    async def execute_async(self, task: AgentTask) -> Any:
        return await asyncio.to_thread(self._agent.execute, task)


def ensure_async_agent(agent: Capability | Callable[[AgentTask], Any]) -> AsyncAgentCapability:
    execute_async = getattr(agent, "execute_async", None)
    if callable(execute_async):
        if inspect.iscoroutinefunction(execute_async):
            return cast(AsyncAgentCapability, agent)
        return FunctionAgent(execute_async)
    execute = getattr(agent, "execute", None)
    if callable(execute):
        return _AsyncAgentAdapter(cast(AgentCapability, agent))
    if callable(agent):
        return FunctionAgent(agent)
    raise TypeError(f"object {agent!r} does not expose execute() or execute_async()")


def _coerce_result(member: AgentMember, raw: Any, latency_ms: float) -> AgentResult:
    if isinstance(raw, AgentResult):
        return AgentResult(
            member_name=member.name,
            content=raw.content,
            confidence=raw.confidence,
            error=raw.error,
            latency_ms=raw.latency_ms or latency_ms,
            tier=member.tier,
            metadata=raw.metadata,
        )
    if isinstance(raw, Mapping) and "content" in raw:
        return AgentResult(
            member_name=member.name,
            content=raw["content"],
            confidence=float(raw.get("confidence", 1.0)),
            error=raw.get("error"),
            latency_ms=latency_ms,
            tier=member.tier,
        )
    return AgentResult(member_name=member.name, content=raw, latency_ms=latency_ms, tier=member.tier)


async def call_agent(
    member: AgentMember,
    agent: AsyncAgentCapability,
    task: AgentTask,
    *,
    timeout_s: float | None = None,
) -> AgentResult:
    """Run ``agent`` for ``member`` and propagate failures.

    Timeouts surface as :class:`AgentTimeout`. A result carrying ``error`` is
    returned as-is.
    """

    started = time.monotonic()
    scoped = task if task.member == member.name else task.derive(task.input, member=member.name)
    try:
        if timeout_s is not None:
            raw = await asyncio.wait_for(agent.execute_async(scoped), timeout=timeout_s)
        else:
            raw = await agent.execute_async(scoped)
    except asyncio.TimeoutError as exc:
        raise AgentTimeout(f"timeout after {timeout_s}s", member_name=member.name) from exc
    return _coerce_result(member, raw, elapsed_ms(started))


async def invoke_agent(
    member: AgentMember,
    agent: AsyncAgentCapability,
    task: AgentTask,
    *,
    timeout_s: float | None = None,
) -> AgentResult:
    """Run ``agent`` for ``member``; errors and timeouts become failed results.

    ``asyncio.CancelledError`` is propagated so callers can cancel in-flight calls.
    """

    started = time.monotonic()
    try:
        return await call_agent(member, agent, task, timeout_s=timeout_s)
    except AgentTimeout as exc:
        return AgentResult(
            member_name=member.name,
            confidence=0.0,
            error=str(exc),
            latency_ms=elapsed_ms(started),
            tier=member.tier,
            metadata={"error_kind": "timeout"},
        )
    except AgentFailure as exc:
        return AgentResult(
            member_name=member.name,
            confidence=0.0,
            error=str(exc) or type(exc).__name__,
            latency_ms=elapsed_ms(started),
            tier=member.tier,
            metadata={"error_kind": "agent_failure", "error_type": type(exc).__name__},
        )
    except Exception as exc:  # noqa: BLE001 - scoped to this participant
        return AgentResult(
            member_name=member.name,
            confidence=0.0,
            error=f"{type(exc).__name__}: {exc}",
            latency_ms=elapsed_ms(started),
            tier=member.tier,
            metadata={"error_kind": "agent_failure", "error_type": type(exc).__name__},
        )


__all__ = [
    "AgentCapability",
    "AsyncAgentCapability",
    "Capability",
    "FunctionAgent",
    "call_agent",
    "ensure_async_agent",
    "invoke_agent",
]
