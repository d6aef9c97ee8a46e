"""承認ゲート: 外部からの承認/却下を待機中の実行へ届ける。"""

from __future__ import annotations

import asyncio
from threading import Lock

from ..errors import ApprovalError
from .models import ApprovalDecision, ApprovalRequest

_DECISION_ALIASES = {
    "approve": ApprovalDecision.APPROVE,
    "approved": ApprovalDecision.APPROVE,
    "reject": ApprovalDecision.REJECT,
    "rejected": ApprovalDecision.REJECT,
}


def coerce_decision(value: ApprovalDecision | str | bool) -> ApprovalDecision:
    if isinstance(value, ApprovalDecision):
        return value
    if isinstance(value, bool):
        return ApprovalDecision.APPROVE if value else ApprovalDecision.REJECT
    decision = _DECISION_ALIASES.get(str(value).strip().lower())
    if decision is None:
        raise ApprovalError(f"unknown approval decision: {value!r}")
    return decision


class ApprovalGate:
    """実行ごとの保留中リクエストと待機イベント。"""

    def __init__(self) -> None:
        self._lock = Lock()
        self._pending: dict[str, tuple[ApprovalRequest, asyncio.Event]] = {}

    def open(self, request: ApprovalRequest) -> asyncio.Event:
        event = asyncio.Event()
        with self._lock:
            self._pending[request.run_id] = (request, event)
        if request.resolved is not None:
            event.set()
        return event

    def pending(self, run_id: str) -> ApprovalRequest | None:
        with self._lock:
            entry = self._pending.get(run_id)
        return entry[0] if entry is not None else None

    def resolve(
        self, run_id: str, approver_id: str, decision: ApprovalDecision | str | bool
    ) -> ApprovalRequest:
        """Record one approver's decision; wakes the waiter once resolved."""

        resolved_decision = coerce_decision(decision)
        with self._lock:
            entry = self._pending.get(run_id)
            if entry is None:
                raise ApprovalError(f"run {run_id} has no pending approval")
            request, event = entry
            if request.approvers and approver_id not in request.approvers:
                raise ApprovalError(f"{approver_id!r} is not an approver for step {request.step_id!r}")
            if approver_id in request.received_decisions:
                raise ApprovalError(f"{approver_id!r} already decided on step {request.step_id!r}")
            request.received_decisions[approver_id] = resolved_decision
        if request.resolved is not None:
            event.set()
        return request

    def close(self, run_id: str) -> ApprovalRequest | None:
        with self._lock:
            entry = self._pending.pop(run_id, None)
        return entry[0] if entry is not None else None


__all__ = ["ApprovalGate", "coerce_decision"]
