"""Async parallel execution helpers shared by the fleet and workflow layers."""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Generic, TypeVar

T = TypeVar("T")

AsyncWorker = Callable[[], Awaitable[T]]


@dataclass(slots=True)
class WorkerOutcome(Generic[T]):
    index: int
    value: T | None = None
    error: BaseException | None = None
    cancelled: bool = False
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled and not self.timed_out


@dataclass(slots=True)
class QuorumOutcome(Generic[T]):
    """Arrivals in completion order plus the workers that never finished."""

    arrivals: list[WorkerOutcome[T]] = field(default_factory=list)
    unfinished: list[WorkerOutcome[T]] = field(default_factory=list)
    reached: bool = False
    interrupted: bool = False

    def by_index(self) -> list[WorkerOutcome[T]]:
        return sorted([*self.arrivals, *self.unfinished], key=lambda outcome: outcome.index)


def _normalize_concurrency(total: int, limit: int | None) -> int:
    if total <= 0:
        raise ValueError("workers must not be empty")
    if limit is None or limit <= 0:
        return total
    return min(total, limit)


def _collect(index: int, task: asyncio.Task[T]) -> WorkerOutcome[T]:
    if task.cancelled():
        return WorkerOutcome(index=index, cancelled=True)
    exc = task.exception()
    if exc is not None:
        return WorkerOutcome(index=index, error=exc)
    return WorkerOutcome(index=index, value=task.result())


async def _drain(
    pending: dict[asyncio.Task[T], int], *, timed_out: bool
) -> list[WorkerOutcome[T]]:
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
    drained: list[WorkerOutcome[T]] = []
    for task, index in sorted(pending.items(), key=lambda item: item[1]):
        outcome = _collect(index, task)
        if outcome.cancelled and timed_out:
            outcome.cancelled = False
            outcome.timed_out = True
        drained.append(outcome)
    return drained


async def run_parallel_quorum_async(
    workers: Sequence[AsyncWorker[T]],
    *,
    needed: int,
    accept: Callable[[T], bool] | None = None,
    max_concurrency: int | None = None,
    timeout_s: float | None = None,
    cancel_event: asyncio.Event | None = None,
    stop_when_unreachable: bool = True,
) -> QuorumOutcome[T]:
    """Run ``workers`` until ``needed`` of them succeed, then cancel the rest.

    A worker succeeds when it returns without raising and ``accept`` (if
    given) approves its value. Cancellation of the losers is best-effort: a
    worker that finishes before the cancel lands is reported as an arrival.
    """

    limit = _normalize_concurrency(len(workers), max_concurrency)
    semaphore = asyncio.Semaphore(limit)

    async def _bounded(worker: AsyncWorker[T]) -> T:
        async with semaphore:
            return await worker()

    loop = asyncio.get_running_loop()
    pending: dict[asyncio.Task[T], int] = {
        asyncio.create_task(_bounded(worker)): index for index, worker in enumerate(workers)
    }
    deadline = None if timeout_s is None else loop.time() + timeout_s
    cancel_waiter = asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None
    outcome: QuorumOutcome[T] = QuorumOutcome()
    successes = 0
    timed_out = False
    try:
        while pending and successes < needed:
            if stop_when_unreachable and successes + len(pending) < needed:
                break
            waitables: set[asyncio.Future[object]] = set(pending)  # type: ignore[arg-type]
            if cancel_waiter is not None:
                waitables.add(cancel_waiter)
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            done, _ = await asyncio.wait(
                waitables, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
            if not done:
                timed_out = True
                break
            finished = sorted(
                (task for task in done if task in pending),
                key=lambda task: pending[task],  # type: ignore[index]
            )
            for task in finished:
                index = pending.pop(task)  # type: ignore[arg-type]
                arrival = _collect(index, task)  # type: ignore[arg-type]
                if arrival.ok and accept is not None and not accept(arrival.value):  # type: ignore[arg-type]
                    arrival.error = ValueError("result rejected")
                if arrival.ok:
                    successes += 1
                outcome.arrivals.append(arrival)
            if cancel_waiter is not None and cancel_waiter in done:
                outcome.interrupted = True
                break
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()
        outcome.unfinished = await _drain(pending, timed_out=timed_out)
    outcome.reached = successes >= needed
    return outcome


async def run_parallel_all_async(
    workers: Sequence[AsyncWorker[T]],
    *,
    max_concurrency: int | None = None,
    timeout_s: float | None = None,
    cancel_event: asyncio.Event | None = None,
) -> list[WorkerOutcome[T]]:
    """Run every worker to completion (or timeout) and return outcomes by index."""

    quorum = await run_parallel_quorum_async(
        workers,
        needed=len(workers),
        max_concurrency=max_concurrency,
        timeout_s=timeout_s,
        cancel_event=cancel_event,
        stop_when_unreachable=False,
    )
    return quorum.by_index()


async def run_parallel_first_async(
    workers: Sequence[AsyncWorker[T]],
    *,
    accept: Callable[[T], bool] | None = None,
    max_concurrency: int | None = None,
    timeout_s: float | None = None,
    cancel_event: asyncio.Event | None = None,
) -> QuorumOutcome[T]:
    """Return as soon as one worker succeeds; the others are cancelled."""

    return await run_parallel_quorum_async(
        workers,
        needed=1,
        accept=accept,
        max_concurrency=max_concurrency,
        timeout_s=timeout_s,
        cancel_event=cancel_event,
    )


__all__ = [
    "AsyncWorker",
    "QuorumOutcome",
    "WorkerOutcome",
    "run_parallel_all_async",
    "run_parallel_first_async",
    "run_parallel_quorum_async",
]
