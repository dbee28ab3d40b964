from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from stagegate.workers.base import (
    Worker,
    WorkerError,
    WorkerResult,
    WorkOrder,
    WorkspaceCorruptionError,
)

logger = logging.getLogger(__name__)

InvocationEventHook = Callable[[dict[str, Any]], None]


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass(slots=True)
class InvocationOutcome:
    kind: OutcomeKind
    order: WorkOrder
    elapsed: float
    result: WorkerResult | None = None
    error: str | None = None
    retriable: bool = True
    catastrophic: bool = False
    pending: asyncio.Task | None = None


class WorkerInvoker:
    """Runs work orders against a worker with a bounded wait.

    A timed-out outcome keeps the in-flight task so the caller can either extend
    the wait on the same invocation or cancel it.
    """

    def __init__(
        self,
        worker: Worker,
        *,
        poll_seconds: float = 0.5,
        event_hook: InvocationEventHook | None = None,
    ) -> None:
        self.worker = worker
        self.poll_seconds = poll_seconds
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @staticmethod
    def _abort_requested(abort_event: asyncio.Event | None, marker: Path | None) -> bool:
        if abort_event is not None and abort_event.is_set():
            return True
        return marker is not None and marker.exists()

    async def invoke(
        self,
        order: WorkOrder,
        timeout: float,
        *,
        abort_event: asyncio.Event | None = None,
        marker: Path | None = None,
    ) -> InvocationOutcome:
        self._emit(
            {
                "event": "invocation_started",
                "worker": self.worker.name,
                "execution_id": order.execution_id,
                "stage": order.stage,
                "attempt": order.attempt,
                "timeout_seconds": timeout,
            }
        )
        task = asyncio.create_task(self.worker.run(order))
        return await self._wait(
            task, order, timeout, time.monotonic(), abort_event=abort_event, marker=marker
        )

    async def extend(
        self,
        outcome: InvocationOutcome,
        extra: float,
        *,
        abort_event: asyncio.Event | None = None,
        marker: Path | None = None,
    ) -> InvocationOutcome:
        if outcome.pending is None:
            raise ValueError("Only a timed-out invocation can be extended.")
        self._emit(
            {
                "event": "invocation_extended",
                "execution_id": outcome.order.execution_id,
                "stage": outcome.order.stage,
                "attempt": outcome.order.attempt,
                "extra_seconds": extra,
            }
        )
        started = time.monotonic() - outcome.elapsed
        return await self._wait(
            outcome.pending, outcome.order, extra, started, abort_event=abort_event, marker=marker
        )

    async def cancel(self, outcome: InvocationOutcome) -> None:
        if outcome.pending is not None:
            await self._halt(outcome.pending)
            outcome.pending = None

    @staticmethod
    async def _halt(task: asyncio.Task) -> None:
        if task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            logger.debug("worker raised while being halted: %s", exc)

    async def _wait(
        self,
        task: asyncio.Task,
        order: WorkOrder,
        budget: float,
        started: float,
        *,
        abort_event: asyncio.Event | None,
        marker: Path | None,
    ) -> InvocationOutcome:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, budget)
        while True:
            remaining = deadline - loop.time()
            if not task.done() and remaining > 0:
                await asyncio.wait({task}, timeout=min(self.poll_seconds, remaining))
            elapsed = time.monotonic() - started
            if task.done():
                return self._finished(task, order, elapsed)
            if self._abort_requested(abort_event, marker):
                await self._halt(task)
                self._emit(
                    {
                        "event": "invocation_aborted",
                        "execution_id": order.execution_id,
                        "stage": order.stage,
                        "attempt": order.attempt,
                    }
                )
                return InvocationOutcome(
                    kind=OutcomeKind.ABORTED,
                    order=order,
                    elapsed=elapsed,
                    error="Invocation halted by abort signal.",
                    retriable=False,
                )
            if loop.time() >= deadline:
                self._emit(
                    {
                        "event": "invocation_timed_out",
                        "execution_id": order.execution_id,
                        "stage": order.stage,
                        "attempt": order.attempt,
                        "elapsed_seconds": round(elapsed, 3),
                    }
                )
                return InvocationOutcome(
                    kind=OutcomeKind.TIMED_OUT,
                    order=order,
                    elapsed=elapsed,
                    error=f"Worker did not answer within {budget:.1f}s",
                    pending=task,
                )

    def _finished(self, task: asyncio.Task, order: WorkOrder, elapsed: float) -> InvocationOutcome:
        base_event = {
            "execution_id": order.execution_id,
            "stage": order.stage,
            "attempt": order.attempt,
            "elapsed_seconds": round(elapsed, 3),
        }
        if task.cancelled():
            self._emit({"event": "invocation_failed", **base_event, "error": "cancelled"})
            return InvocationOutcome(
                kind=OutcomeKind.FAILED, order=order, elapsed=elapsed, error="Worker was cancelled."
            )
        exc = task.exception()
        if exc is None and task.result() is None:
            self._emit({"event": "invocation_failed", **base_event, "error": "no result"})
            return InvocationOutcome(
                kind=OutcomeKind.FAILED,
                order=order,
                elapsed=elapsed,
                error="worker returned no result",
            )
        if exc is None:
            result = task.result()
            self._emit(
                {"event": "invocation_completed", **base_event, "success": result.success}
            )
            return InvocationOutcome(
                kind=OutcomeKind.COMPLETED,
                order=order,
                elapsed=elapsed,
                result=result,
                catastrophic=result.catastrophic,
            )
        retriable = exc.retriable if isinstance(exc, WorkerError) else True
        self._emit(
            {
                "event": "invocation_failed",
                **base_event,
                "error": str(exc),
                "retriable": retriable,
            }
        )
        return InvocationOutcome(
            kind=OutcomeKind.FAILED,
            order=order,
            elapsed=elapsed,
            error=str(exc),
            retriable=retriable,
            catastrophic=isinstance(exc, WorkspaceCorruptionError),
        )
