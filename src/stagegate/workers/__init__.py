from stagegate.workers.base import (
    Worker,
    WorkerError,
    WorkerProcessError,
    WorkerResult,
    WorkOrder,
    WorkspaceCorruptionError,
)
from stagegate.workers.claude import ClaudeWorker
from stagegate.workers.command import CommandWorker
from stagegate.workers.invoker import InvocationOutcome, OutcomeKind, WorkerInvoker

__all__ = [
    "ClaudeWorker",
    "CommandWorker",
    "InvocationOutcome",
    "OutcomeKind",
    "WorkOrder",
    "Worker",
    "WorkerError",
    "WorkerInvoker",
    "WorkerProcessError",
    "WorkerResult",
    "WorkspaceCorruptionError",
]
