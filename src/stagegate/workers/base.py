from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


class WorkerError(RuntimeError):
    """Raised when a worker run fails."""

    def __init__(
        self,
        message: str,
        *,
        worker: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.worker = worker
        self.exit_code = exit_code
        self.retriable = retriable


class WorkerProcessError(WorkerError):
    """Raised when the worker process cannot be started or talked to."""


class WorkspaceCorruptionError(WorkerError):
    """Raised by a worker that detected the shared workspace is damaged."""

    def __init__(self, message: str, *, worker: str | None = None) -> None:
        super().__init__(message, worker=worker, retriable=False)


@dataclass(slots=True)
class WorkOrder:
    """Self-contained instructions for one stage attempt; workers keep no memory."""

    execution_id: str
    stage: str
    attempt: int
    role: str
    instruction: str
    task_context: dict[str, Any]
    output_location: str
    success_criteria: list[str] = field(default_factory=list)
    prior_failure_context: str | None = None
    reduced_scope: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "stageName": self.stage,
            "attempt": self.attempt,
            "role": self.role,
            "instruction": self.instruction,
            "taskContext": self.task_context,
            "outputLocation": self.output_location,
            "successCriteria": list(self.success_criteria),
            "priorFailureContext": self.prior_failure_context,
            "reducedScope": self.reduced_scope,
        }

    def render(self) -> str:
        parts = [
            f"You are the {self.role} for the {self.stage} stage (attempt {self.attempt}).",
            self.instruction,
            "Task context JSON:",
            json.dumps(self.task_context, ensure_ascii=False, indent=2),
            f"Write your full output to: {self.output_location}",
            "Success criteria:",
            "\n".join(f"- {item}" for item in self.success_criteria),
        ]
        if self.reduced_scope:
            parts.append(
                "The previous attempt ran out of time. Reduce scope to the essential "
                "changes and finish quickly."
            )
        if self.prior_failure_context:
            parts.append("Previous attempt failed:")
            parts.append(self.prior_failure_context)
        parts.append(
            "End your output with a line 'SCORE: <0-100>' grading it against the criteria."
        )
        return "\n\n".join(part for part in parts if part)


@dataclass(slots=True)
class WorkerResult:
    artifact_reference: str
    summary: str
    success: bool = True
    catastrophic: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifactReference": self.artifact_reference,
            "summary": self.summary,
            "success": self.success,
            "catastrophic": self.catastrophic,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any], *, default_artifact: str) -> WorkerResult:
        return cls(
            artifact_reference=str(
                payload.get("artifactReference") or payload.get("artifact_reference")
                or default_artifact
            ),
            summary=str(payload.get("summary", "")),
            success=payload.get("success", True) is True,
            catastrophic=payload.get("catastrophic", False) is True,
        )


class Worker(ABC):
    name: str = "worker"

    @abstractmethod
    async def run(self, order: WorkOrder) -> WorkerResult:
        """Perform the stage work described by ``order``."""
