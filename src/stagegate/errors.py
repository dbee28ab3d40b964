from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from stagegate.models import GradeReport


class StagegateError(RuntimeError):
    """Base class for orchestrator failures."""


class StateError(StagegateError):
    """Raised when shared-state operations fail."""


class StageFailure(StagegateError):
    """A stage-local failure that the retry policy may absorb."""

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.stage = stage


class QualityGateFailure(StageFailure):
    """Stage output scored below the gate threshold."""

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        score: int | None = None,
        report: GradeReport | None = None,
    ) -> None:
        super().__init__(message, stage=stage)
        self.score = score
        self.report = report


class WorkerTimeout(StageFailure):
    """Worker did not answer within the stage deadline."""

    def __init__(self, message: str, *, stage: str | None = None, escalate: bool = False) -> None:
        super().__init__(message, stage=stage)
        self.escalate = escalate


class WorkerInvocationFailure(StageFailure):
    """Worker signalled a hard failure."""

    def __init__(self, message: str, *, stage: str | None = None, retriable: bool = True) -> None:
        super().__init__(message, stage=stage)
        self.retriable = retriable


class CheckpointConflict(StagegateError):
    """An active checkpoint already exists for the execution."""


class CheckpointNotFound(StagegateError):
    """Checkpoint is unknown or has been discarded."""


class EmergencyCondition(StagegateError):
    """Loop, corruption or external abort; always routed to the emergency stop."""

    LOOP = "repetitive_output"
    CATASTROPHIC = "catastrophic_failure"
    EXTERNAL_ABORT = "external_abort"

    def __init__(self, message: str, *, trigger: str, stage: str | None = None) -> None:
        super().__init__(message)
        self.trigger = trigger
        self.stage = stage
