from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class Depth(str, Enum):
    INSTANT = "instant"
    FAST_TRACK = "fast_track"
    FULL = "full"


class Stage(str, Enum):
    INVESTIGATION = "investigation"
    PLANNING = "planning"
    EXECUTION = "execution"
    VERIFICATION = "verification"
    RETROSPECTIVE = "retrospective"
    DOCUMENTATION = "documentation"


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.RUNNING


class StageStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"


class Verdict(str, Enum):
    PASS = "pass"
    FAIL = "fail"


class TimeoutResolution(str, Enum):
    CONTINUE = "continue"
    SAVE_AND_STOP = "save_and_stop"
    RETRY = "retry"
    ESCALATE = "escalate"


class VerificationChoice(str, Enum):
    RESTORE = "restore"
    RETRY_EXECUTION = "retry_execution"
    PROCEED_WITH_WARNINGS = "proceed_with_warnings"


class RecoveryChoice(str, Enum):
    ROLLBACK = "rollback"
    KEEP = "keep"
    PARTIAL_COMMIT = "partial_commit"
    ABANDON = "abandon"


@dataclass(slots=True, frozen=True)
class RubricInputs:
    files_in_scope: int = 1
    knowledge_gap: int = 0
    risk: int = 0
    dependency_novelty: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "files_in_scope": self.files_in_scope,
            "knowledge_gap": self.knowledge_gap,
            "risk": self.risk,
            "dependency_novelty": self.dependency_novelty,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RubricInputs:
        return cls(
            files_in_scope=int(payload.get("files_in_scope", 1)),
            knowledge_gap=int(payload.get("knowledge_gap", 0)),
            risk=int(payload.get("risk", 0)),
            dependency_novelty=int(payload.get("dependency_novelty", 0)),
        )


@dataclass(slots=True, frozen=True)
class Task:
    description: str
    scope: tuple[str, ...] = ()
    explicit_instructions: bool = False
    rubric: RubricInputs | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "scope": list(self.scope),
            "explicit_instructions": self.explicit_instructions,
            "rubric": self.rubric.to_dict() if self.rubric else None,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        rubric = payload.get("rubric")
        return cls(
            description=str(payload.get("description", "")),
            scope=tuple(str(item) for item in payload.get("scope") or []),
            explicit_instructions=bool(payload.get("explicit_instructions", False)),
            rubric=RubricInputs.from_dict(rubric) if isinstance(rubric, dict) else None,
        )


@dataclass(slots=True, frozen=True)
class ComplexityScore:
    points: int
    depth: Depth
    breakdown: dict[str, int] = field(default_factory=dict)
    forced: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "points": self.points,
            "depth": self.depth.value,
            "breakdown": dict(self.breakdown),
            "forced": self.forced,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ComplexityScore:
        return cls(
            points=int(payload.get("points", 0)),
            depth=Depth(payload.get("depth", Depth.FULL.value)),
            breakdown={str(k): int(v) for k, v in (payload.get("breakdown") or {}).items()},
            forced=bool(payload.get("forced", False)),
        )


@dataclass(slots=True, frozen=True)
class GradeReport:
    score: int
    verdict: Verdict
    findings: tuple[str, ...] = ()

    @property
    def passed(self) -> bool:
        return self.verdict is Verdict.PASS

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "verdict": self.verdict.value,
            "findings": list(self.findings),
        }


@dataclass(slots=True)
class StageRecord:
    id: str
    stage: Stage
    attempt: int
    status: StageStatus = StageStatus.NOT_STARTED
    score: int | None = None
    verdict: Verdict | None = None
    started_at: str | None = None
    ended_at: str | None = None
    duration_ms: int = 0
    output_ref: str | None = None
    grade_ref: str | None = None
    previous_attempt_id: str | None = None
    summary: str = ""
    failure_reason: str | None = None
    timed_out: bool = False
    warnings: list[str] = field(default_factory=list)
    estimated_tokens: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "stage": self.stage.value,
            "attempt": self.attempt,
            "status": self.status.value,
            "score": self.score,
            "verdict": self.verdict.value if self.verdict else None,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_ms": self.duration_ms,
            "output_ref": self.output_ref,
            "grade_ref": self.grade_ref,
            "previous_attempt_id": self.previous_attempt_id,
            "summary": self.summary,
            "failure_reason": self.failure_reason,
            "timed_out": self.timed_out,
            "warnings": list(self.warnings),
            "estimated_tokens": self.estimated_tokens,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> StageRecord:
        verdict = payload.get("verdict")
        return cls(
            id=str(payload["id"]),
            stage=Stage(payload["stage"]),
            attempt=int(payload.get("attempt", 1)),
            status=StageStatus(payload.get("status", StageStatus.NOT_STARTED.value)),
            score=payload.get("score"),
            verdict=Verdict(verdict) if verdict else None,
            started_at=payload.get("started_at"),
            ended_at=payload.get("ended_at"),
            duration_ms=int(payload.get("duration_ms", 0)),
            output_ref=payload.get("output_ref"),
            grade_ref=payload.get("grade_ref"),
            previous_attempt_id=payload.get("previous_attempt_id"),
            summary=str(payload.get("summary", "")),
            failure_reason=payload.get("failure_reason"),
            timed_out=bool(payload.get("timed_out", False)),
            warnings=list(payload.get("warnings") or []),
            estimated_tokens=int(payload.get("estimated_tokens", 0)),
        )


@dataclass(slots=True)
class CheckpointInfo:
    id: str
    execution_id: str
    label: str
    created_at: str
    snapshot_handle: str
    status: str = "active"

    @property
    def usable(self) -> bool:
        return self.status != "discarded"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "label": self.label,
            "created_at": self.created_at,
            "snapshot_handle": self.snapshot_handle,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CheckpointInfo:
        return cls(
            id=str(payload["id"]),
            execution_id=str(payload.get("execution_id", "")),
            label=str(payload.get("label", "")),
            created_at=str(payload.get("created_at", "")),
            snapshot_handle=str(payload.get("snapshot_handle", "")),
            status=str(payload.get("status", "active")),
        )


@dataclass(slots=True)
class PipelineExecution:
    id: str
    task: Task
    complexity: ComplexityScore
    stages: list[Stage]
    artifacts_dir: str
    records: list[StageRecord] = field(default_factory=list)
    current_index: int = 0
    status: ExecutionStatus = ExecutionStatus.RUNNING
    checkpoint_id: str | None = None
    checkpoint_action: str = "none"
    reason: str = ""
    warnings: list[str] = field(default_factory=list)
    incident_id: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    ended_at: str | None = None

    @property
    def depth(self) -> Depth:
        return self.complexity.depth

    @property
    def current_stage(self) -> Stage | None:
        if 0 <= self.current_index < len(self.stages):
            return self.stages[self.current_index]
        return None

    def attempts_for(self, stage: Stage) -> list[StageRecord]:
        return [record for record in self.records if record.stage is stage]

    def in_progress(self) -> list[StageRecord]:
        return [record for record in self.records if record.status is StageStatus.IN_PROGRESS]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task": self.task.to_dict(),
            "complexity": self.complexity.to_dict(),
            "depth": self.depth.value,
            "stages": [stage.value for stage in self.stages],
            "artifacts_dir": self.artifacts_dir,
            "records": [record.to_dict() for record in self.records],
            "current_index": self.current_index,
            "status": self.status.value,
            "checkpoint_id": self.checkpoint_id,
            "checkpoint_action": self.checkpoint_action,
            "reason": self.reason,
            "warnings": list(self.warnings),
            "incident_id": self.incident_id,
            "created_at": self.created_at,
            "ended_at": self.ended_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PipelineExecution:
        return cls(
            id=str(payload["id"]),
            task=Task.from_dict(payload.get("task") or {}),
            complexity=ComplexityScore.from_dict(payload.get("complexity") or {}),
            stages=[Stage(item) for item in payload.get("stages") or []],
            artifacts_dir=str(payload.get("artifacts_dir", "")),
            records=[StageRecord.from_dict(item) for item in payload.get("records") or []],
            current_index=int(payload.get("current_index", 0)),
            status=ExecutionStatus(payload.get("status", ExecutionStatus.RUNNING.value)),
            checkpoint_id=payload.get("checkpoint_id"),
            checkpoint_action=str(payload.get("checkpoint_action", "none")),
            reason=str(payload.get("reason", "")),
            warnings=list(payload.get("warnings") or []),
            incident_id=payload.get("incident_id"),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            ended_at=payload.get("ended_at"),
        )


@dataclass(slots=True)
class IncidentRecord:
    id: str
    execution_id: str
    trigger: str
    detail: str
    stage: str | None
    controller_state: dict[str, Any]
    choice: RecoveryChoice | None = None
    retained_paths: list[str] = field(default_factory=list)
    root_cause_notes: str = ""
    outcome: str = ""
    created_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "trigger": self.trigger,
            "detail": self.detail,
            "stage": self.stage,
            "controller_state": self.controller_state,
            "choice": self.choice.value if self.choice else None,
            "retained_paths": list(self.retained_paths),
            "root_cause_notes": self.root_cause_notes,
            "outcome": self.outcome,
            "created_at": self.created_at,
        }
