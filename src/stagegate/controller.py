from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from stagegate.complexity import ComplexityAssessor
from stagegate.config import StagegateConfig
from stagegate.decisions import AutomaticDecider, Decider
from stagegate.emergency import EmergencyStop
from stagegate.errors import (
    CheckpointConflict,
    EmergencyCondition,
    QualityGateFailure,
    StageFailure,
    StagegateError,
    WorkerInvocationFailure,
    WorkerTimeout,
)
from stagegate.gates import QualityGateEvaluator
from stagegate.metrics import MetricsRecorder, estimate_tokens
from stagegate.models import (
    Depth,
    ExecutionStatus,
    GradeReport,
    PipelineExecution,
    Stage,
    StageRecord,
    StageStatus,
    Task,
    TimeoutResolution,
    VerificationChoice,
    utcnow_iso,
)
from stagegate.policy import RetryPolicy
from stagegate.stages import is_gated, needs_checkpoint, spec_for, stages_for
from stagegate.state.checkpoints import CheckpointStore, build_checkpoint_store
from stagegate.state.store import StateStore
from stagegate.timeouts import TimeoutMonitor
from stagegate.workers.base import Worker, WorkOrder
from stagegate.workers.invoker import InvocationOutcome, OutcomeKind, WorkerInvoker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PipelineContext:
    """Everything a pipeline run touches, passed explicitly instead of globals."""

    config: StagegateConfig
    workspace: Path
    state: StateStore
    checkpoints: CheckpointStore
    invoker: WorkerInvoker
    gates: QualityGateEvaluator
    assessor: ComplexityAssessor
    retry_policy: RetryPolicy
    timeouts: TimeoutMonitor
    metrics: MetricsRecorder
    decider: Decider

    @property
    def state_dir(self) -> Path:
        return self.state.state_dir

    @property
    def runs_dir(self) -> Path:
        return self.state_dir / "runs"

    @property
    def aborts_dir(self) -> Path:
        return self.state_dir / "aborts"

    @classmethod
    def build(
        cls,
        config: StagegateConfig,
        workspace: Path,
        worker: Worker,
        *,
        decider: Decider | None = None,
    ) -> PipelineContext:
        workspace = workspace.resolve()
        state = StateStore(workspace / config.state.directory)
        metrics = MetricsRecorder(state, state.state_dir / "metrics" / "executions")
        return cls(
            config=config,
            workspace=workspace,
            state=state,
            checkpoints=build_checkpoint_store(config.checkpoints.backend, workspace, state),
            invoker=WorkerInvoker(
                worker,
                poll_seconds=config.pipeline.abort_poll_seconds,
                event_hook=metrics.record_event,
            ),
            gates=QualityGateEvaluator(threshold=config.pipeline.quality_threshold),
            assessor=ComplexityAssessor(config.complexity),
            retry_policy=RetryPolicy(config.pipeline.max_retries),
            timeouts=TimeoutMonitor(config.timeouts),
            metrics=metrics,
            decider=decider or AutomaticDecider(config.decisions),
        )


class PipelineController:
    def __init__(self, context: PipelineContext) -> None:
        self.context = context
        self.emergency = EmergencyStop(context)
        self._abort_events: dict[str, asyncio.Event] = {}
        self._started: dict[str, float] = {}

    # -- persistence -----------------------------------------------------

    def _save(self, execution: PipelineExecution) -> None:
        self.context.state.put_execution(execution.to_dict())

    def load(self, execution_id: str) -> PipelineExecution:
        payload = self.context.state.get_execution(execution_id)
        if payload is None:
            raise StagegateError(f"Unknown execution: {execution_id}")
        return PipelineExecution.from_dict(payload)

    def _abort_marker(self, execution_id: str) -> Path:
        return self.context.aborts_dir / execution_id

    # -- public operations -------------------------------------------------

    def submit(self, task: Task) -> str:
        score = self.context.assessor.assess(task)
        timestamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
        execution_id = f"exec-{timestamp}-{uuid4().hex[:8]}"
        run_dir = self.context.runs_dir / execution_id
        run_dir.mkdir(parents=True, exist_ok=True)
        execution = PipelineExecution(
            id=execution_id,
            task=task,
            complexity=score,
            stages=stages_for(score.depth),
            artifacts_dir=str(run_dir),
        )
        self._save(execution)
        logger.info(
            "Submitted %s: %d point(s) -> %s%s",
            execution_id,
            score.points,
            score.depth.value,
            " (forced)" if score.forced else "",
        )
        return execution_id

    async def execute(self, task: Task) -> PipelineExecution:
        return await self.run(self.submit(task))

    def request_abort(self, execution_id: str, reason: str = "external abort requested") -> None:
        marker = self._abort_marker(execution_id)
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.write_text(reason, encoding="utf-8")
        event = self._abort_events.get(execution_id)
        if event is not None:
            event.set()
        logger.warning("Abort requested for %s: %s", execution_id, reason)

    def _abort_reason(self, execution_id: str) -> str | None:
        marker = self._abort_marker(execution_id)
        if marker.exists():
            return marker.read_text(encoding="utf-8").strip() or "external abort requested"
        event = self._abort_events.get(execution_id)
        if event is not None and event.is_set():
            return "external abort requested"
        return None

    async def run(self, execution_id: str) -> PipelineExecution:
        execution = self.load(execution_id)
        if execution.status.is_terminal:
            return execution
        abort_event = self._abort_events.setdefault(execution_id, asyncio.Event())
        try:
            self._close_stale(execution, "interrupted")
            await self._drive(execution, abort_event)
        except EmergencyCondition as condition:
            self._handle_emergency(execution, condition)
        except CheckpointConflict as exc:
            self._finish(execution, ExecutionStatus.ESCALATED, f"Checkpoint conflict: {exc}")
        except (StagegateError, OSError) as exc:
            logger.exception("Run of %s stopped unexpectedly", execution_id)
            self._close_stale(execution, f"stopped: {exc}")
            self._finish(
                execution, ExecutionStatus.ESCALATED, f"Run stopped unexpectedly: {exc}"
            )
        finally:
            self._abort_events.pop(execution_id, None)
            self.context.timeouts.forget(execution_id)
        self._abort_marker(execution_id).unlink(missing_ok=True)
        self.context.metrics.persist(execution)
        return execution

    def status(self, execution_id: str) -> dict[str, Any]:
        execution = self.load(execution_id)
        current = None if execution.status.is_terminal else execution.current_stage
        return {
            "id": execution.id,
            "status": execution.status.value,
            "depth": execution.depth.value,
            "complexity": execution.complexity.to_dict(),
            "stages": [stage.value for stage in execution.stages],
            "current_stage": current.value if current else None,
            "reason": execution.reason,
            "warnings": list(execution.warnings),
            "checkpoint_id": execution.checkpoint_id,
            "checkpoint_action": execution.checkpoint_action,
            "incident_id": execution.incident_id,
            "artifacts_dir": execution.artifacts_dir,
            "records": [record.to_dict() for record in execution.records],
            "artifacts": self.artifacts(execution_id),
        }

    def list_executions(self) -> list[dict[str, Any]]:
        return [
            {
                "id": item.get("id"),
                "status": item.get("status"),
                "depth": item.get("depth"),
                "task": (item.get("task") or {}).get("description", ""),
                "created_at": item.get("created_at"),
                "reason": item.get("reason", ""),
            }
            for item in self.context.state.list_executions()
        ]

    def artifacts(self, execution_id: str, stage: Stage | None = None) -> list[dict[str, Any]]:
        execution = self.load(execution_id)
        items: list[dict[str, Any]] = []
        for record in execution.records:
            if stage is not None and record.stage is not stage:
                continue
            for kind, ref in (("report", record.output_ref), ("grade", record.grade_ref)):
                if ref:
                    items.append(
                        {
                            "stage": record.stage.value,
                            "attempt": record.attempt,
                            "type": kind,
                            "path": ref,
                            "exists": Path(ref).exists(),
                        }
                    )
        incident = Path(execution.artifacts_dir) / "incident.json"
        if stage is None and incident.exists():
            items.append(
                {
                    "stage": None,
                    "attempt": None,
                    "type": "incident",
                    "path": str(incident),
                    "exists": True,
                }
            )
        return items

    # -- state machine -----------------------------------------------------

    async def _drive(self, execution: PipelineExecution, abort_event: asyncio.Event) -> None:
        carried: str | None = None
        while execution.status is ExecutionStatus.RUNNING:
            stage = execution.current_stage
            if stage is None:
                self._complete(execution)
                return
            reason = self._abort_reason(execution.id)
            if reason is not None:
                raise EmergencyCondition(
                    reason, trigger=EmergencyCondition.EXTERNAL_ABORT, stage=stage.value
                )
            if needs_checkpoint(stage, execution.depth) and execution.checkpoint_id is None:
                execution.checkpoint_id = self.context.checkpoints.create(
                    execution.id, f"before-{stage.value}"
                )
                execution.checkpoint_action = "created"
                self._save(execution)
            carried = await self._run_stage(execution, stage, abort_event, carried)

    async def _run_stage(
        self,
        execution: PipelineExecution,
        stage: Stage,
        abort_event: asyncio.Event,
        prior_context: str | None,
    ) -> str | None:
        """Run attempts until the stage passes or the run leaves ``running``.

        Returns failure context to hand to the next stage that runs.
        """
        policy = self.context.retry_policy
        reduced_scope = False
        digests: list[str] = []
        while True:
            previous = execution.attempts_for(stage)
            if not policy.can_retry(len(previous)):
                self._finish(
                    execution, ExecutionStatus.ESCALATED, policy.escalation_reason(stage, previous)
                )
                return None
            record = self._open_record(execution, stage)
            try:
                advanced = await self._attempt(
                    execution, stage, record, prior_context, reduced_scope, abort_event, digests
                )
            except StageFailure as failure:
                timed_out = isinstance(failure, WorkerTimeout)
                self._close_record(
                    execution,
                    record,
                    StageStatus.TIMED_OUT if timed_out else StageStatus.FAILED,
                    failure_reason=str(failure),
                )
                if isinstance(failure, WorkerTimeout) and failure.escalate:
                    self._finish(
                        execution,
                        ExecutionStatus.ESCALATED,
                        f"{stage.value} timed out and was escalated for human review.",
                    )
                    return None
                if isinstance(failure, WorkerInvocationFailure) and not failure.retriable:
                    self._finish(
                        execution,
                        ExecutionStatus.ESCALATED,
                        f"{stage.value} failed without retry: {failure}",
                    )
                    return None

                attempts = execution.attempts_for(stage)
                if not policy.can_retry(len(attempts)):
                    self._finish(
                        execution,
                        ExecutionStatus.ESCALATED,
                        policy.escalation_reason(stage, attempts),
                    )
                    return None
                report = failure.report if isinstance(failure, QualityGateFailure) else None
                if stage is Stage.VERIFICATION and report is not None:
                    return self._verification_menu(execution, record, report)
                prior_context = policy.failure_context(stage, record, report)
                reduced_scope = timed_out
                logger.info(
                    "Retrying %s for %s (attempt %d of %d)",
                    stage.value,
                    execution.id,
                    len(attempts) + 1,
                    policy.max_attempts,
                )
                continue

            if advanced:
                execution.current_index += 1
                self._save(execution)
            return None

    async def _attempt(
        self,
        execution: PipelineExecution,
        stage: Stage,
        record: StageRecord,
        prior_context: str | None,
        reduced_scope: bool,
        abort_event: asyncio.Event,
        digests: list[str],
    ) -> bool:
        spec = spec_for(stage)
        output = Path(execution.artifacts_dir) / f"{stage.value}-attempt{record.attempt}.md"
        order = WorkOrder(
            execution_id=execution.id,
            stage=stage.value,
            attempt=record.attempt,
            role=spec.role,
            instruction=spec.instruction,
            task_context={
                "task": execution.task.to_dict(),
                "depth": execution.depth.value,
                "workspace": str(self.context.workspace),
                "previous_outputs": self._previous_outputs(execution, stage),
            },
            output_location=str(output),
            success_criteria=list(spec.success_criteria),
            prior_failure_context=prior_context,
            reduced_scope=reduced_scope,
        )
        record.estimated_tokens = estimate_tokens(order.render())
        marker = self._abort_marker(execution.id)
        invoker = self.context.invoker
        timeouts = self.context.timeouts

        outcome = await invoker.invoke(
            order, timeouts.timeout_for(stage), abort_event=abort_event, marker=marker
        )
        while outcome.kind is OutcomeKind.TIMED_OUT:
            event = timeouts.record_timeout(execution.id, stage, record.attempt, outcome.elapsed)
            resolution = timeouts.resolve(event, self.context.decider)
            record.warnings.append(
                f"timeout #{event.occurrence} after {event.elapsed:.1f}s -> {resolution.value}"
            )
            if resolution is TimeoutResolution.CONTINUE:
                outcome = await invoker.extend(
                    outcome, timeouts.extension_for(stage), abort_event=abort_event, marker=marker
                )
                continue
            await invoker.cancel(outcome)
            timeouts.observe(execution.id, stage, outcome.elapsed)
            if resolution is TimeoutResolution.SAVE_AND_STOP:
                record.timed_out = True
                if output.exists():
                    record.output_ref = str(output)
                self._close_record(execution, record, StageStatus.TIMED_OUT)
                return True
            raise WorkerTimeout(
                outcome.error or "worker timed out",
                stage=stage.value,
                escalate=resolution is TimeoutResolution.ESCALATE,
            )

        timeouts.observe(execution.id, stage, outcome.elapsed)
        if outcome.kind is OutcomeKind.ABORTED:
            raise EmergencyCondition(
                self._abort_reason(execution.id) or "external abort requested",
                trigger=EmergencyCondition.EXTERNAL_ABORT,
                stage=stage.value,
            )
        if outcome.catastrophic:
            raise EmergencyCondition(
                outcome.error or "worker signalled a catastrophic failure",
                trigger=EmergencyCondition.CATASTROPHIC,
                stage=stage.value,
            )
        if outcome.kind is OutcomeKind.FAILED:
            raise WorkerInvocationFailure(
                outcome.error or "worker failed", stage=stage.value, retriable=outcome.retriable
            )
        return self._judge(execution, stage, record, outcome, digests)

    def _judge(
        self,
        execution: PipelineExecution,
        stage: Stage,
        record: StageRecord,
        outcome: InvocationOutcome,
        digests: list[str],
    ) -> bool:
        result = outcome.result
        if result is None:
            raise WorkerInvocationFailure("worker returned no result", stage=stage.value)
        record.output_ref = result.artifact_reference
        record.summary = result.summary
        artifact = Path(result.artifact_reference)
        raw = artifact.read_bytes() if artifact.is_file() else b""
        record.estimated_tokens += estimate_tokens(raw.decode("utf-8", errors="replace"))

        if not result.success:
            raise WorkerInvocationFailure(
                f"worker reported failure: {result.summary or 'no summary'}", stage=stage.value
            )
        if not is_gated(stage, execution.depth):
            self._close_record(execution, record, StageStatus.PASSED)
            return True

        gates = self.context.gates
        report = gates.evaluate(stage, artifact)
        record.score = report.score
        record.verdict = report.verdict
        record.grade_ref = str(
            gates.write_report(report, artifact, stage=stage, attempt=record.attempt)
        )
        if report.passed:
            self._close_record(execution, record, StageStatus.PASSED)
            return True

        digest = hashlib.sha256(raw).hexdigest()
        digests.append(digest)
        limit = self.context.config.pipeline.repeat_output_limit
        if limit > 0 and digests.count(digest) >= limit:
            raise EmergencyCondition(
                f"{stage.value} produced the same failing output {digests.count(digest)} times",
                trigger=EmergencyCondition.LOOP,
                stage=stage.value,
            )
        raise QualityGateFailure(
            f"score {report.score} below {gates.threshold}",
            stage=stage.value,
            score=report.score,
            report=report,
        )

    def _verification_menu(
        self,
        execution: PipelineExecution,
        record: StageRecord,
        report: GradeReport,
    ) -> str | None:
        decider = self.context.decider
        choice = VerificationChoice(decider.choose_verification(execution, report))
        logger.info("Verification failed for %s; caller chose %s", execution.id, choice.value)

        if choice is VerificationChoice.RESTORE:
            if execution.checkpoint_id is not None:
                self.context.checkpoints.restore(execution.checkpoint_id)
                execution.checkpoint_action = "restored"
            self._finish(
                execution,
                ExecutionStatus.REJECTED,
                f"Verification scored {report.score}; workspace restored from checkpoint.",
            )
            return None

        if choice is VerificationChoice.PROCEED_WITH_WARNINGS:
            if not decider.confirm_proceed(execution, report):
                self._finish(
                    execution,
                    ExecutionStatus.REJECTED,
                    f"Verification scored {report.score} and proceeding was not confirmed.",
                )
                return None
            execution.warnings.append(f"verification scored {report.score}/100")
            execution.warnings.extend(report.findings)
            execution.current_index += 1
            self._save(execution)
            return None

        policy = self.context.retry_policy
        executions_so_far = execution.attempts_for(Stage.EXECUTION)
        if not policy.can_retry(len(executions_so_far)):
            self._finish(
                execution,
                ExecutionStatus.ESCALATED,
                policy.escalation_reason(Stage.EXECUTION, executions_so_far),
            )
            return None
        execution.current_index = execution.stages.index(Stage.EXECUTION)
        self._save(execution)
        return policy.failure_context(Stage.VERIFICATION, record, report)

    # -- records and terminal states ---------------------------------------

    def _previous_outputs(self, execution: PipelineExecution, stage: Stage) -> dict[str, str]:
        outputs: dict[str, str] = {}
        for record in execution.records:
            if record.stage is not stage and record.output_ref and record.status in (
                StageStatus.PASSED,
                StageStatus.TIMED_OUT,
            ):
                outputs[record.stage.value] = record.output_ref
        return outputs

    def _open_record(self, execution: PipelineExecution, stage: Stage) -> StageRecord:
        previous = execution.attempts_for(stage)
        record = StageRecord(
            id=f"{execution.id}:{stage.value}:{len(previous) + 1}",
            stage=stage,
            attempt=len(previous) + 1,
            status=StageStatus.IN_PROGRESS,
            started_at=utcnow_iso(),
            previous_attempt_id=previous[-1].id if previous else None,
        )
        execution.records.append(record)
        self._started[record.id] = time.monotonic()
        self._save(execution)
        logger.info("%s: %s attempt %d started", execution.id, stage.value, record.attempt)
        return record

    def _close_record(
        self,
        execution: PipelineExecution,
        record: StageRecord,
        status: StageStatus,
        *,
        failure_reason: str | None = None,
    ) -> None:
        record.status = status
        record.ended_at = utcnow_iso()
        started = self._started.pop(record.id, None)
        if started is not None:
            record.duration_ms = int((time.monotonic() - started) * 1000)
        if status is StageStatus.TIMED_OUT:
            record.timed_out = True
        if failure_reason:
            record.failure_reason = failure_reason
        self._save(execution)
        self.context.metrics.record_stage(execution, record)
        logger.info(
            "%s: %s attempt %d %s", execution.id, record.stage.value, record.attempt, status.value
        )

    def _close_stale(self, execution: PipelineExecution, reason: str) -> None:
        for record in execution.in_progress():
            self._close_record(execution, record, StageStatus.FAILED, failure_reason=reason)

    def _complete(self, execution: PipelineExecution) -> None:
        verification = execution.attempts_for(Stage.VERIFICATION)
        if execution.depth is Depth.INSTANT:
            verified = all(record.status is StageStatus.PASSED for record in execution.records[-1:])
        else:
            verified = bool(verification) and verification[-1].status is StageStatus.PASSED
        if execution.checkpoint_id is not None:
            if verified:
                self.context.checkpoints.discard(execution.checkpoint_id)
                execution.checkpoint_action = "discarded"
            else:
                execution.checkpoint_action = "retained"
        if verified:
            reason = "All stages passed."
        else:
            if not execution.warnings:
                execution.warnings.append("completed without a passing verification")
            reason = "Completed with warnings; checkpoint retained for review."
        self._finish(execution, ExecutionStatus.APPROVED, reason)

    def _finish(self, execution: PipelineExecution, status: ExecutionStatus, reason: str) -> None:
        if status is ExecutionStatus.ESCALATED and execution.checkpoint_id is not None:
            execution.checkpoint_action = "retained"
        execution.status = status
        execution.reason = f"{reason} Artifacts: {execution.artifacts_dir}"
        execution.ended_at = utcnow_iso()
        self._save(execution)
        log = logger.info if status is ExecutionStatus.APPROVED else logger.warning
        log("%s finished %s: %s", execution.id, status.value, reason)

    def _handle_emergency(
        self, execution: PipelineExecution, condition: EmergencyCondition
    ) -> None:
        self._close_stale(execution, f"halted: {condition}")
        incident = self.emergency.trigger(execution, condition)
        execution.incident_id = incident.id
        self._finish(
            execution,
            ExecutionStatus.ABORTED,
            f"Emergency stop ({condition.trigger}): {incident.outcome}",
        )
