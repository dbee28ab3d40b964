from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING
from uuid import uuid4

from stagegate.errors import EmergencyCondition, StagegateError
from stagegate.models import IncidentRecord, PipelineExecution, RecoveryChoice

if TYPE_CHECKING:
    from stagegate.controller import PipelineContext

logger = logging.getLogger(__name__)


class EmergencyStop:
    """Captures an incident and applies the chosen recovery to the workspace.

    The in-flight invocation is already halted by the time ``trigger`` runs;
    the invoker cancels the worker task as soon as an abort is seen.
    """

    def __init__(self, context: PipelineContext) -> None:
        self.context = context

    @staticmethod
    def _incident_id() -> str:
        timestamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
        return f"inc-{timestamp}-{uuid4().hex[:8]}"

    def trigger(
        self, execution: PipelineExecution, condition: EmergencyCondition
    ) -> IncidentRecord:
        logger.error(
            "Emergency stop for %s (%s): %s", execution.id, condition.trigger, condition
        )
        incident = IncidentRecord(
            id=self._incident_id(),
            execution_id=execution.id,
            trigger=condition.trigger,
            detail=str(condition),
            stage=condition.stage,
            controller_state=execution.to_dict(),
        )
        incident.choice = RecoveryChoice(self.context.decider.choose_recovery(incident))
        incident.outcome = self._apply(execution, incident)
        incident.root_cause_notes = self._root_cause(execution, condition)

        self.context.state.put_incident(incident.to_dict())
        target = Path(execution.artifacts_dir) / "incident.json"
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(incident.to_dict(), ensure_ascii=False, indent=2), "utf-8")
        logger.info("Incident %s recorded: %s", incident.id, incident.outcome)
        return incident

    def _apply(self, execution: PipelineExecution, incident: IncidentRecord) -> str:
        checkpoints = self.context.checkpoints
        checkpoint_id = execution.checkpoint_id
        choice = incident.choice

        if choice is RecoveryChoice.KEEP:
            execution.checkpoint_action = "retained" if checkpoint_id else "none"
            return "Workspace left as-is for manual review."

        if checkpoint_id is None:
            if choice is RecoveryChoice.ROLLBACK and checkpoints.emergency_restore(execution.id):
                execution.checkpoint_action = "restored"
                return "Rolled back to the newest stored snapshot."
            execution.checkpoint_action = "none"
            return "No checkpoint existed; workspace left as-is."

        if choice is RecoveryChoice.ROLLBACK:
            try:
                checkpoints.restore(checkpoint_id)
            except StagegateError as exc:
                logger.warning("Regular restore failed (%s); trying emergency restore", exc)
                if not checkpoints.emergency_restore(execution.id):
                    execution.checkpoint_action = "restore_failed"
                    return f"Rollback failed: {exc}"
            execution.checkpoint_action = "restored"
            return f"Workspace rolled back to checkpoint {checkpoint_id}."

        try:
            if choice is RecoveryChoice.PARTIAL_COMMIT:
                changes = checkpoints.preview(checkpoint_id)
                incident.retained_paths = self.context.decider.retained_paths(incident, changes)
                reverted = checkpoints.restore(checkpoint_id, keep_paths=incident.retained_paths)
                execution.checkpoint_action = "partial_commit"
                return (
                    f"Reverted {len(reverted)} path(s); kept {len(incident.retained_paths)} "
                    "selected path(s)."
                )

            # Abandon: drop every change and the checkpoint itself.
            checkpoints.restore(checkpoint_id)
            checkpoints.discard(checkpoint_id)
        except (StagegateError, OSError, ValueError) as exc:
            logger.error("%s recovery failed for %s: %s", choice.value, execution.id, exc)
            execution.checkpoint_action = "restore_failed"
            return f"{choice.value} failed: {exc}; workspace left as-is."
        execution.checkpoint_action = "abandoned"
        return f"All changes discarded and checkpoint {checkpoint_id} removed."

    @staticmethod
    def _root_cause(execution: PipelineExecution, condition: EmergencyCondition) -> str:
        stage = condition.stage or "before any stage"
        attempts = len(execution.records)
        notes = {
            EmergencyCondition.LOOP: "Worker repeated identical failing output.",
            EmergencyCondition.CATASTROPHIC: "Worker signalled catastrophic failure.",
            EmergencyCondition.EXTERNAL_ABORT: "Abort requested from outside the run.",
        }
        headline = notes.get(condition.trigger, "Unclassified emergency condition.")
        return f"{headline} Stage: {stage}. Attempts recorded: {attempts}. Detail: {condition}"
