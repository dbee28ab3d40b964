from __future__ import annotations

from stagegate.models import GradeReport, Stage, StageRecord

MAX_CONTEXT_FINDINGS = 8


class RetryPolicy:
    """Bounded per-stage retries; the final attempt is never retried."""

    def __init__(self, max_retries: int = 2) -> None:
        self.max_retries = max(0, max_retries)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def can_retry(self, attempts: int) -> bool:
        return attempts < self.max_attempts

    def failure_context(
        self,
        stage: Stage,
        record: StageRecord,
        report: GradeReport | None = None,
    ) -> str:
        lines = [f"Stage {stage.value} attempt {record.attempt} failed."]
        if record.failure_reason:
            lines.append(f"Reason: {record.failure_reason}")
        if report is not None:
            lines.append(f"Score: {report.score}/100")
            for finding in report.findings[:MAX_CONTEXT_FINDINGS]:
                lines.append(f"- {finding}")
        if record.output_ref:
            lines.append(f"Previous output: {record.output_ref}")
        return "\n".join(lines)

    def escalation_reason(self, stage: Stage, records: list[StageRecord]) -> str:
        last = records[-1] if records else None
        detail = last.failure_reason if last and last.failure_reason else "no passing attempt"
        return (
            f"Retry budget exhausted for {stage.value} after {len(records)} attempt(s): "
            f"{detail}. Human review required."
        )
