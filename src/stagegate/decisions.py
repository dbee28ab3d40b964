"""Decision points where a human (or a fixed policy) picks how a run continues."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import click

from stagegate.config import DecisionsConfig
from stagegate.models import (
    GradeReport,
    IncidentRecord,
    PipelineExecution,
    RecoveryChoice,
    TimeoutResolution,
    VerificationChoice,
)

if TYPE_CHECKING:
    from stagegate.state.checkpoints import Change
    from stagegate.timeouts import TimeoutEvent


class Decider(Protocol):
    def resolve_timeout(self, event: TimeoutEvent) -> TimeoutResolution: ...

    def choose_verification(
        self, execution: PipelineExecution, report: GradeReport
    ) -> VerificationChoice: ...

    def confirm_proceed(self, execution: PipelineExecution, report: GradeReport) -> bool: ...

    def choose_recovery(self, incident: IncidentRecord) -> RecoveryChoice: ...

    def retained_paths(self, incident: IncidentRecord, changes: list[Change]) -> list[str]: ...


class AutomaticDecider:
    """Answers every decision point from configuration."""

    def __init__(self, config: DecisionsConfig | None = None) -> None:
        self.config = config or DecisionsConfig()

    def resolve_timeout(self, event: TimeoutEvent) -> TimeoutResolution:
        return TimeoutResolution(self.config.on_timeout)

    def choose_verification(
        self, execution: PipelineExecution, report: GradeReport
    ) -> VerificationChoice:
        return VerificationChoice(self.config.on_verification_failure)

    def confirm_proceed(self, execution: PipelineExecution, report: GradeReport) -> bool:
        return self.config.confirm_warnings

    def choose_recovery(self, incident: IncidentRecord) -> RecoveryChoice:
        return RecoveryChoice(self.config.on_emergency)

    def retained_paths(self, incident: IncidentRecord, changes: list[Change]) -> list[str]:
        return list(self.config.retain_paths)


class InteractiveDecider:
    """Prompts on the terminal through click."""

    def resolve_timeout(self, event: TimeoutEvent) -> TimeoutResolution:
        click.echo(
            f"\n{event.stage.value} timed out after {event.elapsed:.0f}s "
            f"(limit {event.limit:.0f}s, occurrence {event.occurrence})."
        )
        value = click.prompt(
            "Resolution",
            type=click.Choice([item.value for item in TimeoutResolution]),
            default=TimeoutResolution.RETRY.value,
        )
        return TimeoutResolution(value)

    def choose_verification(
        self, execution: PipelineExecution, report: GradeReport
    ) -> VerificationChoice:
        click.echo(f"\nVerification scored {report.score}/100 for {execution.id}.")
        for finding in report.findings:
            click.echo(f"  - {finding}")
        value = click.prompt(
            "Next step",
            type=click.Choice([item.value for item in VerificationChoice]),
            default=VerificationChoice.RETRY_EXECUTION.value,
        )
        return VerificationChoice(value)

    def confirm_proceed(self, execution: PipelineExecution, report: GradeReport) -> bool:
        return click.confirm(
            f"Proceed with {len(report.findings)} recorded warning(s) despite the failed gate?",
            default=False,
        )

    def choose_recovery(self, incident: IncidentRecord) -> RecoveryChoice:
        click.echo(f"\nEmergency stop ({incident.trigger}): {incident.detail}")
        value = click.prompt(
            "Recovery",
            type=click.Choice([item.value for item in RecoveryChoice]),
            default=RecoveryChoice.ROLLBACK.value,
        )
        return RecoveryChoice(value)

    def retained_paths(self, incident: IncidentRecord, changes: list[Change]) -> list[str]:
        for change in changes:
            click.echo(f"  {change.kind:<8} {change.path}")
        raw = click.prompt("Paths to keep (comma separated)", default="", show_default=False)
        return [item.strip() for item in raw.split(",") if item.strip()]
