import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest

from stagegate.config import StagegateConfig
from stagegate.controller import PipelineContext, PipelineController
from stagegate.models import (
    Depth,
    ExecutionStatus,
    PipelineExecution,
    RubricInputs,
    Stage,
    StageRecord,
    StageStatus,
    Task,
)
from stagegate.workers import (
    Worker,
    WorkerError,
    WorkerResult,
    WorkOrder,
    WorkspaceCorruptionError,
)

Step = str | Callable[[WorkOrder], Awaitable[str]]


class ScriptedWorker(Worker):
    """Answers each stage from a queue of scripted outputs."""

    name = "scripted"

    def __init__(
        self,
        steps: dict[str, list[Step]] | None = None,
        *,
        default: str = "SCORE: 95",
        stamp_attempt: bool = True,
    ) -> None:
        self.steps = {stage: list(items) for stage, items in (steps or {}).items()}
        self.default = default
        self.stamp_attempt = stamp_attempt
        self.orders: list[WorkOrder] = []

    async def run(self, order: WorkOrder) -> WorkerResult:
        self.orders.append(order)
        queue = self.steps.get(order.stage) or []
        step: Step = queue.pop(0) if queue else self.default
        body = await step(order) if callable(step) else step
        header = f"# {order.stage} attempt {order.attempt}\n" if self.stamp_attempt else ""
        Path(order.output_location).write_text(f"{header}{body}\n", encoding="utf-8")
        return WorkerResult(
            artifact_reference=order.output_location, summary=f"{order.stage} finished"
        )

    def orders_for(self, stage: str) -> list[WorkOrder]:
        return [order for order in self.orders if order.stage == stage]


def _seed_workspace(workspace: Path) -> None:
    (workspace / "src").mkdir(parents=True, exist_ok=True)
    (workspace / "src" / "app.py").write_text("print('v1')\n", encoding="utf-8")
    (workspace / "README.md").write_text("# demo\n", encoding="utf-8")


def _snapshot_files(workspace: Path) -> dict[str, bytes]:
    return {
        path.relative_to(workspace).as_posix(): path.read_bytes()
        for path in sorted(workspace.rglob("*"))
        if path.is_file() and path.relative_to(workspace).parts[0] != ".stagegate"
    }


def _build(
    tmp_path: Path,
    worker: Worker,
    configure: Callable[[StagegateConfig], None] | None = None,
) -> PipelineController:
    workspace = tmp_path / "workspace"
    workspace.mkdir(exist_ok=True)
    _seed_workspace(workspace)
    config = StagegateConfig.default()
    config.pipeline.abort_poll_seconds = 0.01
    if configure is not None:
        configure(config)
    return PipelineController(PipelineContext.build(config, workspace, worker))


def _fast_track_task(description: str = "Add a retry flag to the exporter") -> Task:
    return Task(
        description=description,
        scope=("src/app.py", "src/exporter.py"),
        rubric=RubricInputs(files_in_scope=2, knowledge_gap=1, risk=1),
    )


def _hang(delay: float = 30.0) -> Callable[[WorkOrder], Awaitable[str]]:
    async def _step(order: WorkOrder) -> str:
        _ = order
        await asyncio.sleep(delay)
        return "SCORE: 95"

    return _step


def _raise(error: Exception, before: Callable[[], None] | None = None) -> Step:
    async def _step(order: WorkOrder) -> str:
        _ = order
        if before is not None:
            before()
        raise error

    return _step


def _statuses(execution: PipelineExecution, stage: Stage) -> list[StageStatus]:
    return [record.status for record in execution.attempts_for(stage)]


def test_explicit_single_file_task_runs_instant(tmp_path: Path) -> None:
    worker = ScriptedWorker()
    controller = _build(tmp_path, worker)
    task = Task(
        description="Fix the typo in the README heading",
        scope=("README.md",),
        explicit_instructions=True,
    )

    execution = asyncio.run(controller.execute(task))

    assert execution.depth is Depth.INSTANT
    assert execution.stages == [Stage.EXECUTION]
    assert execution.status is ExecutionStatus.APPROVED
    assert execution.checkpoint_id is None
    assert execution.checkpoint_action == "none"
    assert execution.reason.startswith("All stages passed.")
    assert [order.stage for order in worker.orders] == ["execution"]
    assert execution.records[0].score is None


def test_fast_track_run_passes_every_stage(tmp_path: Path) -> None:
    worker = ScriptedWorker()
    controller = _build(tmp_path, worker)

    execution = asyncio.run(controller.execute(_fast_track_task()))

    assert execution.depth is Depth.FAST_TRACK
    assert execution.status is ExecutionStatus.APPROVED
    assert [order.stage for order in worker.orders] == [
        "planning",
        "execution",
        "verification",
        "retrospective",
        "documentation",
    ]
    assert all(record.status is StageStatus.PASSED for record in execution.records)
    assert execution.attempts_for(Stage.PLANNING)[0].score == 95
    assert execution.attempts_for(Stage.RETROSPECTIVE)[0].score is None
    assert execution.checkpoint_action == "discarded"
    checkpoints = controller.context.checkpoints
    assert checkpoints.get(execution.checkpoint_id).status == "discarded"
    execution_order = worker.orders_for("execution")[0]
    assert "planning" in execution_order.task_context["previous_outputs"]

    metrics_file = (
        controller.context.state_dir / "metrics" / "executions" / f"{execution.id}.json"
    )
    summary = json.loads(metrics_file.read_text(encoding="utf-8"))
    assert summary["outcome"] == "approved"
    assert summary["complexity"] == 3
    assert [stage["name"] for stage in summary["stages"]][0] == "planning"


def test_verification_failure_retries_execution_then_passes(tmp_path: Path) -> None:
    worker = ScriptedWorker(
        {"verification": ["SCORE: 65\n- MAJOR: edge case untested", "SCORE: 90"]}
    )
    controller = _build(tmp_path, worker)

    execution = asyncio.run(controller.execute(_fast_track_task()))

    assert execution.status is ExecutionStatus.APPROVED
    assert _statuses(execution, Stage.VERIFICATION) == [StageStatus.FAILED, StageStatus.PASSED]
    assert _statuses(execution, Stage.EXECUTION) == [StageStatus.PASSED, StageStatus.PASSED]
    first_verification = execution.attempts_for(Stage.VERIFICATION)[0]
    assert first_verification.score == 65
    assert first_verification.failure_reason == "score 65 below 80"
    retry_order = worker.orders_for("execution")[1]
    assert retry_order.attempt == 2
    assert "Stage verification attempt 1 failed." in retry_order.prior_failure_context
    assert "Score: 65/100" in retry_order.prior_failure_context
    assert "MAJOR: edge case untested" in retry_order.prior_failure_context
    second_verification = execution.attempts_for(Stage.VERIFICATION)[1]
    assert second_verification.previous_attempt_id == first_verification.id
    assert Path(first_verification.grade_ref).exists()


def test_repeated_timeouts_are_saved_and_stopped(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    worker = ScriptedWorker({"execution": [_hang(), _hang(), _hang()]})

    def configure(config: StagegateConfig) -> None:
        config.timeouts.execution = 0.05

    controller = _build(tmp_path, worker, configure)

    with caplog.at_level(logging.WARNING, logger="stagegate.timeouts"):
        execution = asyncio.run(controller.execute(_fast_track_task()))

    assert "applying save_and_stop" in caplog.text
    assert execution.status is ExecutionStatus.APPROVED
    records = execution.attempts_for(Stage.EXECUTION)
    assert [record.status for record in records] == [StageStatus.TIMED_OUT] * 3
    assert all(record.timed_out for record in records)
    assert records[2].warnings[-1].endswith("-> save_and_stop")
    assert records[0].warnings[-1].endswith("-> retry")
    retry_orders = worker.orders_for("execution")
    assert retry_orders[0].reduced_scope is False
    assert retry_orders[1].reduced_scope is True
    assert [order.stage for order in worker.orders][-3:] == [
        "verification",
        "retrospective",
        "documentation",
    ]


def test_abort_during_execution_rolls_back_workspace(tmp_path: Path) -> None:
    workspace = tmp_path / "workspace"

    async def _run() -> PipelineExecution:
        started = asyncio.Event()

        async def mutate_and_hang(order: WorkOrder) -> str:
            _ = order
            (workspace / "src" / "app.py").write_text("broken\n", encoding="utf-8")
            (workspace / "scratch.txt").write_text("tmp\n", encoding="utf-8")
            started.set()
            await asyncio.sleep(30)
            return "SCORE: 95"

        controller = _build(tmp_path, ScriptedWorker({"execution": [mutate_and_hang]}))
        before.update(_snapshot_files(workspace))
        execution_id = controller.submit(_fast_track_task())
        runner = asyncio.create_task(controller.run(execution_id))
        await started.wait()
        controller.request_abort(execution_id, "operator pressed stop")
        return await runner

    before: dict[str, bytes] = {}
    execution = asyncio.run(_run())

    assert execution.status is ExecutionStatus.ABORTED
    assert execution.checkpoint_action == "restored"
    assert _snapshot_files(workspace) == before
    assert execution.in_progress() == []
    halted = execution.attempts_for(Stage.EXECUTION)[-1]
    assert halted.status is StageStatus.FAILED
    assert halted.failure_reason.startswith("halted:")

    incident_file = Path(execution.artifacts_dir) / "incident.json"
    incident = json.loads(incident_file.read_text(encoding="utf-8"))
    assert incident["id"] == execution.incident_id
    assert incident["trigger"] == "external_abort"
    assert incident["detail"] == "operator pressed stop"
    assert incident["choice"] == "rollback"
    assert incident["controller_state"]["id"] == execution.id
    assert not (workspace / ".stagegate" / "aborts" / execution.id).exists()


def test_planning_escalates_after_retry_budget(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    worker = ScriptedWorker({"planning": ["SCORE: 40", "SCORE: 50", "SCORE: 60"]})
    controller = _build(tmp_path, worker)
    state = controller.context.state
    in_progress_counts: list[int] = []
    original_put = state.put_execution

    def checking_put(payload: dict[str, Any]) -> None:
        in_progress_counts.append(
            sum(1 for record in payload["records"] if record["status"] == "in_progress")
        )
        original_put(payload)

    monkeypatch.setattr(state, "put_execution", checking_put)

    execution = asyncio.run(controller.execute(_fast_track_task()))

    assert execution.status is ExecutionStatus.ESCALATED
    assert _statuses(execution, Stage.PLANNING) == [StageStatus.FAILED] * 3
    assert "Retry budget exhausted for planning after 3 attempt(s)" in execution.reason
    assert "Artifacts:" in execution.reason
    assert execution.checkpoint_id is None
    assert "Score: 40/100" in worker.orders_for("planning")[1].prior_failure_context
    assert [order.stage for order in worker.orders] == ["planning"] * 3
    assert max(in_progress_counts) <= 1


def test_verification_restore_choice_rejects_and_restores(tmp_path: Path) -> None:
    workspace = tmp_path / "workspace"

    async def mutate(order: WorkOrder) -> str:
        _ = order
        (workspace / "src" / "app.py").write_text("print('v2')\n", encoding="utf-8")
        return "SCORE: 92"

    def configure(config: StagegateConfig) -> None:
        config.decisions.on_verification_failure = "restore"

    controller = _build(
        tmp_path, ScriptedWorker({"execution": [mutate], "verification": ["SCORE: 50"]}), configure
    )
    before = _snapshot_files(workspace)

    execution = asyncio.run(controller.execute(_fast_track_task()))

    assert execution.status is ExecutionStatus.REJECTED
    assert execution.checkpoint_action == "restored"
    assert _snapshot_files(workspace) == before


@pytest.mark.parametrize("confirmed", [True, False])
def test_proceed_with_warnings_requires_confirmation(tmp_path: Path, confirmed: bool) -> None:
    def configure(config: StagegateConfig) -> None:
        config.decisions.on_verification_failure = "proceed_with_warnings"
        config.decisions.confirm_warnings = confirmed

    controller = _build(tmp_path, ScriptedWorker({"verification": ["SCORE: 55"]}), configure)

    execution = asyncio.run(controller.execute(_fast_track_task()))

    if confirmed:
        assert execution.status is ExecutionStatus.APPROVED
        assert "verification scored 55/100" in execution.warnings
        assert execution.checkpoint_action == "retained"
        assert "checkpoint retained for review" in execution.reason
        assert controller.context.checkpoints.get(execution.checkpoint_id).usable
        assert execution.attempts_for(Stage.DOCUMENTATION)
    else:
        assert execution.status is ExecutionStatus.REJECTED
        assert "not confirmed" in execution.reason
        assert not execution.attempts_for(Stage.RETROSPECTIVE)


def test_catastrophic_failure_keeps_workspace_when_chosen(tmp_path: Path) -> None:
    workspace = tmp_path / "workspace"

    def damage() -> None:
        (workspace / "src" / "app.py").write_text("half written", encoding="utf-8")

    def configure(config: StagegateConfig) -> None:
        config.decisions.on_emergency = "keep"

    worker = ScriptedWorker(
        {"execution": [_raise(WorkspaceCorruptionError("index corrupted"), damage)]}
    )
    controller = _build(tmp_path, worker, configure)

    execution = asyncio.run(controller.execute(_fast_track_task()))

    assert execution.status is ExecutionStatus.ABORTED
    assert execution.checkpoint_action == "retained"
    assert (workspace / "src" / "app.py").read_text(encoding="utf-8") == "half written"
    incidents = controller.context.state.get_incidents()
    assert len(incidents) == 1
    assert incidents[0]["trigger"] == "catastrophic_failure"
    assert incidents[0]["choice"] == "keep"
    assert "Emergency stop (catastrophic_failure)" in execution.reason


def test_partial_commit_keeps_selected_paths(tmp_path: Path) -> None:
    workspace = tmp_path / "workspace"

    def damage() -> None:
        (workspace / "src" / "app.py").write_text("half written", encoding="utf-8")
        (workspace / "docs").mkdir()
        (workspace / "docs" / "notes.md").write_text("keep me\n", encoding="utf-8")

    def configure(config: StagegateConfig) -> None:
        config.decisions.on_emergency = "partial_commit"
        config.decisions.retain_paths = ["docs"]

    worker = ScriptedWorker(
        {"execution": [_raise(WorkspaceCorruptionError("index corrupted"), damage)]}
    )
    controller = _build(tmp_path, worker, configure)

    execution = asyncio.run(controller.execute(_fast_track_task()))

    assert execution.status is ExecutionStatus.ABORTED
    assert execution.checkpoint_action == "partial_commit"
    assert (workspace / "src" / "app.py").read_text(encoding="utf-8") == "print('v1')\n"
    assert (workspace / "docs" / "notes.md").read_text(encoding="utf-8") == "keep me\n"
    incident = controller.context.state.get_incidents()[0]
    assert incident["retained_paths"] == ["docs"]


def test_identical_failing_output_triggers_loop_stop(tmp_path: Path) -> None:
    worker = ScriptedWorker({"planning": ["SCORE: 30", "SCORE: 30"]}, stamp_attempt=False)
    controller = _build(tmp_path, worker)

    execution = asyncio.run(controller.execute(_fast_track_task()))

    assert execution.status is ExecutionStatus.ABORTED
    assert len(execution.attempts_for(Stage.PLANNING)) == 2
    assert execution.in_progress() == []
    incident = controller.context.state.get_incidents()[0]
    assert incident["trigger"] == "repetitive_output"
    assert execution.checkpoint_action == "none"


def test_existing_checkpoint_conflict_escalates(tmp_path: Path) -> None:
    controller = _build(tmp_path, ScriptedWorker())
    execution_id = controller.submit(_fast_track_task())
    manual = controller.context.checkpoints.create(execution_id, "manual")

    execution = asyncio.run(controller.run(execution_id))

    assert execution.status is ExecutionStatus.ESCALATED
    assert execution.reason.startswith("Checkpoint conflict:")
    assert manual in execution.reason
    assert _statuses(execution, Stage.PLANNING) == [StageStatus.PASSED]
    assert not execution.attempts_for(Stage.EXECUTION)


def test_non_retriable_worker_failure_escalates(tmp_path: Path) -> None:
    worker = ScriptedWorker(
        {"planning": [_raise(WorkerError("bad credentials", worker="x", retriable=False))]}
    )
    controller = _build(tmp_path, worker)

    execution = asyncio.run(controller.execute(_fast_track_task()))

    assert execution.status is ExecutionStatus.ESCALATED
    assert "planning failed without retry: bad credentials" in execution.reason
    assert len(execution.attempts_for(Stage.PLANNING)) == 1


def test_retriable_worker_failure_is_retried(tmp_path: Path) -> None:
    worker = ScriptedWorker({"planning": [_raise(OSError("pipe closed")), "SCORE: 88"]})
    controller = _build(tmp_path, worker)

    execution = asyncio.run(controller.execute(_fast_track_task()))

    assert execution.status is ExecutionStatus.APPROVED
    assert _statuses(execution, Stage.PLANNING) == [StageStatus.FAILED, StageStatus.PASSED]
    assert "pipe closed" in worker.orders_for("planning")[1].prior_failure_context


def test_timeout_escalation_retains_checkpoint(tmp_path: Path) -> None:
    def configure(config: StagegateConfig) -> None:
        config.timeouts.execution = 0.05
        config.decisions.on_timeout = "escalate"

    controller = _build(tmp_path, ScriptedWorker({"execution": [_hang()]}), configure)

    execution = asyncio.run(controller.execute(_fast_track_task()))

    assert execution.status is ExecutionStatus.ESCALATED
    assert "execution timed out and was escalated" in execution.reason
    assert execution.checkpoint_action == "retained"
    assert controller.context.checkpoints.get(execution.checkpoint_id).status == "active"


def test_timeout_continue_extends_same_attempt(tmp_path: Path) -> None:
    def configure(config: StagegateConfig) -> None:
        config.timeouts.execution = 0.05
        config.timeouts.extension_factor = 10.0
        config.decisions.on_timeout = "continue"

    worker = ScriptedWorker({"execution": [_hang(0.15)]})
    controller = _build(tmp_path, worker, configure)

    execution = asyncio.run(controller.execute(_fast_track_task()))

    assert execution.status is ExecutionStatus.APPROVED
    records = execution.attempts_for(Stage.EXECUTION)
    assert len(records) == 1
    assert records[0].status is StageStatus.PASSED
    assert records[0].warnings[0].endswith("-> continue")
    assert len(worker.orders_for("execution")) == 1


def test_concurrent_executions_are_isolated(tmp_path: Path) -> None:
    controller = _build(tmp_path, ScriptedWorker())

    async def _run() -> list[PipelineExecution]:
        return list(
            await asyncio.gather(
                controller.execute(_fast_track_task("First change")),
                controller.execute(_fast_track_task("Second change")),
            )
        )

    first, second = asyncio.run(_run())

    assert first.id != second.id
    assert first.status is ExecutionStatus.APPROVED
    assert second.status is ExecutionStatus.APPROVED
    assert first.checkpoint_id != second.checkpoint_id
    assert {item["id"] for item in controller.list_executions()} == {first.id, second.id}


def test_status_lists_artifacts_per_attempt(tmp_path: Path) -> None:
    controller = _build(tmp_path, ScriptedWorker())
    execution = asyncio.run(controller.execute(_fast_track_task()))

    status = controller.status(execution.id)

    assert status["status"] == "approved"
    assert status["current_stage"] is None
    kinds = [(item["stage"], item["type"]) for item in status["artifacts"]]
    assert kinds.count(("planning", "report")) == 1
    assert ("verification", "grade") in kinds
    assert ("documentation", "grade") not in kinds
    assert len(kinds) == 8
    assert all(item["exists"] for item in status["artifacts"])
    only_verification = controller.artifacts(execution.id, Stage.VERIFICATION)
    assert {item["stage"] for item in only_verification} == {"verification"}

    rerun = asyncio.run(controller.run(execution.id))
    assert rerun.status is ExecutionStatus.APPROVED
    assert len(rerun.records) == len(execution.records)


class UndecodableWorker(ScriptedWorker):
    """Leaves bytes that are not UTF-8 as the first planning report."""

    async def run(self, order: WorkOrder) -> WorkerResult:
        result = await super().run(order)
        if order.stage == "planning" and order.attempt == 1:
            Path(order.output_location).write_bytes(b"\xff\xfe SCORE: 95")
        return result


def test_undecodable_output_fails_gate_and_retries(tmp_path: Path) -> None:
    controller = _build(tmp_path, UndecodableWorker())

    execution = asyncio.run(controller.execute(_fast_track_task()))

    assert execution.status is ExecutionStatus.APPROVED
    assert _statuses(execution, Stage.PLANNING) == [StageStatus.FAILED, StageStatus.PASSED]
    first = execution.attempts_for(Stage.PLANNING)[0]
    assert first.score == 0
    assert first.failure_reason == "score 0 below 80"
    grade = json.loads(Path(first.grade_ref).read_text(encoding="utf-8"))
    assert grade["verdict"] == "fail"
    assert grade["findings"][0].startswith("Malformed stage output: cannot read")


def test_abandon_with_missing_snapshot_still_records_incident(tmp_path: Path) -> None:
    snapshots = tmp_path / "workspace" / ".stagegate" / "snapshots"

    def drop_manifests() -> None:
        for manifest in snapshots.glob("*.json"):
            manifest.unlink()

    def configure(config: StagegateConfig) -> None:
        config.decisions.on_emergency = "abandon"

    worker = ScriptedWorker(
        {"execution": [_raise(WorkspaceCorruptionError("index corrupted"), drop_manifests)]}
    )
    controller = _build(tmp_path, worker, configure)

    execution = asyncio.run(controller.execute(_fast_track_task()))

    assert execution.status is ExecutionStatus.ABORTED
    assert execution.checkpoint_action == "restore_failed"
    assert execution.in_progress() == []
    assert _statuses(execution, Stage.EXECUTION) == [StageStatus.FAILED]
    incidents = controller.context.state.get_incidents()
    assert [incident["id"] for incident in incidents] == [execution.incident_id]
    assert incidents[0]["choice"] == "abandon"
    assert incidents[0]["outcome"].startswith("abandon failed: Snapshot storage missing")
    stored = controller.load(execution.id)
    assert stored.status is ExecutionStatus.ABORTED


def test_interrupted_attempt_is_closed_before_resuming(tmp_path: Path) -> None:
    worker = ScriptedWorker()
    controller = _build(tmp_path, worker)
    execution_id = controller.submit(_fast_track_task())
    stale = controller.load(execution_id)
    stale.records.append(
        StageRecord(
            id=f"{execution_id}:planning:1",
            stage=Stage.PLANNING,
            attempt=1,
            status=StageStatus.IN_PROGRESS,
        )
    )
    controller.context.state.put_execution(stale.to_dict())

    execution = asyncio.run(controller.run(execution_id))

    assert execution.status is ExecutionStatus.APPROVED
    assert _statuses(execution, Stage.PLANNING) == [StageStatus.FAILED, StageStatus.PASSED]
    assert execution.attempts_for(Stage.PLANNING)[0].failure_reason == "interrupted"
    assert [order.attempt for order in worker.orders_for("planning")] == [2]


def test_resumed_stage_respects_attempt_budget(tmp_path: Path) -> None:
    worker = ScriptedWorker()
    controller = _build(tmp_path, worker)
    execution_id = controller.submit(_fast_track_task())
    stale = controller.load(execution_id)
    for attempt, status in ((1, StageStatus.FAILED), (2, StageStatus.FAILED), (3, None)):
        stale.records.append(
            StageRecord(
                id=f"{execution_id}:planning:{attempt}",
                stage=Stage.PLANNING,
                attempt=attempt,
                status=status or StageStatus.IN_PROGRESS,
            )
        )
    controller.context.state.put_execution(stale.to_dict())

    execution = asyncio.run(controller.run(execution_id))

    assert execution.status is ExecutionStatus.ESCALATED
    assert execution.reason.startswith("Retry budget exhausted for planning after 3 attempt(s)")
    assert len(execution.attempts_for(Stage.PLANNING)) == 3
    assert worker.orders == []


def test_unexpected_error_escalates_instead_of_leaving_run_open(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    controller = _build(tmp_path, ScriptedWorker())

    def fail_write(*args: Any, **kwargs: Any) -> Path:
        raise OSError("disk full")

    monkeypatch.setattr(controller.context.gates, "write_report", fail_write)

    execution = asyncio.run(controller.execute(_fast_track_task()))

    assert execution.status is ExecutionStatus.ESCALATED
    assert execution.reason.startswith("Run stopped unexpectedly: disk full")
    assert execution.in_progress() == []
    assert execution.attempts_for(Stage.PLANNING)[0].failure_reason == "stopped: disk full"
    assert controller.load(execution.id).status is ExecutionStatus.ESCALATED
    rerun = asyncio.run(controller.run(execution.id))
    assert len(rerun.records) == len(execution.records)


class SilentWorker(ScriptedWorker):
    """Returns no result for the first planning attempt."""

    async def run(self, order: WorkOrder) -> WorkerResult:
        result = await super().run(order)
        if order.stage == "planning" and order.attempt == 1:
            return None  # type: ignore[return-value]
        return result


def test_missing_worker_result_is_a_retriable_failure(tmp_path: Path) -> None:
    controller = _build(tmp_path, SilentWorker())

    execution = asyncio.run(controller.execute(_fast_track_task()))

    assert execution.status is ExecutionStatus.APPROVED
    assert _statuses(execution, Stage.PLANNING) == [StageStatus.FAILED, StageStatus.PASSED]
    first = execution.attempts_for(Stage.PLANNING)[0]
    assert first.failure_reason == "worker returned no result"
