from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path

import click

from stagegate.config import StagegateConfig, load_config, save_config
from stagegate.controller import PipelineContext, PipelineController
from stagegate.decisions import InteractiveDecider
from stagegate.errors import StagegateError
from stagegate.metrics import build_report
from stagegate.models import RubricInputs, Stage, Task
from stagegate.state.checkpoints import changes_payload
from stagegate.workers import ClaudeWorker, CommandWorker, Worker, WorkerError

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class Runtime:
    workspace: Path
    config_path: Path
    config: StagegateConfig
    context: PipelineContext
    controller: PipelineController


def _resolve_config_path(workspace: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = workspace / config_path
    return config_path.resolve()


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def build_worker(config: StagegateConfig, workspace: Path) -> Worker:
    if config.worker.kind == "command":
        return CommandWorker(config.worker.command, working_directory=workspace)
    return ClaudeWorker(
        config.worker.binary, working_directory=workspace, model=config.worker.model
    )


def _load_runtime(config_value: str, *, interactive: bool = False) -> Runtime:
    cwd = Path.cwd().resolve()
    config_path = _resolve_config_path(cwd, config_value)
    config = load_config(config_path)
    ctx = click.get_current_context()
    _configure_logging((ctx.find_root().obj or {}).get("log_level") or config.logging.level)

    workspace = Path(config.project.workspace)
    if not workspace.is_absolute():
        workspace = config_path.parent / workspace
    try:
        context = PipelineContext.build(
            config,
            workspace,
            build_worker(config, workspace.resolve()),
            decider=InteractiveDecider() if interactive else None,
        )
    except (StagegateError, WorkerError) as exc:
        raise click.ClickException(str(exc)) from exc
    return Runtime(
        workspace=context.workspace,
        config_path=config_path,
        config=config,
        context=context,
        controller=PipelineController(context),
    )


def _echo_json(payload: object) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Overrides [logging] level from the config file.",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """Stagegate: staged task pipelines with quality gates and checkpoints."""
    ctx.obj = {"log_level": log_level}


@cli.command("init")
@click.option("--worker", type=click.Choice(["claude", "command"]), default=None)
@click.option("--command", "worker_command", default=None, help="Command for the command worker.")
@click.option("--checkpoint-backend", type=click.Choice(["files", "git"]), default=None)
@click.option("--config", "config_value", default="stagegate.toml", show_default=True)
def init_command(
    worker: str | None,
    worker_command: str | None,
    checkpoint_backend: str | None,
    config_value: str,
) -> None:
    workspace = Path.cwd().resolve()
    config_path = _resolve_config_path(workspace, config_value)
    config = load_config(config_path)
    if worker:
        config.worker.kind = worker  # type: ignore[assignment]
    if worker_command:
        config.worker.command = worker_command
    if checkpoint_backend:
        config.checkpoints.backend = checkpoint_backend  # type: ignore[assignment]
    config.project.name = config.project.name if config_path.exists() else workspace.name
    save_config(config_path, config)
    (workspace / config.state.directory).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized stagegate in {workspace}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Worker: {config.worker.kind}")
    click.echo(f"Checkpoint backend: {config.checkpoints.backend}")


@cli.command("run")
@click.argument("description")
@click.option("--scope", "scope", multiple=True, help="File or directory in scope; repeatable.")
@click.option("--explicit", is_flag=True, default=False, help="Complete instructions; run now.")
@click.option("--knowledge-gap", type=click.IntRange(0, 2), default=None)
@click.option("--risk", type=click.IntRange(0, 2), default=None)
@click.option("--novelty", type=click.IntRange(0, 2), default=None)
@click.option("--interactive", is_flag=True, default=False, help="Prompt at decision points.")
@click.option("--config", "config_value", default="stagegate.toml", show_default=True)
def run_command(
    description: str,
    scope: tuple[str, ...],
    explicit: bool,
    knowledge_gap: int | None,
    risk: int | None,
    novelty: int | None,
    interactive: bool,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value, interactive=interactive)
    rubric = None
    if any(value is not None for value in (knowledge_gap, risk, novelty)):
        rubric = RubricInputs(
            files_in_scope=max(1, len(scope)),
            knowledge_gap=knowledge_gap or 0,
            risk=risk or 0,
            dependency_novelty=novelty or 0,
        )
    task = Task(
        description=description, scope=scope, explicit_instructions=explicit, rubric=rubric
    )
    try:
        execution = asyncio.run(runtime.controller.execute(task))
    except StagegateError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Execution: {execution.id}")
    click.echo(f"Depth: {execution.depth.value} ({execution.complexity.points} points)")
    click.echo(f"Status: {execution.status.value}")
    click.echo(f"Reason: {execution.reason}")
    if execution.warnings:
        click.echo(f"Warnings: {len(execution.warnings)}")
    if execution.incident_id:
        click.echo(f"Incident: {execution.incident_id}")


@cli.command("status")
@click.argument("execution_id", required=False)
@click.option("--config", "config_value", default="stagegate.toml", show_default=True)
def status_command(execution_id: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    if execution_id is None:
        executions = runtime.controller.list_executions()
        if not executions:
            click.echo("No executions found.")
            return
        for item in executions:
            click.echo(f"{item['id']} {item['status']:<9} {item['depth']:<10} {item['task'][:60]}")
        return
    try:
        _echo_json(runtime.controller.status(execution_id))
    except StagegateError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("checkpoints")
@click.option("--execution", "execution_id", default=None)
@click.option("--config", "config_value", default="stagegate.toml", show_default=True)
def checkpoints_command(execution_id: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    checkpoints = runtime.context.checkpoints.list_checkpoints(execution_id)
    if not checkpoints:
        click.echo("No checkpoints found.")
        return
    for checkpoint in checkpoints:
        click.echo(
            f"{checkpoint.id} {checkpoint.status:<9} {checkpoint.execution_id} {checkpoint.label}"
        )


@cli.command("preview")
@click.argument("checkpoint_id")
@click.option("--config", "config_value", default="stagegate.toml", show_default=True)
def preview_command(checkpoint_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        changes = runtime.context.checkpoints.preview(checkpoint_id)
    except StagegateError as exc:
        raise click.ClickException(str(exc)) from exc
    if not changes:
        click.echo("No changes since checkpoint.")
        return
    _echo_json(changes_payload(changes))


@cli.command("restore")
@click.argument("checkpoint_id")
@click.option("--keep", "keep_paths", multiple=True, help="Path or glob to keep as-is.")
@click.option("--config", "config_value", default="stagegate.toml", show_default=True)
def restore_command(checkpoint_id: str, keep_paths: tuple[str, ...], config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        changes = runtime.context.checkpoints.restore(checkpoint_id, keep_paths=keep_paths)
    except StagegateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Restored {checkpoint_id}: {len(changes)} path(s) reverted.")


@cli.command("discard")
@click.argument("checkpoint_id")
@click.option("--config", "config_value", default="stagegate.toml", show_default=True)
def discard_command(checkpoint_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        runtime.context.checkpoints.discard(checkpoint_id)
    except StagegateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Discarded {checkpoint_id}")


@cli.command("abort")
@click.argument("execution_id")
@click.option("--reason", default="external abort requested", show_default=True)
@click.option("--config", "config_value", default="stagegate.toml", show_default=True)
def abort_command(execution_id: str, reason: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        execution = runtime.controller.load(execution_id)
    except StagegateError as exc:
        raise click.ClickException(str(exc)) from exc
    if execution.status.is_terminal:
        raise click.ClickException(
            f"Execution {execution_id} already finished as {execution.status.value}."
        )
    runtime.controller.request_abort(execution_id, reason)
    click.echo(f"Abort requested for {execution_id}")


@cli.command("report")
@click.option("--config", "config_value", default="stagegate.toml", show_default=True)
def report_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    report = build_report(runtime.context.metrics.metrics_dir)
    if not report["total"]:
        click.echo("No execution metrics found.")
        return
    _echo_json(report)


@cli.command("artifacts")
@click.argument("execution_id")
@click.option("--stage", type=click.Choice([stage.value for stage in Stage]), default=None)
@click.option("--config", "config_value", default="stagegate.toml", show_default=True)
def artifacts_command(execution_id: str, stage: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        items = runtime.controller.artifacts(execution_id, Stage(stage) if stage else None)
    except StagegateError as exc:
        raise click.ClickException(str(exc)) from exc
    if not items:
        click.echo("No artifacts recorded.")
        return
    for item in items:
        label = f"{item['stage']}#{item['attempt']}" if item["stage"] else "run"
        click.echo(f"{label:<18} {item['type']:<9} {item['path']}")
