from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

WorkerKind = Literal["claude", "command"]
CheckpointBackendName = Literal["files", "git"]
TimeoutResolutionName = Literal["continue", "save_and_stop", "retry", "escalate"]
VerificationChoiceName = Literal["restore", "retry_execution", "proceed_with_warnings"]
RecoveryChoiceName = Literal["rollback", "keep", "partial_commit", "abandon"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    workspace: str = "."


@dataclass(slots=True)
class WorkerConfig:
    kind: WorkerKind = "claude"
    binary: str = "claude"
    command: str = ""
    model: str = ""


@dataclass(slots=True)
class PipelineConfig:
    quality_threshold: int = 80
    max_retries: int = 2
    repeat_output_limit: int = 2
    abort_poll_seconds: float = 0.5


@dataclass(slots=True)
class ComplexityConfig:
    fast_track_min: int = 1
    full_min: int = 5


@dataclass(slots=True)
class TimeoutsConfig:
    investigation: float = 1800.0
    planning: float = 1200.0
    execution: float = 2700.0
    verification: float = 900.0
    retrospective: float = 600.0
    documentation: float = 900.0
    extension_factor: float = 0.5
    auto_save_after: int = 2


@dataclass(slots=True)
class CheckpointsConfig:
    backend: CheckpointBackendName = "files"


@dataclass(slots=True)
class DecisionsConfig:
    on_timeout: TimeoutResolutionName = "retry"
    on_verification_failure: VerificationChoiceName = "retry_execution"
    confirm_warnings: bool = False
    on_emergency: RecoveryChoiceName = "rollback"
    retain_paths: list[str] = field(default_factory=list)


@dataclass(slots=True)
class StateConfig:
    directory: str = ".stagegate"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(slots=True)
class StagegateConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    complexity: ComplexityConfig = field(default_factory=ComplexityConfig)
    timeouts: TimeoutsConfig = field(default_factory=TimeoutsConfig)
    checkpoints: CheckpointsConfig = field(default_factory=CheckpointsConfig)
    decisions: DecisionsConfig = field(default_factory=DecisionsConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    SECTIONS = (
        "project",
        "worker",
        "pipeline",
        "complexity",
        "timeouts",
        "checkpoints",
        "decisions",
        "state",
        "logging",
    )

    @classmethod
    def default(cls) -> StagegateConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> StagegateConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            worker=WorkerConfig(**data.get("worker", {})),
            pipeline=PipelineConfig(**data.get("pipeline", {})),
            complexity=ComplexityConfig(**data.get("complexity", {})),
            timeouts=TimeoutsConfig(**data.get("timeouts", {})),
            checkpoints=CheckpointsConfig(**data.get("checkpoints", {})),
            decisions=DecisionsConfig(**data.get("decisions", {})),
            state=StateConfig(**data.get("state", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "workspace": self.project.workspace,
            },
            "worker": {
                "kind": self.worker.kind,
                "binary": self.worker.binary,
                "command": self.worker.command,
                "model": self.worker.model,
            },
            "pipeline": {
                "quality_threshold": self.pipeline.quality_threshold,
                "max_retries": self.pipeline.max_retries,
                "repeat_output_limit": self.pipeline.repeat_output_limit,
                "abort_poll_seconds": self.pipeline.abort_poll_seconds,
            },
            "complexity": {
                "fast_track_min": self.complexity.fast_track_min,
                "full_min": self.complexity.full_min,
            },
            "timeouts": {
                "investigation": self.timeouts.investigation,
                "planning": self.timeouts.planning,
                "execution": self.timeouts.execution,
                "verification": self.timeouts.verification,
                "retrospective": self.timeouts.retrospective,
                "documentation": self.timeouts.documentation,
                "extension_factor": self.timeouts.extension_factor,
                "auto_save_after": self.timeouts.auto_save_after,
            },
            "checkpoints": {
                "backend": self.checkpoints.backend,
            },
            "decisions": {
                "on_timeout": self.decisions.on_timeout,
                "on_verification_failure": self.decisions.on_verification_failure,
                "confirm_warnings": self.decisions.confirm_warnings,
                "on_emergency": self.decisions.on_emergency,
                "retain_paths": list(self.decisions.retain_paths),
            },
            "state": {
                "directory": self.state.directory,
            },
            "logging": {
                "level": self.logging.level,
            },
        }

    def stage_timeout(self, stage_name: str) -> float:
        return float(getattr(self.timeouts, stage_name))


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: StagegateConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in StagegateConfig.SECTIONS:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> StagegateConfig:
    if not path.exists():
        return StagegateConfig.default()
    return StagegateConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: StagegateConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
