from __future__ import annotations

import json
import logging
from collections import Counter
from pathlib import Path
from typing import Any

from stagegate.models import ExecutionStatus, PipelineExecution, StageRecord, StageStatus
from stagegate.state.store import StateStore

logger = logging.getLogger(__name__)

MAX_EVENTS = 200
GRADE_STEPS = (
    (97, "A+"),
    (93, "A"),
    (90, "A-"),
    (87, "B+"),
    (83, "B"),
    (80, "B-"),
    (77, "C+"),
    (73, "C"),
    (70, "C-"),
    (60, "D"),
)


def estimate_tokens(text: str) -> int:
    return len(text) // 4


def letter_grade(score: float | None) -> str:
    if score is None:
        return "-"
    for floor, grade in GRADE_STEPS:
        if score >= floor:
            return grade
    return "F"


def _stage_entry(name: str, records: list[StageRecord]) -> dict[str, Any]:
    if not records:
        return {
            "name": name,
            "attempts": 0,
            "finalScore": None,
            "verdict": None,
            "durationMs": 0,
            "timedOut": False,
            "estimatedTokens": 0,
            "issues": [],
        }
    final = records[-1]
    return {
        "name": name,
        "attempts": len(records),
        "finalScore": final.score,
        "verdict": final.verdict.value if final.verdict else final.status.value,
        "durationMs": sum(record.duration_ms for record in records),
        "timedOut": any(record.timed_out for record in records),
        "estimatedTokens": sum(record.estimated_tokens for record in records),
        "issues": [record.failure_reason for record in records if record.failure_reason],
    }


class MetricsRecorder:
    """Per-execution metric files plus rolling counters in the state store."""

    def __init__(self, state: StateStore, metrics_dir: Path) -> None:
        self.state = state
        self.metrics_dir = metrics_dir

    def record_event(self, event: dict[str, Any]) -> None:
        metrics = self.state.get_metrics()
        events = metrics.get("worker_events", [])
        if not isinstance(events, list):
            events = []
        events.append(event)
        metrics["worker_events"] = events[-MAX_EVENTS:]
        self.state.set_metrics(metrics)

    def record_stage(self, execution: PipelineExecution, record: StageRecord) -> None:
        metrics = self.state.get_metrics()
        counters = metrics.get("stage_outcomes", {})
        if not isinstance(counters, dict):
            counters = {}
        key = f"{record.stage.value}:{record.status.value}"
        counters[key] = int(counters.get(key, 0)) + 1
        metrics["stage_outcomes"] = counters
        self.state.set_metrics(metrics)
        logger.debug(
            "%s %s attempt %d -> %s in %dms",
            execution.id,
            record.stage.value,
            record.attempt,
            record.status.value,
            record.duration_ms,
        )

    def summarize(self, execution: PipelineExecution) -> dict[str, Any]:
        stages = [
            _stage_entry(stage.value, execution.attempts_for(stage)) for stage in execution.stages
        ]
        return {
            "executionId": execution.id,
            "task": execution.task.description,
            "depth": execution.depth.value,
            "complexity": execution.complexity.points,
            "stages": stages,
            "outcome": execution.status.value,
            "checkpointAction": execution.checkpoint_action,
            "reason": execution.reason,
            "startedAt": execution.created_at,
            "endedAt": execution.ended_at,
        }

    def persist(self, execution: PipelineExecution) -> Path:
        self.metrics_dir.mkdir(parents=True, exist_ok=True)
        target = self.metrics_dir / f"{execution.id}.json"
        target.write_text(
            json.dumps(self.summarize(execution), ensure_ascii=False, indent=2), encoding="utf-8"
        )
        logger.info("Metrics for %s written to %s", execution.id, target)
        return target


def load_execution_metrics(metrics_dir: Path) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []
    if not metrics_dir.exists():
        return payloads
    for path in sorted(metrics_dir.glob("*.json")):
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Skipping unreadable metrics file %s: %s", path, exc)
            continue
        if isinstance(payload, dict):
            payloads.append(payload)
    return payloads


def build_report(metrics_dir: Path) -> dict[str, Any]:
    """Aggregate every execution metrics file into summary statistics."""
    executions = load_execution_metrics(metrics_dir)
    total = len(executions)
    outcomes = Counter(str(item.get("outcome", "unknown")) for item in executions)
    depths = Counter(str(item.get("depth", "unknown")) for item in executions)

    per_stage: dict[str, list[dict[str, Any]]] = {}
    issues: Counter[tuple[str, str]] = Counter()
    for item in executions:
        for stage in item.get("stages") or []:
            if not isinstance(stage, dict) or not stage.get("attempts"):
                continue
            name = str(stage.get("name"))
            per_stage.setdefault(name, []).append(stage)
            for issue in stage.get("issues") or []:
                issues[(name, str(issue))] += 1

    stage_stats: dict[str, dict[str, Any]] = {}
    for name, entries in per_stage.items():
        scores = [entry["finalScore"] for entry in entries if entry.get("finalScore") is not None]
        average_score = sum(scores) / len(scores) if scores else None
        failures = [
            entry
            for entry in entries
            if entry.get("verdict") in ("fail", StageStatus.FAILED.value)
        ]
        stage_stats[name] = {
            "runs": len(entries),
            "avgDurationMs": round(
                sum(int(entry.get("durationMs", 0)) for entry in entries) / len(entries)
            ),
            "avgScore": round(average_score, 1) if average_score is not None else None,
            "grade": letter_grade(average_score),
            "failureRate": round(len(failures) * 100 / len(entries), 1),
            "avgAttempts": round(
                sum(int(entry["attempts"]) for entry in entries) / len(entries), 2
            ),
        }

    recent = sorted(executions, key=lambda item: str(item.get("startedAt", "")), reverse=True)
    approved = outcomes.get(ExecutionStatus.APPROVED.value, 0)
    return {
        "total": total,
        "successRate": round(approved * 100 / total, 1) if total else 0.0,
        "outcomes": dict(outcomes),
        "depths": dict(depths),
        "stages": stage_stats,
        "commonIssues": [
            {"stage": stage, "description": description, "count": count}
            for (stage, description), count in issues.most_common(5)
        ],
        "recent": [
            {
                "executionId": item.get("executionId"),
                "task": str(item.get("task", ""))[:40],
                "depth": item.get("depth"),
                "outcome": item.get("outcome"),
            }
            for item in recent[:10]
        ],
    }
