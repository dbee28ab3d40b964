from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from stagegate.models import GradeReport, Stage, Verdict

logger = logging.getLogger(__name__)

SCORE_PATTERN = re.compile(r"^\s*SCORE\s*[:=]\s*(-?\d{1,3})\b", re.IGNORECASE | re.MULTILINE)
RATIO_PATTERN = re.compile(r"\b(\d{1,3})\s*/\s*100\b")
SEVERITY_PATTERN = re.compile(
    r"^\s*[-*]?\s*(BLOCKER|MAJOR|MINOR|SUGGESTION)\b[:\s-]*(.*)$", re.IGNORECASE | re.MULTILINE
)


def _extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []
    for raw_line in raw_text.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    return payloads


def grade_path_for(artifact: Path) -> Path:
    return artifact.with_name(f"{artifact.stem}-grade.json")


class ArtifactGrader:
    """Reads the score a worker (or reviewer) embedded in a stage artifact."""

    def grade(self, text: str) -> tuple[int | None, list[str]]:
        findings = [
            f"{severity.upper()}: {detail.strip()}".rstrip(": ")
            for severity, detail in SEVERITY_PATTERN.findall(text)
        ]
        score: int | None = None
        for payload in _extract_json_objects(text):
            if "score" not in payload:
                continue
            try:
                score = int(float(payload["score"]))
            except (TypeError, ValueError):
                raise ValueError(f"score field is not numeric: {payload['score']!r}") from None
            raw_findings = payload.get("findings") or []
            if isinstance(raw_findings, list):
                findings.extend(str(item) for item in raw_findings)
        if score is None:
            markers = SCORE_PATTERN.findall(text)
            if markers:
                score = int(markers[-1])
        if score is None:
            ratios = RATIO_PATTERN.findall(text)
            if ratios:
                score = int(ratios[-1])
        return score, findings


class QualityGateEvaluator:
    def __init__(self, threshold: int = 80, grader: ArtifactGrader | None = None) -> None:
        self.threshold = threshold
        self.grader = grader or ArtifactGrader()

    def _malformed(self, stage: Stage, detail: str) -> GradeReport:
        logger.warning("gate for %s could not grade output: %s", stage.value, detail)
        return GradeReport(
            score=0, verdict=Verdict.FAIL, findings=(f"Malformed stage output: {detail}",)
        )

    def evaluate(self, stage: Stage, output: str | Path | None) -> GradeReport:
        if output is None:
            return self._malformed(stage, "worker returned no artifact reference")
        path = Path(output)
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            return self._malformed(stage, f"cannot read {path}: {exc}")
        if not text.strip():
            return self._malformed(stage, f"{path.name} is empty")
        try:
            score, findings = self.grader.grade(text)
        except ValueError as exc:
            return self._malformed(stage, str(exc))
        if score is None:
            return self._malformed(stage, "no score marker found")
        if not 0 <= score <= 100:
            return self._malformed(stage, f"score {score} outside 0-100")

        verdict = Verdict.PASS if score >= self.threshold else Verdict.FAIL
        if verdict is Verdict.FAIL:
            findings.insert(0, f"Score {score} is below the threshold of {self.threshold}.")
        return GradeReport(score=score, verdict=verdict, findings=tuple(findings))

    @staticmethod
    def write_report(report: GradeReport, artifact: Path, *, stage: Stage, attempt: int) -> Path:
        target = grade_path_for(artifact)
        target.parent.mkdir(parents=True, exist_ok=True)
        payload = {"stage": stage.value, "attempt": attempt, **report.to_dict()}
        target.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        return target
