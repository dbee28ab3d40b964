from __future__ import annotations

import re

from stagegate.config import ComplexityConfig
from stagegate.models import ComplexityScore, Depth, RubricInputs, Task

KNOWLEDGE_GAP_PATTERN = re.compile(
    r"\b(unfamiliar|unknown|investigate|figure out|new subsystem|legacy)\b", re.IGNORECASE
)
RISK_PATTERN = re.compile(
    r"\b(breaking|migration|migrate|security|auth|schema|delete|production)\b", re.IGNORECASE
)
NOVELTY_PATTERN = re.compile(
    r"\b(cross-cutting|across all|every module|new dependency|framework|architecture)\b",
    re.IGNORECASE,
)


def _clamp(value: int) -> int:
    return min(2, max(0, int(value)))


def scope_points(files_in_scope: int) -> int:
    if files_in_scope <= 1:
        return 0
    if files_in_scope <= 3:
        return 1
    return 2


def infer_rubric(task: Task) -> RubricInputs:
    """Derive rubric inputs from the task text when the caller supplied none."""
    description = task.description
    knowledge_hits = len(KNOWLEDGE_GAP_PATTERN.findall(description))
    risk_hits = len(RISK_PATTERN.findall(description))
    novelty_hits = len(NOVELTY_PATTERN.findall(description))
    return RubricInputs(
        files_in_scope=max(1, len(task.scope)),
        knowledge_gap=_clamp(knowledge_hits),
        risk=_clamp(risk_hits),
        dependency_novelty=_clamp(novelty_hits),
    )


class ComplexityAssessor:
    def __init__(self, config: ComplexityConfig | None = None) -> None:
        self.config = config or ComplexityConfig()

    def depth_for(self, points: int) -> Depth:
        if points >= self.config.full_min:
            return Depth.FULL
        if points >= self.config.fast_track_min:
            return Depth.FAST_TRACK
        return Depth.INSTANT

    def assess(self, task: Task) -> ComplexityScore:
        rubric = task.rubric or infer_rubric(task)
        breakdown = {
            "scope": scope_points(rubric.files_in_scope),
            "knowledge_gap": _clamp(rubric.knowledge_gap),
            "risk": _clamp(rubric.risk),
            "dependency_novelty": _clamp(rubric.dependency_novelty),
        }
        points = sum(breakdown.values())
        if task.explicit_instructions:
            return ComplexityScore(
                points=points, depth=Depth.INSTANT, breakdown=breakdown, forced=True
            )
        return ComplexityScore(points=points, depth=self.depth_for(points), breakdown=breakdown)
