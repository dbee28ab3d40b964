"""Stage definitions and the depth -> stage-list routing table."""

from __future__ import annotations

from dataclasses import dataclass

from stagegate.models import Depth, Stage


@dataclass(slots=True, frozen=True)
class StageSpec:
    stage: Stage
    role: str
    instruction: str
    success_criteria: tuple[str, ...]
    gated: bool = True
    risk_bearing: bool = False


STAGE_SPECS: dict[Stage, StageSpec] = {
    Stage.INVESTIGATION: StageSpec(
        stage=Stage.INVESTIGATION,
        role="researcher",
        instruction=(
            "Investigate the codebase for this task. Locate the affected modules, "
            "existing patterns and risks. Do not modify any file."
        ),
        success_criteria=(
            "Every affected location is named with a path",
            "Existing patterns to follow are identified",
            "Risks and unknowns are listed",
        ),
    ),
    Stage.PLANNING: StageSpec(
        stage=Stage.PLANNING,
        role="planner",
        instruction=(
            "Produce an ordered implementation plan for this task with concrete steps, "
            "interfaces touched and a verification approach. Do not modify any file."
        ),
        success_criteria=(
            "Steps are numbered and actionable",
            "Each step names the files it touches",
            "A verification approach is included",
        ),
    ),
    Stage.EXECUTION: StageSpec(
        stage=Stage.EXECUTION,
        role="implementer",
        instruction=(
            "Implement the task in the workspace following the approved plan. "
            "Keep changes inside the stated scope."
        ),
        success_criteria=(
            "All planned changes are applied",
            "No file outside the scope is modified",
            "The workspace builds",
        ),
        risk_bearing=True,
    ),
    Stage.VERIFICATION: StageSpec(
        stage=Stage.VERIFICATION,
        role="validator",
        instruction=(
            "Verify the changes made for this task. Run the relevant checks and report "
            "evidence for each success criterion."
        ),
        success_criteria=(
            "Tests and checks were executed with evidence",
            "Every requirement is confirmed or reported as missing",
        ),
    ),
    Stage.RETROSPECTIVE: StageSpec(
        stage=Stage.RETROSPECTIVE,
        role="reviewer",
        instruction=(
            "Write a short retrospective of this pipeline run: what went well, what "
            "failed, and suggested process improvements."
        ),
        success_criteria=("Findings reference concrete stage outcomes",),
        gated=False,
    ),
    Stage.DOCUMENTATION: StageSpec(
        stage=Stage.DOCUMENTATION,
        role="documenter",
        instruction="Update user-facing documentation and the changelog for this task.",
        success_criteria=("Documentation reflects the delivered behaviour",),
        gated=False,
    ),
}

DEPTH_STAGES: dict[Depth, tuple[Stage, ...]] = {
    Depth.INSTANT: (Stage.EXECUTION,),
    Depth.FAST_TRACK: (
        Stage.PLANNING,
        Stage.EXECUTION,
        Stage.VERIFICATION,
        Stage.RETROSPECTIVE,
        Stage.DOCUMENTATION,
    ),
    Depth.FULL: (
        Stage.INVESTIGATION,
        Stage.PLANNING,
        Stage.EXECUTION,
        Stage.VERIFICATION,
        Stage.RETROSPECTIVE,
        Stage.DOCUMENTATION,
    ),
}


def stages_for(depth: Depth) -> list[Stage]:
    return list(DEPTH_STAGES[depth])


def spec_for(stage: Stage) -> StageSpec:
    return STAGE_SPECS[stage]


def is_gated(stage: Stage, depth: Depth) -> bool:
    # Instant runs are judged on the worker's own success flag.
    if depth is Depth.INSTANT:
        return False
    return STAGE_SPECS[stage].gated


def needs_checkpoint(stage: Stage, depth: Depth) -> bool:
    return depth is not Depth.INSTANT and STAGE_SPECS[stage].risk_bearing
