# src/pipeline/candidates.py — v1
"""Per-candidate work items and results shared by the executor and panorama loop."""

from __future__ import annotations

from dataclasses import dataclass

from stagegate.core.models import (
    Artifact,
    AttemptRecord,
    CandidateSummary,
    JudgeOutcome,
    JudgeResultRecord,
    SpaceOutput,
)


@dataclass(frozen=True)
class CandidateTarget:
    """One candidate slot of a step invocation."""

    candidate_index: int
    input_artifact_id: str
    reference_artifact_ids: tuple[str, ...] = ()
    space_id: str | None = None
    space_name: str | None = None
    camera_position: str | None = None
    forward_direction: str | None = None
    camera_angle: str | None = None


@dataclass
class CandidateRun:
    """Result of one generate-and-judge cycle, not yet committed."""

    target: CandidateTarget
    attempt_index: int
    artifact: Artifact
    outcome: JudgeOutcome
    summary: CandidateSummary
    attempt: AttemptRecord
    judge_record: JudgeResultRecord
    space_output: SpaceOutput | None = None

    @property
    def approved(self) -> bool:
        return self.outcome.decision == "approved"
