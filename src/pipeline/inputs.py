# src/pipeline/inputs.py — v1
"""Input artifact resolution for a step.

Step 1 reads the source artifact. Later steps walk back from the previous
step to step 1 and take the first recorded output, which tolerates skipped
steps. The merge step takes the nearest panorama as its primary input and
the nearest render as a reference.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from stagegate.core.errors import ErrorCode, StepError
from stagegate.core.models import Pipeline, StepOutput

MERGE_STEP = 7
RENDER_STEP = 5


@dataclass
class ResolvedInput:
    artifact_id: str
    source_step: int
    reference_artifact_ids: list[str] = field(default_factory=list)


def _pick(output: StepOutput, space_id: str | None) -> str | None:
    """Artifact of ``output`` to use as input, preferring the given space."""
    if space_id is not None:
        matching = [c for c in output.candidates if c.space_id == space_id]
        for c in matching:
            if c.decision == "approved":
                return c.artifact_id
        if matching:
            return matching[0].artifact_id
    return output.primary_artifact_id


def walk_back(pipeline: Pipeline, start: int, space_id: str | None = None) -> tuple[int, str] | None:
    """First recorded output from ``start`` down to step 1, as (step, artifact_id)."""
    for prior in range(start, 0, -1):
        output = pipeline.output_for(prior)
        if output is None:
            continue
        artifact_id = _pick(output, space_id)
        if artifact_id:
            return prior, artifact_id
    return None


def resolve_input(pipeline: Pipeline, step: int, space_id: str | None = None) -> ResolvedInput:
    """Resolve the input artifact(s) of ``step``.

    Raises:
        StepError: INPUT_IMAGE_MISSING when no earlier output exists.
    """
    if step == 1:
        return ResolvedInput(artifact_id=pipeline.source_artifact_id, source_step=0)

    found = walk_back(pipeline, step - 1, space_id)
    if found is None:
        raise StepError(
            ErrorCode.INPUT_IMAGE_MISSING,
            f"no recorded output before step {step}",
            details={"step": step, "space_id": space_id},
        )
    source_step, artifact_id = found
    resolved = ResolvedInput(artifact_id=artifact_id, source_step=source_step)

    if step == MERGE_STEP:
        render = walk_back(pipeline, RENDER_STEP, space_id)
        if render is not None and render[1] != artifact_id:
            resolved.reference_artifact_ids.append(render[1])
    return resolved
