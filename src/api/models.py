# src/api/models.py — v1
"""API-level models: pipeline creation input and status views."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field

from stagegate.core.models import AspectRatio, Pipeline, QualityTier, StepDecision


class SourceImage(BaseModel):
    """Source floor plan for a new pipeline."""

    content: bytes | Path
    filename: str = "source.png"
    mime_type: str = "image/png"

    def read_bytes(self) -> bytes:
        if isinstance(self.content, Path):
            return self.content.read_bytes()
        return self.content


class CreatePipelineRequest(BaseModel):
    owner: str
    source: SourceImage
    quality_tier: QualityTier | None = None
    aspect_ratio: AspectRatio | None = None
    auto_retry_enabled: bool | None = None


class StepStatus(BaseModel):
    """Per-step summary for status views."""

    step: int
    decision: StepDecision | None = None
    manual_approved: bool = False
    candidate_count: int = 0
    selected_artifact_id: str | None = None
    attempt_count: int = 0
    retry_status: str | None = None


class PipelineStatus(BaseModel):
    """Compact view of a pipeline returned by ``get_status``."""

    id: str
    owner: str
    phase: str
    current_step: int
    mode: str
    last_error: str | None = None
    total_retry_count: int = 0
    reset_counter: int = 0
    version: int = 0
    space_ids: list[str] = Field(default_factory=list)
    steps: list[StepStatus] = Field(default_factory=list)

    @classmethod
    def from_pipeline(cls, pipeline: Pipeline) -> PipelineStatus:
        steps: list[StepStatus] = []
        for step in range(1, 8):
            output = pipeline.output_for(step)
            state = pipeline.retry_state_for(step)
            if output is None and state is None:
                continue
            steps.append(
                StepStatus(
                    step=step,
                    decision=output.decision if output else None,
                    manual_approved=output.manual_approved if output else False,
                    candidate_count=len(output.candidates) if output else 0,
                    selected_artifact_id=output.selected_artifact_id if output else None,
                    attempt_count=state.attempt_count if state else 0,
                    retry_status=state.status if state else None,
                )
            )
        return cls(
            id=pipeline.id,
            owner=pipeline.owner,
            phase=pipeline.phase,
            current_step=pipeline.current_step,
            mode=pipeline.mode,
            last_error=pipeline.last_error,
            total_retry_count=pipeline.total_retry_count,
            reset_counter=pipeline.reset_counter,
            version=pipeline.version,
            space_ids=[s.id for s in pipeline.space_analysis.spaces] if pipeline.space_analysis else [],
            steps=steps,
        )
