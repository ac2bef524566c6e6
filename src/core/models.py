# src/core/models.py — v1
"""Shared Pydantic domain models used across modules.

Every other module imports its domain types from here.
Covers the Pipeline aggregate, per-step outputs and retry state, judge
verdicts, the append-only audit records, and step invocation results.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stagegate.core import phases

Decision = Literal["approved", "rejected"]
StepDecision = Literal["approved", "rejected", "partial_success"]
RetryStatus = Literal["pending", "qa_fail", "qa_pass", "blocked_for_human"]
JudgeType = Literal["render", "panorama", "merge"]
QualityTier = Literal["1K", "2K", "4K"]
AspectRatio = Literal["1:1", "4:3", "16:9", "2:1"]
ConstraintCategory = Literal["geometry", "scale", "bed_size", "furniture"]

ReasonCode = Literal[
    "GEOMETRY_DISTORTION",
    "WALL_RECTIFICATION",
    "PERSPECTIVE_ERROR",
    "SCALE_MISMATCH",
    "BED_SIZE_MISMATCH",
    "FURNITURE_MISMATCH",
    "FURNITURE_HALLUCINATION",
    "DUPLICATED_OBJECTS",
    "MISSING_FURNISHINGS",
    "MISSING_SPACE",
    "WRONG_ROOM_TYPE",
    "STYLE_INCONSISTENCY",
    "COLOR_INCONSISTENCY",
    "RESOLUTION_MISMATCH",
    "SEAM_ARTIFACTS",
    "TIMEOUT",
    "API_ERROR",
    "SCHEMA_INVALID",
    "UNKNOWN",
]

_REASON_CODES: frozenset[str] = frozenset(ReasonCode.__args__)  # type: ignore[attr-defined]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def step_key(step: int) -> str:
    """Key used for a step in ``step_outputs`` / ``step_retry_state``."""
    return f"step{step}"


def step_from_key(key: str) -> int | None:
    """Inverse of :func:`step_key`; None for keys that are not step keys."""
    if not key.startswith("step"):
        return None
    suffix = key[len("step"):]
    return int(suffix) if suffix.isdigit() else None


# === JUDGE MODELS ===


class JudgeReason(BaseModel):
    """One categorized rejection (or note) emitted by the judge."""

    code: ReasonCode = "UNKNOWN"
    description: str = ""

    @field_validator("code", mode="before")
    @classmethod
    def coerce_unknown_code(cls, v: Any) -> str:  # noqa: N805
        code = str(v or "").strip().upper()
        return code if code in _REASON_CODES else "UNKNOWN"


class JudgeVerdict(BaseModel):
    """Structured verdict returned by the QA judge."""

    decision: Decision
    score: int = Field(ge=0, le=100)
    reasons: list[JudgeReason] = Field(default_factory=list)
    corrective_instruction: str = ""

    @property
    def reason_text(self) -> str:
        return "; ".join(r.description for r in self.reasons if r.description)

    @property
    def reason_codes(self) -> list[str]:
        return [r.code for r in self.reasons]


class JudgeOutcome(BaseModel):
    """Result of one judge call.

    ``verdict`` is None when the judge never produced a usable verdict
    (timeout, API error, unparseable output). That case is distinct from a
    negative verdict but is always treated as a rejection.
    """

    verdict: JudgeVerdict | None = None
    qa_executed: bool = False
    failure_code: str | None = None
    failure_message: str = ""
    raw_output: str | None = None
    retryable: bool = False
    model: str = ""
    latency_ms: int = 0

    @property
    def decision(self) -> Decision:
        if self.qa_executed and self.verdict is not None:
            return self.verdict.decision
        return "rejected"

    @property
    def score(self) -> int:
        if self.qa_executed and self.verdict is not None:
            return self.verdict.score
        return 0

    @property
    def reasons(self) -> list[JudgeReason]:
        if self.verdict is not None:
            return list(self.verdict.reasons)
        code = {"TIMEOUT": "TIMEOUT", "AI_API_ERROR": "API_ERROR"}.get(
            self.failure_code or "", "SCHEMA_INVALID"
        )
        return [JudgeReason(code=code, description=self.failure_message)]

    @property
    def reason_text(self) -> str:
        if self.verdict is not None:
            return self.verdict.reason_text
        return self.failure_message


# === PIPELINE AGGREGATE ===


class QualityPolicy(BaseModel):
    """Resolution tier and aspect ratio applied to generated images."""

    quality_tier: QualityTier = "2K"
    aspect_ratio: AspectRatio = "16:9"


class CandidateSummary(BaseModel):
    """Current summary of one generated candidate for a step."""

    artifact_id: str
    decision: Decision
    reason: str = ""
    reason_codes: list[str] = Field(default_factory=list)
    score: int = 0
    qa_executed: bool = False
    prompt: str = ""
    camera_angle: str | None = None
    space_id: str | None = None


class StepOutput(BaseModel):
    """Latest output of a step: one or more candidate summaries."""

    step: int
    candidates: list[CandidateSummary] = Field(default_factory=list)
    decision: StepDecision = "rejected"
    manual_approved: bool = False
    selected_artifact_id: str | None = None
    camera_position: str | None = None
    forward_direction: str | None = None
    approved_at: datetime | None = None
    notes: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def artifact_ids(self) -> list[str]:
        return [c.artifact_id for c in self.candidates]

    @property
    def primary_artifact_id(self) -> str | None:
        """Selected artifact, else first approved candidate, else first candidate."""
        if self.selected_artifact_id:
            return self.selected_artifact_id
        for c in self.candidates:
            if c.decision == "approved":
                return c.artifact_id
        return self.candidates[0].artifact_id if self.candidates else None

    @property
    def camera_angle(self) -> str | None:
        for c in self.candidates:
            if c.camera_angle:
                return c.camera_angle
        return None


class RetryDelta(BaseModel):
    """Prompt and parameter adjustments applied to the next attempt."""

    categories: list[ConstraintCategory] = Field(default_factory=list)
    prompt_adjustments: list[str] = Field(default_factory=list)
    changes_made: list[str] = Field(default_factory=list)
    seed: int = 0
    temperature: float = 0.7


class RetryAttemptSummary(BaseModel):
    """One entry of the ordered attempt history kept in the retry state."""

    attempt_number: int
    artifact_ids: list[str] = Field(default_factory=list)
    decision: StepDecision
    reason: str = ""
    reason_codes: list[str] = Field(default_factory=list)
    retry_delta: RetryDelta | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class StepRetryState(BaseModel):
    """QA retry bookkeeping for one step."""

    attempt_count: int = 0
    max_attempts: int = 5
    status: RetryStatus = "pending"
    last_judge_result: JudgeVerdict | None = None
    last_retry_delta: RetryDelta | None = None
    attempts: list[RetryAttemptSummary] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def artifact_ids(self) -> list[str]:
        return [aid for a in self.attempts for aid in a.artifact_ids]


class SpaceInfo(BaseModel):
    """A space (room) detected by the step 0 analysis."""

    id: str
    name: str
    type: str = "room"


class SpaceAnalysis(BaseModel):
    """Output of the single-attempt step 0 analysis."""

    spaces: list[SpaceInfo] = Field(default_factory=list)
    summary: str = ""
    model: str = ""
    analyzed_at: datetime = Field(default_factory=utc_now)


class Pipeline(BaseModel):
    """Root aggregate for one pipeline instance.

    ``phase`` and ``current_step`` must always agree with the phase table;
    construction fails with PhaseInvariantError otherwise. Mutations go
    through copies that the store re-validates on every write.
    """

    id: str = Field(default_factory=new_id)
    owner: str
    source_artifact_id: str
    current_step: int = Field(default=0, ge=0, le=7)
    phase: str = "upload"
    mode: Literal["linear", "multi_space"] = "linear"
    quality: QualityPolicy = Field(default_factory=QualityPolicy)
    auto_retry_enabled: bool = True
    step_outputs: dict[str, StepOutput] = Field(default_factory=dict)
    step_retry_state: dict[str, StepRetryState] = Field(default_factory=dict)
    space_analysis: SpaceAnalysis | None = None
    total_retry_count: int = 0
    reset_counter: int = 0
    last_error: str | None = None
    version: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def check_phase_step(self) -> Pipeline:
        phases.ensure_consistent(self.phase, self.current_step)
        return self

    @property
    def position(self) -> phases.PhasePosition:
        return phases.position_of(self.phase)

    def output_for(self, step: int) -> StepOutput | None:
        return self.step_outputs.get(step_key(step))

    def retry_state_for(self, step: int) -> StepRetryState | None:
        return self.step_retry_state.get(step_key(step))

    def move_to(self, phase: str) -> None:
        """Set phase and the matching step together."""
        self.current_step = phases.step_of(phase)
        self.phase = phase


# === AUDIT RECORDS ===


class AttemptRecord(BaseModel):
    """Immutable record of one generate-and-judge cycle for one candidate."""

    model_config = ConfigDict(frozen=True)

    pipeline_id: str
    step: int
    attempt_index: int
    candidate_index: int
    artifact_id: str
    prompt: str
    model: str
    decision: Decision
    score: int = 0
    reasons: list[JudgeReason] = Field(default_factory=list)
    qa_executed: bool = False
    created_at: datetime = Field(default_factory=utc_now)


class JudgeResultRecord(BaseModel):
    """Judge-result log row, one per judged candidate."""

    id: str = Field(default_factory=new_id)
    pipeline_id: str
    step: int
    attempt_index: int
    candidate_index: int
    artifact_id: str
    judge_type: JudgeType
    decision: Decision
    score: int = 0
    reasons: list[JudgeReason] = Field(default_factory=list)
    qa_executed: bool = False
    model: str = ""
    raw_output: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class PipelineEvent(BaseModel):
    """Event-log entry."""

    id: str = Field(default_factory=new_id)
    pipeline_id: str
    owner: str
    step: int
    type: str
    message: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class Notification(BaseModel):
    """Human-facing notification raised when a step needs manual review."""

    id: str = Field(default_factory=new_id)
    owner: str
    pipeline_id: str
    step: int
    type: str
    title: str
    message: str = ""
    created_at: datetime = Field(default_factory=utc_now)


class Artifact(BaseModel):
    """Registry row for a stored binary object."""

    id: str = Field(default_factory=new_id)
    pipeline_id: str
    owner: str
    path: str
    mime_type: str = "image/png"
    step: int = 0
    created_at: datetime = Field(default_factory=utc_now)


class SpaceOutput(BaseModel):
    """Per-space derived record written by the batch steps (5-7)."""

    id: str = Field(default_factory=new_id)
    pipeline_id: str
    step: int
    space_id: str
    kind: Literal["render", "panorama", "merge"]
    artifact_id: str
    decision: Decision
    created_at: datetime = Field(default_factory=utc_now)


RetryTaskStatus = Literal["pending", "running", "done", "failed", "discarded"]


class RetryTask(BaseModel):
    """Queued auto-retry continuation, fenced by the observed reset counter."""

    id: str = Field(default_factory=new_id)
    pipeline_id: str
    owner: str
    step: int
    attempt: int
    reset_counter: int
    retry_delta: RetryDelta
    output_count: int = 1
    status: RetryTaskStatus = "pending"
    note: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


# === STEP INVOCATION ===


class StepParams(BaseModel):
    """Caller-supplied parameters for one step invocation."""

    output_count: int = 1
    prompt: str | None = None
    camera_position: str | None = None
    forward_direction: str | None = None
    camera_angle: str | None = None
    space_id: str | None = None
    reference_artifact_ids: list[str] = Field(default_factory=list)
    retry_delta: RetryDelta | None = None
    retry_task_id: str | None = None


class Completed(BaseModel):
    kind: Literal["completed"] = "completed"
    step: int
    decision: StepDecision
    outputs: list[CandidateSummary]
    phase: str


class AutoRetryTriggered(BaseModel):
    kind: Literal["auto_retry_triggered"] = "auto_retry_triggered"
    step: int
    attempt: int
    max_attempts: int
    task_id: str
    reason: str = ""


class BlockedForHuman(BaseModel):
    kind: Literal["blocked_for_human"] = "blocked_for_human"
    step: int
    attempt_count: int
    verdict: JudgeVerdict | None = None
    reason: str = ""


class ErrorResult(BaseModel):
    kind: Literal["error"] = "error"
    code: str
    message: str
    retryable: bool = False
    details: dict[str, Any] = Field(default_factory=dict)


StepResult = Annotated[
    Union[Completed, AutoRetryTriggered, BlockedForHuman, ErrorResult],
    Field(discriminator="kind"),
]


class RollbackResult(BaseModel):
    """Outcome of a one-step rollback."""

    from_step: int
    to_step: int
    target_phase: str
    deleted_artifact_count: int
    reset_counter: int
