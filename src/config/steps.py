# src/config/steps.py — v1
"""Static per-step table: names, judge types, retry regime, base prompts.

Prompt text here is a short functional brief per step; deployments that
need richer templates pass ``StepParams.prompt`` instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from stagegate.core.models import JudgeType, QualityPolicy, QualityTier

RetryRegime = Literal["none", "controller", "panorama_loop", "blocking"]

FORCED_QUALITY_TIER: QualityTier = "2K"
FORCED_QUALITY_MAX_STEP = 3


@dataclass(frozen=True)
class StepSpec:
    number: int
    name: str
    judge_type: JudgeType | None
    retry_regime: RetryRegime
    per_space: bool
    uses_camera_pose: bool
    base_prompt: str

    @property
    def single_output(self) -> bool:
        """The structural step always generates exactly one candidate."""
        return self.number == 1


STEPS: dict[int, StepSpec] = {
    0: StepSpec(
        number=0,
        name="space_analysis",
        judge_type=None,
        retry_regime="none",
        per_space=False,
        uses_camera_pose=False,
        base_prompt=(
            "Analyze this floor plan. List every distinct space (room, corridor, "
            "open area) with a short id, a human-readable name and its type."
        ),
    ),
    1: StepSpec(
        number=1,
        name="top_down_3d",
        judge_type="render",
        retry_regime="controller",
        per_space=False,
        uses_camera_pose=False,
        base_prompt=(
            "Convert this 2D floor plan into a photorealistic top-down 3D render. "
            "Keep every wall, opening and furniture item exactly where the plan "
            "places it."
        ),
    ),
    2: StepSpec(
        number=2,
        name="style",
        judge_type="render",
        retry_regime="controller",
        per_space=False,
        uses_camera_pose=False,
        base_prompt=(
            "Restyle this top-down 3D render with the requested interior design "
            "style. Change materials, colors and finishes only; keep the layout."
        ),
    ),
    3: StepSpec(
        number=3,
        name="camera_renders",
        judge_type="render",
        retry_regime="controller",
        per_space=False,
        uses_camera_pose=False,
        base_prompt=(
            "Render an eye-level interior view of this styled apartment from the "
            "requested camera angle, consistent with the top-down render."
        ),
    ),
    4: StepSpec(
        number=4,
        name="panorama",
        judge_type="panorama",
        retry_regime="panorama_loop",
        per_space=False,
        uses_camera_pose=True,
        base_prompt=(
            "Generate a seamless 360 degree equirectangular panorama of this "
            "interior, consistent with the reference render."
        ),
    ),
    5: StepSpec(
        number=5,
        name="renders",
        judge_type="render",
        retry_regime="blocking",
        per_space=True,
        uses_camera_pose=False,
        base_prompt=(
            "Render an eye-level interior view of the selected space, consistent "
            "with the approved style and layout."
        ),
    ),
    6: StepSpec(
        number=6,
        name="panoramas",
        judge_type="panorama",
        retry_regime="blocking",
        per_space=True,
        uses_camera_pose=True,
        base_prompt=(
            "Generate a seamless 360 degree equirectangular panorama of the "
            "selected space, consistent with its approved render."
        ),
    ),
    7: StepSpec(
        number=7,
        name="merging",
        judge_type="merge",
        retry_regime="blocking",
        per_space=True,
        uses_camera_pose=False,
        base_prompt=(
            "Merge the panorama with the reference render into one final 360 "
            "degree image. Keep geometry from the panorama and detail from the "
            "render."
        ),
    ),
}


def get_step(number: int) -> StepSpec:
    """Return the StepSpec of a step.

    Raises:
        KeyError: If the step number is outside 0-7.
    """
    return STEPS[number]


def effective_quality(step: int, policy: QualityPolicy) -> QualityPolicy:
    """Quality policy applied to generation at ``step``.

    Steps 0-3 always generate at 2K; later steps use the pipeline tier.
    """
    if step <= FORCED_QUALITY_MAX_STEP:
        return QualityPolicy(
            quality_tier=FORCED_QUALITY_TIER, aspect_ratio=policy.aspect_ratio
        )
    return policy
