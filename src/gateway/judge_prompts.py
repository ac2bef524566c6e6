# src/gateway/judge_prompts.py — v1
"""Prompt builders for the QA judge and the space analysis."""

from __future__ import annotations

from dataclasses import dataclass, field

from stagegate.core.models import JudgeType

_REASON_CODE_HELP = """\
GEOMETRY_DISTORTION   walls, corners or openings do not match the reference
WALL_RECTIFICATION    angled or curved walls were straightened
PERSPECTIVE_ERROR     wrong camera height, fisheye, impossible projection
SCALE_MISMATCH        furniture out of proportion with the room
BED_SIZE_MISMATCH     bed too large or too small for the room
FURNITURE_MISMATCH    furniture types or counts differ from the reference
FURNITURE_HALLUCINATION  furniture added that the reference does not contain
DUPLICATED_OBJECTS    the same object appears more than once
MISSING_FURNISHINGS   furniture present in the reference is missing
MISSING_SPACE         a room or area from the reference is missing
WRONG_ROOM_TYPE       a room rendered as a different room type
STYLE_INCONSISTENCY   materials or style differ from the approved style
COLOR_INCONSISTENCY   palette differs from the approved style
SEAM_ARTIFACTS        visible joins, ghosting or stretching
RESOLUTION_MISMATCH   wrong size or aspect ratio"""

_OUTPUT_FORMAT = """\
Respond with a single JSON object and nothing else:
{
  "decision": "approved" | "rejected",
  "score": <integer 0-100>,
  "reasons": [{"code": "<REASON_CODE>", "description": "<one concrete sentence>"}],
  "corrective_instruction": "<one specific fix for the next attempt, empty if approved>"
}
Every rejection needs at least one reason. Use only the reason codes listed."""

_FOCUS: dict[str, str] = {
    "render": (
        "You judge architectural renders. Compare the candidate (last image) "
        "with the reference image(s). Check structure (walls, doors, windows), "
        "room types, furniture types and counts, furniture scale, perspective "
        "and rendering artifacts. Ignore lighting mood and decorative taste."
    ),
    "panorama": (
        "You judge 360 degree equirectangular panoramas. Check that the left "
        "and right edges join seamlessly, the horizon is level, there are no "
        "duplicated objects or stretched regions, and the room matches the "
        "reference render."
    ),
    "merge": (
        "You judge a merged 360 degree panorama built from a panorama and a "
        "render. Check that geometry follows the panorama, detail follows "
        "the render, seams are invisible and nothing was duplicated."
    ),
}

SPACE_ANALYSIS_SYSTEM = (
    "You analyze architectural floor plans and list their spaces. "
    "Respond with JSON only."
)

SPACE_ANALYSIS_FORMAT = """\
Respond with a single JSON object:
{
  "rooms": [{"space_id": "<id>", "room_name": "<human readable name>", "detected_items": ["..."]}],
  "zones": [{"space_id": "<id>", "room_name": "<name>", "detected_items": ["..."]}],
  "overall_notes": "<short summary>"
}"""


@dataclass
class JudgeContext:
    """What the judge needs to know about the candidate under review."""

    step: int
    step_name: str
    generation_prompt: str = ""
    space_name: str | None = None
    camera_position: str | None = None
    forward_direction: str | None = None
    notes: list[str] = field(default_factory=list)


def build_judge_prompt(judge_type: JudgeType, context: JudgeContext) -> tuple[str, str]:
    """Return ``(system, user_text)`` for a judge call."""
    system = f"{_FOCUS[judge_type]}\n\nReason codes:\n{_REASON_CODE_HELP}\n\n{_OUTPUT_FORMAT}"

    lines = [f"Step {context.step} ({context.step_name})."]
    if context.space_name:
        lines.append(f"Space: {context.space_name}.")
    if context.camera_position:
        lines.append(f"Camera position: {context.camera_position}.")
    if context.forward_direction:
        lines.append(f"Camera facing: {context.forward_direction}.")
    if context.generation_prompt:
        lines.append(f"The candidate was generated with this instruction:\n{context.generation_prompt}")
    lines.extend(context.notes)
    lines.append("The last image is the candidate. All earlier images are references.")
    return system, "\n".join(lines)


def build_space_analysis_prompt(base_prompt: str) -> tuple[str, str]:
    return SPACE_ANALYSIS_SYSTEM, f"{base_prompt}\n\n{SPACE_ANALYSIS_FORMAT}"
