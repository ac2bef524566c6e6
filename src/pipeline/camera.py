# src/pipeline/camera.py — v1
"""Camera pose derivation for panorama steps.

When the caller gives no camera position or direction, the pose is derived
from the camera-angle label recorded on the nearest earlier step.
"""

from __future__ import annotations

from typing import NamedTuple

from stagegate.core.models import Pipeline


class CameraPose(NamedTuple):
    position: str
    forward: str


# Checked in order; the first keyword found in the label wins.
KEYWORD_POSES: tuple[tuple[tuple[str, ...], CameraPose], ...] = (
    (("living",), CameraPose("center of the living room at eye-level", "toward the main seating area")),
    (("kitchen",), CameraPose("center of the kitchen at eye-level", "toward the kitchen counter/island")),
    (("dining",), CameraPose("near the dining table at eye-level", "toward the main living space")),
    (("bedroom",), CameraPose("center of the bedroom at eye-level", "toward the bed and main area")),
    (("corridor", "hallway"), CameraPose("midpoint of the corridor at eye-level", "down the length of the corridor")),
    (("entrance",), CameraPose("near room entrance at eye-level", "straight into the main living space")),
)

UNMATCHED_POSE = CameraPose("center of the main room at eye-level", "toward the primary focal point")
DEFAULT_POSE = CameraPose(
    "center of the main living space at eye-level", "toward the main window or feature wall"
)


def pose_for_label(label: str | None) -> CameraPose:
    """Map a camera-angle label to a pose; no label gives the room-center default."""
    if not label:
        return DEFAULT_POSE
    text = label.lower()
    for keywords, pose in KEYWORD_POSES:
        if any(k in text for k in keywords):
            return pose
    return UNMATCHED_POSE


def nearest_camera_label(
    pipeline: Pipeline, step: int, space_id: str | None = None
) -> str | None:
    """Camera-angle label of the nearest step before ``step`` that recorded one."""
    for prior in range(step - 1, 0, -1):
        output = pipeline.output_for(prior)
        if output is None:
            continue
        if space_id is not None:
            for c in output.candidates:
                if c.space_id == space_id and c.camera_angle:
                    return c.camera_angle
        if output.camera_angle:
            return output.camera_angle
    return None


def derive_camera_pose(
    pipeline: Pipeline,
    step: int,
    position: str | None = None,
    forward: str | None = None,
    space_id: str | None = None,
) -> CameraPose:
    """Fill in whichever of ``position``/``forward`` the caller left empty."""
    if position and forward:
        return CameraPose(position, forward)
    derived = pose_for_label(nearest_camera_label(pipeline, step, space_id))
    return CameraPose(position or derived.position, forward or derived.forward)
