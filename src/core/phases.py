# src/core/phases.py — v1
"""Phase table: every phase token maps to exactly one (step, subphase).

This module is the guard surface used by the models, the executor and the
store. The SQLite store mirrors ``PHASE_TABLE`` into a table and a trigger
so inconsistent rows are rejected by the database itself.
"""

from __future__ import annotations

from enum import Enum
from typing import NamedTuple

from stagegate.core.errors import PhaseInvariantError


class Subphase(str, Enum):
    UPLOAD = "upload"
    PENDING = "pending"
    RUNNING = "running"
    REVIEW = "review"
    APPROVED = "approved"
    BLOCKED = "blocked"
    FAILED = "failed"


class PhasePosition(NamedTuple):
    """Structural position of a pipeline: a step and its subphase."""

    step: int
    subphase: Subphase


def _standard(prefix: str, step: int) -> dict[str, PhasePosition]:
    return {
        f"{prefix}_pending": PhasePosition(step, Subphase.PENDING),
        f"{prefix}_running": PhasePosition(step, Subphase.RUNNING),
        f"{prefix}_review": PhasePosition(step, Subphase.REVIEW),
        f"{prefix}_approved": PhasePosition(step, Subphase.APPROVED),
        f"{prefix}_blocked": PhasePosition(step, Subphase.BLOCKED),
    }


def _batch(prefix: str, step: int, approved: str | None = None) -> dict[str, PhasePosition]:
    return {
        f"{prefix}_pending": PhasePosition(step, Subphase.PENDING),
        f"{prefix}_in_progress": PhasePosition(step, Subphase.RUNNING),
        f"{prefix}_review": PhasePosition(step, Subphase.REVIEW),
        approved or f"{prefix}_approved": PhasePosition(step, Subphase.APPROVED),
        f"{prefix}_blocked": PhasePosition(step, Subphase.BLOCKED),
    }


PHASE_TABLE: dict[str, PhasePosition] = {
    "upload": PhasePosition(0, Subphase.UPLOAD),
    "space_analysis_pending": PhasePosition(0, Subphase.PENDING),
    "space_analysis_running": PhasePosition(0, Subphase.RUNNING),
    "space_analysis_complete": PhasePosition(0, Subphase.APPROVED),
    "space_analysis_failed": PhasePosition(0, Subphase.FAILED),
    **_standard("top_down_3d", 1),
    **_standard("style", 2),
    **_standard("camera_renders", 3),
    **_standard("panorama", 4),
    **_batch("renders", 5),
    **_batch("panoramas", 6),
    **_batch("merging", 7, approved="completed"),
}

_BY_POSITION: dict[PhasePosition, str] = {pos: token for token, pos in PHASE_TABLE.items()}

TERMINAL_PHASE = "completed"


def position_of(phase: str) -> PhasePosition:
    """Return the position of a phase token.

    Raises:
        PhaseInvariantError: If the token is not in the table.
    """
    try:
        return PHASE_TABLE[phase]
    except KeyError:
        raise PhaseInvariantError(phase, -1, f"unknown phase token {phase!r}") from None


def step_of(phase: str) -> int:
    return position_of(phase).step


def phase_for(step: int, subphase: Subphase) -> str:
    """Return the token for (step, subphase).

    Raises:
        PhaseInvariantError: If the pair has no token.
    """
    token = _BY_POSITION.get(PhasePosition(step, subphase))
    if token is None:
        raise PhaseInvariantError(
            subphase.value, step, f"step {step} has no {subphase.value} phase"
        )
    return token


def validate(phase: str, step: int) -> bool:
    """True iff ``phase`` is a known token whose step equals ``step``."""
    pos = PHASE_TABLE.get(phase)
    return pos is not None and pos.step == step


def ensure_consistent(phase: str, step: int) -> None:
    """Raise PhaseInvariantError unless ``validate(phase, step)``."""
    if not validate(phase, step):
        raise PhaseInvariantError(phase, step)


def pending_phase(step: int) -> str:
    """Canonical resting phase of a step (step 0 rests at ``space_analysis_pending``)."""
    return phase_for(step, Subphase.PENDING)


def running_phase(step: int) -> str:
    return phase_for(step, Subphase.RUNNING)


def review_phase(step: int) -> str:
    return phase_for(step, Subphase.REVIEW)


def approved_phase(step: int) -> str:
    return phase_for(step, Subphase.APPROVED)


def blocked_phase(step: int) -> str:
    return phase_for(step, Subphase.BLOCKED)


def is_subphase(phase: str, subphase: Subphase) -> bool:
    pos = PHASE_TABLE.get(phase)
    return pos is not None and pos.subphase is subphase


def run_start_phases(step: int) -> frozenset[str]:
    """Phases from which ``run_step(step)`` may start."""
    return frozenset(
        {
            phase_for(step, Subphase.PENDING),
            phase_for(step, Subphase.REVIEW),
            phase_for(step, Subphase.BLOCKED),
        }
    )


def next_pending(phase: str) -> str:
    """Forward transition approved(n) -> pending(n+1).

    Raises:
        PhaseInvariantError: If ``phase`` is not an approved token or is terminal.
    """
    pos = position_of(phase)
    if pos.subphase is not Subphase.APPROVED or pos.step >= 7:
        raise PhaseInvariantError(phase, pos.step, f"cannot continue from {phase!r}")
    return pending_phase(pos.step + 1)
