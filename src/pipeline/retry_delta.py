# src/pipeline/retry_delta.py — v1
"""Retry deltas: constraint clauses, seed and temperature for the next attempt.

Constraint categories are selected from the judge's reason codes; the
free-text descriptions are never inspected.
"""

from __future__ import annotations

import random
from collections.abc import Iterable

from stagegate.core.models import ConstraintCategory, JudgeOutcome, RetryDelta

MAX_SEED = 2**31 - 1
BASE_TEMPERATURE = 0.7
TEMPERATURE_STEP = 0.1
MIN_TEMPERATURE = 0.1

CATEGORY_ORDER: tuple[ConstraintCategory, ...] = ("geometry", "scale", "bed_size", "furniture")

REASON_CATEGORIES: dict[str, ConstraintCategory] = {
    "GEOMETRY_DISTORTION": "geometry",
    "WALL_RECTIFICATION": "geometry",
    "PERSPECTIVE_ERROR": "geometry",
    "MISSING_SPACE": "geometry",
    "SCALE_MISMATCH": "scale",
    "BED_SIZE_MISMATCH": "bed_size",
    "FURNITURE_MISMATCH": "furniture",
    "FURNITURE_HALLUCINATION": "furniture",
    "DUPLICATED_OBJECTS": "furniture",
    "MISSING_FURNISHINGS": "furniture",
    "WRONG_ROOM_TYPE": "furniture",
}

CONSTRAINT_CLAUSES: dict[ConstraintCategory, str] = {
    "geometry": (
        "CRITICAL: Preserve ALL wall angles exactly. Do NOT straighten angled or curved walls."
    ),
    "scale": (
        "CRITICAL: Maintain exact furniture scale proportions matching room dimensions."
    ),
    "bed_size": (
        "CRITICAL: Use appropriate bed sizes - single/twin for secondary rooms, "
        "double only for master bedroom."
    ),
    "furniture": (
        "CRITICAL: Preserve exact furniture types and counts from input. "
        "Do NOT add or change furniture."
    ),
}


def temperature_for(attempt: int) -> float:
    """Sampling temperature for attempt ``attempt``; never increases with it."""
    return round(max(MIN_TEMPERATURE, BASE_TEMPERATURE - TEMPERATURE_STEP * attempt), 2)


def categories_for(reason_codes: Iterable[str]) -> list[ConstraintCategory]:
    """Constraint categories matched by ``reason_codes``, in canonical order."""
    matched = {REASON_CATEGORIES[c] for c in reason_codes if c in REASON_CATEGORIES}
    return [c for c in CATEGORY_ORDER if c in matched]


def build_retry_delta(
    outcomes: Iterable[JudgeOutcome],
    attempt: int,
    rng: random.Random | None = None,
) -> RetryDelta:
    """Derive the delta for the attempt after ``attempt`` from rejected outcomes."""
    codes = [r.code for outcome in outcomes for r in outcome.reasons]
    categories = categories_for(codes)
    rng = rng or random.Random()
    seed = rng.randrange(MAX_SEED)
    temperature = temperature_for(attempt)

    changes = [f"constraint:{c}" for c in categories]
    changes.append(f"seed:{seed}")
    changes.append(f"temperature:{temperature}")
    return RetryDelta(
        categories=categories,
        prompt_adjustments=[CONSTRAINT_CLAUSES[c] for c in categories],
        changes_made=changes,
        seed=seed,
        temperature=temperature,
    )


def apply_delta(prompt: str, delta: RetryDelta | None) -> str:
    """Append the delta's constraint clauses to ``prompt``."""
    if delta is None or not delta.prompt_adjustments:
        return prompt
    return prompt.rstrip() + "\n\n" + "\n".join(delta.prompt_adjustments)
