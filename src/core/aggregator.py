# src/core/aggregator.py — v1
"""Multi-output aggregation of per-candidate judge decisions."""

from __future__ import annotations

from collections.abc import Sequence

from stagegate.core.models import Decision, StepDecision


def aggregate(decisions: Sequence[Decision]) -> StepDecision:
    """Combine candidate decisions into the step-level decision.

    ``approved`` when nothing was rejected, ``rejected`` when everything
    was, ``partial_success`` otherwise. An empty sequence is a rejection.
    """
    total = len(decisions)
    rejected = sum(1 for d in decisions if d != "approved")
    if total == 0 or rejected == total:
        return "rejected"
    if rejected == 0:
        return "approved"
    return "partial_success"


def is_reviewable(decision: StepDecision) -> bool:
    """True when the step proceeds to its review phase."""
    return decision in ("approved", "partial_success")
