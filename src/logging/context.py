# src/logging/context.py — v1
"""Contextual logging support: attach pipeline_id, owner, step, attempt to log records.

The executor sets the context at the start of every step invocation and
clears it when the invocation returns.
"""

from __future__ import annotations

import contextvars
from dataclasses import dataclass
from typing import Any

_pipeline_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "pipeline_id", default=None
)
_owner: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "owner", default=None
)
_step: contextvars.ContextVar[int | None] = contextvars.ContextVar(
    "step", default=None
)
_attempt: contextvars.ContextVar[int | None] = contextvars.ContextVar(
    "attempt", default=None
)


@dataclass
class LogContext:
    """Snapshot of the current logging context."""

    pipeline_id: str | None = None
    owner: str | None = None
    step: int | None = None
    attempt: int | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return non-None fields as dict for JSON log injection."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


def get_context() -> LogContext:
    """Snapshot current context variables."""
    return LogContext(
        pipeline_id=_pipeline_id.get(),
        owner=_owner.get(),
        step=_step.get(),
        attempt=_attempt.get(),
    )


def set_pipeline_context(pipeline_id: str, owner: str) -> None:
    """Set pipeline-level context."""
    _pipeline_id.set(pipeline_id)
    _owner.set(owner)


def set_step_context(step: int, attempt: int | None = None) -> None:
    """Set step-level context (called per step invocation)."""
    _step.set(step)
    _attempt.set(attempt)


def clear_context() -> None:
    """Reset all context variables."""
    _pipeline_id.set(None)
    _owner.set(None)
    _step.set(None)
    _attempt.set(None)
