# src/core/errors.py — v1
"""Stable error codes and the exception hierarchy.

Exceptions are raised inside the engine and converted to the ``error``
variant of a step result at the public surface.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    PHASE_MISMATCH = "PHASE_MISMATCH"
    AUTH_INVALID = "AUTH_INVALID"
    INPUT_IMAGE_MISSING = "INPUT_IMAGE_MISSING"
    AI_API_ERROR = "AI_API_ERROR"
    PERSISTENCE_WRITE_ERROR = "PERSISTENCE_WRITE_ERROR"
    PARSE_FAILED = "PARSE_FAILED"
    TRUNCATED_PARSE_FAILED = "TRUNCATED_PARSE_FAILED"
    PIPELINE_NOT_FOUND = "PIPELINE_NOT_FOUND"
    INVALID_REQUEST = "INVALID_REQUEST"
    STALE_RESULT_DISCARDED = "STALE_RESULT_DISCARDED"
    UNHANDLED_ERROR = "UNHANDLED_ERROR"


class StageGateError(Exception):
    """Base class for all stagegate errors."""


class StepError(StageGateError):
    """Coded failure of a step operation."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(f"[{code.value}] {message}")
        self.code = code
        self.message = message
        self.retryable = retryable
        self.details = details or {}

    @property
    def last_error(self) -> str:
        """Form persisted to ``Pipeline.last_error``."""
        return f"[{self.code.value}] {self.message}"


class PhaseInvariantError(StepError):
    """A (phase, step) pair that the phase table does not allow."""

    def __init__(self, phase: str, step: int, message: str | None = None) -> None:
        super().__init__(
            ErrorCode.PHASE_MISMATCH,
            message or f"phase {phase!r} is not valid for step {step}",
            details={"phase": phase, "step": step},
        )
        self.phase = phase
        self.step = step


class VersionConflict(StageGateError):
    """Compare-and-swap lost against a concurrent writer."""

    def __init__(self, pipeline_id: str, expected_version: int) -> None:
        super().__init__(
            f"pipeline {pipeline_id} changed since version {expected_version}"
        )
        self.pipeline_id = pipeline_id
        self.expected_version = expected_version


class StaleResultDiscarded(StepError):
    """A late result was fenced off by a rollback."""

    def __init__(self, pipeline_id: str, observed: int, current: int) -> None:
        super().__init__(
            ErrorCode.STALE_RESULT_DISCARDED,
            f"reset counter moved from {observed} to {current}; result discarded",
            details={
                "pipeline_id": pipeline_id,
                "observed_reset_counter": observed,
                "current_reset_counter": current,
            },
        )


class GatewayError(StepError):
    """Failure talking to the generation or judge service."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.AI_API_ERROR,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(code, message, retryable=retryable, details=details)
